from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from visaconnect.core.config import get_settings
from visaconnect.database.connection import close_mongo_connection, connect_to_mongo, get_database
from visaconnect.repositories.conversation_repository import ConversationRepository
from visaconnect.repositories.message_repository import MessageRepository
from visaconnect.routers.chat import router as chat_router
from visaconnect.utils.logging_config import setup_logging
from visaconnect.utils.realtime_bus import close_bus


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON, component="api")
    await connect_to_mongo()
    db = get_database()
    try:
        await ConversationRepository(db).ensure_indexes()
        await MessageRepository(db).ensure_indexes()
    except PyMongoError as exc:
        # conversation listing falls back to an in-memory sort without the index
        logger.warning("index_setup_failed", error=str(exc))
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="VisaConnect Chat API", lifespan=lifespan)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"success": False, "message": "Invalid request body"})


app.include_router(chat_router)


@app.get("/health")
async def health():
    return {"success": True, "data": {"status": "ok"}}
