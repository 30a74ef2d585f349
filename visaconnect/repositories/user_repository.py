from typing import Dict, Iterable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from visaconnect.models.user import UserDocument


PROFILE_FIELDS = ("first_name", "last_name", "profile_photo_url", "occupation", "visa_type")


class UserRepository:
    """Read-only directory lookups; messaging never writes user records."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def get_profile(self, user_id: str) -> Optional[UserDocument]:
        user = await self._collection.find_one({"_id": user_id}, {f: 1 for f in PROFILE_FIELDS})
        if user:
            user["_id"] = str(user["_id"])  # normalize to string for API layer
        return user

    async def get_profiles(self, user_ids: Iterable[str]) -> Dict[str, UserDocument]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        cursor = self._collection.find({"_id": {"$in": ids}}, {f: 1 for f in PROFILE_FIELDS})
        profiles: Dict[str, UserDocument] = {}
        async for doc in cursor:
            doc["_id"] = str(doc["_id"])
            profiles[doc["_id"]] = doc
        return profiles
