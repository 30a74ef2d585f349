"""Session context for the chat client.

One ``SessionContext`` is built when the client session starts and handed to
whatever needs the token or the signed-in profile. Nothing reads session
state from a global.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional

import structlog


logger = structlog.get_logger(__name__)


class Completion(NamedTuple):
    completed: int
    total: int
    percentage: int


def _filled(profile: Dict[str, Any], *keys: str) -> bool:
    return all(profile.get(k) for k in keys)


def _answered(profile: Dict[str, Any], *keys: str) -> bool:
    return all(profile.get(k) is not None for k in keys)


# profile wizard sections, in wizard order
_SECTIONS = (
    lambda p: bool(p.get("visa_type")) and _filled(p.get("current_location") or {}, "city", "state"),
    lambda p: _filled(p, "nationality", "languages", "other_us_jobs", "relationship_status"),
    lambda p: _filled(p, "hobbies", "favorite_state", "preferred_outings") and _answered(p, "has_car", "offers_rides"),
    lambda p: _answered(p, "road_trips", "willing_to_guide") and _filled(p, "favorite_place", "travel_tips"),
    lambda p: _answered(p, "mentorship_interest") and _filled(p, "job_boards", "visa_advice"),
)


@dataclass
class SessionContext:
    token: Optional[str] = None
    profile: Dict[str, Any] = field(default_factory=dict)
    storage_path: Optional[Path] = None

    @classmethod
    def load(cls, storage_path: Path) -> "SessionContext":
        """Restore a saved session; a missing or unreadable file gives an empty one."""
        session = cls(storage_path=storage_path)
        try:
            data = json.loads(storage_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return session
        except (OSError, ValueError) as exc:
            logger.warning("session_restore_failed", path=str(storage_path), error=str(exc))
            return session
        session.token = data.get("token")
        session.profile = data.get("profile") or {}
        return session

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token and self.user_id)

    @property
    def user_id(self) -> Optional[str]:
        return self.profile.get("uid")

    def start(self, token: str, profile: Dict[str, Any]) -> None:
        self.token = token
        self.profile = dict(profile)
        self._save()

    def update(self, **changes: Any) -> None:
        if not self.profile:
            return
        self.profile.update(changes)
        self._save()

    def clear(self) -> None:
        self.token = None
        self.profile = {}
        if self.storage_path is not None:
            self.storage_path.unlink(missing_ok=True)

    @property
    def full_name(self) -> str:
        if not self.profile:
            return ""
        name = f"{self.profile.get('first_name') or ''} {self.profile.get('last_name') or ''}".strip()
        return name or "User"

    @property
    def location(self) -> str:
        loc = self.profile.get("current_location") or {}
        return ", ".join(part for part in (loc.get("city"), loc.get("state")) if part)

    def completion(self) -> Completion:
        total = len(_SECTIONS)
        if not self.profile:
            return Completion(0, total, 0)
        completed = sum(1 for section in _SECTIONS if section(self.profile))
        return Completion(completed, total, completed * 100 // total)

    def _save(self) -> None:
        if self.storage_path is None:
            return
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        self.storage_path.write_text(json.dumps({"token": self.token, "profile": self.profile}), encoding="utf-8")
