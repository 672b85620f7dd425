from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from tasknest.logging import get_logger
from tasknest.service import fs
from tasknest.service.errors import NotFoundError, ServerError, ValidationError
from tasknest.storage.models import Profile

logger = get_logger(__name__)

BIO_MAX_LENGTH = 200
_EDITABLE_FIELDS = {"full_name", "bio", "avatar_url", "ai_features", "stats"}
_STAT_KEYS = {"total_tasks", "tasks_completed", "pending_tasks", "overdue_tasks", "streak"}


class ProfileService:
    """Read, edit and delete the caller's own profile and photo."""

    def __init__(self, store, *, fs_root: str, max_avatar_bytes: int) -> None:
        self.store = store
        self.fs_root = fs_root
        self.max_avatar_bytes = max_avatar_bytes
        self.logger = logger

    def get_profile(self, user_id: str) -> Profile:
        profile = self.store.get_profile(user_id)
        if not profile:
            raise NotFoundError("profile not found")
        return profile

    def update_profile(self, user_id: str, updates: Dict[str, Any]) -> Profile:
        unknown = set(updates) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationError(
                "fields cannot be updated", detail={"fields": sorted(unknown)}
            )
        cleaned = dict(updates)
        if "full_name" in cleaned:
            name = (cleaned["full_name"] or "").strip()
            if not name:
                raise ValidationError("full_name cannot be blank", detail={"field": "full_name"})
            cleaned["full_name"] = name
        if "bio" in cleaned:
            bio = (cleaned["bio"] or "").strip()
            if len(bio) > BIO_MAX_LENGTH:
                raise ValidationError(
                    f"bio must be at most {BIO_MAX_LENGTH} characters", detail={"field": "bio"}
                )
            cleaned["bio"] = bio
        if "stats" in cleaned:
            cleaned["stats"] = self._clean_stats(cleaned["stats"])
        profile = self.store.update_profile(user_id, cleaned)
        if not profile:
            raise NotFoundError("profile not found")
        self.logger.info("profile_updated", user_id=user_id, fields=sorted(cleaned))
        return profile

    @staticmethod
    def _clean_stats(stats: Any) -> Dict[str, int]:
        if not isinstance(stats, dict):
            raise ValidationError("stats must be an object", detail={"field": "stats"})
        cleaned = {}
        for key, value in stats.items():
            if key not in _STAT_KEYS:
                raise ValidationError(f"unknown stat '{key}'", detail={"field": "stats"})
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(
                    f"{key} must be a non-negative integer", detail={"field": "stats"}
                )
            cleaned[key] = value
        return cleaned

    def delete_profile(self, user_id: str) -> None:
        if not self.store.delete_profile(user_id):
            raise NotFoundError("profile not found")
        fs.remove_avatar(self.fs_root, user_id)
        self.logger.info("profile_deleted", user_id=user_id)

    def upload_photo(self, user_id: str, content: bytes, content_type: Optional[str]) -> Profile:
        # Profile must exist before a photo can be attached to it
        self.get_profile(user_id)
        if content_type not in fs.AVATAR_CONTENT_TYPES:
            raise ValidationError(
                "unsupported image type",
                detail={"allowed": sorted(fs.AVATAR_CONTENT_TYPES)},
            )
        if not content:
            raise ValidationError("empty upload", detail={"field": "file"})
        if len(content) > self.max_avatar_bytes:
            raise ValidationError(
                "image too large", detail={"max_bytes": self.max_avatar_bytes}
            )
        try:
            fs.save_avatar(self.fs_root, user_id, content, content_type)
        except (OSError, fs.PathTraversalError) as exc:
            self.logger.error("avatar_write_failed", user_id=user_id, error=str(exc))
            raise ServerError("failed to store photo") from exc
        profile = self.store.update_profile(
            user_id, {"avatar_url": f"/api/profile/{user_id}/photo"}
        )
        if not profile:
            raise NotFoundError("profile not found")
        self.logger.info("avatar_uploaded", user_id=user_id, size=len(content))
        return profile

    def photo_path(self, user_id: str) -> Tuple[Path, str]:
        try:
            found = fs.find_avatar(self.fs_root, user_id)
        except fs.PathTraversalError:
            found = None
        if not found:
            raise NotFoundError("photo not found")
        return found
