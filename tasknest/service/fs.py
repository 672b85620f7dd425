from pathlib import Path
from typing import Optional, Tuple

# Content types accepted for profile photos, mapped to the stored extension
AVATAR_CONTENT_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
}

_MEDIA_TYPES = {ext: content_type for content_type, ext in AVATAR_CONTENT_TYPES.items()}


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


def avatar_dir(fs_root: str, user_id: str) -> Path:
    return safe_join(Path(fs_root), f"users/{user_id}/avatar")


def save_avatar(fs_root: str, user_id: str, content: bytes, content_type: str) -> Path:
    """Write a profile photo, replacing any earlier one for the user."""
    ext = AVATAR_CONTENT_TYPES[content_type]
    directory = avatar_dir(fs_root, user_id)
    directory.mkdir(parents=True, exist_ok=True)
    for old in directory.glob("avatar.*"):
        old.unlink()
    dest = safe_join(directory, f"avatar.{ext}")
    tmp = dest.with_suffix(dest.suffix + ".tmp")
    tmp.write_bytes(content)
    tmp.replace(dest)
    return dest


def find_avatar(fs_root: str, user_id: str) -> Optional[Tuple[Path, str]]:
    """Return the stored photo and its media type, if the user has one."""
    directory = avatar_dir(fs_root, user_id)
    if not directory.is_dir():
        return None
    for path in sorted(directory.glob("avatar.*")):
        media_type = _MEDIA_TYPES.get(path.suffix.lstrip("."))
        if media_type:
            return path, media_type
    return None


def remove_avatar(fs_root: str, user_id: str) -> None:
    directory = avatar_dir(fs_root, user_id)
    if directory.is_dir():
        for path in directory.glob("avatar.*"):
            path.unlink()
