from __future__ import annotations

import re
import unicodedata
from typing import Optional

from tasknest.service.errors import ValidationError, WeakPasswordError

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_email(value: Optional[str]) -> str:
    """Trim, lowercase and NFKC-normalize an address without validating it."""
    if not isinstance(value, str):
        return ""
    return unicodedata.normalize("NFKC", value.strip().lower())


def validate_email(value: Optional[str]) -> str:
    """Return the normalized address or raise ``ValidationError``."""
    normalized = normalize_email(value)
    if not normalized:
        raise ValidationError("email is required", detail={"field": "email"})
    if len(normalized) > 254:
        raise ValidationError("email address too long", detail={"field": "email"})
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValidationError("invalid email address", detail={"field": "email"})
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValidationError("invalid email address", detail={"field": "email"})
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValidationError("invalid email address", detail={"field": "email"})
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValidationError("invalid email address", detail={"field": "email"})
    return normalized


def require_text(value: Optional[str], field: str, *, max_length: Optional[int] = None) -> str:
    """Trimmed non-empty string, or ``ValidationError`` naming the field."""
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise ValidationError(f"{field} is required", detail={"field": field})
    if max_length is not None and len(text) > max_length:
        raise ValidationError(
            f"{field} must be at most {max_length} characters",
            detail={"field": field},
        )
    return text


def check_password_policy(password: Optional[str]) -> str:
    if not isinstance(password, str) or not password:
        raise ValidationError("password is required", detail={"field": "password"})
    problems = []
    if len(password) < PASSWORD_MIN_LENGTH:
        problems.append(f"at least {PASSWORD_MIN_LENGTH} characters")
    if len(password) > PASSWORD_MAX_LENGTH:
        problems.append(f"at most {PASSWORD_MAX_LENGTH} characters")
    if not re.search(r"[A-Z]", password):
        problems.append("an uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("a lowercase letter")
    if not re.search(r"\d", password):
        problems.append("a digit")
    if problems:
        raise WeakPasswordError(
            "password must contain " + ", ".join(problems),
            detail={"field": "password", "requirements": problems},
        )
    return password
