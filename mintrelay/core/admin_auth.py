"""
Admin authentication for drop authoring and reconciliation.

X-Admin-Key shared secret; compared in constant time. Actors are identified
by a key hash so audit logs never contain the secret.
"""
import hashlib
import hmac
import os
from dataclasses import dataclass

from fastapi import Request

from mintrelay.core.config import settings
from mintrelay.core.errors import PermissionError


@dataclass
class AdminActor:
    actor_id: str
    auth_mechanism: str = "x_admin_key"


def get_admin_api_key() -> str | None:
    """Prefer ADMIN_API_KEY env var; fall back to settings.ADMIN_KEY."""
    return os.getenv("ADMIN_API_KEY") or settings.ADMIN_KEY


def require_admin(request: Request) -> AdminActor:
    """FastAPI dependency: reject the request unless X-Admin-Key matches."""
    expected_key = get_admin_api_key()
    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not expected_key or not header_key or not hmac.compare_digest(header_key, expected_key):
        raise PermissionError("Admin credentials required")
    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin:{key_hash}")
