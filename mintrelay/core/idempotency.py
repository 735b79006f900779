"""
Idempotency key management for relay-consuming endpoints.

A client retrying a POST with the same Idempotency-Key must never cause a
second on-chain submission. A key is only kept once the request has
broadcast something; a request that fails earlier frees its key so the
caller can retry with it.
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from fastapi import Request
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from mintrelay.core.database import get_db_session, idempotency_keys
from mintrelay.core.errors import ConflictError, MirrorUnavailableError

logger = logging.getLogger("mintrelay.idempotency")

# tx hashes broadcast while the current guarded request runs
_broadcasts: ContextVar[Optional[List[str]]] = ContextVar("idempotency_broadcasts", default=None)


def check_and_set(key: str, scope: str = "generic") -> bool:
    """
    Check if idempotency key exists, and set it if not (atomic).

    Returns:
        True if key was already seen (duplicate request)
        False if key is new (first time seeing it)
    """
    try:
        with get_db_session() as session:
            session.execute(
                idempotency_keys.insert().values(
                    key=key,
                    scope=scope,
                    created_at=datetime.now(timezone.utc),
                )
            )
        return False
    except IntegrityError:
        # UNIQUE constraint violation: already seen
        return True
    except SQLAlchemyError as exc:
        raise MirrorUnavailableError("Idempotency store unavailable") from exc


def release_key(key: str) -> None:
    try:
        with get_db_session() as session:
            session.execute(idempotency_keys.delete().where(idempotency_keys.c.key == key))
    except SQLAlchemyError as exc:
        raise MirrorUnavailableError("Idempotency store unavailable") from exc


def note_broadcast(tx_hash: str) -> None:
    """Called by the relay executor once a transaction has a hash."""
    sent = _broadcasts.get()
    if sent is not None:
        sent.append(tx_hash)


@contextmanager
def idempotency_guard(request: Request, scope: str) -> Iterator[Optional[str]]:
    """
    Reject a replayed Idempotency-Key header; no header means no check.

    If the guarded block raises before any transaction was broadcast the
    key is released again.
    """
    key = (request.headers.get("Idempotency-Key") or "").strip()
    if not key:
        yield None
        return
    wallet = (request.headers.get("X-Wallet-Address") or "").lower()
    scoped_key = f"{scope}:{wallet}:{key}"
    if check_and_set(scoped_key, scope=scope):
        logger.info("idempotency.replay", extra={"scope": scope, "wallet": wallet})
        raise ConflictError(
            "Duplicate request: this Idempotency-Key was already used; poll the transaction status instead",
            code="duplicate_request",
        )

    sent: List[str] = []
    token = _broadcasts.set(sent)
    try:
        yield key
    except Exception:
        if not sent:
            try:
                release_key(scoped_key)
                logger.info("idempotency.released", extra={"scope": scope, "wallet": wallet})
            except MirrorUnavailableError:
                logger.warning("idempotency.release_failed", extra={"scope": scope, "wallet": wallet})
        raise
    finally:
        _broadcasts.reset(token)
