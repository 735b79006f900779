"""Error taxonomy and handlers.

Every error the relay core raises is an AppError. Transient errors carry
``retryable=True`` so callers can back off and retry; caller-fixable errors
carry the exact numbers needed for remediation in ``details``.
"""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from mintrelay.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details or {}


# --- caller-fixable -------------------------------------------------------

class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403

    def __init__(self, *, plan: str, limit: int, used: int, requested: int, request_id: Optional[str] = None):
        remaining = max(0, limit - used)
        over_by = max(0, used + requested - limit)
        super().__init__(
            f"Monthly mint quota exceeded for {plan} plan: {remaining} of {limit} remaining, requested {requested}",
            request_id=request_id,
            details={
                "plan": plan,
                "limit": limit,
                "used": used,
                "requested": requested,
                "remaining": remaining,
                "over_by": over_by,
            },
        )
        self.remaining = remaining
        self.over_by = over_by


class SubscriptionInactiveError(AppError):
    code = "subscription_inactive"
    status_code = 403


class _ShortfallError(AppError):
    status_code = 402

    def __init__(self, *, required: int, available: int, token: str, message: str, request_id: Optional[str] = None):
        shortfall = max(0, required - available)
        super().__init__(
            message.format(shortfall=shortfall, required=required, available=available),
            request_id=request_id,
            details={
                "required": required,
                "available": available,
                "shortfall": shortfall,
                "token": token,
            },
        )
        self.shortfall = shortfall


class InsufficientBalanceError(_ShortfallError):
    code = "insufficient_balance"

    def __init__(self, *, required: int, available: int, token: str, request_id: Optional[str] = None):
        super().__init__(
            required=required,
            available=available,
            token=token,
            message="Insufficient stable-token balance: need {shortfall} more (required {required}, have {available})",
            request_id=request_id,
        )


class InsufficientAllowanceError(_ShortfallError):
    code = "insufficient_allowance"

    def __init__(self, *, required: int, available: int, token: str, request_id: Optional[str] = None):
        super().__init__(
            required=required,
            available=available,
            token=token,
            message="Insufficient stable-token allowance: approve {shortfall} more (required {required}, approved {available})",
            request_id=request_id,
        )


class TargetNotDeployedError(AppError):
    code = "target_not_deployed"
    status_code = 424

    def __init__(self, address: str, *, role: str = "target", request_id: Optional[str] = None):
        super().__init__(
            f"No contract code deployed at {role} address {address}",
            request_id=request_id,
            details={"address": address, "role": role},
        )


class ClaimRejectedError(AppError):
    code = "claim_rejected"
    status_code = 400


# --- terminal / system ----------------------------------------------------

class SimulationRevertedError(AppError):
    code = "simulation_reverted"
    status_code = 422

    def __init__(self, reason: str, *, category: str = "system", request_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        payload = {"reason": reason, "category": category}
        payload.update(details or {})
        super().__init__(f"Transaction simulation reverted: {reason}", request_id=request_id, details=payload)
        self.reason = reason
        self.category = category


class TransactionRevertedError(AppError):
    code = "transaction_reverted"
    status_code = 502


class DeploymentVerificationError(AppError):
    code = "deployment_unverified"
    status_code = 502


class NonceIntegrityError(AppError):
    code = "nonce_integrity"
    status_code = 500


# --- transient --------------------------------------------------------------

class ChainUnavailableError(AppError):
    code = "chain_unavailable"
    status_code = 503
    retryable = True


class MirrorUnavailableError(AppError):
    code = "mirror_unavailable"
    status_code = 503
    retryable = True


class RelayerUnderfundedError(AppError):
    code = "relayer_underfunded"
    status_code = 503
    retryable = True


# --- ambiguous ----------------------------------------------------------------

class RegistrationPendingError(AppError):
    code = "registration_pending"
    status_code = 202
    retryable = True


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def rate_limit_info(request: Request) -> Optional[dict]:
    decision = getattr(request.state, "rate_limit", None)
    if decision is None:
        return None
    return decision.as_info()


def _error_payload(code: str, message: str, request_id: str, *, details: Optional[dict] = None, retryable: bool = False) -> dict:
    return {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "request_id": request_id,
            "details": details or {},
            "retryable": retryable,
        },
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, details=exc.details, retryable=exc.retryable)
    info = rate_limit_info(request)
    if info:
        payload["rateLimitInfo"] = info
    logger = logging.getLogger("mintrelay")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("mintrelay")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("mintrelay")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
