"""Shared request dependencies and response envelopes for the routers."""
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from mintrelay.core.errors import AppError, rate_limit_info
from mintrelay.features.chain.client import normalize_address
from mintrelay.models.relay import RelayResult


def get_services(request: Request):
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise AppError("Relay services are not initialised", code="not_ready", status_code=503)
    return services


def require_wallet(request: Request) -> str:
    """Caller wallet from X-Wallet-Address, checksummed."""
    return normalize_address(request.headers.get("X-Wallet-Address"), "X-Wallet-Address")


def envelope(request: Request, data: Any, status_code: int = 200) -> JSONResponse:
    payload = {"success": True, "data": jsonable_encoder(data)}
    info = rate_limit_info(request)
    if info:
        payload["rateLimitInfo"] = info
    return JSONResponse(status_code=status_code, content=payload)


def relay_data(result: RelayResult, **extra) -> dict:
    data = {
        "type": result.type.value,
        "status": result.status.value,
        "confirmation": result.confirmation,
        "txHash": result.tx_hash,
        "contractAddress": result.contract_address,
        "interface": result.interface,
        "blockNumber": result.block_number,
    }
    data.update(extra)
    return data


def relay_envelope(request: Request, result: RelayResult, **extra) -> JSONResponse:
    """200 when confirmed; 202 when broadcast but unconfirmed (poll, do not resubmit)."""
    status_code = 202 if result.ambiguous else 200
    return envelope(request, relay_data(result, **extra), status_code=status_code)
