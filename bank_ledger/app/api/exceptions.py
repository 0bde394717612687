from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.errors import (
    AccountNotFoundError,
    AuthenticationFailedError,
    BusyError,
    DuplicateUsernameError,
    InsufficientFundsError,
    InvalidInputError,
    InvalidPinError,
    LedgerError,
    ResourceExhaustedError,
    StorageFailureError,
)

# Looked up along the exception MRO, so subclasses inherit their parent's code.
STATUS_BY_ERROR: dict[type[LedgerError], int] = {
    InvalidInputError: 400,
    AuthenticationFailedError: 401,
    InvalidPinError: 403,
    AccountNotFoundError: 404,
    DuplicateUsernameError: 409,
    InsufficientFundsError: 409,
    StorageFailureError: 500,
    ResourceExhaustedError: 503,
    BusyError: 503,
}


def _error_body(exc: LedgerError) -> dict[str, str]:
    return {"detail": str(exc), "kind": exc.kind}


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
        status_code = 500
        for cls in type(exc).__mro__:
            if cls in STATUS_BY_ERROR:
                status_code = STATUS_BY_ERROR[cls]
                break
        headers = {"Retry-After": "1"} if isinstance(exc, BusyError) else None
        return JSONResponse(
            status_code=status_code, content=_error_body(exc), headers=headers
        )
