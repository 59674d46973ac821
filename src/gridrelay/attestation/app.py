"""HTTP surface of the attestation service."""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable, List, Optional, Union

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.middleware.base import BaseHTTPMiddleware
from web3 import Web3

from ..config import GridRelaySettings, load_settings
from ..exceptions import (
    GridRelayException,
    MissingFieldsError,
    SigningFailureError,
    ValidationError,
)
from ..logging_utils import request_id_var
from .service import AttestationService, parse_uint

logger = logging.getLogger("gridrelay.api")

UintField = Union[int, str]


class _SignatureRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: UintField
    nonce: UintField
    tx_hash: str = Field(alias="txHash", pattern=r"^0x[0-9a-fA-F]{64}$")
    origin_chain_id: Optional[int] = Field(default=None, alias="originChainId")
    destination_chain_id: Optional[int] = Field(default=None, alias="destinationChainId")


class BuySignatureRequest(_SignatureRequest):
    buyer: str = Field(min_length=1)


class SellSignatureRequest(_SignatureRequest):
    seller: str = Field(min_length=1)


class SignatureResponse(BaseModel):
    signature: str


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Request logging with an ``X-Request-ID`` correlation id."""

    def __init__(self, app, exclude_paths: Optional[List[str]] = None):
        super().__init__(app)
        self.exclude_paths = exclude_paths or ["/health"]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Request-ID") or f"req_{uuid.uuid4().hex[:16]}"
        request_id_var.set(correlation_id)
        request.state.request_id = correlation_id

        if request.url.path in self.exclude_paths:
            response = await call_next(request)
            response.headers["X-Request-ID"] = correlation_id
            return response

        start_time = time.perf_counter()
        response = await call_next(request)
        context = {
            "event": "request_complete",
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
        }
        if response.status_code >= 500:
            logger.error("Request completed with server error", extra=context)
        elif response.status_code >= 400:
            logger.warning("Request completed with client error", extra=context)
        else:
            logger.info("Request completed", extra=context)
        response.headers["X-Request-ID"] = correlation_id
        return response


def register_exception_handlers(app: FastAPI) -> None:
    """Map gridrelay exceptions onto ``{"error": message}`` bodies."""

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        missing = [
            ".".join(str(loc) for loc in error["loc"][1:])
            for error in exc.errors()
            if error.get("type") == "missing"
        ]
        error = MissingFieldsError(missing) if missing or not exc.errors() else ValidationError(
            "Invalid request fields"
        )
        logger.warning(
            f"Rejected request to {request.url.path}: {error.message}",
            extra={"path": request.url.path, "error_type": error.error_code},
        )
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    @app.exception_handler(GridRelayException)
    async def gridrelay_exception_handler(
        request: Request, exc: GridRelayException
    ) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error(
                f"Server error: {exc.error_code} - {exc.message}",
                extra={"path": request.url.path, "error_type": exc.error_code},
            )
        else:
            logger.warning(
                f"Client error: {exc.error_code} - {exc.message}",
                extra={"path": request.url.path, "error_type": exc.error_code},
            )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def get_service(request: Request) -> AttestationService:
    return request.app.state.attestation_service


def _checked_address(value: str, field: str) -> str:
    if not Web3.is_address(value):
        raise ValidationError(f"Invalid {field} address", field=field)
    return Web3.to_checksum_address(value)


async def _guard_signing(coro) -> SignatureResponse:
    try:
        signature = await coro
    except GridRelayException:
        raise
    except Exception as e:
        logger.exception("Unexpected failure while issuing signature")
        raise SigningFailureError("Signature failed") from e
    return SignatureResponse(signature=signature)


def create_app(
    settings: Optional[GridRelaySettings] = None,
    service: Optional[AttestationService] = None,
) -> FastAPI:
    """Build the FastAPI app.

    Raises ``ConfigError`` when no usable validator key is configured.
    """
    settings = settings or load_settings()
    service = service or AttestationService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Attestation service up, validator {service.validator_address}")
        yield
        await service.close()

    app = FastAPI(title="gridrelay attestation", version="0.1.0", lifespan=lifespan)
    app.state.attestation_service = service
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(StructuredLoggingMiddleware)
    register_exception_handlers(app)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/buy-validator-signature", response_model=SignatureResponse)
    async def buy_validator_signature(
        body: BuySignatureRequest,
        svc: AttestationService = Depends(get_service),
    ) -> SignatureResponse:
        return await _guard_signing(
            svc.attest_purchase(
                amount=parse_uint(body.amount, "amount"),
                buyer=_checked_address(body.buyer, "buyer"),
                nonce=parse_uint(body.nonce, "nonce"),
                origin_tx_hash=body.tx_hash,
                origin_chain_id=body.origin_chain_id,
                destination_chain_id=body.destination_chain_id,
            )
        )

    @app.post("/sell-validator-signature", response_model=SignatureResponse)
    async def sell_validator_signature(
        body: SellSignatureRequest,
        svc: AttestationService = Depends(get_service),
    ) -> SignatureResponse:
        return await _guard_signing(
            svc.attest_sale(
                amount=parse_uint(body.amount, "amount"),
                seller=_checked_address(body.seller, "seller"),
                nonce=parse_uint(body.nonce, "nonce"),
                origin_tx_hash=body.tx_hash,
                origin_chain_id=body.origin_chain_id,
                destination_chain_id=body.destination_chain_id,
            )
        )

    return app


__all__ = [
    "create_app",
    "register_exception_handlers",
    "get_service",
    "StructuredLoggingMiddleware",
    "BuySignatureRequest",
    "SellSignatureRequest",
    "SignatureResponse",
]
