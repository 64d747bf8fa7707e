"""FastAPI app: health probes and the authenticated ``POST /send`` relay."""

from __future__ import annotations

import hmac
import json
import time
from typing import TYPE_CHECKING

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .errors import SmtpConfigurationError, SmtpDeliveryError
from .models import HealthStatus, SendEmailRequest, ServiceStatus

if TYPE_CHECKING:
    from .service import ImapService

logger = structlog.get_logger()

# First failing field wins, in this order.
_FIELD_MESSAGES = (
    ("connectionId", "connectionId is required"),
    ("from", "from is required"),
    ("to", "to is required and must be a non-empty array"),
    ("subject", "subject is required"),
)


def validation_message(exc: ValidationError) -> str:
    """Map a SendEmailRequest validation failure to a client message."""
    failed = {str(err["loc"][0]) for err in exc.errors() if err["loc"]}
    for field, message in _FIELD_MESSAGES:
        if field in failed:
            return message
    first = exc.errors()[0]
    location = ".".join(str(p) for p in first["loc"]) or "body"
    return f"Invalid field {location}: {first['msg']}"


def _extract_api_key(request: Request) -> str | None:
    header = request.headers.get("authorization")
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token:
        return token.strip()
    return header.strip()


def create_app(service: ImapService) -> FastAPI:
    """Build the HTTP app bound to a running :class:`ImapService`."""
    app = FastAPI(title=f"{service.config.name} api", docs_url=None, redoc_url=None)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = exc.detail
        if exc.status_code == 404 and detail == "Not Found":
            detail = "Not found"
        return JSONResponse({"error": detail}, status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("request_failed", path=request.url.path, error=f"{type(exc).__name__}: {exc}")
        return JSONResponse({"error": "Internal server error"}, status_code=500)

    async def require_api_key(request: Request) -> None:
        expected = service.config.smtp.api_key
        if expected is None or not expected.get_secret_value():
            logger.warning("send_rejected_no_api_key_configured")
            raise HTTPException(status_code=401, detail="Unauthorized")
        provided = _extract_api_key(request)
        if provided is None or not hmac.compare_digest(
            provided.encode("utf-8"), expected.get_secret_value().encode("utf-8")
        ):
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.get("/health")
    async def health() -> JSONResponse:
        details = await service.health_check()
        status = HealthStatus(
            service=service.config.name,
            status=service.status,
            uptime_seconds=time.monotonic() - service.start_time,
            details=details,
        )
        code = 200 if service.status in (ServiceStatus.RUNNING, ServiceStatus.STARTING) else 503
        return JSONResponse(content=status.model_dump(mode="json"), status_code=code)

    @app.get("/ready")
    async def ready() -> JSONResponse:
        is_ready = service.status == ServiceStatus.RUNNING
        return JSONResponse(
            content={"ready": is_ready},
            status_code=200 if is_ready else 503,
        )

    @app.post("/send", dependencies=[Depends(require_api_key)])
    async def send(request: Request) -> JSONResponse:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        try:
            body = SendEmailRequest.model_validate(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=validation_message(exc))

        try:
            connection = await service.db.get_connection_by_id(body.connection_id)
        except Exception:
            logger.exception("send_connection_lookup_failed", connection_id=body.connection_id)
            raise HTTPException(status_code=500, detail="Failed to send email")
        if connection is None:
            raise HTTPException(status_code=404, detail="Connection not found")

        try:
            response = await service.smtp.send_email(connection, body)
        except SmtpConfigurationError as exc:
            logger.error("send_invalid_connection_config", connection_id=connection.id, reason=exc.reason)
            raise HTTPException(status_code=500, detail="Invalid connection configuration")
        except SmtpDeliveryError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
        except ValueError as exc:
            # Malformed attachment payloads
            raise HTTPException(status_code=400, detail=str(exc))
        except Exception:
            logger.exception("send_failed", connection_id=connection.id)
            raise HTTPException(status_code=500, detail="Failed to send email")

        return JSONResponse(response.model_dump(by_alias=True))

    return app
