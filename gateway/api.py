"""FastAPI application exposing the connect gateway endpoints."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import GatewaySettings, load_settings
from .connect import ConnectClient, ConnectServiceError
from .models import accounts_for_app
from .relay import ConnectProxyRelay, DirectCredentialRelay, RelayError, build_relay
from .workflows import (
    MESSAGING_APP,
    SPREADSHEET_APP,
    WorkflowReport,
    run_channels_to_sheet,
    run_contact_form,
)

logger = logging.getLogger("connectgateway.api")


class GatewayError(Exception):
    """Rendered as ``{"error": message, "details": ...}`` with ``status_code``."""

    def __init__(self, status_code: int, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details


class ConnectTokenRequest(BaseModel):
    external_user_id: Optional[str] = None


class ProxyRequestBody(BaseModel):
    endpoint: Optional[str] = None
    method: str = Field(default="GET", min_length=1, max_length=10)
    data: Any = None
    external_user_id: Optional[str] = None


class ChannelsToSheetRequest(BaseModel):
    external_user_id: Optional[str] = None
    messaging_account_id: Optional[str] = None
    spreadsheet_account_id: Optional[str] = None
    compensate: bool = True


class ContactFormRequest(BaseModel):
    external_user_id: Optional[str] = None
    messaging_account_id: Optional[str] = None
    channel: str = Field(default="general", min_length=1, max_length=80)
    form: Optional[Dict[str, str]] = None


def _error_content(message: str, details: Any = None) -> Dict[str, Any]:
    content: Dict[str, Any] = {"error": message}
    if details is not None:
        content["details"] = details
    return content


def _require_user(value: Optional[str]) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise GatewayError(status.HTTP_400_BAD_REQUEST, "external_user_id is required")
    return cleaned


def create_app(
    *,
    settings: GatewaySettings | None = None,
    client: ConnectClient | None = None,
    relay: ConnectProxyRelay | DirectCredentialRelay | None = None,
) -> FastAPI:
    if settings is None:
        settings = load_settings()

    owns_client = client is None
    if client is None:
        client = ConnectClient.from_settings(settings)
    owns_relay = relay is None
    if relay is None:
        relay = build_relay(settings, client)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "Connect gateway ready (environment=%s, credential mode=%s)",
            settings.environment,
            relay.mode,
        )
        yield
        if owns_relay and isinstance(relay, DirectCredentialRelay):
            await relay.aclose()
        if owns_client:
            await client.aclose()

    app = FastAPI(
        title="Connect Gateway",
        description="Relay third-party API calls on behalf of connected accounts",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.connect_client = client
    app.state.relay = relay

    def get_client() -> ConnectClient:
        return client

    def get_relay() -> ConnectProxyRelay | DirectCredentialRelay:
        return relay

    async def _first_account(connect: ConnectClient, user_id: str, app_slug: str) -> Optional[str]:
        try:
            payload = await connect.list_accounts(user_id)
        except ConnectServiceError as exc:
            raise GatewayError(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "Failed to fetch accounts",
                details=exc.details,
            ) from exc
        matches = accounts_for_app(payload, app_slug)
        return str(matches[0]["id"]) if matches and matches[0].get("id") else None

    def _workflow_response(report: WorkflowReport) -> JSONResponse:
        if report.succeeded:
            return JSONResponse(content=jsonable_encoder(report.to_dict()))
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content=_error_content(f"Workflow failed: {report.error}", jsonable_encoder(report.to_dict())),
        )

    router = APIRouter(prefix="/api")

    @router.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {
            "message": "Backend is running!",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @router.post("/connect-token")
    async def create_connect_token(
        payload: ConnectTokenRequest,
        connect: ConnectClient = Depends(get_client),
    ) -> Dict[str, Optional[str]]:
        user_id = _require_user(payload.external_user_id)
        try:
            token = await connect.issue_connect_token(user_id)
        except ConnectServiceError as exc:
            logger.error("Error creating connect token for %s: %s", user_id, exc)
            raise GatewayError(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "Failed to create connect token",
                details=exc.details,
            ) from exc
        return token.to_dict()

    @router.get("/accounts/{user_id}")
    async def list_accounts(user_id: str, connect: ConnectClient = Depends(get_client)) -> JSONResponse:
        try:
            accounts = await connect.list_accounts(user_id)
        except ConnectServiceError as exc:
            logger.error("Error fetching accounts for %s: %s", user_id, exc)
            raise GatewayError(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "Failed to fetch accounts",
                details=exc.details,
            ) from exc
        return JSONResponse(content=accounts)

    @router.post("/proxy/{account_id}")
    async def proxy_request(
        account_id: str,
        payload: ProxyRequestBody,
        proxy: ConnectProxyRelay | DirectCredentialRelay = Depends(get_relay),
    ) -> JSONResponse:
        user_id = _require_user(payload.external_user_id)
        endpoint = (payload.endpoint or "").strip()
        if not endpoint:
            raise GatewayError(status.HTTP_400_BAD_REQUEST, "endpoint is required")

        try:
            result = await proxy.request(
                account_id,
                endpoint,
                external_user_id=user_id,
                method=payload.method,
                data=payload.data,
            )
        except RelayError as exc:
            raise GatewayError(exc.status_code, str(exc)) from exc
        except ConnectServiceError as exc:
            logger.error("Error in proxy request for account %s: %s", account_id, exc)
            raise GatewayError(
                exc.status_code or status.HTTP_500_INTERNAL_SERVER_ERROR,
                "Proxy request failed",
                details=exc.details,
            ) from exc
        except Exception as exc:
            logger.exception("Unexpected error relaying request for account %s", account_id)
            raise GatewayError(status.HTTP_500_INTERNAL_SERVER_ERROR, "Proxy request failed") from exc
        return JSONResponse(content=result)

    @router.post("/workflows/channels-to-sheet")
    async def channels_to_sheet(
        payload: ChannelsToSheetRequest,
        connect: ConnectClient = Depends(get_client),
        proxy: ConnectProxyRelay | DirectCredentialRelay = Depends(get_relay),
    ) -> JSONResponse:
        user_id = _require_user(payload.external_user_id)
        messaging_id = payload.messaging_account_id or await _first_account(connect, user_id, MESSAGING_APP)
        sheets_id = payload.spreadsheet_account_id or await _first_account(connect, user_id, SPREADSHEET_APP)
        if not messaging_id or not sheets_id:
            raise GatewayError(
                status.HTTP_400_BAD_REQUEST,
                "You need both Slack and Google Sheets accounts connected",
            )

        report = await run_channels_to_sheet(
            proxy,
            external_user_id=user_id,
            messaging_account_id=messaging_id,
            spreadsheet_account_id=sheets_id,
            compensate=payload.compensate,
            verify_attempts=settings.verify_attempts,
            verify_delay=settings.verify_delay,
        )
        return _workflow_response(report)

    @router.post("/workflows/contact-form")
    async def contact_form(
        payload: ContactFormRequest,
        connect: ConnectClient = Depends(get_client),
        proxy: ConnectProxyRelay | DirectCredentialRelay = Depends(get_relay),
    ) -> JSONResponse:
        user_id = _require_user(payload.external_user_id)
        messaging_id = payload.messaging_account_id or await _first_account(connect, user_id, MESSAGING_APP)
        if not messaging_id:
            raise GatewayError(status.HTTP_400_BAD_REQUEST, "You need a Slack account connected")

        report = await run_contact_form(
            proxy,
            external_user_id=user_id,
            messaging_account_id=messaging_id,
            channel=payload.channel,
            form=payload.form,
        )
        return _workflow_response(report)

    app.include_router(router)

    @app.exception_handler(GatewayError)
    async def handle_gateway_error(_: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=_error_content(exc.message, exc.details))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_error_content("Invalid request body", jsonable_encoder(exc.errors())),
        )

    return app


__all__ = ["GatewayError", "create_app"]
