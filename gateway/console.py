"""Client for the gateway HTTP API and the integration console operations."""

from __future__ import annotations

import logging
import secrets
import string
from collections import Counter
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from .connect import decode_body
from .models import account_entries, accounts_for_app
from .workflows import CHANNELS_TO_SHEET, CONTACT_FORM, new_spreadsheet_body

logger = logging.getLogger("connectgateway.console")

DEFAULT_GATEWAY_URL = "http://localhost:3001/api"
CONNECT_APPS = ("slack", "google_sheets", "gmail", "github")
SPREADSHEET_MIME_TYPE = "application/vnd.google-apps.spreadsheet"

_USER_ID_ALPHABET = string.digits + string.ascii_lowercase


class GatewayRequestError(RuntimeError):
    """Raised when the gateway answers with an error status."""

    def __init__(self, message: str, *, status_code: int | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


def generate_user_id() -> str:
    """Return a random identity such as ``user-k3j9x0a1b``."""
    return "user-" + "".join(secrets.choice(_USER_ID_ALPHABET) for _ in range(9))


def normalize_user_id(value: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValueError("User ID must not be empty")
    return cleaned


def connect_links(token: Mapping[str, Any], apps: Sequence[str] = CONNECT_APPS) -> Dict[str, str]:
    """Build one authorization link per app from a connect token bundle."""
    base = token.get("connect_link_url")
    if not base:
        return {}
    return {app: f"{base}&app={app}" for app in apps}


def account_label(account: Mapping[str, Any]) -> str:
    app = account.get("app") or {}
    return str(app.get("name_slug") or app.get("name") or "unknown")


def summarize_accounts(payload: Any) -> Dict[str, int]:
    """Count connected accounts per app."""
    return dict(Counter(account_label(entry) for entry in account_entries(payload)))


def _error_message(payload: Any, default: str) -> str:
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, str) and error.strip():
            return error.strip()
    return default


class ConsoleClient:
    """Async client mirroring the console panels: connect, message, sheets and workflows."""

    def __init__(
        self,
        base_url: str = DEFAULT_GATEWAY_URL,
        *,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        cleaned = (base_url or "").strip().rstrip("/")
        if not cleaned:
            raise ValueError("Gateway base URL must not be empty")
        self._base_url = cleaned
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self) -> "ConsoleClient":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _send(self, method: str, path: str, *, json: Any = None) -> Any:
        url = f"{self._base_url}{path}"
        try:
            response = await self._http.request(method, url, json=json)
        except httpx.RequestError as exc:
            raise GatewayRequestError(f"Failed to contact gateway: {exc}") from exc

        payload = decode_body(response)
        if response.status_code >= 400:
            raise GatewayRequestError(
                _error_message(payload, f"Gateway request failed with status {response.status_code}"),
                status_code=response.status_code,
                payload=payload,
            )
        return payload

    async def check_health(self) -> bool:
        try:
            await self._send("GET", "/health")
        except GatewayRequestError as exc:
            logger.warning("Gateway health check failed: %s", exc)
            return False
        return True

    async def create_connect_token(self, user_id: str) -> Dict[str, Any]:
        return await self._send("POST", "/connect-token", json={"external_user_id": user_id})

    async def get_accounts(self, user_id: str) -> Any:
        return await self._send("GET", f"/accounts/{user_id}")

    async def request(
        self,
        account_id: str,
        endpoint: str,
        *,
        external_user_id: str,
        method: str = "GET",
        data: Any = None,
    ) -> Any:
        return await self._send(
            "POST",
            f"/proxy/{account_id}",
            json={
                "endpoint": endpoint,
                "method": method,
                "data": data,
                "external_user_id": external_user_id,
            },
        )

    async def run_workflow(self, workflow: str, user_id: str, **options: Any) -> Dict[str, Any]:
        if workflow not in {CHANNELS_TO_SHEET, CONTACT_FORM}:
            raise ValueError(f"Unknown workflow '{workflow}'")
        body = {"external_user_id": user_id}
        body.update({key: value for key, value in options.items() if value is not None})
        try:
            return await self._send("POST", f"/workflows/{workflow}", json=body)
        except GatewayRequestError as exc:
            if exc.status_code == 502 and isinstance(exc.payload, dict):
                details = exc.payload.get("details")
                if isinstance(details, dict):
                    return details
            raise

    async def first_account_id(self, user_id: str, app_slug: str) -> Optional[str]:
        matches = accounts_for_app(await self.get_accounts(user_id), app_slug)
        return str(matches[0]["id"]) if matches else None

    # messaging panel

    async def list_channels(self, account_id: str, user_id: str) -> List[Dict[str, Any]]:
        payload = await self.request(account_id, "conversations.list", external_user_id=user_id)
        if not isinstance(payload, dict) or not payload.get("ok"):
            raise GatewayRequestError(
                "Failed to load channels: " + _error_message(payload, "Unknown error"),
                payload=payload,
            )
        return [
            channel
            for channel in payload.get("channels") or []
            if not channel.get("is_archived")
            and (channel.get("is_channel") or channel.get("is_group") or channel.get("is_im"))
        ]

    async def send_message(self, account_id: str, user_id: str, channel: str, text: str) -> Dict[str, Any]:
        if not channel or not text:
            raise ValueError("Channel and message must both be provided")
        payload = await self.request(
            account_id,
            "chat.postMessage",
            external_user_id=user_id,
            method="POST",
            data={"channel": channel, "text": text},
        )
        if not isinstance(payload, dict) or not payload.get("ok"):
            raise GatewayRequestError("Slack API error: " + _error_message(payload, "Unknown error"), payload=payload)
        return payload

    # spreadsheet panel

    async def list_spreadsheets(self, account_id: str, user_id: str) -> List[Dict[str, Any]]:
        payload = await self.request(
            account_id,
            "files",
            external_user_id=user_id,
            data={
                "q": f'mimeType="{SPREADSHEET_MIME_TYPE}"',
                "fields": "files(id,name,createdTime)",
            },
        )
        if isinstance(payload, dict) and isinstance(payload.get("files"), list):
            return payload["files"]
        return []

    async def create_spreadsheet(self, account_id: str, user_id: str, title: str) -> str:
        cleaned = (title or "").strip()
        if not cleaned:
            raise ValueError("Spreadsheet title must not be empty")
        payload = await self.request(
            account_id,
            "spreadsheets",
            external_user_id=user_id,
            method="POST",
            data=new_spreadsheet_body(cleaned),
        )
        if not isinstance(payload, dict) or not payload.get("spreadsheetId"):
            raise GatewayRequestError("Failed to create spreadsheet - no ID returned", payload=payload)
        return str(payload["spreadsheetId"])

    async def append_row(self, account_id: str, user_id: str, spreadsheet_id: str, row: Sequence[Any]) -> Dict[str, Any]:
        payload = await self.request(
            account_id,
            f"spreadsheets/{spreadsheet_id}/values/A:A:append?valueInputOption=RAW&insertDataOption=INSERT_ROWS",
            external_user_id=user_id,
            method="POST",
            data={"values": [list(row)]},
        )
        if not isinstance(payload, dict) or not (payload.get("updates") or payload.get("updatedRows")):
            raise GatewayRequestError("Failed to add data - no updates returned", payload=payload)
        return payload

    async def read_values(
        self,
        account_id: str,
        user_id: str,
        spreadsheet_id: str,
        value_range: str = "A1:Z100",
    ) -> List[List[Any]]:
        payload = await self.request(
            account_id,
            f"spreadsheets/{spreadsheet_id}/values/{value_range}",
            external_user_id=user_id,
        )
        if isinstance(payload, dict) and isinstance(payload.get("values"), list):
            return payload["values"]
        return []


__all__ = [
    "CONNECT_APPS",
    "ConsoleClient",
    "DEFAULT_GATEWAY_URL",
    "GatewayRequestError",
    "account_label",
    "connect_links",
    "generate_user_id",
    "normalize_user_id",
    "summarize_accounts",
]
