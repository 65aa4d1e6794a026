"""Async client for the external connection-management service (Pipedream Connect)."""

from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

import httpx

from .config import GatewaySettings
from .models import ConnectedAccount, ConnectToken

logger = logging.getLogger("connectgateway.connect")

_TOKEN_REFRESH_MARGIN = 60.0


class ConnectServiceError(RuntimeError):
    """Raised when the connection service, or an API proxied through it, fails.

    ``status_code`` is ``None`` when no HTTP response was received.
    """

    def __init__(self, message: str, *, status_code: int | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload

    @property
    def details(self) -> Any:
        return self.payload if self.payload is not None else str(self)


@dataclass
class _ServiceToken:
    value: str
    expires_at: float


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("Connection service base URL must not be empty")
    return cleaned.rstrip("/")


def encode_proxy_target(url: str) -> str:
    """Encode a target URL the way the proxy endpoint expects it (unpadded base64url)."""
    return base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii").rstrip("=")


def decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("error", "message", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return default


def append_query(url: str, params: Mapping[str, Any] | None) -> str:
    """Append ``params`` to ``url``, keeping any query string already present."""
    if not params:
        return url
    encoded = urlencode(
        {key: value for key, value in params.items() if value is not None},
        doseq=True,
    )
    if not encoded:
        return url
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{encoded}"


class ConnectClient:
    """Issue connect tokens, look up accounts and proxy authorized requests."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        project_id: str,
        environment: str = "development",
        base_url: str = "https://api.pipedream.com/v1",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_id = client_id.strip()
        self._client_secret = client_secret.strip()
        self._project_id = project_id.strip()
        if not self._client_id or not self._client_secret or not self._project_id:
            raise ValueError("client_id, client_secret and project_id must not be empty")
        self._environment = environment
        self._base_url = _normalize_base_url(base_url)
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._token: Optional[_ServiceToken] = None

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> "ConnectClient":
        settings.require_credentials()
        return cls(
            client_id=settings.client_id or "",
            client_secret=settings.client_secret or "",
            project_id=settings.project_id or "",
            environment=settings.environment,
            base_url=settings.connect_api_base,
            timeout=settings.http_timeout,
            http_client=http_client,
        )

    @property
    def project_id(self) -> str:
        return self._project_id

    @property
    def environment(self) -> str:
        return self._environment

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def issue_connect_token(self, external_user_id: str) -> ConnectToken:
        payload = await self._call(
            "POST",
            f"/connect/{self._project_id}/tokens",
            json={"external_user_id": external_user_id},
        )
        if not isinstance(payload, dict):
            raise ConnectServiceError("Connection service returned an unexpected token payload", payload=payload)
        try:
            return ConnectToken.from_payload(payload)
        except ValueError as exc:
            raise ConnectServiceError(str(exc), payload=payload) from exc

    async def list_accounts(self, external_user_id: str, *, include_credentials: bool = False) -> Any:
        """Return the service's account list payload verbatim."""
        params: Dict[str, str] = {"external_user_id": external_user_id}
        if include_credentials:
            params["include_credentials"] = "true"
        return await self._call("GET", f"/connect/{self._project_id}/accounts", params=params)

    async def get_account(self, account_id: str, *, include_credentials: bool = False) -> ConnectedAccount:
        params = {"include_credentials": "true"} if include_credentials else None
        payload = await self._call("GET", f"/connect/{self._project_id}/accounts/{account_id}", params=params)
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        if not isinstance(payload, dict):
            raise ConnectServiceError("Account not found", status_code=404, payload=payload)
        try:
            return ConnectedAccount.from_payload(payload)
        except ValueError as exc:
            raise ConnectServiceError("Connection service returned an invalid account payload") from exc

    async def delete_account(self, account_id: str) -> None:
        await self._call("DELETE", f"/connect/{self._project_id}/accounts/{account_id}")

    async def proxy_request(
        self,
        *,
        account_id: str,
        external_user_id: str,
        url: str,
        method: str = "GET",
        body: Any = None,
    ) -> Any:
        """Ask the service to call ``url`` as ``account_id`` and return the upstream body."""
        path = f"/connect/{self._project_id}/proxy/{encode_proxy_target(url)}"
        params = {"external_user_id": external_user_id, "account_id": account_id}
        logger.debug("Proxying %s %s for account %s", method, url, account_id)
        return await self._call(method, path, params=params, json=body, failure="Proxy request failed")

    async def _access_token(self) -> str:
        now = time.monotonic()
        if self._token is not None and self._token.expires_at - _TOKEN_REFRESH_MARGIN > now:
            return self._token.value

        try:
            response = await self._http.post(
                f"{self._base_url}/oauth/token",
                json={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
        except httpx.RequestError as exc:
            raise ConnectServiceError(f"Failed to contact connection service: {exc}") from exc

        payload = decode_body(response)
        if response.status_code >= 400:
            raise ConnectServiceError(
                _extract_error_message(payload, "Authentication with the connection service failed"),
                status_code=response.status_code,
                payload=payload,
            )
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise ConnectServiceError("Connection service returned an invalid OAuth token response", payload=payload)

        try:
            expires_in = float(payload.get("expires_in") or 3600)
        except (TypeError, ValueError) as exc:
            raise ConnectServiceError("Connection service returned an invalid token lifetime") from exc
        self._token = _ServiceToken(value=str(payload["access_token"]), expires_at=now + expires_in)
        logger.info("Obtained connection service access token for project %s", self._project_id)
        return self._token.value

    async def _call(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        failure: str = "Connection service request failed",
    ) -> Any:
        token = await self._access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "X-PD-Environment": self._environment,
        }
        request_kwargs: Dict[str, Any] = {"params": params, "headers": headers}
        if json is not None:
            request_kwargs["json"] = json

        try:
            response = await self._http.request(method.upper(), f"{self._base_url}{path}", **request_kwargs)
        except httpx.RequestError as exc:
            raise ConnectServiceError(f"Failed to contact connection service: {exc}") from exc

        payload = decode_body(response)
        if response.status_code >= 400:
            logger.warning("%s %s returned status %s", method.upper(), path, response.status_code)
            raise ConnectServiceError(
                _extract_error_message(payload, f"{failure} with status {response.status_code}"),
                status_code=response.status_code,
                payload=payload,
            )
        return payload


__all__ = [
    "ConnectClient",
    "ConnectServiceError",
    "append_query",
    "decode_body",
    "encode_proxy_target",
]
