"""Relay proxy requests to third-party APIs as a connected account."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from .config import GatewaySettings, ServiceBases
from .connect import ConnectClient, ConnectServiceError, append_query, decode_body
from .models import ProxyRequest
from .routing import EndpointResolver

logger = logging.getLogger("connectgateway.relay")

# rules whose target does not depend on which app the account belongs to
_APP_INDEPENDENT_RULES = frozenset(
    {"scheme", "known-host", "batch-update", "spreadsheet-collection", "file-collection"}
)


class RelayError(RuntimeError):
    """Raised when a proxy request cannot be dispatched for a client-side reason."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProxyCaller(Protocol):
    async def request(
        self,
        account_id: str,
        endpoint: str,
        *,
        external_user_id: str,
        method: str = "GET",
        data: Any = None,
    ) -> Any: ...


def _query_params(data: Any) -> Optional[Dict[str, Any]]:
    if data is None:
        return None
    if not isinstance(data, dict):
        raise RelayError("GET request data must be an object of query parameters")
    return data


class ConnectProxyRelay:
    """Resolve the endpoint and let the connection service attach the credential."""

    mode = "proxy"

    def __init__(self, client: ConnectClient, resolver: EndpointResolver | None = None) -> None:
        self._client = client
        self._resolver = resolver or EndpointResolver()

    async def request(
        self,
        account_id: str,
        endpoint: str,
        *,
        external_user_id: str,
        method: str = "GET",
        data: Any = None,
    ) -> Any:
        descriptor = ProxyRequest(
            account_id=account_id,
            endpoint=endpoint,
            external_user_id=external_user_id,
            method=method,
            data=data,
        )
        resolved = self._resolver.resolve(descriptor.endpoint)
        url = resolved.url
        body = None
        if descriptor.sends_body:
            body = descriptor.data
        else:
            url = append_query(url, _query_params(descriptor.data))
        logger.info(
            "Relaying %s via rule %s for account %s",
            descriptor.method,
            resolved.rule,
            descriptor.account_id,
        )
        return await self._client.proxy_request(
            account_id=descriptor.account_id,
            external_user_id=descriptor.external_user_id,
            url=url,
            method=descriptor.method,
            body=body,
        )


class DirectCredentialRelay:
    """Fetch the account's OAuth token and call the third-party API directly.

    Only apps with a known base URL are supported; the gateway sees the raw
    access token in this mode.
    """

    mode = "direct"

    def __init__(
        self,
        client: ConnectClient,
        bases: ServiceBases | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        bases = bases or ServiceBases()
        self._client = client
        self._app_bases: Dict[str, str] = {
            "slack": bases.messaging,
            "google_sheets": bases.spreadsheet,
            "gmail": bases.mail,
        }
        self._resolver = EndpointResolver(bases)
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def supported_apps(self) -> tuple[str, ...]:
        return tuple(self._app_bases)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _target_url(self, app_base: str, endpoint: str) -> str:
        """Use the app's base unless the endpoint names a specific service (Drive ``files``, a host, ...)."""
        resolved = self._resolver.resolve(endpoint)
        if resolved.rule in _APP_INDEPENDENT_RULES:
            return resolved.url
        return app_base + endpoint.strip().lstrip("/")

    async def request(
        self,
        account_id: str,
        endpoint: str,
        *,
        external_user_id: str,
        method: str = "GET",
        data: Any = None,
    ) -> Any:
        descriptor = ProxyRequest(
            account_id=account_id,
            endpoint=endpoint,
            external_user_id=external_user_id,
            method=method,
            data=data,
        )
        account = await self._client.get_account(descriptor.account_id, include_credentials=True)

        base = self._app_bases.get(account.app_key)
        if base is None:
            raise RelayError(f"App {account.app_key} not supported for proxy requests")
        token = account.access_token
        if token is None:
            raise RelayError(f"Account {account.id} has no OAuth access token")

        url = self._target_url(base, descriptor.endpoint)
        request_kwargs: Dict[str, Any] = {
            "headers": {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            }
        }
        if descriptor.sends_body:
            if descriptor.data is not None:
                request_kwargs["json"] = descriptor.data
        else:
            request_kwargs["params"] = _query_params(descriptor.data)

        logger.info("Calling %s directly for %s account %s", descriptor.method, account.app_key, account.id)
        try:
            response = await self._http.request(descriptor.method, url, **request_kwargs)
        except httpx.RequestError as exc:
            raise ConnectServiceError(f"Failed to contact {account.app_key} API: {exc}") from exc

        payload = decode_body(response)
        if response.status_code >= 400:
            raise ConnectServiceError(
                f"{account.app_key} API request failed with status {response.status_code}",
                status_code=response.status_code,
                payload=payload,
            )
        return payload


def build_relay(
    settings: GatewaySettings,
    client: ConnectClient,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> ConnectProxyRelay | DirectCredentialRelay:
    """Pick the relay matching ``settings.credential_mode``."""
    if settings.credential_mode == "direct":
        return DirectCredentialRelay(
            client,
            settings.services,
            http_client=http_client,
            timeout=settings.http_timeout,
        )
    return ConnectProxyRelay(client, EndpointResolver(settings.services))


__all__ = [
    "ConnectProxyRelay",
    "DirectCredentialRelay",
    "ProxyCaller",
    "RelayError",
    "build_relay",
]
