"""Domain models passed between the gateway and the connection service."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional


@dataclass(frozen=True)
class ConnectToken:
    """Short-lived token used by the console to build an authorization link."""

    token: str
    expires_at: Optional[str]
    connect_link_url: Optional[str]

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "ConnectToken":
        token = payload.get("token")
        if not isinstance(token, str) or not token:
            raise ValueError("Connect token payload is missing 'token'")
        return ConnectToken(
            token=token,
            expires_at=payload.get("expires_at"),
            connect_link_url=payload.get("connect_link_url"),
        )

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "token": self.token,
            "expires_at": self.expires_at,
            "connect_link_url": self.connect_link_url,
        }


@dataclass(frozen=True)
class ConnectedAccount:
    """A third-party account linked to an external user identity."""

    id: str
    name: Optional[str]
    app_name: Optional[str]
    app_slug: Optional[str]
    healthy: Optional[bool] = None
    credentials: Dict[str, Any] = field(default_factory=dict, repr=False)

    @staticmethod
    def from_payload(payload: Mapping[str, Any]) -> "ConnectedAccount":
        account_id = payload.get("id")
        if not account_id:
            raise ValueError("Account payload is missing 'id'")
        app = payload.get("app") or {}
        credentials = payload.get("credentials") or {}
        return ConnectedAccount(
            id=str(account_id),
            name=payload.get("name"),
            app_name=app.get("name"),
            app_slug=app.get("name_slug"),
            healthy=payload.get("healthy"),
            credentials=dict(credentials) if isinstance(credentials, Mapping) else {},
        )

    @property
    def app_key(self) -> str:
        return self.app_slug or self.app_name or "unknown"

    @property
    def access_token(self) -> Optional[str]:
        token = self.credentials.get("oauth_access_token")
        return token if isinstance(token, str) and token else None


@dataclass(frozen=True)
class ProxyRequest:
    """Descriptor for a gateway-mediated call made as a connected account."""

    account_id: str
    endpoint: str
    external_user_id: str
    method: str = "GET"
    data: Optional[Any] = None

    def __post_init__(self) -> None:
        if not self.account_id:
            raise ValueError("account_id must not be empty")
        if not self.external_user_id:
            raise ValueError("external_user_id must not be empty")
        object.__setattr__(self, "method", (self.method or "GET").upper())

    @property
    def sends_body(self) -> bool:
        return self.method not in {"GET", "HEAD"}


def account_entries(payload: Any) -> List[Dict[str, Any]]:
    """Return the account dictionaries from an account list payload."""
    if isinstance(payload, Mapping):
        payload = payload.get("data")
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


def accounts_for_app(payload: Any, app_slug: str) -> List[Dict[str, Any]]:
    return [
        entry
        for entry in account_entries(payload)
        if (entry.get("app") or {}).get("name_slug") == app_slug
    ]


__all__ = [
    "ConnectToken",
    "ConnectedAccount",
    "ProxyRequest",
    "account_entries",
    "accounts_for_app",
]
