"""Configuration management for the connect gateway."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

CREDENTIAL_MODES = ("proxy", "direct")

DEFAULT_CONNECT_API_BASE = "https://api.pipedream.com/v1"
DEFAULT_MESSAGING_BASE = "https://slack.com/api/"
DEFAULT_SPREADSHEET_BASE = "https://sheets.googleapis.com/v4/"
DEFAULT_FILE_STORAGE_BASE = "https://www.googleapis.com/drive/v3/"
DEFAULT_MAIL_BASE = "https://gmail.googleapis.com/gmail/v1/"

# YAML key -> environment variable
_ENV_KEYS: Dict[str, str] = {
    "environment": "PIPEDREAM_ENVIRONMENT",
    "client_id": "PIPEDREAM_CLIENT_ID",
    "client_secret": "PIPEDREAM_CLIENT_SECRET",
    "project_id": "PIPEDREAM_PROJECT_ID",
    "port": "PORT",
    "connect_api_base": "PIPEDREAM_API_BASE",
    "credential_mode": "GATEWAY_CREDENTIAL_MODE",
    "allowed_origins": "GATEWAY_ALLOWED_ORIGINS",
    "http_timeout": "GATEWAY_HTTP_TIMEOUT",
    "verify_attempts": "GATEWAY_VERIFY_ATTEMPTS",
    "verify_delay": "GATEWAY_VERIFY_DELAY",
}


@dataclass(frozen=True)
class ServiceBases:
    """Base URLs of the third-party APIs reached through the proxy."""

    messaging: str = DEFAULT_MESSAGING_BASE
    spreadsheet: str = DEFAULT_SPREADSHEET_BASE
    file_storage: str = DEFAULT_FILE_STORAGE_BASE
    mail: str = DEFAULT_MAIL_BASE

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "ServiceBases":
        unknown = set(data) - {"messaging", "spreadsheet", "file_storage", "mail"}
        if unknown:
            raise ValueError(f"Unknown service base keys: {', '.join(sorted(unknown))}")
        values = {key: _with_trailing_slash(str(value)) for key, value in data.items()}
        return ServiceBases(**values)


@dataclass(frozen=True)
class GatewaySettings:
    """Runtime configuration for the gateway and its connection-service client."""

    environment: str = "development"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    project_id: Optional[str] = None
    port: int = 3001
    connect_api_base: str = DEFAULT_CONNECT_API_BASE
    credential_mode: str = "proxy"
    allowed_origins: Tuple[str, ...] = ("*",)
    http_timeout: float = 30.0
    verify_attempts: int = 3
    verify_delay: float = 1.0
    services: ServiceBases = field(default_factory=ServiceBases)

    def __post_init__(self) -> None:
        if self.credential_mode not in CREDENTIAL_MODES:
            raise ValueError(
                f"credential_mode must be one of {', '.join(CREDENTIAL_MODES)}, got '{self.credential_mode}'"
            )
        if not 1 <= self.port <= 65535:
            raise ValueError("port must be between 1 and 65535")
        if self.verify_attempts < 1:
            raise ValueError("verify_attempts must be at least 1")
        if self.verify_delay < 0:
            raise ValueError("verify_delay must not be negative")

    def require_credentials(self) -> None:
        """Raise :class:`ValueError` when the connection-service credentials are incomplete."""
        missing = [
            env
            for key, env in (
                ("client_id", "PIPEDREAM_CLIENT_ID"),
                ("client_secret", "PIPEDREAM_CLIENT_SECRET"),
                ("project_id", "PIPEDREAM_PROJECT_ID"),
            )
            if not getattr(self, key)
        ]
        if missing:
            raise ValueError(f"Missing connection service configuration: {', '.join(missing)}")

    @staticmethod
    def from_dict(data: Mapping[str, object]) -> "GatewaySettings":
        """Create :class:`GatewaySettings` from raw (YAML or environment) values."""
        values: Dict[str, object] = {}
        for key, raw in data.items():
            if raw is None:
                continue
            if key == "services":
                if not isinstance(raw, Mapping):
                    raise ValueError("'services' must be a mapping of service names to base URLs")
                values["services"] = ServiceBases.from_dict(raw)
            elif key in {"port", "verify_attempts"}:
                values[key] = int(raw)  # type: ignore[arg-type]
            elif key in {"http_timeout", "verify_delay"}:
                values[key] = float(raw)  # type: ignore[arg-type]
            elif key == "allowed_origins":
                values[key] = _parse_origins(raw)
            elif key == "credential_mode":
                values[key] = str(raw).strip().lower()
            elif key in _ENV_KEYS:
                values[key] = str(raw).strip() or None
            else:
                raise ValueError(f"Unknown configuration key '{key}'")
        if values.get("environment") is None:
            values.pop("environment", None)
        if values.get("connect_api_base") is None:
            values.pop("connect_api_base", None)
        else:
            values["connect_api_base"] = str(values["connect_api_base"]).rstrip("/")
        return GatewaySettings(**values)  # type: ignore[arg-type]


def _with_trailing_slash(value: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("Service base URLs must not be empty")
    return cleaned if cleaned.endswith("/") else cleaned + "/"


def _parse_origins(raw: object) -> Tuple[str, ...]:
    if isinstance(raw, str):
        items = [item.strip() for item in raw.split(",")]
    elif isinstance(raw, (list, tuple)):
        items = [str(item).strip() for item in raw]
    else:
        raise ValueError("allowed_origins must be a string or a list of strings")
    origins = tuple(item for item in items if item)
    return origins or ("*",)


def _read_yaml(config_path: Path) -> Dict[str, object]:
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError("Configuration file must contain a mapping at the top level")
    return raw


def load_settings(
    config_path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> GatewaySettings:
    """Load settings from an optional YAML file, overridden by environment variables."""
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = resolve_config_path(env.get("GATEWAY_CONFIG"))

    data: Dict[str, object] = {}
    if config_path is not None:
        data.update(_read_yaml(config_path))

    for key, env_name in _ENV_KEYS.items():
        value = env.get(env_name)
        if value is not None and value.strip():
            data[key] = value

    return GatewaySettings.from_dict(data)


def resolve_config_path(env_value: Optional[str]) -> Optional[Path]:
    """Resolve the YAML configuration path, returning ``None`` when no file is in use."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    candidate = (Path(__file__).resolve().parent.parent / "config" / "gateway.yaml").resolve(strict=False)
    if candidate.exists():
        return candidate
    return None


__all__ = [
    "CREDENTIAL_MODES",
    "GatewaySettings",
    "ServiceBases",
    "load_settings",
    "resolve_config_path",
]
