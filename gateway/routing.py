"""Resolve proxy endpoints to fully-qualified upstream URLs.

Endpoints arrive from the console in several shapes: absolute URLs,
host-qualified paths without a scheme, Google Sheets paths such as
``spreadsheets/<id>:batchUpdate`` and bare Slack method names such as
``conversations.list``. :class:`EndpointResolver` evaluates an ordered
list of rules and the first rule whose predicate matches builds the URL.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .config import ServiceBases

_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")

BATCH_UPDATE_SUFFIX = ":batchUpdate"
SPREADSHEET_COLLECTION = "spreadsheets"
FILE_COLLECTION = "files"

Predicate = Callable[[str], bool]
Builder = Callable[[str], str]


@dataclass(frozen=True)
class RouteRule:
    name: str
    matches: Predicate
    build: Builder


@dataclass(frozen=True)
class ResolvedEndpoint:
    url: str
    rule: str


def _host_of(base: str) -> str:
    without_scheme = _SCHEME_RE.sub("", base)
    return without_scheme.split("/", 1)[0]


def _version_segment(base: str) -> Optional[str]:
    path = _SCHEME_RE.sub("", base).split("/", 1)
    if len(path) < 2:
        return None
    segments = [segment for segment in path[1].split("/") if segment]
    return segments[-1] if segments else None


def _starts_with_segment(path: str, segment: str) -> bool:
    return path == segment or path.startswith(segment + "/") or path.startswith(segment + "?")


class EndpointResolver:
    """Ordered, first-match-wins endpoint to URL rule table."""

    def __init__(self, bases: ServiceBases | None = None) -> None:
        self._bases = bases or ServiceBases()
        self._known_hosts: Tuple[str, ...] = (
            _host_of(self._bases.spreadsheet),
            _host_of(self._bases.file_storage),
        )
        self._rules: List[RouteRule] = [
            RouteRule("scheme", self._has_scheme, lambda endpoint: endpoint),
            RouteRule("known-host", self._has_known_host, self._qualify_host),
            RouteRule("batch-update", self._is_batch_update, self._qualify_batch_update),
            RouteRule("spreadsheet-collection", self._is_spreadsheet_path, self._qualify_spreadsheet),
            RouteRule("file-collection", self._is_file_path, self._qualify_file),
            RouteRule("messaging", lambda _endpoint: True, self._qualify_messaging),
        ]

    @property
    def bases(self) -> ServiceBases:
        return self._bases

    @property
    def rules(self) -> Sequence[RouteRule]:
        return tuple(self._rules)

    def resolve(self, endpoint: str) -> ResolvedEndpoint:
        cleaned = (endpoint or "").strip()
        if not cleaned:
            raise ValueError("endpoint must not be empty")
        for rule in self._rules:
            if rule.matches(cleaned):
                return ResolvedEndpoint(url=rule.build(cleaned), rule=rule.name)
        raise ValueError(f"No routing rule matched endpoint '{cleaned}'")  # pragma: no cover

    def resolve_url(self, endpoint: str) -> str:
        return self.resolve(endpoint).url

    # predicates

    @staticmethod
    def _has_scheme(endpoint: str) -> bool:
        return bool(_SCHEME_RE.match(endpoint))

    def _has_known_host(self, endpoint: str) -> bool:
        return any(host and host in endpoint for host in self._known_hosts)

    @staticmethod
    def _is_batch_update(endpoint: str) -> bool:
        return BATCH_UPDATE_SUFFIX in endpoint

    @staticmethod
    def _is_spreadsheet_path(endpoint: str) -> bool:
        return _starts_with_segment(endpoint.lstrip("/"), SPREADSHEET_COLLECTION)

    @staticmethod
    def _is_file_path(endpoint: str) -> bool:
        return _starts_with_segment(endpoint.lstrip("/"), FILE_COLLECTION)

    # builders

    @staticmethod
    def _qualify_host(endpoint: str) -> str:
        return "https://" + endpoint.lstrip("/")

    def _qualify_batch_update(self, endpoint: str) -> str:
        path = endpoint.lstrip("/")
        version = _version_segment(self._bases.spreadsheet)
        if version and path.startswith(version + "/"):
            path = path[len(version) + 1 :]
        return self._bases.spreadsheet + path

    def _qualify_spreadsheet(self, endpoint: str) -> str:
        return self._bases.spreadsheet + endpoint.lstrip("/")

    def _qualify_file(self, endpoint: str) -> str:
        return self._bases.file_storage + endpoint.lstrip("/")

    def _qualify_messaging(self, endpoint: str) -> str:
        return self._bases.messaging + endpoint.lstrip("/")


_default_resolver = EndpointResolver()


def resolve_endpoint(endpoint: str) -> str:
    """Resolve ``endpoint`` against the default service bases."""
    return _default_resolver.resolve_url(endpoint)


__all__ = [
    "BATCH_UPDATE_SUFFIX",
    "EndpointResolver",
    "ResolvedEndpoint",
    "RouteRule",
    "resolve_endpoint",
]
