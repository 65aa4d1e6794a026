from __future__ import annotations

import json
from typing import List

import anyio
import httpx
import pytest
from fastapi.testclient import TestClient

from gateway.api import create_app
from gateway.config import GatewaySettings
from gateway.connect import ConnectClient, ConnectServiceError
from gateway.relay import ConnectProxyRelay, DirectCredentialRelay, RelayError, build_relay

from conftest import FakeConnectService


class RecordingUpstream:
    def __init__(self, status_code: int = 200, payload: object = None) -> None:
        self.status_code = status_code
        self.payload = payload if payload is not None else {"ok": True}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)


def _direct_relay(connect_client: ConnectClient, upstream: RecordingUpstream) -> DirectCredentialRelay:
    return DirectCredentialRelay(
        connect_client,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)),
    )


def test_build_relay_follows_credential_mode(settings: GatewaySettings, connect_client: ConnectClient) -> None:
    assert isinstance(build_relay(settings, connect_client), ConnectProxyRelay)

    direct_settings = GatewaySettings.from_dict(
        {
            "client_id": "client-id",
            "client_secret": "client-secret",
            "project_id": "proj_test",
            "credential_mode": "direct",
        }
    )
    relay = build_relay(direct_settings, connect_client)
    assert isinstance(relay, DirectCredentialRelay)
    assert relay.supported_apps == ("slack", "google_sheets", "gmail")


def test_direct_relay_attaches_bearer_token(connect_client: ConnectClient, connect_service: FakeConnectService) -> None:
    connect_service.connect_account("u1", "apn_slack", "slack", access_token="xoxp-secret")
    upstream = RecordingUpstream(payload={"ok": True, "channel": "C1"})
    relay = _direct_relay(connect_client, upstream)

    async def send():
        return await relay.request(
            "apn_slack",
            "chat.postMessage",
            external_user_id="u1",
            method="POST",
            data={"channel": "C1", "text": "hello"},
        )

    result = anyio.run(send)

    assert result == {"ok": True, "channel": "C1"}
    request = upstream.requests[0]
    assert str(request.url) == "https://slack.com/api/chat.postMessage"
    assert request.headers["Authorization"] == "Bearer xoxp-secret"
    assert json.loads(request.content) == {"channel": "C1", "text": "hello"}
    assert connect_service.proxied == []


def test_direct_relay_sends_get_data_as_params(connect_client: ConnectClient, connect_service: FakeConnectService) -> None:
    connect_service.connect_account("u1", "apn_sheets", "google_sheets", access_token="ya29.abc")
    upstream = RecordingUpstream(payload={"values": [["a"]]})
    relay = _direct_relay(connect_client, upstream)

    async def read():
        return await relay.request(
            "apn_sheets",
            "spreadsheets/s1/values/A1:B2",
            external_user_id="u1",
            data={"majorDimension": "ROWS"},
        )

    anyio.run(read)

    request = upstream.requests[0]
    assert request.url.path == "/v4/spreadsheets/s1/values/A1:B2"
    assert request.url.params["majorDimension"] == "ROWS"
    assert request.content == b""


def test_direct_relay_rejects_unsupported_app(connect_client: ConnectClient, connect_service: FakeConnectService) -> None:
    connect_service.connect_account("u1", "apn_gh", "github")
    upstream = RecordingUpstream()
    relay = _direct_relay(connect_client, upstream)

    with pytest.raises(RelayError) as excinfo:
        anyio.run(lambda: relay.request("apn_gh", "user", external_user_id="u1"))

    assert excinfo.value.status_code == 400
    assert str(excinfo.value) == "App github not supported for proxy requests"
    assert upstream.requests == []


def test_direct_relay_surfaces_upstream_failure(connect_client: ConnectClient, connect_service: FakeConnectService) -> None:
    connect_service.connect_account("u1", "apn_mail", "gmail")
    upstream = RecordingUpstream(status_code=401, payload={"error": {"message": "Invalid Credentials"}})
    relay = _direct_relay(connect_client, upstream)

    with pytest.raises(ConnectServiceError) as excinfo:
        anyio.run(lambda: relay.request("apn_mail", "users/me/profile", external_user_id="u1"))

    assert excinfo.value.status_code == 401
    assert excinfo.value.payload == {"error": {"message": "Invalid Credentials"}}
    assert str(upstream.requests[0].url) == "https://gmail.googleapis.com/gmail/v1/users/me/profile"


def test_direct_mode_through_the_api(settings: GatewaySettings, connect_client: ConnectClient, connect_service: FakeConnectService) -> None:
    connect_service.connect_account("u1", "apn_gh", "github")
    relay = _direct_relay(connect_client, RecordingUpstream())
    app = create_app(settings=settings, client=connect_client, relay=relay)

    with TestClient(app) as client:
        unsupported = client.post("/api/proxy/apn_gh", json={"endpoint": "user", "external_user_id": "u1"})
        missing = client.post("/api/proxy/apn_nope", json={"endpoint": "auth.test", "external_user_id": "u1"})

    assert unsupported.status_code == 400
    assert unsupported.json() == {"error": "App github not supported for proxy requests"}
    assert missing.status_code == 404
    assert missing.json()["details"] == {"error": "record not found"}


def test_direct_relay_sends_drive_files_to_file_storage(
    connect_client: ConnectClient, connect_service: FakeConnectService
) -> None:
    connect_service.connect_account("u1", "sheets-1", "google_sheets", access_token="ya29.abc")
    upstream = RecordingUpstream(payload={"files": []})
    relay = _direct_relay(connect_client, upstream)

    async def calls():
        await relay.request("sheets-1", "files/s9", external_user_id="u1", method="DELETE")
        await relay.request("sheets-1", "files", external_user_id="u1", data={"fields": "files(id)"})
        await relay.request("sheets-1", "spreadsheets/s9:batchUpdate", external_user_id="u1", method="POST", data={})

    anyio.run(calls)

    deleted, listed, updated = upstream.requests
    assert deleted.method == "DELETE"
    assert str(deleted.url) == "https://www.googleapis.com/drive/v3/files/s9"
    assert listed.url.path == "/drive/v3/files"
    assert listed.url.params["fields"] == "files(id)"
    assert str(updated.url) == "https://sheets.googleapis.com/v4/spreadsheets/s9:batchUpdate"
