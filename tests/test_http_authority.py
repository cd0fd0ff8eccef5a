"""Tests for the HTTP alarm authority client."""

from __future__ import annotations

import json

import httpx
import pytest
from mrsleep.alarms.authority import AlarmNotFoundError, AuthorityAuthError, AuthorityCapabilities, AuthorityError
from mrsleep.alarms.authorization import AuthorizationGate
from mrsleep.alarms.config import AuthorityConfig
from mrsleep.alarms.http_authority import HttpAlarmAuthority
from mrsleep.alarms.models import AlarmConfiguration, AlarmMetadata, CountdownDuration

# Mark all tests in this module as anyio
pytestmark = pytest.mark.anyio

ALARM_PAYLOAD = {
    "id": "t1",
    "state": "countdown",
    "schedule": None,
    "countdown": {"pre_alert": 600, "post_alert": None},
}


@pytest.fixture
def authority_config():
    """Create a test authority configuration."""
    return AuthorityConfig(
        base_url="http://alarmd.local:8080/",
        token="test_token_123",
        verify_ssl=True,
        timeout=5.0,
        local_auto_authorize=False,
    )


def _client(config, handler):
    return HttpAlarmAuthority(config, transport=httpx.MockTransport(handler), reconnect_delay=0.0)


class TestInit:
    def test_missing_base_url(self):
        config = AuthorityConfig(base_url=None, token=None, verify_ssl=True, timeout=5.0, local_auto_authorize=False)

        with pytest.raises(ValueError):
            HttpAlarmAuthority(config)

    def test_sets_auth_header(self, authority_config):
        authority = HttpAlarmAuthority(authority_config)

        assert authority._client.headers["Authorization"] == "Bearer test_token_123"

    def test_exposes_every_primitive(self, authority_config):
        capabilities = AuthorityCapabilities.detect(HttpAlarmAuthority(authority_config))

        assert capabilities.pause and capabilities.resume and capabilities.stop and capabilities.countdown
        assert not capabilities.authorization_updates


class TestRequests:
    async def test_schedule_puts_configuration(self, authority_config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=ALARM_PAYLOAD)

        authority = _client(authority_config, handler)
        configuration = AlarmConfiguration(
            title="Nap",
            icon="timer",
            metadata=AlarmMetadata.create("Quick Nap"),
            countdown=CountdownDuration(pre_alert=600),
            secondary_action="repeat",
        )
        alarm = await authority.schedule("t1", configuration)
        await authority.close()

        assert alarm.id == "t1"
        assert alarm.state == "countdown"
        assert seen["method"] == "PUT"
        assert seen["path"] == "/api/alarms/t1"
        assert seen["body"]["secondary_action"] == "repeat"
        assert seen["body"]["metadata"]["sleep_context"] == "Quick Nap"

    async def test_alarms_accepts_wrapped_list_and_skips_bad_entries(self, authority_config):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"alarms": [ALARM_PAYLOAD, {"id": "x", "state": "weird"}]})

        authority = _client(authority_config, handler)
        alarms = await authority.alarms()
        await authority.close()

        assert [alarm.id for alarm in alarms] == ["t1"]

    async def test_authorization_cached_after_refresh(self, authority_config):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"state": "authorized"})
            return httpx.Response(200, json={"state": "not-determined"})

        authority = _client(authority_config, handler)
        await authority.open()
        assert authority.authorization_state() == "not-determined"

        assert await authority.request_authorization() == "authorized"
        assert authority.authorization_state() == "authorized"
        await authority.close()

    async def test_transition_endpoints(self, authority_config):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append((request.method, request.url.path))
            return httpx.Response(204)

        authority = _client(authority_config, handler)
        await authority.pause("t1")
        await authority.resume("t1")
        await authority.stop("t1")
        await authority.countdown("t1")
        await authority.cancel("t1")
        await authority.close()

        assert paths == [
            ("POST", "/api/alarms/t1/pause"),
            ("POST", "/api/alarms/t1/resume"),
            ("POST", "/api/alarms/t1/stop"),
            ("POST", "/api/alarms/t1/countdown"),
            ("DELETE", "/api/alarms/t1"),
        ]


class TestErrors:
    @pytest.mark.parametrize(
        ("status", "error"),
        [(401, AuthorityAuthError), (403, AuthorityAuthError), (404, AlarmNotFoundError), (500, AuthorityError)],
    )
    async def test_status_codes_map_to_errors(self, authority_config, status, error):
        authority = _client(authority_config, lambda request: httpx.Response(status, text="nope"))

        with pytest.raises(error):
            await authority.cancel("t1")
        await authority.close()

    async def test_connection_failure(self, authority_config):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        authority = _client(authority_config, handler)
        with pytest.raises(AuthorityError):
            await authority.alarms()
        await authority.close()

    async def test_open_tolerates_unreachable_daemon(self, authority_config):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        authority = _client(authority_config, handler)
        await authority.open()

        assert authority.authorization_state() == "not-determined"
        await authority.close()

    async def test_bad_schedule_response(self, authority_config):
        authority = _client(authority_config, lambda request: httpx.Response(200, json={"id": "t1"}))

        with pytest.raises(AuthorityError):
            await authority.schedule(
                "t1",
                AlarmConfiguration(title="x", icon="x", metadata=AlarmMetadata.create(), countdown=CountdownDuration(60)),
            )
        await authority.close()


class TestUpdates:
    async def test_stream_yields_snapshot_per_line(self, authority_config):
        body = "\n".join(
            [
                json.dumps([ALARM_PAYLOAD]),
                "",
                "not json",
                json.dumps({"alarms": []}),
            ]
        )

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body.encode("utf-8"))

        authority = _client(authority_config, handler)
        updates = authority.alarm_updates()

        first = await updates.__anext__()
        second = await updates.__anext__()
        await updates.aclose()
        await authority.close()

        assert [alarm.id for alarm in first] == ["t1"]
        assert second == []

    async def test_stream_rejected_without_permission(self, authority_config):
        authority = _client(authority_config, lambda request: httpx.Response(401))
        updates = authority.alarm_updates()

        with pytest.raises(AuthorityAuthError):
            await updates.__anext__()
        await authority.close()


class TestAuthorizationRefresh:
    async def test_grant_after_denial_is_seen_by_gate(self, authority_config):
        answers = iter(["denied", "authorized"])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"state": next(answers)})

        authority = _client(authority_config, handler)
        await authority.open()
        assert authority.authorization_state() == "denied"

        gate = AuthorizationGate(authority)
        assert await gate.check_authorization()
        assert authority.authorization_state() == "authorized"
        await authority.close()
