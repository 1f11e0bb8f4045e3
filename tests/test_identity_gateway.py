"""
CrowdBeat Session Core
Tests — identity service gateway (retries, circuit breaker, disabled mode).
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from crowdbeat.integrations.identity_gateway import IdentityGateway


def _response(status=200, payload=None):
    r = MagicMock()
    r.status_code = status
    r.ok = 200 <= status < 300
    r.content = b"{}" if payload is not None else b""
    r.json.return_value = payload or {}
    r.text = "error body"
    return r


@pytest.fixture()
def configured(app):
    app.config["IDENTITY_SERVICE_URL"] = "https://identity.test/"
    app.config["IDENTITY_SERVICE_TOKEN"] = "svc-token"
    yield
    app.config["IDENTITY_SERVICE_URL"] = ""
    app.config["IDENTITY_SERVICE_TOKEN"] = ""


@pytest.fixture(autouse=True)
def _no_sleep():
    with patch("crowdbeat.integrations.identity_gateway.time.sleep"):
        yield


class TestIdentityGateway:
    def test_disabled_without_url(self):
        http = MagicMock()
        result = IdentityGateway(session=http).award_reputation("alice", 50, "win")
        assert result.ok is False
        assert result.error == "Identity service not configured"
        http.request.assert_not_called()

    def test_award_success(self, configured):
        http = MagicMock()
        http.request.return_value = _response(200, {"reputation": 150})
        result = IdentityGateway(session=http).award_reputation("alice", 50, "win")

        assert result.ok
        assert result.data == {"reputation": 150}
        method, url = http.request.call_args.args
        assert (method, url) == ("POST", "https://identity.test/api/v1/users/alice/reputation")
        kwargs = http.request.call_args.kwargs
        assert kwargs["json"] == {"points": 50, "reason": "win"}
        assert kwargs["headers"]["Authorization"] == "Bearer svc-token"

    def test_retries_server_errors(self, configured):
        http = MagicMock()
        http.request.side_effect = [_response(503), _response(502), _response(200, {})]
        result = IdentityGateway(session=http).award_reputation("alice", 50, "win")
        assert result.ok
        assert http.request.call_count == 3

    def test_client_error_not_retried(self, configured):
        http = MagicMock()
        http.request.return_value = _response(404)
        result = IdentityGateway(session=http).award_reputation("ghost", 50, "win")
        assert not result.ok
        assert result.status_code == 404
        assert http.request.call_count == 1

    def test_network_error_reported(self, configured):
        http = MagicMock()
        http.request.side_effect = requests.ConnectionError("refused")
        result = IdentityGateway(session=http).award_reputation("alice", 50, "win")
        assert not result.ok
        assert "refused" in result.error
        assert http.request.call_count == 3

    def test_circuit_opens_after_repeated_failures(self, configured):
        http = MagicMock()
        http.request.side_effect = requests.Timeout()
        gateway = IdentityGateway(session=http)
        gateway.award_reputation("a", 10, "win")
        gateway.award_reputation("b", 10, "win")
        calls = http.request.call_count

        result = gateway.award_reputation("c", 10, "win")
        assert "Circuit breaker" in result.error
        assert http.request.call_count == calls
