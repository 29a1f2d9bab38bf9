"""ReasoningClient against a patched requests.post."""

from unittest.mock import Mock, patch

import pytest
import requests

from models.reasoning_client import ReasoningClient
from pipelines.errors import ConfigError, TransportError, UpstreamError
from pipelines.settings import PLACEHOLDER_API_KEY, Settings

MESSAGES = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]


def _response(status=200, body=None, reason="OK"):
    resp = Mock()
    resp.status_code = status
    resp.ok = status < 400
    resp.reason = reason
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    return resp


@pytest.fixture
def client():
    return ReasoningClient(api_key="test-key", base_url="https://reasoning.test/chat", timeout_s=5)


def test_returns_text_and_timing(client):
    body = {"choices": [{"message": {"content": '{"ok": true}'}}], "usage": {"total_tokens": 42}}
    with patch("models.reasoning_client.requests.post", return_value=_response(body=body)) as post:
        result = client.call(MESSAGES, "sonar")

    assert result.text == '{"ok": true}'
    assert result.tokens_used == 42
    assert result.model == "sonar"
    assert result.elapsed_ms >= 0

    kwargs = post.call_args.kwargs
    assert kwargs["timeout"] == 5
    assert kwargs["json"]["model"] == "sonar"
    assert kwargs["json"]["messages"] == MESSAGES
    assert kwargs["headers"]["Authorization"] == "Bearer test-key"


@pytest.mark.parametrize("key", [None, "", "   ", PLACEHOLDER_API_KEY])
def test_missing_key_raises_config_error_without_network(key):
    with patch("models.reasoning_client.requests.post") as post:
        with pytest.raises(ConfigError):
            ReasoningClient(api_key=key).call(MESSAGES, "sonar")
    post.assert_not_called()


def test_empty_or_malformed_messages_rejected(client):
    with pytest.raises(ValueError):
        client.call([], "sonar")
    with pytest.raises(ValueError):
        client.call([{"role": "user"}], "sonar")


def test_timeout_becomes_transport_error(client):
    with patch("models.reasoning_client.requests.post", side_effect=requests.Timeout("slow")):
        with pytest.raises(TransportError, match="timed out"):
            client.call(MESSAGES, "sonar")


def test_connection_failure_becomes_transport_error(client):
    with patch("models.reasoning_client.requests.post", side_effect=requests.ConnectionError("refused")):
        with pytest.raises(TransportError):
            client.call(MESSAGES, "sonar")


def test_non_success_status_carries_upstream_message(client):
    resp = _response(status=429, body={"error": {"message": "Rate limit exceeded"}}, reason="Too Many Requests")
    with patch("models.reasoning_client.requests.post", return_value=resp):
        with pytest.raises(UpstreamError) as excinfo:
            client.call(MESSAGES, "sonar")
    assert excinfo.value.status_code == 429
    assert excinfo.value.message == "Rate limit exceeded"
    assert "429" in str(excinfo.value)


def test_non_json_error_body_uses_reason(client):
    resp = _response(status=500, body=ValueError("not json"), reason="Internal Server Error")
    with patch("models.reasoning_client.requests.post", return_value=resp):
        with pytest.raises(UpstreamError) as excinfo:
            client.call(MESSAGES, "sonar")
    assert excinfo.value.message == "Internal Server Error"


def test_body_without_choices_is_upstream_error(client):
    with patch("models.reasoning_client.requests.post", return_value=_response(body={"id": "x"})):
        with pytest.raises(UpstreamError, match="Malformed"):
            client.call(MESSAGES, "sonar")


def test_from_settings_uses_timeout_and_endpoint():
    settings = Settings(api_key="k", base_url="https://example.test/v1", request_timeout_s=12)
    client = ReasoningClient.from_settings(settings)
    assert client.is_configured
    assert client.timeout_s == 12
    assert client.base_url == "https://example.test/v1"


def test_settings_from_env_reads_stage_overrides():
    settings = Settings.from_env(
        {
            "PERPLEXITY_API_KEY": PLACEHOLDER_API_KEY,
            "REASONING_MODEL": "sonar-pro",
            "REASONING_MODEL_AGGREGATOR": "sonar-reasoning",
            "REASONING_TIMEOUT_S": "7.5",
            "DIAGNOSIS_DB_PATH": "/tmp/x.db",
            "LOG_LEVEL": "debug",
        }
    )
    assert not settings.api_key_configured
    assert settings.request_timeout_s == 7.5
    assert settings.model_for("aggregator") == "sonar-reasoning"
    assert settings.model_for("translator") == "sonar-pro"
    assert str(settings.db_path) == "/tmp/x.db"
    assert settings.log_level == "DEBUG"
