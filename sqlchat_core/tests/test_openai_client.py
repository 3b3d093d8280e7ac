from datetime import datetime, timedelta, timezone

import httpx
import pytest

from sqlchat_core.domain.exceptions import PROVIDER_ERROR_PREFIX, ProviderError
from sqlchat_core.domain.models import ConversationTurn, ProviderConfig
from sqlchat_core.engine.cancellation import CancellationRegistry
from sqlchat_core.providers.azure_client import AzureOpenAIProvider
from sqlchat_core.providers.openai_client import OpenAIProvider


class SettingsStub:
    openai_api_key = "sk-builtin-key"
    openai_endpoint = "https://builtin.example.com/v1"
    openai_model = "gpt-builtin"
    azure_openai_api_key = "azure-builtin-key"
    azure_openai_endpoint = "https://builtin.openai.azure.com"
    azure_openai_deployment = "builtin-deployment"
    azure_openai_api_version = "2023-05-15"
    provider_timeout = 1.0
    provider_stream_timeout = 30.0
    provider_max_tokens = 1024
    stream_pacing_delay = 0.0
    https_proxy = None


def _history():
    t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return [
        ConversationTurn(id="m1", conversation_id="c1", content="hi", sender="user", timestamp=t0),
        ConversationTurn(id="m2", conversation_id="c1", content="hello", sender="system", timestamp=t0 + timedelta(seconds=1)),
        ConversationTurn(id="m3", conversation_id="c1", content="list users", sender="user", timestamp=t0 + timedelta(seconds=2)),
    ]


def _fake_client(captured, lines, status_code=200, body=""):
    class Resp:
        def __init__(self):
            self.status_code = status_code
            self.text = body

        def iter_lines(self):
            yield from lines

        def read(self):
            return body.encode("utf-8")

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

    class Client:
        def __init__(self, *a, **kw):
            captured["client_kwargs"] = kw

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, method, url, **kw):
            captured["method"] = method
            captured["url"] = url
            captured.update(kw)
            return Resp()

    return Client


OPENAI_LINES = [
    'data: {"choices": [{"index": 0, "delta": {"role": "assistant"}}]}',
    "",
    'data: {"choices": [{"index": 0, "delta": {"content": "SELECT "}}]}',
    ": keep-alive",
    'data: {"choices": [{"index": 0, "delta": {"content": "* FROM users;"}, "finish_reason": "stop"}]}',
    "data: [DONE]",
]


def test_openai_stream_concatenates_deltas(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(captured, OPENAI_LINES))
    provider = OpenAIProvider(SettingsStub())
    cfg = ProviderConfig(provider="OpenAI", endpoint="https://api.example.com/v1/", api_key="sk-user-key", model="gpt-4o-mini")

    out = list(provider.generate(cfg, "You write SQL.", _history()))

    assert out == ["SELECT ", "* FROM users;"]
    assert captured["method"] == "POST"
    assert captured["url"] == "https://api.example.com/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer sk-user-key"
    payload = captured["json"]
    assert payload["model"] == "gpt-4o-mini"
    assert payload["stream"] is True
    assert payload["max_completion_tokens"] == 1024
    assert [m["role"] for m in payload["messages"]] == ["system", "user", "assistant", "user"]
    assert payload["messages"][0]["content"] == "You write SQL."
    # 托管服务走代理配置
    assert captured["client_kwargs"]["trust_env"] is True


def test_openai_builtin_mode_uses_process_credentials(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(captured, OPENAI_LINES))
    provider = OpenAIProvider(SettingsStub())
    cfg = ProviderConfig(provider="OpenAI", api_key="ignored", model="ignored", mode="built-in")

    "".join(provider.generate(cfg, "sys", _history()))

    assert captured["url"] == "https://builtin.example.com/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer sk-builtin-key"
    assert captured["json"]["model"] == "gpt-builtin"


def test_openai_incomplete_config_fails_before_request(monkeypatch):
    def boom(*a, **kw):
        raise AssertionError("no request expected")

    monkeypatch.setattr("httpx.Client", boom)
    provider = OpenAIProvider(SettingsStub())
    with pytest.raises(ProviderError) as ei:
        provider.generate(ProviderConfig(provider="OpenAI", model="gpt-4o-mini"), "sys", _history())
    assert ei.value.message.startswith(PROVIDER_ERROR_PREFIX)
    assert "api_key" in ei.value.message


def test_openai_http_error_maps_to_provider_error(monkeypatch):
    captured = {}
    monkeypatch.setattr(
        "httpx.Client",
        _fake_client(captured, [], status_code=401, body='{"error": {"message": "Incorrect API key provided"}}'),
    )
    provider = OpenAIProvider(SettingsStub())
    cfg = ProviderConfig(provider="OpenAI", api_key="sk-bad-key-000", model="gpt-4o-mini")

    with pytest.raises(ProviderError) as ei:
        list(provider.generate(cfg, "sys", _history()))
    assert ei.value.http_status == 401
    assert ei.value.message.startswith(PROVIDER_ERROR_PREFIX)


def test_openai_timeout_is_unavailable(monkeypatch):
    class Client:
        def __init__(self, *a, **kw):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *a):
            return False

        def stream(self, *a, **kw):
            raise httpx.ReadTimeout("read timed out")

    monkeypatch.setattr("httpx.Client", Client)
    provider = OpenAIProvider(SettingsStub())
    cfg = ProviderConfig(provider="OpenAI", api_key="sk-user-key", model="gpt-4o-mini")

    with pytest.raises(ProviderError) as ei:
        list(provider.generate(cfg, "sys", _history()))
    assert ei.value.timeout is True
    assert ei.value.http_status == 503


def test_openai_slow_stream_hits_total_time_limit(monkeypatch):
    lines = [f'data: {{"choices": [{{"delta": {{"content": "t{i}"}}}}]}}' for i in range(5)]
    monkeypatch.setattr("httpx.Client", _fake_client({}, lines))
    # 每次读取时钟前进 12 秒：第二个片段之后超过 30 秒上限
    ticks = iter(range(0, 1000, 12))
    monkeypatch.setattr("sqlchat_core.providers.base.time.monotonic", lambda: next(ticks))
    provider = OpenAIProvider(SettingsStub())
    cfg = ProviderConfig(provider="OpenAI", api_key="sk-user-key", model="gpt-4o-mini")

    gen = provider.generate(cfg, "sys", _history())
    assert next(gen) == "t0"
    assert next(gen) == "t1"
    with pytest.raises(ProviderError) as ei:
        next(gen)
    assert ei.value.timeout is True
    assert ei.value.http_status == 503
    assert "timed out after 30.0s" in ei.value.message


def test_openai_error_chunk_raises(monkeypatch):
    lines = [
        'data: {"choices": [{"index": 0, "delta": {"content": "par"}}]}',
        'data: {"error": {"message": "server overloaded"}}',
    ]
    monkeypatch.setattr("httpx.Client", _fake_client({}, lines))
    provider = OpenAIProvider(SettingsStub())
    cfg = ProviderConfig(provider="OpenAI", api_key="sk-user-key", model="gpt-4o-mini")

    gen = provider.generate(cfg, "sys", _history())
    assert next(gen) == "par"
    with pytest.raises(ProviderError) as ei:
        next(gen)
    assert "server overloaded" in ei.value.message


def test_openai_stops_after_cancel(monkeypatch):
    lines = [f'data: {{"choices": [{{"delta": {{"content": "t{i}"}}}}]}}' for i in range(5)]
    monkeypatch.setattr("httpx.Client", _fake_client({}, lines))
    provider = OpenAIProvider(SettingsStub())
    cfg = ProviderConfig(provider="OpenAI", api_key="sk-user-key", model="gpt-4o-mini")
    registry = CancellationRegistry()
    token = registry.register("c1")

    gen = provider.generate(cfg, "sys", _history(), cancel_token=token)
    assert next(gen) == "t0"
    assert next(gen) == "t1"
    registry.cancel("c1")
    assert list(gen) == []


def test_azure_uses_deployment_url_and_api_version(monkeypatch):
    captured = {}
    monkeypatch.setattr("httpx.Client", _fake_client(captured, OPENAI_LINES))
    provider = AzureOpenAIProvider(SettingsStub())
    cfg = ProviderConfig(
        provider="Azure OpenAI",
        endpoint="https://myres.openai.azure.com/",
        api_key="azure-user-key",
        model="sql-gpt",
    )

    assert "".join(provider.generate(cfg, "sys", _history())) == "SELECT * FROM users;"
    assert captured["url"] == "https://myres.openai.azure.com/openai/deployments/sql-gpt/chat/completions"
    assert captured["params"] == {"api-version": "2023-05-15"}
    assert captured["headers"]["api-key"] == "azure-user-key"
    assert "Authorization" not in captured["headers"]
    assert captured["json"]["messages"][0]["role"] == "system"


def test_azure_requires_endpoint():
    provider = AzureOpenAIProvider(SettingsStub())
    with pytest.raises(ProviderError):
        provider.generate(ProviderConfig(provider="Azure OpenAI", api_key="azure-user-key", model="d"), "sys", [])
