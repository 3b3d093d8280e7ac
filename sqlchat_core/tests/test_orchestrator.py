import tempfile
from pathlib import Path

import pytest

from sqlchat_core.domain.exceptions import (
    ConnectionNotFoundError,
    ProviderError,
    StoreError,
    UnsupportedProviderError,
)
from sqlchat_core.domain.models import DatabaseConnection, ProviderConfig
from sqlchat_core.engine.cancellation import CancellationRegistry
from sqlchat_core.engine.orchestrator import (
    ConversationOrchestrator,
    ConversationState,
    build_system_prompt,
)
from sqlchat_core.infrastructure.storage.json_store import JsonStore
from sqlchat_core.prompts import load_system_prompt
from sqlchat_core.providers.registry import get_provider_class


class SettingsStub:
    default_caller = "anonymous"


class FakeProvider:
    """记录调用参数并按顺序产出预置片段的 Provider 替身。"""

    name = "OpenAI"

    def __init__(self, fragments=("SELECT ", "* FROM users", ";"), fail_on_start=False, fail_after=None):
        self.fragments = list(fragments)
        self.fail_on_start = fail_on_start
        self.fail_after = fail_after
        self.calls = []

    def generate(self, config, system_prompt, history, cancel_token=None):
        self.calls.append({"config": config, "system_prompt": system_prompt, "history": list(history)})
        if self.fail_on_start:
            raise ProviderError(self.name, "HTTP 401: invalid api key")
        return self._iter(cancel_token)

    def _iter(self, cancel_token):
        for i, fragment in enumerate(self.fragments):
            if cancel_token is not None and cancel_token.cancelled:
                return
            if self.fail_after is not None and i == self.fail_after:
                raise ProviderError(self.name, "Connection reset by peer")
            yield fragment


def _factory(provider):
    def create(name):
        get_provider_class(name)
        return provider

    return create


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as d:
        s = JsonStore(root=Path(d))
        s.save_connection(
            DatabaseConnection(
                id="1",
                driver="mysql",
                host="db.local",
                port=3306,
                username="app",
                secret="pw",
                database_name="shop",
                project_name="Shop",
            )
        )
        yield s


OPENAI = ProviderConfig(provider="OpenAI", api_key="sk-test-key", model="gpt-4o-mini")


def _orchestrator(store, provider):
    reg = CancellationRegistry()
    return ConversationOrchestrator(store, provider_factory=_factory(provider), cancellations=reg, settings=SettingsStub()), reg


def _conversation_ids(store):
    return [p.name for p in (store._root / "conversations").iterdir()]


def test_new_conversation_streams_meta_tokens_done(store):
    provider = FakeProvider()
    orch, reg = _orchestrator(store, provider)

    run = orch.start("list users", OPENAI, "1")
    events = list(run.events())

    assert [e.kind for e in events] == ["meta", "token", "token", "token", "done"]
    meta = events[0]
    assert meta.conversation_id == run.conversation_id
    assert [(t.sender, t.content) for t in meta.history] == [("user", "list users")]
    assert "".join(e.text for e in events if e.kind == "token") == "SELECT * FROM users;"

    turns = store.get_conversation_messages(run.conversation_id)
    assert [(t.sender, t.content) for t in turns] == [("user", "list users"), ("system", "SELECT * FROM users;")]
    assert store.get_conversation(run.conversation_id).title == "list users..."
    assert run.state == ConversationState.COMPLETED
    assert len(reg) == 0


def test_titles_truncate_utterance(store):
    utterance = "show me every customer who placed more than three orders during the last quarter"
    orch, _ = _orchestrator(store, FakeProvider())

    run = orch.start(utterance, OPENAI, "1")
    assert store.get_conversation(run.conversation_id).title == utterance[:20] + "..."
    list(run.events())
    assert store.get_conversation(run.conversation_id).title == utterance[:50] + "..."


def test_existing_conversation_keeps_title_and_history(store):
    provider = FakeProvider()
    orch, _ = _orchestrator(store, provider)
    first = orch.start("list users", OPENAI, "1")
    list(first.events())

    second = orch.start("only active ones", OPENAI, "1", conversation_id=first.conversation_id)
    events = list(second.events())

    assert second.conversation_id == first.conversation_id
    assert [t.content for t in events[0].history] == ["list users", "SELECT * FROM users;", "only active ones"]
    assert [t.sender for t in provider.calls[-1]["history"]] == ["user", "system", "user"]
    assert store.get_conversation(first.conversation_id).title == "list users..."


def test_unknown_provider_persists_nothing(store):
    orch, _ = _orchestrator(store, FakeProvider())

    with pytest.raises(UnsupportedProviderError):
        orch.start("list users", ProviderConfig(provider="Foo"), "1")
    assert _conversation_ids(store) == []


def test_unknown_connection_persists_nothing(store):
    orch, _ = _orchestrator(store, FakeProvider())

    with pytest.raises(ConnectionNotFoundError) as ei:
        orch.start("list users", OPENAI, "42")
    assert ei.value.message == "Database connection not found for id: 42"
    assert _conversation_ids(store) == []


def test_unknown_conversation_id(store):
    orch, _ = _orchestrator(store, FakeProvider())
    with pytest.raises(StoreError) as ei:
        orch.start("list users", OPENAI, "1", conversation_id="c-missing")
    assert ei.value.http_status == 404


def test_provider_failure_before_first_token_is_raised(store):
    orch, reg = _orchestrator(store, FakeProvider(fail_on_start=True))

    with pytest.raises(ProviderError) as ei:
        orch.start("list users", OPENAI, "1")
    assert ei.value.http_status == 401
    assert len(reg) == 0
    # 用户消息已经写入，没有助手消息
    (cid,) = _conversation_ids(store)
    assert [t.sender for t in store.get_conversation_messages(cid)] == ["user"]


def test_cancel_persists_partial_text(store):
    provider = FakeProvider(fragments=["SELECT ", "id ", "FROM ", "users", ";"])
    orch, reg = _orchestrator(store, provider)

    run = orch.start("list users", OPENAI, "1")
    stream = run.events()
    assert next(stream).kind == "meta"
    assert next(stream).text == "SELECT "
    assert next(stream).text == "id "

    assert orch.cancel(run.conversation_id) is True
    rest = list(stream)

    assert [e.kind for e in rest] == ["done"]
    assert run.state == ConversationState.CANCELLED
    turns = store.get_conversation_messages(run.conversation_id)
    assert turns[-1].sender == "system"
    assert turns[-1].content == "SELECT id "
    assert len(reg) == 0


def test_mid_stream_provider_error_ends_with_error_event(store):
    orch, _ = _orchestrator(store, FakeProvider(fail_after=2))

    run = orch.start("list users", OPENAI, "1")
    events = list(run.events())

    assert [e.kind for e in events] == ["meta", "token", "token", "error"]
    assert events[-1].message.startswith("Failed to generate response from AI")
    assert run.state == ConversationState.FAILED
    turns = store.get_conversation_messages(run.conversation_id)
    assert turns[-1].content == "SELECT * FROM users"


def test_system_prompt_uses_caller_settings_and_schema(store):
    store.save_connection(
        DatabaseConnection(
            id="5",
            driver="postgresql",
            host="pg.local",
            port=5432,
            username="app",
            secret="pw",
            database_name="crm",
            cached_schema_text="Database Type: POSTGRESQL\n\nCREATE TABLE public.users (id integer);",
            project_name="CRM",
        )
    )
    store.save_settings("anonymous", "Only answer with SQL.")
    provider = FakeProvider()
    orch, _ = _orchestrator(store, provider)

    list(orch.start("list users", OPENAI, "5").events())

    assert provider.calls[0]["system_prompt"] == (
        "Only answer with SQL."
        "\n\nHere are the full database schemas for reference:\n"
        "Database Type: POSTGRESQL\n\nCREATE TABLE public.users (id integer);"
        "\n\nCurrent database connection: CRM (postgresql)"
    )


def test_blank_stored_prompt_falls_back_to_default(store):
    provider = FakeProvider()
    orch, _ = _orchestrator(store, provider)

    list(orch.start("list users", OPENAI, "1").events())

    prompt = provider.calls[0]["system_prompt"]
    assert prompt.startswith(load_system_prompt())
    assert "Here are the full database schemas" not in prompt
    assert prompt.endswith("\n\nCurrent database connection: Shop (mysql)")


def test_build_system_prompt_ignores_whitespace_schema():
    conn = DatabaseConnection(
        id="1", driver="mariadb", host="h", port=3306, username="u", secret="p",
        database_name="inventory", cached_schema_text="  \n",
    )
    assert build_system_prompt("base", conn) == "base\n\nCurrent database connection: inventory (mariadb)"
