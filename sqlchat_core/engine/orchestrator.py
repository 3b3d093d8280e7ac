"""会话编排器。

一次生成请求的生命周期：

    ReceivingUtterance → PersistingUserTurn → BuildingContext → AwaitingFirstToken
        → StreamingTokens → PersistingAssistantTurn → Completed

start() 完成到 AwaitingFirstToken 为止的全部工作并返回 ConversationRun：
Provider 名称、连接记录的校验都在写入任何数据之前完成；
第一个片段在开流之前就已拿到，所以 Provider 在建立连接阶段的失败
会作为普通异常抛给 API 层，映射为带状态码的错误响应。

ConversationRun.events() 的事件顺序固定为：
    meta（会话 ID + 重新加载的完整历史）→ token* → done | error
"""

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional
from uuid import uuid4

from sqlchat_core.config.settings import settings as default_settings
from sqlchat_core.domain.exceptions import BusinessError, ConnectionNotFoundError
from sqlchat_core.domain.models import ConversationTurn, DatabaseConnection, ProviderConfig, StreamEvent
from sqlchat_core.domain.store import PersistenceStore
from sqlchat_core.engine.cancellation import CancellationRegistry, CancellationToken
from sqlchat_core.engine.cancellation import registry as default_registry
from sqlchat_core.infrastructure.logging.logger import logger
from sqlchat_core.prompts import load_system_prompt
from sqlchat_core.providers import ProviderAdapter, create_provider


SCHEMA_PREAMBLE = "\n\nHere are the full database schemas for reference:\n"
CONNECTION_PREAMBLE = "\n\nCurrent database connection: "

_END = object()


class ConversationState(str, Enum):
    RECEIVING_UTTERANCE = "ReceivingUtterance"
    PERSISTING_USER_TURN = "PersistingUserTurn"
    BUILDING_CONTEXT = "BuildingContext"
    AWAITING_FIRST_TOKEN = "AwaitingFirstToken"
    STREAMING_TOKENS = "StreamingTokens"
    PERSISTING_ASSISTANT_TURN = "PersistingAssistantTurn"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


def initial_title(utterance: str) -> str:
    return utterance[:20] + "..."


def final_title(utterance: str) -> str:
    return utterance[:50] + "..."


def build_system_prompt(base_prompt: str, connection: DatabaseConnection) -> str:
    """基础提示词 + schema（非空时）+ 当前连接说明。"""

    prompt = base_prompt
    if connection.cached_schema_text and connection.cached_schema_text.strip():
        prompt += SCHEMA_PREAMBLE + connection.cached_schema_text
    prompt += CONNECTION_PREAMBLE + connection.label
    return prompt


class ConversationRun:
    """一次已经拿到首个片段的生成，events() 只能迭代一次。"""

    def __init__(
        self,
        store: PersistenceStore,
        conversation_id: str,
        history: List[ConversationTurn],
        fragments: Iterator[str],
        first: Any,
        token: CancellationToken,
        cancellations: CancellationRegistry,
        utterance: str,
        is_new: bool,
        log_ctx: Dict[str, Any],
    ):
        self.conversation_id = conversation_id
        self.history = history
        self.state = ConversationState.AWAITING_FIRST_TOKEN
        self.accumulated = ""
        self._store = store
        self._fragments = fragments
        self._next = first
        self._token = token
        self._cancellations = cancellations
        self._utterance = utterance
        self._is_new = is_new
        self._log_ctx = log_ctx
        self._started_at = time.time()
        self._closed = False

    def events(self) -> Iterator[StreamEvent]:
        try:
            yield StreamEvent.meta(self.conversation_id, self.history)
            yield from self._forward()
        finally:
            self.close()

    def _forward(self) -> Iterator[StreamEvent]:
        self.state = ConversationState.STREAMING_TOKENS
        item = self._next
        fragments = 0
        while item is not _END:
            if self._token.cancelled:
                break
            self.accumulated += item
            fragments += 1
            yield StreamEvent.token(item)
            try:
                item = next(self._fragments, _END)
            except BusinessError as e:
                yield self._fail(e.message)
                return
            except Exception as e:
                logger.exception("Unexpected error while streaming tokens")
                yield self._fail(str(e))
                return

        cancelled = self._token.cancelled
        try:
            self._persist_assistant_turn(update_title=not cancelled)
        except BusinessError as e:
            yield self._fail(e.message)
            return

        self.state = ConversationState.CANCELLED if cancelled else ConversationState.COMPLETED
        _log(
            logging.INFO,
            "Generation cancelled" if cancelled else "Completed generation",
            self._log_ctx,
            fragments=fragments,
            chars=len(self.accumulated),
            elapsed_seconds=round(time.time() - self._started_at, 2),
        )
        yield StreamEvent.done()

    def _persist_assistant_turn(self, update_title: bool) -> None:
        self.state = ConversationState.PERSISTING_ASSISTANT_TURN
        turn = self._store.add_message(self.conversation_id, self.accumulated, "system")
        _log(logging.INFO, "Stored assistant message", self._log_ctx, message_id=turn.id)
        if update_title and self._is_new:
            self._store.update_conversation_title(self.conversation_id, final_title(self._utterance))

    def _fail(self, message: str) -> StreamEvent:
        self.state = ConversationState.FAILED
        _log(logging.WARNING, "Generation failed mid-stream", self._log_ctx, error=message, chars=len(self.accumulated))
        # 已转发的部分文本同样持久化
        if self.accumulated:
            try:
                self._store.add_message(self.conversation_id, self.accumulated, "system")
            except BusinessError as e:
                _log(logging.ERROR, "Failed to store partial assistant message", self._log_ctx, error=e.message)
        return StreamEvent.error(message)

    def close(self) -> None:
        """关闭 Provider 流并注销取消标志；可重复调用。"""

        if self._closed:
            return
        self._closed = True
        try:
            close = getattr(self._fragments, "close", None)
            if close is not None:
                close()
        finally:
            self._cancellations.clear(self.conversation_id, self._token)


class ConversationOrchestrator:
    def __init__(
        self,
        store: PersistenceStore,
        provider_factory: Callable[[str], ProviderAdapter] = create_provider,
        cancellations: Optional[CancellationRegistry] = None,
        settings=default_settings,
    ):
        self._store = store
        self._provider_factory = provider_factory
        self._cancellations = cancellations if cancellations is not None else default_registry
        self._settings = settings

    def start(
        self,
        utterance: str,
        provider_config: ProviderConfig,
        connection_id: str,
        conversation_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ConversationRun:
        """处理一条用户输入，返回已经拿到首个片段的 ConversationRun。

        Raises:
            UnsupportedProviderError / ConnectionNotFoundError: 写入任何数据之前。
            StoreError: 指定的会话不存在或存储读写失败。
            ProviderError: 在拿到首个片段之前 Provider 调用失败。
        """
        user_id = user_id or self._settings.default_caller
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "provider": provider_config.provider,
            "connection_id": connection_id,
        }

        # ReceivingUtterance
        provider = self._provider_factory(provider_config.provider)
        connection = self._store.get_connection_by_id(connection_id, user_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)

        # PersistingUserTurn
        is_new = not conversation_id
        if is_new:
            conversation_id = self._store.create_conversation(initial_title(utterance), connection.id, user_id)
            log_ctx["conversation_id"] = conversation_id
            _log(logging.INFO, "Created new conversation", log_ctx)
        else:
            conversation_id = self._store.get_conversation(conversation_id).id
            log_ctx["conversation_id"] = conversation_id
        user_turn = self._store.add_message(conversation_id, utterance, "user")
        _log(logging.INFO, "Stored user message", log_ctx, message_id=user_turn.id)

        # BuildingContext
        history = self._store.get_conversation_messages(conversation_id)
        system_prompt = build_system_prompt(self._base_prompt(user_id), connection)

        # AwaitingFirstToken
        token = self._cancellations.register(conversation_id)
        _log(logging.INFO, "Calling provider", log_ctx, model=provider_config.model, history_len=len(history))
        fragments: Optional[Iterator[str]] = None
        try:
            fragments = iter(provider.generate(provider_config, system_prompt, history, token))
            first = next(fragments, _END)
        except BaseException as e:
            try:
                close = getattr(fragments, "close", None)
                if close is not None:
                    close()
            finally:
                self._cancellations.clear(conversation_id, token)
            _log(logging.WARNING, "Provider failed before streaming", log_ctx, error=getattr(e, "message", str(e)))
            raise

        return ConversationRun(
            store=self._store,
            conversation_id=conversation_id,
            history=history,
            fragments=fragments,
            first=first,
            token=token,
            cancellations=self._cancellations,
            utterance=utterance,
            is_new=is_new,
            log_ctx=log_ctx,
        )

    def cancel(self, conversation_id: str) -> bool:
        cancelled = self._cancellations.cancel(conversation_id)
        logger.info(
            "Generation cancel requested",
            extra={"extra": {"conversation_id": conversation_id, "found": cancelled}},
        )
        return cancelled

    def _base_prompt(self, user_id: str) -> str:
        stored = self._store.get_settings(user_id).system_prompt
        if stored and stored.strip():
            return stored
        return load_system_prompt()


def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})
