"""Provider 抽象接口与公共流式逻辑。

上层 ConversationOrchestrator 不直接依赖具体厂商的 HTTP API，而是依赖此协议：

- 每个厂商实现一个 ProviderAdapter（如 OpenAIProvider）。
- 负责：把统一的 (system_prompt, history) 转成具体 API 请求，
  并把厂商的流式增量解析为按顺序产出的文本片段。

HttpChatProvider 封装了所有 HTTP 厂商共用的流程（发请求、检查状态码、
逐行解析、节奏延迟、取消检查、异常包装），子类只需要描述各自的差异：
URL/请求头/请求体怎么构造、增量文本从哪个字段取。
"""

import json
import time
from dataclasses import replace
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol

import httpx

from sqlchat_core.config.settings import settings as default_settings
from sqlchat_core.domain.exceptions import ProviderError
from sqlchat_core.domain.models import ConversationTurn, ProviderConfig
from sqlchat_core.engine.cancellation import CancellationToken
from sqlchat_core.infrastructure.logging.logger import logger


class ProviderAdapter(Protocol):
    """生成式后端适配器协议。

    实现者需要提供：
    - name: Provider 名称，用于注册表查找与日志。
    - generate(...): 返回一个有限、不可重启的文本片段迭代器。
    """

    name: str

    def generate(
        self,
        config: ProviderConfig,
        system_prompt: str,
        history: List[ConversationTurn],
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[str]:
        ...


class ModelLister(Protocol):
    """列出可用模型（目前只有 Ollama 与 LM Studio 支持）。同步请求/响应。"""

    name: str

    def list_models(self, endpoint: str) -> List[str]:
        ...


def to_chat_messages(
    system_prompt: str,
    history: Iterable[ConversationTurn],
    inline_system: bool = True,
) -> List[Dict[str, str]]:
    """把持久化的历史映射为厂商消息列表。

    sender=user -> "user"，sender=system -> "assistant"；
    inline_system=True 时在最前面插入 system 消息，否则由调用方放到独立字段。
    """

    msgs: List[Dict[str, str]] = []
    if inline_system:
        msgs.append({"role": "system", "content": system_prompt})
    for turn in history:
        role = "user" if turn.sender == "user" else "assistant"
        msgs.append({"role": role, "content": turn.content})
    return msgs


def iter_sse_payloads(resp, provider: str) -> Iterator[Dict[str, Any]]:
    """解析 SSE 响应的 data 行，跳过 event/注释行与 [DONE]。"""

    for line in resp.iter_lines():
        if not line:
            continue
        if not line.startswith("data:"):
            continue
        data_str = line[5:].strip()
        if not data_str or data_str == "[DONE]":
            continue
        try:
            yield json.loads(data_str)
        except json.JSONDecodeError:
            raise ProviderError(provider, f"Malformed stream payload: {data_str[:200]}")


def iter_ndjson_payloads(resp, provider: str) -> Iterator[Dict[str, Any]]:
    """解析逐行 JSON（NDJSON）响应。"""

    for line in resp.iter_lines():
        line = line.strip() if line else ""
        if not line:
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError:
            raise ProviderError(provider, f"Malformed stream payload: {line[:200]}")


def paced(
    fragments: Iterable[str],
    delay: float,
    cancel_token: Optional[CancellationToken] = None,
) -> Iterator[str]:
    """按固定间隔逐个转发片段（前端“打字”效果），并在每个片段前检查取消标志。

    不做重排也不做合并；观察到取消后立即停止，不再产出任何片段。
    """

    first = True
    for fragment in fragments:
        if cancel_token is not None and cancel_token.cancelled:
            return
        if not first and delay > 0:
            time.sleep(delay)
            if cancel_token is not None and cancel_token.cancelled:
                return
        first = False
        yield fragment


class HttpChatProvider:
    """基于 httpx 流式请求的 Provider 基类。

    子类需要设置：
    - name: 注册名（如 "OpenAI"）。
    - config_key: 前端 providerConfig.config 下对应的字段名（如 "openai"）。
    - uses_proxy: 托管服务为 True，走代理；本地推理服务为 False，直连。
    - inline_system_prompt: system prompt 是否作为第一条消息发送。
    并实现 resolve / build_request / iter_fragments。
    """

    name = ""
    config_key = ""
    uses_proxy = False
    inline_system_prompt = True

    def __init__(self, settings=default_settings):
        self._settings = settings

    # ---- 对外入口 ----

    def generate(
        self,
        config: ProviderConfig,
        system_prompt: str,
        history: List[ConversationTurn],
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[str]:
        resolved = self.resolve(config)
        messages = to_chat_messages(system_prompt, history, inline_system=self.inline_system_prompt)
        url, headers, payload, params = self.build_request(resolved, system_prompt, messages)
        logger.info(
            "provider.request",
            extra={"extra": {
                "provider": self.name,
                "model": resolved.model,
                "message_count": len(messages),
            }},
        )
        delay = getattr(self._settings, "stream_pacing_delay", 0.0)
        return paced(self._stream(url, headers, payload, params), delay, cancel_token)

    # ---- 子类扩展点 ----

    def resolve(self, config: ProviderConfig) -> ProviderConfig:
        """补全 built-in 模式下的凭据，并校验必填项。"""

        return config

    def build_request(
        self,
        config: ProviderConfig,
        system_prompt: str,
        messages: List[Dict[str, str]],
    ) -> tuple:
        """返回 (url, headers, json_payload, query_params)。"""

        raise NotImplementedError

    def iter_fragments(self, resp) -> Iterator[str]:
        """从流式响应中按顺序取出文本增量。"""

        raise NotImplementedError

    # ---- 公共实现 ----

    def _client(self) -> httpx.Client:
        timeout = getattr(self._settings, "provider_timeout", 6.0)
        if self.uses_proxy:
            proxy = getattr(self._settings, "https_proxy", None) or None
            return httpx.Client(timeout=timeout, proxy=proxy, trust_env=True)
        return httpx.Client(timeout=timeout, trust_env=False)

    def _stream(self, url: str, headers: Dict[str, str], payload: Dict[str, Any], params) -> Iterator[str]:
        # 整个流的总时长上限；httpx 的 timeout 只约束单次读写
        limit = getattr(self._settings, "provider_stream_timeout", 300.0)
        deadline = time.monotonic() + limit
        try:
            with self._client() as client:
                with client.stream("POST", url, json=payload, headers=headers, params=params) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        raise ProviderError(self.name, f"HTTP {resp.status_code}: {resp.text[:500]}")
                    for text in self.iter_fragments(resp):
                        if time.monotonic() > deadline:
                            raise ProviderError(self.name, f"Request timed out after {limit}s", timeout=True)
                        if text:
                            yield text
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, f"Request timed out: {e}", timeout=True)
        except httpx.RequestError as e:
            raise ProviderError(self.name, f"Failed to connect: {e}")

    def _get_json(self, url: str, headers: Optional[Dict[str, str]] = None) -> Any:
        """非流式 GET，用于模型列表。"""

        try:
            with self._client() as client:
                resp = client.get(url, headers=headers or {})
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, f"Request timed out: {e}", timeout=True)
        except httpx.RequestError as e:
            raise ProviderError(self.name, f"Failed to connect: {e}")
        if resp.status_code >= 400:
            raise ProviderError(self.name, f"HTTP {resp.status_code}: {resp.text[:500]}")
        try:
            return resp.json()
        except ValueError:
            raise ProviderError(self.name, "Malformed response: expected JSON")

    def _require(self, config: ProviderConfig, *fields: str) -> None:
        missing = [f for f in fields if not getattr(config, f)]
        if missing:
            raise ProviderError(
                self.name,
                f"{self.name} configuration is incomplete, missing: {', '.join(missing)}",
            )

    @staticmethod
    def _with(config: ProviderConfig, **changes) -> ProviderConfig:
        return replace(config, **changes)
