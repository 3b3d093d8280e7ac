"""Claude / Anthropic Provider 适配器。

接口与 OpenAI 风格不同：
- URL: {endpoint}/v1/messages
- 认证: x-api-key + anthropic-version 请求头
- system prompt 通过独立的 system 字段传递，不放在 messages 里。
- 流式事件中只有 content_block_delta / text_delta 携带文本；
  type=error 的事件表示服务端中途失败。
"""

from typing import Dict, Iterator, List

from sqlchat_core.domain.exceptions import ProviderError
from sqlchat_core.domain.models import ProviderConfig
from sqlchat_core.providers.base import HttpChatProvider, iter_sse_payloads

ANTHROPIC_VERSION = "2023-06-01"


class ClaudeProvider(HttpChatProvider):
    """Claude 提供方实现（托管服务，支持代理）。"""

    name = "Claude"
    config_key = "claude"
    uses_proxy = True
    inline_system_prompt = False
    default_endpoint = "https://api.anthropic.com"

    def resolve(self, config: ProviderConfig) -> ProviderConfig:
        if config.mode == "built-in":
            config = self._with(
                config,
                api_key=self._settings.claude_api_key,
                endpoint=self._settings.claude_endpoint,
                model=self._settings.claude_model,
            )
        if not config.endpoint:
            config = self._with(config, endpoint=self.default_endpoint)
        self._require(config, "api_key", "model")
        return config

    def build_request(self, config: ProviderConfig, system_prompt: str, messages: List[Dict[str, str]]) -> tuple:
        url = f"{config.endpoint.rstrip('/')}/v1/messages"
        headers = {
            "x-api-key": config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        payload = {
            "model": config.model,
            "max_tokens": self._settings.provider_max_tokens,
            "system": system_prompt,
            "messages": messages,
            "stream": True,
        }
        return url, headers, payload, None

    def iter_fragments(self, resp) -> Iterator[str]:
        for event in iter_sse_payloads(resp, self.name):
            kind = event.get("type")
            if kind == "error":
                err = event.get("error") or {}
                raise ProviderError(self.name, err.get("message") or "stream error")
            if kind == "message_stop":
                return
            if kind != "content_block_delta":
                continue
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                yield delta.get("text") or ""
