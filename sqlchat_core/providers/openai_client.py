"""OpenAI Provider 适配器。

本模块负责：

1. 把 built-in / user-supplied 两种模式的配置解析成最终的 endpoint、密钥与模型。
2. 将统一的消息列表转换为 chat/completions 请求（system prompt 作为第一条消息）。
3. 解析 SSE 流里的 choices[0].delta.content，按顺序产出文本片段。

Azure OpenAI 与 LM Studio 的 REST 接口与此兼容，分别继承本类只改 URL 与鉴权。
"""

from typing import Any, Dict, Iterator, List

from sqlchat_core.domain.exceptions import ProviderError
from sqlchat_core.domain.models import ProviderConfig
from sqlchat_core.providers.base import HttpChatProvider, iter_sse_payloads


class OpenAIProvider(HttpChatProvider):
    """OpenAI 提供方实现（托管服务，支持代理）。"""

    name = "OpenAI"
    config_key = "openai"
    uses_proxy = True
    default_endpoint = "https://api.openai.com/v1"

    def resolve(self, config: ProviderConfig) -> ProviderConfig:
        if config.mode == "built-in":
            config = self._with(
                config,
                api_key=self._settings.openai_api_key,
                endpoint=self._settings.openai_endpoint,
                model=self._settings.openai_model,
            )
        if not config.endpoint:
            config = self._with(config, endpoint=self.default_endpoint)
        self._require(config, "api_key", "model")
        return config

    def build_request(self, config: ProviderConfig, system_prompt: str, messages: List[Dict[str, str]]) -> tuple:
        url = f"{config.endpoint.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": config.model,
            "messages": messages,
            "max_completion_tokens": self._settings.provider_max_tokens,
            "stream": True,
        }
        return url, headers, payload, None

    def iter_fragments(self, resp) -> Iterator[str]:
        for chunk in iter_sse_payloads(resp, self.name):
            if chunk.get("error"):
                err = chunk["error"]
                raise ProviderError(self.name, err.get("message") if isinstance(err, dict) else str(err))
            text = self._delta_text(chunk)
            if text:
                yield text

    @staticmethod
    def _delta_text(chunk: Dict[str, Any]) -> str:
        """取 choices[0].delta.content；usage-only 或空 choices 的增量返回空串。"""

        choices = chunk.get("choices") or []
        if not choices:
            return ""
        delta = choices[0].get("delta") or {}
        return delta.get("content") or ""
