"""Ollama Provider 适配器。

- URL: {host}/api/chat，流式响应是逐行 JSON（NDJSON），不是 SSE。
- 增量文本在 message.content；done=true 表示结束；error 字段表示失败。
- 远程部署（带 apiKey）时加 Bearer 认证；本地服务直连，不走代理。
- 额外提供模型列表：GET {host}/api/tags。
"""

from typing import Dict, Iterator, List

from sqlchat_core.domain.exceptions import ProviderError
from sqlchat_core.domain.models import ProviderConfig
from sqlchat_core.providers.base import HttpChatProvider, iter_ndjson_payloads


class OllamaProvider(HttpChatProvider):
    name = "Ollama"
    config_key = "ollama"
    uses_proxy = False

    def resolve(self, config: ProviderConfig) -> ProviderConfig:
        if not config.endpoint:
            config = self._with(config, endpoint=self._settings.ollama_endpoint)
        self._require(config, "model")
        return config

    def build_request(self, config: ProviderConfig, system_prompt: str, messages: List[Dict[str, str]]) -> tuple:
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        payload = {
            "model": config.model,
            "messages": messages,
            "stream": True,
        }
        return f"{config.endpoint.rstrip('/')}/api/chat", headers, payload, None

    def iter_fragments(self, resp) -> Iterator[str]:
        for chunk in iter_ndjson_payloads(resp, self.name):
            if chunk.get("error"):
                raise ProviderError(self.name, str(chunk["error"]))
            message = chunk.get("message") or {}
            text = message.get("content") or ""
            if text:
                yield text
            if chunk.get("done"):
                return

    def list_models(self, endpoint: str) -> List[str]:
        """返回已下载模型的名称列表。"""

        data = self._get_json(f"{(endpoint or self._settings.ollama_endpoint).rstrip('/')}/api/tags")
        models = data.get("models") if isinstance(data, dict) else None
        if not isinstance(models, list):
            raise ProviderError(self.name, "Malformed response: missing models")
        return [m.get("name") or m.get("model") for m in models if isinstance(m, dict) and (m.get("name") or m.get("model"))]
