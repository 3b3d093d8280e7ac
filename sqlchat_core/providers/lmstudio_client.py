"""LM Studio Provider 适配器。

LM Studio 的本地服务提供 OpenAI 兼容的 REST 接口（/v1/chat/completions），
因此复用 OpenAIProvider 的 SSE 解析，只改地址、去掉鉴权并直连本地。

模型列表使用 LM Studio 自己的 /api/v0/models，只保留 type == "llm" 的条目。
"""

from typing import Dict, List

from sqlchat_core.domain.exceptions import ProviderError
from sqlchat_core.domain.models import ProviderConfig
from sqlchat_core.providers.openai_client import OpenAIProvider


class LMStudioProvider(OpenAIProvider):
    name = "LM Studio"
    config_key = "lmStudio"
    uses_proxy = False

    def resolve(self, config: ProviderConfig) -> ProviderConfig:
        endpoint = config.endpoint or self._settings.lmstudio_endpoint
        # 兼容旧配置里的 ws:// 地址
        if endpoint.startswith("ws"):
            endpoint = "http" + endpoint[2:]
        config = self._with(config, endpoint=endpoint)
        self._require(config, "model")
        return config

    def build_request(self, config: ProviderConfig, system_prompt: str, messages: List[Dict[str, str]]) -> tuple:
        url = f"{self._api_base(config.endpoint)}/chat/completions"
        payload = {
            "model": config.model,
            "messages": messages,
            "max_tokens": self._settings.provider_max_tokens,
            "stream": True,
        }
        return url, {"Content-Type": "application/json"}, payload, None

    def list_models(self, endpoint: str) -> List[str]:
        base = (endpoint or self._settings.lmstudio_endpoint).rstrip("/")
        if base.startswith("ws"):
            base = "http" + base[2:]
        if base.endswith("/v1"):
            base = base[: -len("/v1")]
        data = self._get_json(f"{base}/api/v0/models")
        entries = data.get("data") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise ProviderError(self.name, "Malformed response: missing data")
        return [m["id"] for m in entries if isinstance(m, dict) and m.get("type") == "llm" and m.get("id")]

    @staticmethod
    def _api_base(endpoint: str) -> str:
        base = endpoint.rstrip("/")
        return base if base.endswith("/v1") else f"{base}/v1"
