"""Azure OpenAI Provider 适配器。

与 OpenAI 的差异只在请求地址与鉴权：
- URL: {endpoint}/openai/deployments/{deployment}/chat/completions?api-version=...
- 认证: api-key 请求头
- model 字段即部署名（deployment）。
"""

from typing import Dict, List

from sqlchat_core.domain.models import ProviderConfig
from sqlchat_core.providers.openai_client import OpenAIProvider


class AzureOpenAIProvider(OpenAIProvider):
    name = "Azure OpenAI"
    config_key = "azure"
    uses_proxy = True

    def resolve(self, config: ProviderConfig) -> ProviderConfig:
        if config.mode == "built-in":
            config = self._with(
                config,
                api_key=self._settings.azure_openai_api_key,
                endpoint=self._settings.azure_openai_endpoint,
                model=self._settings.azure_openai_deployment,
                api_version=config.api_version or self._settings.azure_openai_api_version,
            )
        if not config.api_version:
            config = self._with(config, api_version=self._settings.azure_openai_api_version)
        self._require(config, "api_key", "endpoint", "model")
        return config

    def build_request(self, config: ProviderConfig, system_prompt: str, messages: List[Dict[str, str]]) -> tuple:
        url = f"{config.endpoint.rstrip('/')}/openai/deployments/{config.model}/chat/completions"
        headers = {
            "api-key": config.api_key,
            "Content-Type": "application/json",
        }
        payload = {
            "messages": messages,
            "max_tokens": self._settings.provider_max_tokens,
            "stream": True,
        }
        return url, headers, payload, {"api-version": config.api_version}
