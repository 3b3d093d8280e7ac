"""Provider 注册表。

把 Provider 名称映射到适配器实现；新增一个 Provider 只需要实现一个
HttpChatProvider 子类并在 PROVIDER_REGISTRY 里加一行，不需要修改任何分支逻辑。

名称匹配忽略大小写、空格、下划线与连字符，"lmstudio" / "LM Studio" 等价。
"""

from typing import Any, Dict, Mapping, Optional, Type

from sqlchat_core.domain.exceptions import UnsupportedProviderError
from sqlchat_core.domain.models import ProviderConfig, normalize_mode
from sqlchat_core.providers.azure_client import AzureOpenAIProvider
from sqlchat_core.providers.base import HttpChatProvider
from sqlchat_core.providers.claude_client import ClaudeProvider
from sqlchat_core.providers.lmstudio_client import LMStudioProvider
from sqlchat_core.providers.ollama_client import OllamaProvider
from sqlchat_core.providers.openai_client import OpenAIProvider


PROVIDER_REGISTRY: Mapping[str, Type[HttpChatProvider]] = {
    cls.name: cls
    for cls in (OpenAIProvider, AzureOpenAIProvider, ClaudeProvider, OllamaProvider, LMStudioProvider)
}

# 额外别名（归一化后的 key）
_ALIASES: Mapping[str, str] = {
    "azure": AzureOpenAIProvider.name,
    "anthropic": ClaudeProvider.name,
}


def _normalize(name: str) -> str:
    return "".join(ch for ch in (name or "").lower() if ch.isalnum())


def get_provider_class(name: Optional[str]) -> Type[HttpChatProvider]:
    """根据名称获取适配器类，未注册时抛出 UnsupportedProviderError。"""

    key = _normalize(name or "")
    if key in _ALIASES:
        return PROVIDER_REGISTRY[_ALIASES[key]]
    for registered, cls in PROVIDER_REGISTRY.items():
        if _normalize(registered) == key:
            return cls
    raise UnsupportedProviderError(name)


def provider_config_from_payload(raw: Dict[str, Any]) -> ProviderConfig:
    """把请求体里的 providerConfig 转成 ProviderConfig。

    支持两种形态：
    - 前端原有形态：{"selectedProvider": "OpenAI", "config": {"openai": {...}, ...}}
    - 扁平形态：{"provider": "OpenAI", "endpoint": ..., "apiKey": ..., "model": ...}
    """

    if not isinstance(raw, dict):
        raise UnsupportedProviderError(None)
    name = raw.get("selectedProvider") or raw.get("provider")
    cls = get_provider_class(name)
    section: Dict[str, Any] = raw
    nested = raw.get("config")
    if isinstance(nested, dict):
        section = nested.get(cls.config_key) or {}
    return ProviderConfig(
        provider=cls.name,
        endpoint=section.get("endpoint") or None,
        api_key=section.get("apiKey") or section.get("api_key") or None,
        model=section.get("model") or section.get("deploymentId") or None,
        api_version=section.get("apiVersion") or section.get("api_version") or None,
        mode=normalize_mode(section.get("mode")),
    )
