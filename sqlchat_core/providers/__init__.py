"""生成式后端（Provider）集成层。

该包下的模块负责：
- 定义 Provider 抽象接口与公共流式逻辑 (base)。
- 维护 Provider 名称到实现的注册表 (registry)。
- 提供各厂商的具体实现 (openai_client、azure_client、claude_client、
  ollama_client、lmstudio_client)。
"""

from typing import Optional

from sqlchat_core.config.settings import settings
from sqlchat_core.domain.exceptions import UnsupportedProviderError
from sqlchat_core.providers.base import HttpChatProvider, ModelLister, ProviderAdapter
from sqlchat_core.providers.registry import PROVIDER_REGISTRY, get_provider_class


def create_provider(name: Optional[str], cfg=None) -> ProviderAdapter:
    """根据名称创建 Provider 实例；未知名称抛出 UnsupportedProviderError。"""

    cls = get_provider_class(name)
    return cls(cfg or settings)


def create_model_lister(name: Optional[str], cfg=None) -> ModelLister:
    """只有实现了 list_models 的 Provider（Ollama、LM Studio）可以列出模型。"""

    cls = get_provider_class(name)
    if not hasattr(cls, "list_models"):
        raise UnsupportedProviderError(name)
    return cls(cfg or settings)


__all__ = [
    "HttpChatProvider",
    "ModelLister",
    "PROVIDER_REGISTRY",
    "ProviderAdapter",
    "create_model_lister",
    "create_provider",
]
