"""对外服务模块。

持有进程级的存储、会话编排器与查询引擎单例，并提供简化的函数接口
供 HTTP 层（或其他上层应用）调用。
"""

from typing import Any, Dict, List, Optional

from sqlchat_core.config.settings import settings
from sqlchat_core.domain.models import ProviderConfig
from sqlchat_core.domain.store import PersistenceStore
from sqlchat_core.engine.orchestrator import ConversationOrchestrator, ConversationRun
from sqlchat_core.engine.query_engine import QueryExecutionEngine, QueryRun
from sqlchat_core.infrastructure.logging.logger import logger
from sqlchat_core.infrastructure.storage.json_store import JsonStore
from sqlchat_core.providers import create_model_lister
from sqlchat_core.sql.classifier import MUTATING, classify


_store: Optional[PersistenceStore] = None
_orchestrator: Optional[ConversationOrchestrator] = None
_query_engine: Optional[QueryExecutionEngine] = None


def get_store() -> PersistenceStore:
    """获取默认的持久化实现（单例）。"""
    global _store
    if _store is None:
        _store = JsonStore(root=settings.storage_root)
    return _store


def get_orchestrator() -> ConversationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ConversationOrchestrator(store=get_store())
    return _orchestrator


def get_query_engine() -> QueryExecutionEngine:
    global _query_engine
    if _query_engine is None:
        _query_engine = QueryExecutionEngine(store=get_store())
    return _query_engine


def start_conversation(
    orchestrator: ConversationOrchestrator,
    utterance: str,
    provider_config: ProviderConfig,
    connection_id: str,
    conversation_id: Optional[str] = None,
    user_id: Optional[str] = None,
) -> ConversationRun:
    """开始一次生成。

    Args:
        utterance: 用户输入
        provider_config: 本次请求使用的 Provider 配置
        connection_id: 数据库连接记录 ID
        conversation_id: 会话ID（可选，不提供则创建新会话）
        user_id: 调用方身份

    Returns:
        已经拿到首个片段的 ConversationRun

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    try:
        return orchestrator.start(
            utterance=utterance,
            provider_config=provider_config,
            connection_id=connection_id,
            conversation_id=conversation_id,
            user_id=user_id,
        )
    except Exception as e:
        logger.error(f"Generation failed to start: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "connection_id": connection_id,
            "provider": provider_config.provider,
        }})
        raise


def start_query(
    engine: QueryExecutionEngine,
    sql: str,
    connection_id: str,
    execution_id: Optional[str] = None,
    confirmed: bool = False,
    user_id: Optional[str] = None,
) -> QueryRun:
    try:
        return engine.start(
            sql=sql,
            connection_id=connection_id,
            execution_id=execution_id,
            user_id=user_id,
            confirmed=confirmed,
        )
    except Exception as e:
        logger.error(f"Query failed to start: {e}", extra={"extra": {
            "execution_id": execution_id,
            "connection_id": connection_id,
        }})
        raise


def classify_sql(sql: str) -> Dict[str, Any]:
    classification = classify(sql)
    return {"classification": classification, "requiresConfirmation": classification == MUTATING}


def list_models(provider: str, endpoint: Optional[str] = None) -> List[str]:
    """列出本地推理服务（Ollama / LM Studio）上可用的模型。"""
    lister = create_model_lister(provider)
    return lister.list_models(endpoint or "")
