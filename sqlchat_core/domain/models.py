"""统一的领域数据模型。

本模块定义了各组件之间共享的标准数据结构：

- ProviderConfig: 一次生成请求所用的 Provider 连接参数（按 Provider 名称区分）。
- ConversationTurn: 一条已持久化的对话消息。
- DatabaseConnection: 一条数据库连接记录（由持久化层拥有，本核心只读）。
- UserSettings: 调用方的设置（目前只有系统提示词）。
- StreamEvent: 两条流水线对外输出的统一事件单元。

所有 Provider / Driver 适配器都只依赖这些模型，
并负责在各自的 API/驱动数据结构和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional


# 消息发送方（沿用持久化层的取值：助手消息记为 "system"）
Sender = Literal["user", "system"]

# Provider 凭据来源：built-in 使用进程配置，user-supplied 使用请求携带的值
ProviderMode = Literal["built-in", "user-supplied"]

StreamEventKind = Literal["meta", "token", "row", "summary", "error", "done"]


def normalize_mode(raw: Optional[str]) -> ProviderMode:
    """兼容前端传来的 "Built-in" / "Custom" 等写法。"""

    value = (raw or "").strip().lower().replace("_", "-")
    if value in {"built-in", "builtin"}:
        return "built-in"
    return "user-supplied"


@dataclass(frozen=True)
class ProviderConfig:
    """单次请求的 Provider 配置，请求期间不可变。

    - provider: Provider 名称，如 "OpenAI"、"Claude"。
    - endpoint / api_key / model / api_version: 连接参数。
    - mode: built-in 时上述参数由 settings 提供。
    """

    provider: str
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    model: Optional[str] = None
    api_version: Optional[str] = None
    mode: ProviderMode = "user-supplied"

    def __repr__(self) -> str:  # 不在日志里打印凭据
        return (
            f"ProviderConfig(provider={self.provider!r}, endpoint={self.endpoint!r}, "
            f"model={self.model!r}, mode={self.mode!r})"
        )


@dataclass
class ConversationTurn:
    """一条对话消息。history 按 timestamp 严格递增排列，只追加不修改。"""

    id: str
    conversation_id: str
    content: str
    sender: Sender
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "content": self.content,
            "sender": self.sender,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class Conversation:
    id: str
    title: str
    connection_id: str
    user_id: str
    created_at: datetime


@dataclass(frozen=True)
class DatabaseConnection:
    id: str
    driver: str
    host: str
    port: int
    username: str
    secret: str = field(repr=False)
    database_name: str
    cached_schema_text: str = ""
    project_name: str = ""
    user_id: str = "anonymous"

    @property
    def label(self) -> str:
        """给 LLM 看的简短连接说明：项目名 + 驱动名。"""

        return f"{self.project_name or self.database_name} ({self.driver})"


@dataclass
class UserSettings:
    user_id: str
    system_prompt: str = ""


@dataclass
class StreamEvent:
    """流水线对外输出的事件。

    kind:
        - "meta": 会话流的首个事件，携带 conversation_id 与完整历史。
        - "token": 一段生成文本。
        - "row": 一行查询结果（已转换为 JSON 兼容的 dict）。
        - "summary": 非结果集语句的影响行数。
        - "error": 流中途失败的终止事件。
        - "done": 正常结束的终止事件。
    """

    kind: StreamEventKind
    conversation_id: Optional[str] = None
    history: Optional[List[ConversationTurn]] = None
    text: Optional[str] = None
    row: Optional[Dict[str, Any]] = None
    affected_rows: Optional[int] = None
    message: Optional[str] = None

    @classmethod
    def meta(cls, conversation_id: str, history: List[ConversationTurn]) -> "StreamEvent":
        return cls(kind="meta", conversation_id=conversation_id, history=list(history))

    @classmethod
    def token(cls, text: str) -> "StreamEvent":
        return cls(kind="token", text=text)

    @classmethod
    def for_row(cls, row: Dict[str, Any]) -> "StreamEvent":
        return cls(kind="row", row=row)

    @classmethod
    def summary(cls, affected_rows: int) -> "StreamEvent":
        return cls(kind="summary", affected_rows=affected_rows)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(kind="error", message=message)

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(kind="done")
