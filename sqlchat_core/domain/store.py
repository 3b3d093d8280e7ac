from typing import List, Optional, Protocol

from .models import Conversation, ConversationTurn, DatabaseConnection, Sender, UserSettings


class PersistenceStore(Protocol):
    """本核心依赖的持久化协作方。

    全部是同步的请求/响应调用，不涉及流式。会话、消息、设置与连接记录的
    存储介质由实现决定；核心只通过这些方法读写。
    """

    def create_conversation(self, title: str, connection_id: str, user_id: str) -> str:
        ...

    def get_conversation(self, conversation_id: str) -> Conversation:
        ...

    def add_message(self, conversation_id: str, content: str, sender: Sender) -> ConversationTurn:
        ...

    def get_conversation_messages(self, conversation_id: str) -> List[ConversationTurn]:
        ...

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        ...

    def get_connection_by_id(self, connection_id: str, user_id: Optional[str] = None) -> Optional[DatabaseConnection]:
        ...

    def save_connection(self, connection: DatabaseConnection) -> str:
        ...

    def get_settings(self, user_id: str) -> UserSettings:
        ...

    def save_settings(self, user_id: str, system_prompt: str) -> None:
        ...
