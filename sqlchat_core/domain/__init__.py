"""领域层模型与协议。

包含：
- models: ProviderConfig / ConversationTurn / DatabaseConnection / StreamEvent 等模型。
- store: 持久化协作方 PersistenceStore 协议。
- exceptions: 业务异常类型定义。
"""
