"""HTTP 请求体模型。

字段名沿用前端的 camelCase；数字形式的 ID 统一转成字符串。
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Request(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True, extra="ignore")


class QueryRequest(_Request):
    query: str = Field(min_length=1)
    providerConfig: Dict[str, Any]
    connectionId: str = Field(min_length=1)
    conversationId: Optional[str] = None


class CancelQueryRequest(_Request):
    conversationId: str = Field(min_length=1)


class RunSqlRequest(_Request):
    sql: str = Field(min_length=1)
    connectionId: str = Field(min_length=1)
    executionId: Optional[str] = None
    confirmed: bool = False


class CancelSqlRequest(_Request):
    executionId: str = Field(min_length=1)


class ClassifySqlRequest(_Request):
    sql: str
