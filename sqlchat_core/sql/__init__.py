"""SQL 文本相关的纯函数工具。"""

from sqlchat_core.sql.classifier import MUTATING, READ_ONLY, classify, is_mutating

__all__ = ["MUTATING", "READ_ONLY", "classify", "is_mutating"]
