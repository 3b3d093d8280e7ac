"""SQL 语句粗分类。

只做关键字级别的判断：不区分字符串字面量和注释，因此存在误报
（例如查询里包含字符串 'update'）。结果只用于提示调用方做二次确认，
不是防止破坏性语句的唯一手段。
"""

import re
from typing import Literal

Classification = Literal["read-only", "mutating"]

READ_ONLY: Classification = "read-only"
MUTATING: Classification = "mutating"

MUTATING_KEYWORDS = ("UPDATE", "DELETE", "INSERT", "DROP", "ALTER", "TRUNCATE")

# \b 与 \w 一致，"update_log" 中的下划线属于单词字符，不会命中
_MUTATING_RE = re.compile(r"\b(?:%s)\b" % "|".join(MUTATING_KEYWORDS), re.IGNORECASE)


def classify(sql: str) -> Classification:
    """返回 "mutating"（命中任一写操作关键字）或 "read-only"。"""

    if sql and _MUTATING_RE.search(sql):
        return MUTATING
    return READ_ONLY


def is_mutating(sql: str) -> bool:
    return classify(sql) == MUTATING
