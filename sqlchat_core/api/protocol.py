"""流式响应的线上格式：每行一个 JSON 对象（application/x-ndjson）。

会话流：
    {"type": "meta", "conversationId": ..., "history": [...]}
    {"type": "token", "text": ...}
    {"type": "error", "message": ...} | {"type": "done"}

查询流：
    每行一个结果行对象；非结果集语句只有一行 {"affectedRows": n}；
    中途失败追加一行 {"error": ...}；正常结束不输出任何内容（关闭连接即结束）。
"""

import json
from typing import Any, Dict, Iterable, Iterator, Optional

from sqlchat_core.domain.models import StreamEvent


NDJSON_MEDIA_TYPE = "application/x-ndjson"


def _line(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str) + "\n"


def conversation_frame(event: StreamEvent) -> Dict[str, Any]:
    if event.kind == "meta":
        return {
            "type": "meta",
            "conversationId": event.conversation_id,
            "history": [turn.to_dict() for turn in event.history or []],
        }
    if event.kind == "token":
        return {"type": "token", "text": event.text}
    if event.kind == "error":
        return {"type": "error", "message": event.message}
    if event.kind == "done":
        return {"type": "done"}
    raise ValueError(f"Unexpected conversation event: {event.kind}")


def query_line(event: StreamEvent) -> Optional[Dict[str, Any]]:
    if event.kind == "row":
        return event.row
    if event.kind == "summary":
        return {"affectedRows": event.affected_rows}
    if event.kind == "error":
        return {"error": event.message}
    if event.kind == "done":
        return None
    raise ValueError(f"Unexpected query event: {event.kind}")


def encode_conversation(events: Iterable[StreamEvent]) -> Iterator[str]:
    for event in events:
        yield _line(conversation_frame(event))


def encode_query(events: Iterable[StreamEvent]) -> Iterator[str]:
    for event in events:
        line = query_line(event)
        if line is not None:
            yield _line(line)
