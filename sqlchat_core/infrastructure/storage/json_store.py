import json
import os
import threading
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlchat_core.config.settings import settings
from sqlchat_core.domain.exceptions import StoreError
from sqlchat_core.domain.models import (
    Conversation,
    ConversationTurn,
    DatabaseConnection,
    Sender,
    UserSettings,
)
from sqlchat_core.domain.store import PersistenceStore


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(raw: str) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


class JsonStore(PersistenceStore):
    """基于文件的持久化实现。

    目录结构：
        <root>/conversations/<id>/meta.json       会话元数据（原子替换写入）
        <root>/conversations/<id>/messages.jsonl  消息，逐行追加
        <root>/connections/<id>.json              数据库连接记录
        <root>/settings/<user_id>.json            调用方设置
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conn_root = self._root / "connections"
        self._settings_root = self._root / "settings"
        for d in (self._conv_root, self._conn_root, self._settings_root):
            d.mkdir(parents=True, exist_ok=True)
        # 同一进程内串行化追加写，保证 timestamp 单调递增
        self._write_lock = threading.Lock()

    # ---- 会话 ----

    def create_conversation(self, title: str, connection_id: str, user_id: str) -> str:
        cid = f"c-{uuid4().hex}"
        cdir = self._conv_root / cid
        cdir.mkdir(parents=True, exist_ok=True)
        conv = Conversation(
            id=cid,
            title=title,
            connection_id=str(connection_id),
            user_id=user_id,
            created_at=datetime.now(timezone.utc),
        )
        self._write_meta(cdir, conv)
        return cid

    def get_conversation(self, conversation_id: str) -> Conversation:
        meta_path = self._conv_root / conversation_id / "meta.json"
        if not meta_path.exists():
            raise StoreError("CONVERSATION_NOT_FOUND", f"Conversation not found: {conversation_id}", http_status=404)
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreError("STORE_READ_ERROR", str(e))
        return Conversation(
            id=data["id"],
            title=data.get("title") or "",
            connection_id=str(data.get("connection_id") or ""),
            user_id=data.get("user_id") or settings.default_caller,
            created_at=_parse_dt(data["created_at"]),
        )

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        """更新会话标题。"""
        conv = self.get_conversation(conversation_id)
        conv.title = title
        self._write_meta(self._conv_root / conversation_id, conv)

    # ---- 消息 ----

    def add_message(self, conversation_id: str, content: str, sender: Sender) -> ConversationTurn:
        cdir = self._conv_root / conversation_id
        if not (cdir / "meta.json").exists():
            raise StoreError("CONVERSATION_NOT_FOUND", f"Conversation not found: {conversation_id}", http_status=404)
        msgs_path = cdir / "messages.jsonl"
        with self._write_lock:
            now = datetime.now(timezone.utc)
            existing = self.get_conversation_messages(conversation_id)
            if existing and now <= existing[-1].timestamp:
                now = existing[-1].timestamp + timedelta(microseconds=1)
            turn = ConversationTurn(
                id=f"m-{uuid4().hex}",
                conversation_id=conversation_id,
                content=content,
                sender=sender,
                timestamp=now,
            )
            payload = asdict(turn)
            payload["timestamp"] = _iso(turn.timestamp)
            try:
                with msgs_path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(payload, ensure_ascii=False) + "\n")
            except OSError as e:
                raise StoreError("STORE_WRITE_ERROR", str(e))
        return turn

    def get_conversation_messages(self, conversation_id: str) -> List[ConversationTurn]:
        msgs_path = self._conv_root / conversation_id / "messages.jsonl"
        items: List[ConversationTurn] = []
        if not msgs_path.exists():
            return items
        for line in msgs_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                continue
            items.append(
                ConversationTurn(
                    id=data["id"],
                    conversation_id=data["conversation_id"],
                    content=data.get("content") or "",
                    sender=data["sender"],
                    timestamp=_parse_dt(data["timestamp"]),
                )
            )
        items.sort(key=lambda m: m.timestamp)
        return items

    # ---- 数据库连接 ----

    def save_connection(self, connection: DatabaseConnection) -> str:
        data = asdict(connection)
        data["id"] = str(connection.id)
        self._write_json(self._conn_root / f"{data['id']}.json", data)
        return data["id"]

    def get_connection_by_id(self, connection_id: str, user_id: Optional[str] = None) -> Optional[DatabaseConnection]:
        """按 id 读取连接；提供 user_id 时只返回该调用方拥有的连接。"""
        path = self._conn_root / f"{connection_id}.json"
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreError("STORE_READ_ERROR", str(e))
        conn = DatabaseConnection(
            id=str(data["id"]),
            driver=data["driver"],
            host=data["host"],
            port=int(data["port"]),
            username=data["username"],
            secret=data.get("secret") or "",
            database_name=data["database_name"],
            cached_schema_text=data.get("cached_schema_text") or "",
            project_name=data.get("project_name") or "",
            user_id=data.get("user_id") or settings.default_caller,
        )
        if user_id is not None and user_id != settings.default_caller and conn.user_id != user_id:
            return None
        return conn

    # ---- 设置 ----

    def get_settings(self, user_id: str) -> UserSettings:
        path = self._settings_root / f"{user_id}.json"
        if not path.exists():
            return UserSettings(user_id=user_id, system_prompt="")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreError("STORE_READ_ERROR", str(e))
        return UserSettings(user_id=user_id, system_prompt=data.get("system_prompt") or "")

    def save_settings(self, user_id: str, system_prompt: str) -> None:
        self._write_json(
            self._settings_root / f"{user_id}.json",
            {"user_id": user_id, "system_prompt": system_prompt, "updated_at": _iso(datetime.now(timezone.utc))},
        )

    # ---- 内部 ----

    def _write_meta(self, cdir: Path, conv: Conversation) -> None:
        self._write_json(
            cdir / "meta.json",
            {
                "id": conv.id,
                "title": conv.title,
                "connection_id": conv.connection_id,
                "user_id": conv.user_id,
                "created_at": _iso(conv.created_at),
            },
        )

    def _write_json(self, path: Path, obj: Dict[str, Any]) -> None:
        tmp_path = path.parent / f"{path.stem}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise StoreError("STORE_WRITE_ERROR", str(e))
