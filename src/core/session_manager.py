"""会话管理器：管理人设、群组、成员与消息的 CRUD 和持久化存储。

纯数据层，不包含对话调度逻辑；所有表结构由 DB_SCHEMA 定义，使用 aiosqlite 异步读写。
对话引擎通过其中两个窄接口访问它：list_personas（成员来源）与 save_message（消息落库）。
"""

from __future__ import annotations

import uuid
from datetime import datetime

import aiosqlite

from src.core.errors import DuplicateNameError, NotFoundError
from src.models.persona import Persona
from src.models.protocol import ChatMessage, MessageType
from src.models.session import Group, StoredMessage

# 数据库表结构：人设、群组、群成员、消息；名称唯一，含索引以加速按 group_id / timestamp 查询
DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS personas (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    personality_traits TEXT DEFAULT '',
    system_prompt TEXT DEFAULT '',
    speaking_style TEXT DEFAULT '',
    background TEXT DEFAULT '',
    avatar_url TEXT DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS groups (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    description TEXT DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS group_members (
    group_id TEXT NOT NULL,
    persona_id TEXT NOT NULL,
    joined_at TEXT NOT NULL,
    seq INTEGER NOT NULL,
    PRIMARY KEY (group_id, persona_id),
    FOREIGN KEY (group_id) REFERENCES groups(id) ON DELETE CASCADE,
    FOREIGN KEY (persona_id) REFERENCES personas(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    group_id TEXT NOT NULL,
    persona_id TEXT NOT NULL,
    persona_name TEXT DEFAULT '',
    content TEXT NOT NULL,
    message_type TEXT NOT NULL DEFAULT 'TEXT',
    is_generated INTEGER NOT NULL DEFAULT 0,
    response_time_ms INTEGER,
    timestamp TEXT NOT NULL,
    seq INTEGER NOT NULL,
    FOREIGN KEY (group_id) REFERENCES groups(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_messages_group_id ON messages(group_id);
CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp);
CREATE INDEX IF NOT EXISTS idx_group_members_group_id ON group_members(group_id);
"""


class SessionManager:
    """会话管理器：提供人设、群组、成员、消息的增删改查与持久化，不包含业务编排。"""

    def __init__(self, db_path: str = "data/persona_chat.db"):
        """指定 SQLite 数据库文件路径，连接在 initialize() 中建立。"""
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """连接数据库、开启外键约束、执行建表脚本并提交。应用启动时调用一次。"""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript(DB_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        """关闭数据库连接。应用关闭时调用。"""
        if self._db:
            await self._db.close()

    # ── 人设 CRUD ──

    async def create_persona(self, persona: Persona) -> Persona:
        """写入新人设；名称重复时抛 DuplicateNameError。"""
        if await self._exists("personas", "name", persona.name):
            raise DuplicateNameError(f"Persona name already exists: {persona.name}")
        created = persona.model_copy(update={"id": str(uuid.uuid4()), "created_at": datetime.now()})
        await self._db.execute(
            "INSERT INTO personas (id, name, personality_traits, system_prompt, speaking_style, "
            "background, avatar_url, is_active, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                created.id, created.name, created.personality_traits, created.system_prompt,
                created.speaking_style, created.background, created.avatar_url,
                int(created.is_active), created.created_at.isoformat(),
            ),
        )
        await self._db.commit()
        return created

    async def get_persona(self, persona_id: str) -> Persona | None:
        cursor = await self._db.execute("SELECT * FROM personas WHERE id = ?", (persona_id,))
        row = await cursor.fetchone()
        return _row_to_persona(row) if row else None

    async def list_all_personas(self) -> list[Persona]:
        """列出所有人设，按名称排序。"""
        cursor = await self._db.execute("SELECT * FROM personas ORDER BY name")
        return [_row_to_persona(row) for row in await cursor.fetchall()]

    async def update_persona(self, persona_id: str, updates: dict) -> Persona:
        """更新人设的部分字段；改名时同样校验唯一性。"""
        current = await self.get_persona(persona_id)
        if not current:
            raise NotFoundError(persona_id)
        new_name = updates.get("name")
        if new_name and new_name != current.name and await self._exists("personas", "name", new_name):
            raise DuplicateNameError(f"Persona name already exists: {new_name}")
        updated = current.model_copy(update={k: v for k, v in updates.items() if v is not None})
        await self._db.execute(
            "UPDATE personas SET name = ?, personality_traits = ?, system_prompt = ?, "
            "speaking_style = ?, background = ?, avatar_url = ?, is_active = ? WHERE id = ?",
            (
                updated.name, updated.personality_traits, updated.system_prompt,
                updated.speaking_style, updated.background, updated.avatar_url,
                int(updated.is_active), persona_id,
            ),
        )
        await self._db.commit()
        return updated

    async def delete_persona(self, persona_id: str) -> None:
        """删除人设；外键 CASCADE 会把它从所有群组中移除，已有消息保留。"""
        await self._db.execute("DELETE FROM personas WHERE id = ?", (persona_id,))
        await self._db.commit()

    # ── 群组 CRUD ──

    async def create_group(self, name: str, description: str = "") -> Group:
        """创建新群组：生成 UUID、写入 groups 表并返回 Group 模型；名称重复时抛 DuplicateNameError。"""
        if await self._exists("groups", "name", name):
            raise DuplicateNameError(f"Group name already exists: {name}")
        group_id = str(uuid.uuid4())
        now = datetime.now()
        await self._db.execute(
            "INSERT INTO groups (id, name, description, created_at) VALUES (?, ?, ?, ?)",
            (group_id, name, description, now.isoformat()),
        )
        await self._db.commit()
        return Group(id=group_id, name=name, description=description, created_at=now)

    async def get_group(self, group_id: str) -> Group | None:
        """根据 group_id 查询群组；若存在则附带按加入顺序排列的成员人设。"""
        cursor = await self._db.execute("SELECT * FROM groups WHERE id = ?", (group_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return Group(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            created_at=row["created_at"],
            members=await self.list_personas(group_id),
        )

    async def list_groups(self) -> list[Group]:
        """列出所有群组，按创建时间倒序；每条记录均附带成员列表。"""
        cursor = await self._db.execute("SELECT id FROM groups ORDER BY created_at DESC")
        rows = await cursor.fetchall()
        groups = []
        for row in rows:
            group = await self.get_group(row["id"])
            if group:
                groups.append(group)
        return groups

    async def delete_group(self, group_id: str) -> None:
        """删除指定群组；外键 CASCADE 会一并删除该群的消息与成员记录。"""
        await self._db.execute("DELETE FROM groups WHERE id = ?", (group_id,))
        await self._db.commit()

    # ── 成员管理 ──

    async def add_member(self, group_id: str, persona_id: str) -> Persona:
        """把人设加入群组，追加在成员顺序末尾；已在群内则直接返回。"""
        if not await self._exists("groups", "id", group_id):
            raise NotFoundError(group_id)
        persona = await self.get_persona(persona_id)
        if not persona:
            raise NotFoundError(persona_id)
        await self._db.execute(
            "INSERT OR IGNORE INTO group_members (group_id, persona_id, joined_at, seq) "
            "VALUES (?, ?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM group_members WHERE group_id = ?))",
            (group_id, persona_id, datetime.now().isoformat(), group_id),
        )
        await self._db.commit()
        return persona

    async def remove_member(self, group_id: str, persona_id: str) -> None:
        """从群组中移除指定人设；仅删除 group_members 记录，不删消息。"""
        await self._db.execute(
            "DELETE FROM group_members WHERE group_id = ? AND persona_id = ?",
            (group_id, persona_id),
        )
        await self._db.commit()

    async def list_personas(self, group_id: str) -> list[Persona]:
        """按加入顺序列出该群组所有成员人设（对话引擎的成员来源）。"""
        cursor = await self._db.execute(
            "SELECT p.* FROM group_members gm JOIN personas p ON p.id = gm.persona_id "
            "WHERE gm.group_id = ? ORDER BY gm.seq",
            (group_id,),
        )
        return [_row_to_persona(row) for row in await cursor.fetchall()]

    # ── 消息存储 ──

    async def save_message(
        self,
        group_id: str,
        persona_id: str,
        content: str,
        message_type: MessageType | str = MessageType.TEXT,
        is_generated: bool = True,
        response_time_ms: int | None = None,
        persona_name: str = "",
    ) -> StoredMessage:
        """将一条消息写入 messages 表（对话引擎的消息落库接口），返回带 id 与时间戳的 StoredMessage。"""
        msg = StoredMessage(
            id=str(uuid.uuid4()),
            group_id=group_id,
            persona_id=persona_id,
            persona_name=persona_name,
            content=content,
            message_type=MessageType(message_type).value,
            is_generated=is_generated,
            response_time_ms=response_time_ms,
            timestamp=datetime.now(),
        )
        await self._db.execute(
            "INSERT INTO messages (id, group_id, persona_id, persona_name, content, message_type, "
            "is_generated, response_time_ms, timestamp, seq) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, "
            "(SELECT COALESCE(MAX(seq), 0) + 1 FROM messages WHERE group_id = ?))",
            (
                msg.id, msg.group_id, msg.persona_id, msg.persona_name, msg.content,
                msg.message_type, int(msg.is_generated), msg.response_time_ms,
                msg.timestamp.isoformat(), group_id,
            ),
        )
        await self._db.commit()
        return msg

    async def get_messages(
        self, group_id: str, limit: int = 50, before: str | None = None
    ) -> list[StoredMessage]:
        """分页获取群组消息：支持 before 游标（timestamp）；结果按时间正序（从旧到新）。"""
        if before:
            cursor = await self._db.execute(
                "SELECT * FROM messages WHERE group_id = ? AND timestamp < ? "
                "ORDER BY seq DESC LIMIT ?",
                (group_id, before, limit),
            )
        else:
            cursor = await self._db.execute(
                "SELECT * FROM messages WHERE group_id = ? ORDER BY seq DESC LIMIT ?",
                (group_id, limit),
            )
        rows = await cursor.fetchall()
        messages = [_row_to_message(row) for row in rows]
        messages.reverse()  # 按时间正序返回，便于前端展示
        return messages

    async def get_recent_messages(self, group_id: str, limit: int = 20) -> list[ChatMessage]:
        """最近 limit 条消息，从旧到新，转为 protocol.ChatMessage 供上下文构建使用。"""
        stored = await self.get_messages(group_id, limit=limit)
        return [self.stored_to_protocol(m) for m in stored]

    async def count_messages(self, group_id: str) -> int:
        cursor = await self._db.execute(
            "SELECT COUNT(*) AS n FROM messages WHERE group_id = ?", (group_id,)
        )
        row = await cursor.fetchone()
        return row["n"]

    def stored_to_protocol(self, stored: StoredMessage) -> ChatMessage:
        """将 StoredMessage 转为 protocol.ChatMessage。"""
        return ChatMessage(
            id=stored.id,
            group_id=stored.group_id,
            persona_id=stored.persona_id,
            persona_name=stored.persona_name,
            content=stored.content,
            message_type=MessageType(stored.message_type),
            is_generated=stored.is_generated,
            response_time_ms=stored.response_time_ms,
            timestamp=stored.timestamp,
        )

    # ── 私有方法 ──

    async def _exists(self, table: str, column: str, value: str) -> bool:
        cursor = await self._db.execute(
            f"SELECT 1 FROM {table} WHERE {column} = ? LIMIT 1", (value,)
        )
        return await cursor.fetchone() is not None


def _row_to_persona(row: aiosqlite.Row) -> Persona:
    return Persona(
        id=row["id"],
        name=row["name"],
        personality_traits=row["personality_traits"],
        system_prompt=row["system_prompt"],
        speaking_style=row["speaking_style"],
        background=row["background"],
        avatar_url=row["avatar_url"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
    )


def _row_to_message(row: aiosqlite.Row) -> StoredMessage:
    return StoredMessage(
        id=row["id"],
        group_id=row["group_id"],
        persona_id=row["persona_id"],
        persona_name=row["persona_name"],
        content=row["content"],
        message_type=row["message_type"],
        is_generated=bool(row["is_generated"]),
        response_time_ms=row["response_time_ms"],
        timestamp=row["timestamp"],
    )
