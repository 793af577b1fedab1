"""会话相关数据模型：引擎配置、群组、持久化消息与对话状态快照。

与 protocol 的区别：这里侧重存储与 API 展示，含 group_id、persona_id 等外键信息。
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from src.models.persona import Persona


class EngineConfig(BaseModel):
    """对话引擎的行为配置：上下文窗口、后端超时与回合间隔范围。"""

    max_recent_messages: int = 20
    health_check_timeout: float = 5.0   # 单次健康检查上限（秒）
    generate_timeout: float = 30.0      # 单次生成上限（秒）
    min_delay_ms: int = 2000
    max_delay_ms: int = 8000


class Group(BaseModel):
    """群组：ID、名称、描述、创建时间与按加入顺序排列的成员人设。"""

    id: str = ""
    name: str = ""
    description: str = ""
    created_at: datetime = Field(default_factory=datetime.now)
    members: list[Persona] = Field(default_factory=list)


class StoredMessage(BaseModel):
    """持久化到 DB 的消息结构：比 protocol.ChatMessage 多了作者名等展示字段。"""

    id: str = ""
    group_id: str = ""
    persona_id: str = ""
    persona_name: str = ""
    content: str = ""
    message_type: str = "TEXT"
    is_generated: bool = False
    response_time_ms: int | None = None
    timestamp: datetime = Field(default_factory=datetime.now)


class ConversationStatus(BaseModel):
    """对话状态的只读快照，供状态查询接口使用。"""

    group_id: str
    active: bool
    turn_number: int = 0
    start_time: datetime | None = None
    last_message_time: datetime | None = None
    current_topic: str | None = None
    mood: str = "CASUAL"
