"""引擎与生成后端之间的交互协议：消息类型、对话氛围、上下文快照与 AI 回复。

ConversationContext 每回合新建、构建后不再修改；AIResponse 是 Connector 链的唯一产物。
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.models.persona import Persona
from src.models.session import Group


class MessageType(str, Enum):
    """消息内容类型。"""

    TEXT = "TEXT"
    IMAGE = "IMAGE"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"
    DOCUMENT = "DOCUMENT"
    EMOJI = "EMOJI"
    SYSTEM = "SYSTEM"


class ConversationMood(str, Enum):
    """对话氛围：影响回合节奏的粗粒度标签。"""

    CASUAL = "CASUAL"
    FORMAL = "FORMAL"
    HUMOROUS = "HUMOROUS"
    SERIOUS = "SERIOUS"
    EXCITED = "EXCITED"
    CALM = "CALM"
    DEBATE = "DEBATE"
    GOSSIP = "GOSSIP"
    PLANNING = "PLANNING"


class ChatMessage(BaseModel):
    """最近消息窗口中的一条消息，供后端理解对话上下文。"""

    id: str = ""
    group_id: str = ""
    persona_id: str = ""
    persona_name: str = ""
    content: str = ""
    message_type: MessageType = MessageType.TEXT
    is_generated: bool = False
    response_time_ms: int | None = None
    timestamp: datetime = Field(default_factory=datetime.now)


class ConversationContext(BaseModel):
    """单回合的上下文快照：群组、当前发言人、最近消息、全部成员、氛围与附加信息。

    additional_context 原样转发给后端，引擎本身不解读其中内容。
    """

    model_config = ConfigDict(frozen=True)

    group: Group
    current_persona: Persona
    recent_messages: tuple[ChatMessage, ...] = ()
    active_personas: tuple[Persona, ...] = ()
    conversation_start_time: datetime
    current_topic: str | None = None
    mood: ConversationMood = ConversationMood.CASUAL
    additional_context: dict[str, Any] = Field(default_factory=dict)

    def to_request_payload(self) -> dict[str, Any]:
        """转换为后端 generate-response 接口的 JSON 请求体。"""
        return {
            "group": {
                "id": self.group.id,
                "name": self.group.name,
                "description": self.group.description,
                "is_active": True,
                "created_at": self.group.created_at.isoformat(),
            },
            "current_character": _persona_payload(self.current_persona),
            "recent_messages": [
                {
                    "id": m.id,
                    "group_id": m.group_id,
                    "character_id": m.persona_id,
                    "content": m.content,
                    "message_type": m.message_type.value,
                    "is_ai_generated": m.is_generated,
                    "response_time_ms": m.response_time_ms,
                    "timestamp": m.timestamp.isoformat(),
                }
                for m in self.recent_messages
            ],
            "active_characters": [_persona_payload(p) for p in self.active_personas],
            "additional_context": dict(self.additional_context),
            "conversation_start_time": self.conversation_start_time.isoformat(),
            "current_topic": self.current_topic,
            "mood": self.mood.value,
        }


class AIResponse(BaseModel):
    """一次生成的结果：正文、类型、置信度、模型、耗时等；正文去空白后非空才算有效。"""

    content: str = ""
    message_type: MessageType = MessageType.TEXT
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    model_used: str = ""
    response_time_ms: int = 0
    generated_at: datetime = Field(default_factory=datetime.now)
    is_interruption: bool = False
    reasoning: str | None = None

    def is_valid(self) -> bool:
        return bool(self.content and self.content.strip())

    def truncated(self, max_length: int = 50) -> str:
        """截断正文用于日志输出。"""
        if len(self.content) <= max_length:
            return self.content
        return self.content[:max_length] + "…"


def _persona_payload(persona: Persona) -> dict[str, Any]:
    return {
        "id": persona.id,
        "name": persona.name,
        "personality_traits": persona.personality_traits,
        "system_prompt": persona.system_prompt,
        "avatar_url": persona.avatar_url,
        "speaking_style": persona.speaking_style,
        "background": persona.background,
        "is_active": persona.is_active,
        "created_at": persona.created_at.isoformat(),
    }
