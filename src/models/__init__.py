"""统一导出人设、协议与会话相关数据模型，供其他模块引用。"""
from src.models.persona import Persona
from src.models.session import ConversationStatus, EngineConfig, Group, StoredMessage
from src.models.protocol import (
    AIResponse,
    ChatMessage,
    ConversationContext,
    ConversationMood,
    MessageType,
)

__all__ = [
    "Persona",
    "Group",
    "EngineConfig",
    "StoredMessage",
    "ConversationStatus",
    "AIResponse",
    "ChatMessage",
    "ConversationContext",
    "ConversationMood",
    "MessageType",
]
