"""兜底回复：没有可用后端时，从固定短语中随机挑一句，保证每回合都有可展示的消息。"""

from __future__ import annotations

import logging
import random

from src.models.protocol import AIResponse, MessageType

logger = logging.getLogger(__name__)

FALLBACK_MESSAGES = (
    "Hmm, let me think about that...",
    "That's an interesting point! Let me process this...",
    "I'm having a bit of trouble connecting to my thoughts right now, but I'm still here!",
    "Give me a moment to gather my thoughts...",
    "I'm processing this conversation, but my AI brain seems to be taking a coffee break!",
    "Let me think about this more carefully...",
    "I'm here, just need a moment to think through this properly.",
)

FALLBACK_MODEL = "fallback"
FALLBACK_CONFIDENCE = 0.1


class FallbackGenerator:
    """生成固定格式的兜底 AIResponse：confidence=0.1、model_used="fallback"、耗时 0。"""

    def __init__(self, rng: random.Random | None = None, messages: tuple[str, ...] = FALLBACK_MESSAGES):
        self._rng = rng or random.Random()
        self.messages = messages

    def create(self) -> AIResponse:
        content = self._rng.choice(self.messages)
        logger.info("[FALLBACK] Created fallback response: %s", content)
        return AIResponse(
            content=content,
            message_type=MessageType.TEXT,
            confidence=FALLBACK_CONFIDENCE,
            model_used=FALLBACK_MODEL,
            response_time_ms=0,
        )
