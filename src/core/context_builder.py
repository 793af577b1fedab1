"""上下文构建器：为每回合的发言人设组装 ConversationContext。

职责：从 SessionManager 取最近消息（最多 max_recent_messages 条，从旧到新），
结合本回合开始时读到的成员列表与对话状态，拼成一次生成调用所需的完整快照。
additional_context 中的回合数、人数、已进行分钟数只透传给后端，引擎不解读。
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from src.models.protocol import ConversationContext

if TYPE_CHECKING:
    from src.core.conversation_engine import ConversationState
    from src.core.session_manager import SessionManager
    from src.models.persona import Persona
    from src.models.session import Group

logger = logging.getLogger(__name__)


class ContextBuilder:
    """为每回合组装不可变的 ConversationContext，控制后端「能看到什么」。"""

    def __init__(self, session_manager: SessionManager, max_recent_messages: int = 20):
        self.session_manager = session_manager
        self.max_recent_messages = max_recent_messages

    async def build_context(
        self,
        group: Group,
        persona: Persona,
        state: ConversationState,
        members: list[Persona],
    ) -> ConversationContext:
        """组装上下文快照。

        Args:
            members: 本回合开始时读取的成员列表（只读一次），作为 active_personas。
        """
        recent = await self.session_manager.get_recent_messages(
            group.id, limit=self.max_recent_messages
        )
        elapsed_minutes = int((datetime.now() - state.start_time).total_seconds() // 60)
        context = ConversationContext(
            group=group,
            current_persona=persona,
            recent_messages=tuple(recent[-self.max_recent_messages:]),
            active_personas=tuple(members),
            conversation_start_time=state.start_time,
            current_topic=state.current_topic,
            mood=state.mood,
            additional_context={
                "turn_number": state.turn_number,
                "participant_count": len(members),
                "elapsed_minutes": elapsed_minutes,
            },
        )
        logger.info(
            "[TURN] context built: group_id=%s persona=%s recent_messages=%d members=%d mood=%s",
            group.id, persona.name, len(context.recent_messages),
            len(context.active_personas), context.mood.value,
        )
        return context
