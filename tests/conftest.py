"""测试共用的人设、群组与上下文构造函数。"""

from datetime import datetime

import pytest

from src.models.persona import Persona
from src.models.protocol import ConversationContext
from src.models.session import Group


def make_persona(idx: int) -> Persona:
    return Persona(id=f"p{idx}", name=f"P{idx}", personality_traits="curious", speaking_style="casual")


@pytest.fixture
def personas():
    return [make_persona(0), make_persona(1)]


@pytest.fixture
def context(personas):
    group = Group(id="g1", name="Cricket Fans", members=personas)
    return ConversationContext(
        group=group,
        current_persona=personas[0],
        active_personas=tuple(personas),
        conversation_start_time=datetime(2024, 1, 1, 12, 0),
        additional_context={"turn_number": 0, "participant_count": 2, "elapsed_minutes": 0},
    )
