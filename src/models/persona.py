"""人设模型：群聊中可以「发言」的模拟角色。

只描述角色本身（名字、性格、说话风格、背景），不包含任何运行时状态。
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class Persona(BaseModel):
    """模拟角色：名称、性格特征、系统提示、说话风格与背景故事。"""

    id: str = ""
    name: str
    personality_traits: str = ""
    system_prompt: str = ""
    speaking_style: str = ""
    background: str = ""
    avatar_url: str = ""
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.now)
