"""对话氛围判定与回合节奏。

每回合结束后根据回复正文重新判定氛围；下一回合的等待时间在 [min, max] 毫秒内随机，
再按氛围缩放：兴奋时更快、辩论时最快、平静时更慢。
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod

from src.models.protocol import ConversationMood

# 按优先级排列，先命中者生效
MOOD_KEYWORDS: tuple[tuple[ConversationMood, tuple[str, ...]], ...] = (
    (ConversationMood.EXCITED, ("!", "excited", "amazing")),
    (ConversationMood.DEBATE, ("?", "debate", "argue")),
    (ConversationMood.PLANNING, ("plan", "trip", "organize")),
    (ConversationMood.GOSSIP, ("gossip", "rumor", "heard")),
)

MOOD_DELAY_MULTIPLIERS: dict[ConversationMood, float] = {
    ConversationMood.EXCITED: 0.5,
    ConversationMood.DEBATE: 0.33,
    ConversationMood.CALM: 2.0,
}


class MoodClassifier(ABC):
    """氛围分类器接口：可替换为更复杂的实现而不改动调度器。"""

    @abstractmethod
    def classify(self, text: str) -> ConversationMood:
        ...


class KeywordMoodClassifier(MoodClassifier):
    """大小写不敏感的子串匹配，按 MOOD_KEYWORDS 顺序首个命中生效，否则为 CASUAL。"""

    def classify(self, text: str) -> ConversationMood:
        lowered = (text or "").lower()
        for mood, keywords in MOOD_KEYWORDS:
            if any(k in lowered for k in keywords):
                return mood
        return ConversationMood.CASUAL


class TurnPacer:
    """计算下一回合前的等待时间（毫秒）。"""

    def __init__(
        self,
        min_delay_ms: int = 2000,
        max_delay_ms: int = 8000,
        rng: random.Random | None = None,
    ):
        if min_delay_ms > max_delay_ms:
            raise ValueError("min_delay_ms must not exceed max_delay_ms")
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms
        self._rng = rng or random.Random()

    def next_delay_ms(self, mood: ConversationMood) -> int:
        base = self._rng.uniform(self.min_delay_ms, self.max_delay_ms)
        return int(base * MOOD_DELAY_MULTIPLIERS.get(mood, 1.0))
