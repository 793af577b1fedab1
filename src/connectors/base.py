"""BaseConnector：所有生成后端 Connector 的抽象基类。"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.models.protocol import AIResponse, ConversationContext


class BaseConnector(ABC):
    """所有生成后端 Connector 的基类。

    每个 Connector 负责：
    1. 报告后端当前是否可用（health_check）
    2. 把 ConversationContext 发给后端，并把结果解析为 AIResponse

    priority 越小越先尝试；新增后端只需实现本接口并注册，无需改动 Connector 链。
    """

    name: str = "connector"
    priority: int = 100

    @abstractmethod
    async def health_check(self) -> bool:
        """检查后端是否可用。"""
        ...

    @abstractmethod
    async def generate_response(self, context: ConversationContext) -> AIResponse:
        """为当前发言人生成一条回复；失败时抛出异常。"""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, priority={self.priority})"
