"""Connector 链：按优先级依次健康检查，选第一个健康的后端生成回复，任何失败都降级为兜底回复。

  - 健康检查失败（异常 / 超时 / 返回 False）→ 尝试下一个 Connector
  - 生成失败（异常 / 超时 / 空回复）→ 直接兜底，不再尝试下一个 Connector
  - 没有 Connector 或全部不健康 → 兜底

单回合最坏耗时 = 所有健康检查窗口 + 一个生成窗口；generate() 永远不抛异常。
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from src.connectors.base import BaseConnector
from src.core.fallback import FallbackGenerator
from src.models.protocol import AIResponse, ConversationContext

if TYPE_CHECKING:
    from src.core.call_logger import CallLogger

logger = logging.getLogger(__name__)


class ConnectorChain:
    """按 priority 升序持有 Connector，保证每次调用都返回有效的 AIResponse。"""

    def __init__(
        self,
        connectors: list[BaseConnector] | None = None,
        fallback: FallbackGenerator | None = None,
        health_check_timeout: float = 5.0,
        generate_timeout: float = 30.0,
        call_logger: CallLogger | None = None,
    ):
        self.connectors: list[BaseConnector] = sorted(connectors or [], key=lambda c: c.priority)
        self.fallback = fallback or FallbackGenerator()
        self.health_check_timeout = health_check_timeout
        self.generate_timeout = generate_timeout
        self.call_logger = call_logger
        if not self.connectors:
            logger.warning("[CHAIN] No connectors registered; every turn will use fallback responses")
        else:
            logger.info(
                "[CHAIN] Initialized with connectors: %s",
                [f"{c.name}({c.priority})" for c in self.connectors],
            )

    def register(self, connector: BaseConnector) -> None:
        """加入一个 Connector 并保持优先级顺序。"""
        self.connectors.append(connector)
        self.connectors.sort(key=lambda c: c.priority)
        logger.info("[CHAIN] Registered connector %s (priority=%s)", connector.name, connector.priority)

    async def generate(self, context: ConversationContext) -> AIResponse:
        """为 context 生成回复；永远返回有效回复，不抛异常。"""
        for connector in self.connectors:
            if not await self._is_healthy(connector):
                continue
            logger.info("[CHAIN] Using healthy connector: %s", connector.name)
            return await self._generate_with(connector, context)

        logger.warning("[CHAIN] No healthy connectors available, using fallback response")
        response = self.fallback.create()
        self._log_call(context, None, response, error="no healthy connector")
        return response

    async def _is_healthy(self, connector: BaseConnector) -> bool:
        try:
            healthy = await asyncio.wait_for(connector.health_check(), timeout=self.health_check_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "[CHAIN] Connector %s health check timed out after %.1fs",
                connector.name, self.health_check_timeout,
            )
            return False
        except Exception as e:
            logger.warning("[CHAIN] Connector %s health check failed: %s", connector.name, e)
            return False
        if not healthy:
            logger.warning("[CHAIN] Connector %s is not healthy", connector.name)
        return bool(healthy)

    async def _generate_with(self, connector: BaseConnector, context: ConversationContext) -> AIResponse:
        try:
            response = await asyncio.wait_for(
                connector.generate_response(context), timeout=self.generate_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "[CHAIN] Connector %s generate timed out after %.1fs",
                connector.name, self.generate_timeout,
            )
            response = self.fallback.create()
            self._log_call(context, connector, response, error="generate timeout")
            return response
        except Exception as e:
            logger.error("[CHAIN] Error generating response from connector %s: %s", connector.name, e)
            response = self.fallback.create()
            self._log_call(context, connector, response, error=str(e))
            return response

        if response is None or not response.is_valid():
            logger.warning("[CHAIN] Connector %s returned an empty response", connector.name)
            response = self.fallback.create()
            self._log_call(context, connector, response, error="empty response")
            return response

        self._log_call(context, connector, response)
        return response

    def _log_call(
        self,
        context: ConversationContext,
        connector: BaseConnector | None,
        response: AIResponse,
        error: str = "",
    ) -> None:
        if not self.call_logger:
            return
        from src.core.call_logger import CallLog
        self.call_logger.save(CallLog(
            group_id=context.group.id,
            turn_number=int(context.additional_context.get("turn_number", 0)),
            persona_id=context.current_persona.id,
            persona_name=context.current_persona.name,
            connector=connector.name if connector else "",
            model_used=response.model_used,
            content_preview=response.content,
            duration_ms=response.response_time_ms,
            confidence=response.confidence,
            is_fallback=response.model_used == "fallback",
            error=error,
        ))
