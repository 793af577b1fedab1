"""HTTP Connector：通过 REST 接口调用外部 AI 生成服务。

  GET  {base_url}/health                        → 正文为 "ok" 或 {"status": "healthy"} 视为健康
  POST {base_url}/api/v1/ai/generate-response   → 请求体为 ConversationContext.to_request_payload()

超时由 Connector 链统一控制，这里的 httpx 超时只是兜底。
"""

from __future__ import annotations

import json
import logging
import time

import httpx
from pydantic import ValidationError

from src.connectors.base import BaseConnector
from src.core.errors import ConnectorError
from src.models.protocol import AIResponse, ConversationContext

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"
GENERATE_PATH = "/api/v1/ai/generate-response"


class HttpAIConnector(BaseConnector):
    """调用远端 AI 服务的 Connector。

    transport 仅用于测试时注入 httpx.MockTransport。
    """

    def __init__(
        self,
        base_url: str,
        name: str = "http",
        priority: int = 1,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.name = name
        self.priority = priority
        self.timeout = timeout
        self.transport = transport
        logger.info("[HTTP] Connector %s -> %s (priority=%s)", name, self.base_url, priority)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=self.timeout)

    async def health_check(self) -> bool:
        """请求 /health；非 200 或正文不符合约定都视为不健康。"""
        async with self._client() as client:
            response = await client.get(
                f"{self.base_url}{HEALTH_PATH}",
                headers={"Accept": "application/json"},
            )
        if response.status_code != 200:
            logger.warning("[HTTP] %s health returned status %s", self.name, response.status_code)
            return False
        return self._is_healthy_body(response.text)

    @staticmethod
    def _is_healthy_body(body: str) -> bool:
        text = (body or "").strip()
        if text.strip('"').lower() == "ok":
            return True
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return False
        return isinstance(data, dict) and str(data.get("status", "")).lower() == "healthy"

    async def generate_response(self, context: ConversationContext) -> AIResponse:
        """POST 上下文到生成接口；非 200、网络错误或报文异常统一抛 ConnectorError。"""
        url = f"{self.base_url}{GENERATE_PATH}"
        payload = context.to_request_payload()
        logger.info(
            "[HTTP] %s generate: url=%s persona=%s recent_messages=%d",
            self.name, url, context.current_persona.name, len(payload["recent_messages"]),
        )
        started = time.monotonic()
        try:
            async with self._client() as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise ConnectorError(f"{self.name}: request failed: {e}") from e

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if response.status_code != 200:
            raise ConnectorError(f"{self.name}: backend returned status {response.status_code}")

        try:
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError("response body is not an object")
            if data.get("message_type"):
                data["message_type"] = str(data["message_type"]).upper()
            ai_response = AIResponse.model_validate(
                {k: v for k, v in data.items() if v is not None}
            )
        except (ValueError, ValidationError) as e:
            raise ConnectorError(f"{self.name}: malformed response: {e}") from e

        if not ai_response.response_time_ms:
            ai_response.response_time_ms = elapsed_ms
        logger.info(
            "[HTTP] %s parsed response: model=%s latency=%sms content=%s",
            self.name, ai_response.model_used, ai_response.response_time_ms,
            ai_response.truncated(),
        )
        return ai_response
