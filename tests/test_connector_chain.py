"""ConnectorChain 测试：优先级、健康检查超时、生成失败不级联、兜底。"""

import asyncio
import time

from src.connectors.base import BaseConnector
from src.connectors.chain import ConnectorChain
from src.core.call_logger import CallLogger
from src.models.protocol import AIResponse


class FakeConnector(BaseConnector):
    """可配置的测试 Connector，记录调用顺序。"""

    def __init__(self, name, priority, healthy=True, content="hello", calls=None,
                 health_error=None, generate_error=None, hang_health=False, hang_generate=False):
        self.name = name
        self.priority = priority
        self.healthy = healthy
        self.content = content
        self.calls = calls if calls is not None else []
        self.health_error = health_error
        self.generate_error = generate_error
        self.hang_health = hang_health
        self.hang_generate = hang_generate

    async def health_check(self) -> bool:
        self.calls.append(("health", self.name))
        if self.hang_health:
            await asyncio.Event().wait()
        if self.health_error:
            raise self.health_error
        return self.healthy

    async def generate_response(self, context) -> AIResponse:
        self.calls.append(("generate", self.name))
        if self.hang_generate:
            await asyncio.Event().wait()
        if self.generate_error:
            raise self.generate_error
        return AIResponse(content=self.content, confidence=0.9, model_used=self.name)


async def test_sorted_by_priority(context):
    calls = []
    chain = ConnectorChain([
        FakeConnector("slow", 5, calls=calls),
        FakeConnector("fast", 1, calls=calls),
    ])
    assert [c.name for c in chain.connectors] == ["fast", "slow"]

    response = await chain.generate(context)
    assert response.model_used == "fast"
    assert calls == [("health", "fast"), ("generate", "fast")]


async def test_unhealthy_cascades_to_next(context):
    calls = []
    chain = ConnectorChain([
        FakeConnector("a", 1, healthy=False, calls=calls),
        FakeConnector("b", 2, health_error=RuntimeError("boom"), calls=calls),
        FakeConnector("c", 3, calls=calls),
    ])
    response = await chain.generate(context)
    assert response.model_used == "c"
    assert calls == [("health", "a"), ("health", "b"), ("health", "c"), ("generate", "c")]


async def test_all_unhealthy_uses_fallback(context):
    chain = ConnectorChain([
        FakeConnector("a", 1, healthy=False),
        FakeConnector("b", 2, healthy=False),
    ])
    for _ in range(5):
        response = await chain.generate(context)
        assert response.model_used == "fallback"
        assert response.confidence == 0.1


async def test_empty_chain_uses_fallback(context):
    response = await ConnectorChain([]).generate(context)
    assert response.model_used == "fallback"
    assert response.is_valid()


async def test_generate_failure_does_not_cascade(context):
    """已健康的 Connector 生成失败时直接兜底，不再尝试下一个。"""
    calls = []
    chain = ConnectorChain([
        FakeConnector("a", 1, generate_error=RuntimeError("500"), calls=calls),
        FakeConnector("b", 2, calls=calls),
    ])
    response = await chain.generate(context)
    assert response.model_used == "fallback"
    assert calls == [("health", "a"), ("generate", "a")]


async def test_health_check_timeout_is_bounded(context):
    chain = ConnectorChain(
        [FakeConnector("hang", 1, hang_health=True), FakeConnector("ok", 2)],
        health_check_timeout=0.05,
    )
    started = time.monotonic()
    response = await chain.generate(context)
    assert response.model_used == "ok"
    assert time.monotonic() - started < 1.0


async def test_generate_timeout_falls_back(context):
    chain = ConnectorChain(
        [FakeConnector("hang", 1, hang_generate=True)],
        generate_timeout=0.05,
    )
    started = time.monotonic()
    response = await chain.generate(context)
    assert response.model_used == "fallback"
    assert time.monotonic() - started < 1.0


async def test_blank_response_falls_back(context):
    chain = ConnectorChain([FakeConnector("blank", 1, content="   ")])
    response = await chain.generate(context)
    assert response.model_used == "fallback"


async def test_register_keeps_order(context):
    chain = ConnectorChain([FakeConnector("b", 2)])
    chain.register(FakeConnector("a", 1))
    assert [c.name for c in chain.connectors] == ["a", "b"]


async def test_call_logger_records_attempts(context, tmp_path):
    call_logger = CallLogger(log_dir=str(tmp_path))
    chain = ConnectorChain(
        [FakeConnector("a", 1, generate_error=RuntimeError("bad gateway"))],
        call_logger=call_logger,
    )
    await chain.generate(context)
    logs = call_logger.get_group_logs("g1")
    assert len(logs) == 1
    assert logs[0].connector == "a"
    assert logs[0].is_fallback is True
    assert "bad gateway" in logs[0].error
