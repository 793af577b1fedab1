"""ConversationEngine 测试：启动/停止、轮流发言、落库失败、停止后不再调度。"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.connectors.base import BaseConnector
from src.connectors.chain import ConnectorChain
from src.core.context_builder import ContextBuilder
from src.core.conversation_engine import ConversationEngine
from src.core.errors import AlreadyActiveError, EmptyGroupError, PersistenceError
from src.core.scheduler import TaskScheduler
from src.core.session_manager import SessionManager
from src.models.persona import Persona
from src.models.protocol import AIResponse, ConversationMood
from src.models.session import EngineConfig, Group, StoredMessage


class StaticConnector(BaseConnector):
    """永远健康、永远返回同一句话的 Connector。"""

    name = "static"
    priority = 1

    def __init__(self, content="Great shot!", healthy=True):
        self.content = content
        self.healthy = healthy

    async def health_check(self) -> bool:
        return self.healthy

    async def generate_response(self, context) -> AIResponse:
        return AIResponse(content=self.content, confidence=0.9, model_used="static-model")


class RecordingScheduler:
    """只记录提交与定时请求，由测试手动驱动回合。"""

    def __init__(self):
        self.submitted = []
        self.timers = []

    def submit(self, fn):
        self.submitted.append(fn)
        return MagicMock()

    def after(self, delay_seconds, fn):
        handle = MagicMock()
        self.timers.append((delay_seconds, fn, handle))
        return handle

    async def shutdown(self):
        pass


@pytest.fixture
async def store(tmp_path):
    sm = SessionManager(db_path=str(tmp_path / "engine.db"))
    await sm.initialize()
    yield sm
    await sm.close()


async def make_group(store, names):
    group = await store.create_group(f"group-{'-'.join(names)}")
    for name in names:
        persona = await store.create_persona(Persona(name=name))
        await store.add_member(group.id, persona.id)
    return await store.get_group(group.id)


def make_engine(store, connectors=None, scheduler=None, ws_manager=None, config=None):
    config = config or EngineConfig()
    return ConversationEngine(
        session_manager=store,
        context_builder=ContextBuilder(store, config.max_recent_messages),
        connector_chain=ConnectorChain(connectors if connectors is not None else [StaticConnector()]),
        scheduler=scheduler or RecordingScheduler(),
        ws_manager=ws_manager,
        config=config,
    )


async def test_start_empty_group_raises(store):
    engine = make_engine(store)
    group = await store.create_group("empty")
    with pytest.raises(EmptyGroupError):
        await engine.start(group)
    assert engine.get_state(group.id) is None


async def test_start_twice_raises(store):
    engine = make_engine(store)
    group = await make_group(store, ["A"])
    await engine.start(group)
    with pytest.raises(AlreadyActiveError):
        await engine.start(group)


async def test_start_submits_first_turn_and_returns(store):
    scheduler = RecordingScheduler()
    ws_manager = AsyncMock()
    engine = make_engine(store, scheduler=scheduler, ws_manager=ws_manager)
    group = await make_group(store, ["A", "B"])

    status = await engine.start(group)

    assert status.active is True
    assert status.turn_number == 0
    assert status.mood == "CASUAL"
    assert len(scheduler.submitted) == 1
    assert await store.count_messages(group.id) == 0
    ws_manager.broadcast_status.assert_awaited_once_with(group.id, True)


async def test_scenario_three_turns(store):
    """两个人设、一个总是健康的 Connector：三回合后发言顺序为 P0, P1, P0。"""
    scheduler = RecordingScheduler()
    engine = make_engine(store, scheduler=scheduler)
    group = await make_group(store, ["P0", "P1"])
    await engine.start(group)

    await engine.process_turn(group.id)
    assert engine.get_state(group.id).mood == ConversationMood.EXCITED.value
    await engine.process_turn(group.id)
    await engine.process_turn(group.id)

    messages = await store.get_messages(group.id)
    assert [m.persona_name for m in messages] == ["P0", "P1", "P0"]
    assert all(m.is_generated for m in messages)
    assert all(m.content == "Great shot!" for m in messages)
    assert engine.get_state(group.id).turn_number == 3
    assert len(scheduler.timers) == 3


async def test_round_robin_independent_of_content(store):
    engine = make_engine(store, connectors=[StaticConnector(content="Really? Who said that?")])
    group = await make_group(store, ["A", "B", "C"])
    await engine.start(group)
    for _ in range(7):
        await engine.process_turn(group.id)

    messages = await store.get_messages(group.id)
    assert [m.persona_name for m in messages] == ["A", "B", "C", "A", "B", "C", "A"]
    assert engine.get_state(group.id).mood == ConversationMood.DEBATE.value


async def test_k_turns_persist_k_messages(store):
    engine = make_engine(store, connectors=[StaticConnector(healthy=False)])
    group = await make_group(store, ["A", "B", "C"])
    await engine.start(group)
    for _ in range(5):
        await engine.process_turn(group.id)

    messages = await store.get_messages(group.id)
    assert len(messages) == 5
    assert all(m.content.strip() for m in messages)


async def test_member_list_shrinks(store):
    engine = make_engine(store)
    group = await make_group(store, ["A", "B", "C"])
    await engine.start(group)
    await engine.process_turn(group.id)
    await engine.process_turn(group.id)

    # 对话进行中移除一名成员：按当前人数取模 (turn 2 % 2 == 0)
    await store.remove_member(group.id, group.members[2].id)
    await engine.process_turn(group.id)

    messages = await store.get_messages(group.id)
    assert [m.persona_name for m in messages] == ["A", "B", "A"]


async def test_all_members_removed_stops_conversation(store):
    engine = make_engine(store)
    group = await make_group(store, ["A"])
    await engine.start(group)
    await store.remove_member(group.id, group.members[0].id)

    await engine.process_turn(group.id)
    assert not engine.is_active(group.id)
    assert await store.count_messages(group.id) == 0


async def test_delay_follows_mood(store):
    scheduler = RecordingScheduler()
    engine = make_engine(store, scheduler=scheduler)
    engine.pacer = MagicMock()
    engine.pacer.next_delay_ms.return_value = 1500
    group = await make_group(store, ["A"])
    await engine.start(group)
    await engine.process_turn(group.id)

    engine.pacer.next_delay_ms.assert_called_once_with(ConversationMood.EXCITED)
    assert scheduler.timers[0][0] == 1.5


async def test_stop_is_idempotent(store):
    engine = make_engine(store)
    group = await make_group(store, ["A"])
    assert await engine.stop("unknown") is False

    await engine.start(group)
    assert await engine.stop(group.id) is True
    assert await engine.stop(group.id) is False
    assert not engine.is_active(group.id)
    assert engine.get_state(group.id) is None


async def test_stop_between_turns_prevents_next_turn(store):
    scheduler = RecordingScheduler()
    engine = make_engine(store, scheduler=scheduler)
    group = await make_group(store, ["A", "B"])
    await engine.start(group)
    await engine.process_turn(group.id)

    await engine.stop(group.id)
    _, next_turn, handle = scheduler.timers[0]
    handle.cancel.assert_called_once()

    # 即便定时器已触发，停止后的回合也是空操作
    await next_turn()
    assert await store.count_messages(group.id) == 1
    assert len(scheduler.timers) == 1


async def test_stop_during_inflight_turn_does_not_reschedule(store):
    scheduler = RecordingScheduler()
    release = asyncio.Event()

    class SlowConnector(StaticConnector):
        async def generate_response(self, context):
            await release.wait()
            return await super().generate_response(context)

    engine = make_engine(store, connectors=[SlowConnector()], scheduler=scheduler)
    group = await make_group(store, ["A"])
    await engine.start(group)

    turn = asyncio.create_task(engine.process_turn(group.id))
    await asyncio.sleep(0.01)
    await engine.stop(group.id)
    release.set()
    await turn

    assert scheduler.timers == []
    assert not engine.is_active(group.id)


async def test_restart_while_old_turn_inflight(store):
    """旧回合结束时发现注册表里已是新状态，不会替新状态重复调度。"""
    scheduler = RecordingScheduler()
    release = asyncio.Event()

    class SlowConnector(StaticConnector):
        async def generate_response(self, context):
            await release.wait()
            return await super().generate_response(context)

    engine = make_engine(store, connectors=[SlowConnector()], scheduler=scheduler)
    group = await make_group(store, ["A"])
    await engine.start(group)
    old_turn = asyncio.create_task(engine.process_turn(group.id))
    await asyncio.sleep(0.01)

    await engine.stop(group.id)
    await engine.start(group)
    release.set()
    await old_turn

    assert scheduler.timers == []
    assert engine.get_state(group.id).turn_number == 0


async def test_persistence_failure_stops_only_that_group(personas):
    store = AsyncMock()
    store.list_personas.return_value = personas
    store.get_recent_messages.return_value = []

    async def save_message(group_id, **kwargs):
        if group_id == "bad":
            raise ConnectionError("db down")
        return StoredMessage(id="m1", group_id=group_id, content=kwargs["content"])

    store.save_message.side_effect = save_message
    scheduler = RecordingScheduler()
    engine = ConversationEngine(
        session_manager=store,
        context_builder=ContextBuilder(store),
        connector_chain=ConnectorChain([StaticConnector()]),
        scheduler=scheduler,
    )
    await engine.start(Group(id="bad", members=personas))
    await engine.start(Group(id="good", members=personas))

    with pytest.raises(PersistenceError):
        await engine.process_turn("bad")
    assert not engine.is_active("bad")
    assert engine.get_state("bad") is None

    await engine.process_turn("good")
    assert engine.is_active("good")
    assert len(scheduler.timers) == 1


async def test_turn_task_swallows_persistence_failure(personas):
    store = AsyncMock()
    store.list_personas.return_value = personas
    store.get_recent_messages.return_value = []
    store.save_message.side_effect = ConnectionError("db down")
    scheduler = RecordingScheduler()
    engine = ConversationEngine(
        session_manager=store,
        context_builder=ContextBuilder(store),
        connector_chain=ConnectorChain([]),
        scheduler=scheduler,
    )
    await engine.start(Group(id="g1", members=personas))

    await scheduler.submitted[0]()
    assert not engine.is_active("g1")
    assert scheduler.timers == []


async def test_notification_errors_do_not_break_turn(store):
    ws_manager = AsyncMock()
    ws_manager.broadcast_message.side_effect = RuntimeError("socket closed")
    ws_manager.broadcast_status.side_effect = RuntimeError("socket closed")
    scheduler = RecordingScheduler()
    engine = make_engine(store, scheduler=scheduler, ws_manager=ws_manager)
    group = await make_group(store, ["A"])

    await engine.start(group)
    await engine.process_turn(group.id)

    assert await store.count_messages(group.id) == 1
    assert len(scheduler.timers) == 1
    payload = ws_manager.broadcast_message.await_args.args[1]
    assert payload["persona_name"] == "A"
    assert payload["content"] == "Great shot!"


async def test_live_loop_with_real_scheduler(store):
    """真实调度器 + 极短延迟：对话自动推进，停止后消息数不再增长。"""
    config = EngineConfig(min_delay_ms=1, max_delay_ms=5)
    engine = make_engine(store, scheduler=TaskScheduler(), config=config)
    group = await make_group(store, ["A", "B"])
    await engine.start(group)

    for _ in range(200):
        if await store.count_messages(group.id) >= 3:
            break
        await asyncio.sleep(0.01)
    await engine.stop(group.id)
    await asyncio.sleep(0.05)
    count = await store.count_messages(group.id)
    assert count >= 3

    await asyncio.sleep(0.1)
    assert await store.count_messages(group.id) == count
    await engine.shutdown()


async def test_groups_run_independently(store):
    config = EngineConfig(min_delay_ms=1, max_delay_ms=5)
    engine = make_engine(store, scheduler=TaskScheduler(), config=config)
    first = await make_group(store, ["A", "B"])
    second = await make_group(store, ["C"])
    await engine.start(first)
    await engine.start(second)

    for _ in range(200):
        if (await store.count_messages(first.id) >= 2
                and await store.count_messages(second.id) >= 2):
            break
        await asyncio.sleep(0.01)
    await engine.stop(first.id)
    assert engine.is_active(second.id)
    assert await store.count_messages(second.id) >= 2
    await engine.shutdown()
    assert engine.active_groups() == []


async def test_restart_before_first_turn_runs_single_chain(store):
    """start → stop → start 连续调用：旧的首回合任务不会在新状态上再跑一条回合链。"""
    config = EngineConfig(min_delay_ms=500, max_delay_ms=500)
    scheduler = TaskScheduler()
    engine = make_engine(
        store, connectors=[StaticConnector(content="nice one")], scheduler=scheduler, config=config,
    )
    group = await make_group(store, ["A", "B"])

    await engine.start(group)
    await engine.stop(group.id)
    await engine.start(group)
    await asyncio.sleep(0.15)

    messages = await store.get_messages(group.id)
    assert [m.persona_name for m in messages] == ["A"]
    assert engine.get_state(group.id).turn_number == 1
    assert scheduler.pending == 1
    await engine.shutdown()


async def test_fired_timer_from_stopped_state_is_ignored_after_restart(store):
    """旧状态已触发的定时回合在重启后执行时是空操作，不会推进新状态。"""
    scheduler = RecordingScheduler()
    engine = make_engine(store, scheduler=scheduler)
    group = await make_group(store, ["A", "B"])
    await engine.start(group)
    await engine.process_turn(group.id)
    _, old_turn, _ = scheduler.timers[0]

    await engine.stop(group.id)
    await engine.start(group)
    await old_turn()

    assert await store.count_messages(group.id) == 1
    assert engine.get_state(group.id).turn_number == 0
    assert len(scheduler.timers) == 1
