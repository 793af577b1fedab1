"""对话引擎：群聊多人设对话的注册表与回合调度器，是唯一对外暴露的组件。

每个群一条独立的任务链：
  start() → 提交第一回合 → process_turn()：
      选发言人 → 构建上下文 → Connector 链生成 → 落库 → 更新回合数/氛围 → 广播
      → 若仍在注册表中且处于活跃状态，按氛围计算延迟后提交下一回合

同一群组内，下一回合一定在上一回合落库与氛围更新完成之后才开始；不同群组互不影响。
注册表（group_id → ConversationState）是唯一跨回合共享的可变资源。所有读改写都发生在
事件循环线程上，且「检查仍活跃 → 安排下一回合」之间没有 await，因此 stop() 不会被
正在进行的回合「复活」。
每个回合任务绑定安排它的那个 ConversationState，重启后旧任务执行时只是空操作。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from src.core.errors import AlreadyActiveError, EmptyGroupError, PersistenceError
from src.core.mood import KeywordMoodClassifier, MoodClassifier, TurnPacer
from src.models.protocol import ConversationMood
from src.models.session import ConversationStatus, EngineConfig

if TYPE_CHECKING:
    from src.api.websocket import WebSocketManager
    from src.connectors.chain import ConnectorChain
    from src.core.context_builder import ContextBuilder
    from src.core.scheduler import TaskScheduler
    from src.core.session_manager import SessionManager
    from src.models.persona import Persona
    from src.models.protocol import AIResponse
    from src.models.session import Group

logger = logging.getLogger(__name__)


@dataclass
class ConversationState:
    """单个群组的对话状态：只由该群的回合任务修改，读取方通过 snapshot() 拿到不可变副本。"""

    group: Group
    start_time: datetime = field(default_factory=datetime.now)
    turn_number: int = 0
    active: bool = True
    last_message_time: datetime | None = None
    current_topic: str | None = None
    mood: ConversationMood = ConversationMood.CASUAL
    pending_timer: asyncio.TimerHandle | None = None

    def __post_init__(self):
        if self.last_message_time is None:
            self.last_message_time = self.start_time

    @property
    def group_id(self) -> str:
        return self.group.id

    def snapshot(self) -> ConversationStatus:
        return ConversationStatus(
            group_id=self.group_id,
            active=self.active,
            turn_number=self.turn_number,
            start_time=self.start_time,
            last_message_time=self.last_message_time,
            current_topic=self.current_topic,
            mood=self.mood.value,
        )


class ConversationEngine:
    """对话注册表与回合调度器：start / stop / 状态查询，以及驱动每个群的回合循环。"""

    def __init__(
        self,
        session_manager: SessionManager,
        context_builder: ContextBuilder,
        connector_chain: ConnectorChain,
        scheduler: TaskScheduler,
        ws_manager: WebSocketManager | None = None,
        config: EngineConfig | None = None,
        mood_classifier: MoodClassifier | None = None,
        pacer: TurnPacer | None = None,
    ):
        self.session_manager = session_manager
        self.context_builder = context_builder
        self.connector_chain = connector_chain
        self.scheduler = scheduler
        self.ws_manager = ws_manager
        self.config = config or EngineConfig()
        self.mood_classifier = mood_classifier or KeywordMoodClassifier()
        self.pacer = pacer or TurnPacer(self.config.min_delay_ms, self.config.max_delay_ms)
        self._states: dict[str, ConversationState] = {}

    # ── 对外接口 ──

    async def start(self, group: Group) -> ConversationStatus:
        """注册对话状态并异步触发第一回合，不等待其完成。

        Raises:
            EmptyGroupError: 群组没有任何人设。
            AlreadyActiveError: 该群组已有进行中的对话。
        """
        logger.info("[ENGINE] start: group_id=%s name=%s members=%d", group.id, group.name, len(group.members))
        if not group.members:
            raise EmptyGroupError(group.id)
        if group.id in self._states:
            raise AlreadyActiveError(group.id)

        state = ConversationState(group=group)
        self._states[group.id] = state
        self.scheduler.submit(lambda: self._run_turn(state))
        await self._notify_status(group.id, True)
        return state.snapshot()

    async def stop(self, group_id: str) -> bool:
        """移除并停用对话状态，取消尚未触发的下一回合；重复调用或不存在时为空操作。

        进行中的后端调用不会被强制取消，其结束后回合循环会发现状态已不存在而不再调度。
        Returns:
            是否真的停止了一个进行中的对话。
        """
        state = self._states.pop(group_id, None)
        if state is None:
            logger.debug("[ENGINE] stop: no active conversation for group_id=%s", group_id)
            return False
        state.active = False
        if state.pending_timer is not None:
            state.pending_timer.cancel()
            state.pending_timer = None
        logger.info("[ENGINE] stopped conversation: group_id=%s after %d turns", group_id, state.turn_number)
        await self._notify_status(group_id, False)
        return True

    def is_active(self, group_id: str) -> bool:
        state = self._states.get(group_id)
        return state is not None and state.active

    def get_state(self, group_id: str) -> ConversationStatus | None:
        """返回状态快照；未在进行中则返回 None。"""
        state = self._states.get(group_id)
        return state.snapshot() if state else None

    def active_groups(self) -> list[str]:
        return list(self._states)

    async def shutdown(self) -> None:
        """停止所有对话并关闭调度器。应用关闭时调用。"""
        for group_id in list(self._states):
            await self.stop(group_id)
        await self.scheduler.shutdown()

    # ── 回合处理 ──

    async def process_turn(self, group_id: str) -> None:
        """对当前注册的状态执行一个回合；状态不存在或已停用时直接返回。

        Raises:
            PersistenceError: 消息落库失败（调用前状态已被移除）。
        """
        state = self._states.get(group_id)
        if state is None:
            logger.debug("[TURN] No active conversation for group_id=%s, skipping", group_id)
            return
        await self._process_state(state)

    def _is_current(self, state: ConversationState) -> bool:
        """state 仍是注册表中该群的同一个活跃状态。"""
        return self._states.get(state.group_id) is state and state.active

    async def _process_state(self, state: ConversationState) -> None:
        if not self._is_current(state):
            logger.debug("[TURN] Conversation %s no longer current, skipping turn", state.group_id)
            return
        group_id = state.group_id

        members = await self.session_manager.list_personas(group_id)
        if not members:
            logger.warning("[TURN] Group %s has no members left, stopping conversation", group_id)
            await self._drop(state)
            return

        # 成员可能在对话期间变化，始终按当前人数取模
        persona = members[state.turn_number % len(members)]
        logger.info(
            "[TURN] group_id=%s turn=%d speaker=%s (%d members)",
            group_id, state.turn_number, persona.name, len(members),
        )

        group = state.group.model_copy(update={"members": members})
        context = await self.context_builder.build_context(group, persona, state, members)
        response = await self.connector_chain.generate(context)

        try:
            stored = await self.session_manager.save_message(
                group_id=group_id,
                persona_id=persona.id,
                content=response.content,
                message_type=response.message_type,
                is_generated=True,
                response_time_ms=response.response_time_ms,
                persona_name=persona.name,
            )
        except Exception as e:
            logger.error("[TURN] Failed to persist message for group_id=%s: %s", group_id, e, exc_info=True)
            await self._drop(state)
            raise PersistenceError(f"failed to persist message for group {group_id}") from e

        state.turn_number += 1
        state.last_message_time = stored.timestamp
        state.mood = self.mood_classifier.classify(response.content)
        logger.info(
            "[TURN] saved message_id=%s group_id=%s speaker=%s mood=%s content=%s",
            stored.id, group_id, persona.name, state.mood.value, response.truncated(50),
        )

        await self._notify_message(group_id, persona, response, stored.id, stored.timestamp)
        self._schedule_next(state)

    def _schedule_next(self, state: ConversationState) -> None:
        """仍是注册表中的同一个活跃状态时，按氛围延迟后安排下一回合。"""
        if not self._is_current(state):
            logger.info("[TURN] Conversation %s no longer active, not rescheduling", state.group_id)
            return
        delay_ms = self.pacer.next_delay_ms(state.mood)
        logger.info(
            "[TURN] Scheduling next turn for group %s in %dms (turn number: %d, mood: %s)",
            state.group_id, delay_ms, state.turn_number, state.mood.value,
        )
        state.pending_timer = self.scheduler.after(delay_ms / 1000, lambda: self._run_turn(state))

    async def _run_turn(self, state: ConversationState) -> None:
        """调度器入口：只处理安排它的那个状态；任何异常都在这里记录并终止该群的循环。"""
        state.pending_timer = None
        try:
            await self._process_state(state)
        except PersistenceError:
            logger.error("[TURN] Conversation %s terminated after persistence failure", state.group_id)
        except Exception as e:
            logger.error(
                "[TURN] Unexpected error in turn for group_id=%s: %s", state.group_id, e, exc_info=True,
            )
            await self._drop(state)

    async def _drop(self, state: ConversationState) -> None:
        """异常终止：仅当注册表中仍是这个状态时移除并广播。"""
        state.active = False
        if self._states.get(state.group_id) is state:
            del self._states[state.group_id]
            await self._notify_status(state.group_id, False)

    # ── 通知（失败只记录日志，不影响回合） ──

    async def _notify_message(
        self,
        group_id: str,
        persona: Persona,
        response: AIResponse,
        message_id: str,
        timestamp: datetime,
    ) -> None:
        if not self.ws_manager:
            return
        try:
            await self.ws_manager.broadcast_message(group_id, {
                "type": "persona_message",
                "message_id": message_id,
                "persona_id": persona.id,
                "persona_name": persona.name,
                "content": response.content,
                "message_type": response.message_type.value,
                "model_used": response.model_used,
                "confidence": response.confidence,
                "response_time_ms": response.response_time_ms,
                "timestamp": timestamp,
            })
        except Exception as e:
            logger.warning("[NOTIFY] broadcast_message failed for group_id=%s: %s", group_id, e)

    async def _notify_status(self, group_id: str, active: bool) -> None:
        if not self.ws_manager:
            return
        try:
            await self.ws_manager.broadcast_status(group_id, active)
        except Exception as e:
            logger.warning("[NOTIFY] broadcast_status failed for group_id=%s: %s", group_id, e)
