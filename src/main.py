"""Persona Chat：FastAPI 入口。

本模块负责：
- 应用启动与生命周期（lifespan）
- 各核心组件的初始化与注入
- 注册路由、中间件与 WebSocket 端点
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from src.api.routes_group import router as group_router
from src.api.routes_message import router as message_router
from src.api.routes_persona import router as persona_router
from src.api.websocket import WebSocketManager
from src.connectors.chain import ConnectorChain
from src.core.call_logger import CallLogger
from src.core.context_builder import ContextBuilder
from src.core.conversation_engine import ConversationEngine
from src.core.scheduler import TaskScheduler
from src.core.session_manager import SessionManager
from src.models.session import EngineConfig
from src.registry.connector_registry import ConnectorRegistry

# 配置根日志格式，便于排查问题
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


@dataclass
class AppState:
    """全局应用状态，持有所有核心组件的引用。

    供各路由模块通过 main.app_state 访问，避免循环依赖。
    """

    session_manager: SessionManager
    connector_registry: ConnectorRegistry
    ws_manager: WebSocketManager
    call_logger: CallLogger
    engine: ConversationEngine


# 全局状态（供路由模块导入使用）
app_state: AppState = None  # type: ignore


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理：启动时初始化所有组件，关闭时停止所有对话并释放资源。"""
    global app_state

    logger.info("Starting Persona Chat...")
    config = EngineConfig()

    # 初始化数据层：人设、群组、消息的持久化
    Path("data").mkdir(exist_ok=True)
    session_manager = SessionManager(db_path="data/persona_chat.db")
    await session_manager.initialize()

    # 加载生成后端配置并按优先级组装 Connector 链
    connector_registry = ConnectorRegistry(config_dir="connectors/")
    call_logger = CallLogger(log_dir="data/logs")
    connector_chain = ConnectorChain(
        connectors=connector_registry.build_connectors(),
        health_check_timeout=config.health_check_timeout,
        generate_timeout=config.generate_timeout,
        call_logger=call_logger,
    )

    ws_manager = WebSocketManager()
    engine = ConversationEngine(
        session_manager=session_manager,
        context_builder=ContextBuilder(session_manager, config.max_recent_messages),
        connector_chain=connector_chain,
        scheduler=TaskScheduler(),
        ws_manager=ws_manager,
        config=config,
    )

    app_state = AppState(
        session_manager=session_manager,
        connector_registry=connector_registry,
        ws_manager=ws_manager,
        call_logger=call_logger,
        engine=engine,
    )
    logger.info("Persona Chat started. %d connectors loaded.", len(connector_chain.connectors))

    yield

    # 关闭阶段：先停止所有对话，再关闭数据库连接
    logger.info("Shutting down Persona Chat...")
    await engine.shutdown()
    await session_manager.close()


# 创建 FastAPI 应用并绑定生命周期
app = FastAPI(
    title="Persona Chat",
    description="Multi-persona group conversations driven by pluggable generation backends",
    version="0.1.0",
    lifespan=lifespan,
)

# 允许跨域，便于前端或第三方调用
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 挂载业务路由：人设、群组、消息
app.include_router(persona_router)
app.include_router(group_router)
app.include_router(message_router)


@app.get("/")
async def root():
    """根路径：返回应用名称、版本与运行状态。"""
    return {"name": "Persona Chat", "version": "0.1.0", "status": "running"}


@app.get("/api/health")
async def health():
    """健康检查：返回进行中的对话数量。"""
    return {
        "status": "ok",
        "active_conversations": len(app_state.engine.active_groups()) if app_state else 0,
    }


@app.websocket("/ws/{group_id}")
async def websocket_endpoint(websocket: WebSocket, group_id: str):
    """WebSocket 入口：客户端连接后只接收推送；ping 回复 pong，其它类型返回错误提示。"""
    await app_state.ws_manager.connect(websocket, group_id)
    await websocket.send_json({"type": "welcome", "group_id": group_id})
    try:
        while True:
            try:
                data = json.loads(await websocket.receive_text())
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid message format"})
                continue
            if isinstance(data, dict) and data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json({"type": "error", "message": "Invalid message type"})
    except WebSocketDisconnect:
        await app_state.ws_manager.disconnect(websocket, group_id)
