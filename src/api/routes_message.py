"""消息相关路由：获取群组历史消息与生成调用日志。"""

from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(prefix="/api/groups", tags=["messages"])


@router.get("/{group_id}/messages")
async def get_messages(group_id: str, limit: int = 50, before: str | None = None):
    """分页获取指定群组的消息历史；before 为游标（某条消息的 timestamp）。"""
    from src.main import app_state
    messages = await app_state.session_manager.get_messages(
        group_id, limit=limit, before=before
    )
    return {"messages": [m.model_dump(mode="json") for m in messages]}


@router.get("/{group_id}/messages/recent")
async def get_recent_messages(group_id: str, limit: int = 20):
    """最近 limit 条消息（从旧到新），与发给后端的上下文窗口一致。"""
    from src.main import app_state
    messages = await app_state.session_manager.get_recent_messages(group_id, limit=limit)
    return {"messages": [m.model_dump(mode="json") for m in messages]}


@router.get("/{group_id}/logs")
async def get_call_logs(group_id: str):
    """获取指定群组的所有生成调用日志（最新在前）。"""
    from src.main import app_state
    if not app_state.call_logger:
        return {"logs": []}
    logs = app_state.call_logger.get_group_logs(group_id)
    return {"logs": [log.model_dump(mode="json") for log in logs]}
