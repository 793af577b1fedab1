"""群组相关路由：群组 CRUD、成员管理，以及对话的启动 / 停止 / 状态查询。"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from src.core.errors import AlreadyActiveError, DuplicateNameError, EmptyGroupError, NotFoundError

router = APIRouter(prefix="/api/groups", tags=["groups"])
logger = logging.getLogger(__name__)


# ── 请求/响应模型 ──

class CreateGroupRequest(BaseModel):
    name: str
    description: str = ""


class AddMemberRequest(BaseModel):
    persona_id: str


# ── 路由 ──
# 注意：实际的 session_manager / engine 依赖注入在 main.py 中配置

@router.get("")
async def list_groups():
    """获取所有群组列表。"""
    from src.main import app_state
    groups = await app_state.session_manager.list_groups()
    return {"groups": [g.model_dump(mode="json") for g in groups]}


@router.post("", status_code=201)
async def create_group(req: CreateGroupRequest):
    """创建新群组；名称重复返回 409。"""
    from src.main import app_state
    try:
        group = await app_state.session_manager.create_group(
            name=req.name,
            description=req.description,
        )
    except DuplicateNameError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"group": group.model_dump(mode="json")}


@router.get("/{group_id}")
async def get_group(group_id: str):
    """获取群组详情（含成员）。"""
    from src.main import app_state
    group = await app_state.session_manager.get_group(group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    return {"group": group.model_dump(mode="json")}


@router.delete("/{group_id}")
async def delete_group(group_id: str):
    """删除群组；若对话进行中会先停止。"""
    from src.main import app_state
    await app_state.engine.stop(group_id)
    await app_state.session_manager.delete_group(group_id)
    return {"ok": True}


@router.get("/{group_id}/members")
async def list_members(group_id: str):
    """按加入顺序列出群组成员。"""
    from src.main import app_state
    personas = await app_state.session_manager.list_personas(group_id)
    return {"members": [p.model_dump(mode="json") for p in personas]}


@router.post("/{group_id}/members")
async def add_member(group_id: str, req: AddMemberRequest):
    """添加人设到群组。"""
    from src.main import app_state
    try:
        persona = await app_state.session_manager.add_member(group_id, req.persona_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=f"Not found: {e.args[0]}")
    return {"member": persona.model_dump(mode="json")}


@router.delete("/{group_id}/members/{persona_id}")
async def remove_member(group_id: str, persona_id: str):
    """从群组移除人设。"""
    from src.main import app_state
    await app_state.session_manager.remove_member(group_id, persona_id)
    return {"ok": True}


# ── 对话控制 ──

@router.post("/{group_id}/conversation/start")
async def start_conversation(group_id: str):
    """启动对话：空群返回 400，已在进行中返回 409；第一回合在后台执行。"""
    from src.main import app_state
    group = await app_state.session_manager.get_group(group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Group not found")
    try:
        status = await app_state.engine.start(group)
    except EmptyGroupError as e:
        logger.warning("Failed to start conversation: %s", e)
        raise HTTPException(status_code=400, detail=str(e))
    except AlreadyActiveError as e:
        logger.warning("Failed to start conversation: %s", e)
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": status.model_dump(mode="json")}


@router.post("/{group_id}/conversation/stop")
async def stop_conversation(group_id: str):
    """停止对话；未在进行中也返回成功。"""
    from src.main import app_state
    stopped = await app_state.engine.stop(group_id)
    return {"ok": True, "stopped": stopped}


@router.get("/{group_id}/conversation/status")
async def conversation_status(group_id: str):
    """查询对话状态快照。"""
    from src.main import app_state
    status = app_state.engine.get_state(group_id)
    return {
        "active": app_state.engine.is_active(group_id),
        "status": status.model_dump(mode="json") if status else None,
    }
