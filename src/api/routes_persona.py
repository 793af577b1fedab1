"""人设相关路由：人设的增删改查，名称全局唯一。"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from src.core.errors import DuplicateNameError, NotFoundError
from src.models.persona import Persona

router = APIRouter(prefix="/api/personas", tags=["personas"])


class CreatePersonaRequest(BaseModel):
    name: str
    personality_traits: str = ""
    system_prompt: str = ""
    speaking_style: str = ""
    background: str = ""
    avatar_url: str = ""


class UpdatePersonaRequest(BaseModel):
    name: str | None = None
    personality_traits: str | None = None
    system_prompt: str | None = None
    speaking_style: str | None = None
    background: str | None = None
    avatar_url: str | None = None
    is_active: bool | None = None


@router.get("")
async def list_personas():
    """列出所有人设。"""
    from src.main import app_state
    personas = await app_state.session_manager.list_all_personas()
    return {"personas": [p.model_dump(mode="json") for p in personas]}


@router.post("", status_code=201)
async def create_persona(req: CreatePersonaRequest):
    """创建人设；名称重复返回 409。"""
    from src.main import app_state
    try:
        persona = await app_state.session_manager.create_persona(Persona(**req.model_dump()))
    except DuplicateNameError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"persona": persona.model_dump(mode="json")}


@router.get("/{persona_id}")
async def get_persona(persona_id: str):
    """获取人设详情。"""
    from src.main import app_state
    persona = await app_state.session_manager.get_persona(persona_id)
    if not persona:
        raise HTTPException(status_code=404, detail="Persona not found")
    return {"persona": persona.model_dump(mode="json")}


@router.put("/{persona_id}")
async def update_persona(persona_id: str, req: UpdatePersonaRequest):
    """更新人设的部分字段。"""
    from src.main import app_state
    try:
        persona = await app_state.session_manager.update_persona(
            persona_id, req.model_dump(exclude_none=True)
        )
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Persona not found")
    except DuplicateNameError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"persona": persona.model_dump(mode="json")}


@router.delete("/{persona_id}")
async def delete_persona(persona_id: str):
    """删除人设。"""
    from src.main import app_state
    await app_state.session_manager.delete_persona(persona_id)
    return {"ok": True}
