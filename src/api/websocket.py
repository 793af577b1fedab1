"""WebSocket 管理：按群组维护连接，推送人设消息与对话启停状态。

广播是「发出即忘」：发送失败的连接会被自动移除，错误不会回传给对话引擎。
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class WebSocketManager:
    """按 group_id 维护 WebSocket 连接列表，支持向某群广播消息与对话状态。"""

    def __init__(self):
        """connections: group_id -> 该群当前所有 WebSocket 连接列表。"""
        self.connections: dict[str, list[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, group_id: str) -> None:
        """接受新连接并加入对应群组列表；若该群尚无连接则先建列表。"""
        await websocket.accept()
        self.connections.setdefault(group_id, []).append(websocket)
        logger.info("WebSocket connected to group %s", group_id)

    async def disconnect(self, websocket: WebSocket, group_id: str) -> None:
        """将指定连接从该群列表中移除；若群内已无连接则删除该群键。"""
        if group_id in self.connections:
            self.connections[group_id] = [
                ws for ws in self.connections[group_id] if ws != websocket
            ]
            if not self.connections[group_id]:
                del self.connections[group_id]
        logger.info("WebSocket disconnected from group %s", group_id)

    async def broadcast_message(self, group_id: str, data: dict[str, Any]) -> None:
        """向指定群组内所有连接广播一条 JSON 消息；发送失败的连接会被自动 disconnect。"""
        await self._send_to_group(group_id, data)

    async def broadcast_status(self, group_id: str, active: bool) -> None:
        """向指定群组广播对话启停状态。"""
        await self._send_to_group(group_id, {
            "type": "conversation_status",
            "group_id": group_id,
            "active": active,
        })

    async def _send_to_group(self, group_id: str, data: dict[str, Any]) -> None:
        if group_id not in self.connections:
            return
        message = json.dumps(data, ensure_ascii=False, default=str)
        disconnected = []
        for ws in list(self.connections[group_id]):
            try:
                await ws.send_text(message)
            except Exception as e:
                logger.debug("WebSocket send failed for group %s: %s", group_id, e)
                disconnected.append(ws)
        for ws in disconnected:
            await self.disconnect(ws, group_id)
