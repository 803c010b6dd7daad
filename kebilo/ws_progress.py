from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from typing import Any, Dict, List, Mapping, Optional, Set

import structlog
from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect


logger = structlog.get_logger(__name__)

PROGRESS_EVENTS = ("batch_started", "progress_update", "task_complete", "task_error")


def room_for(user_id: str) -> str:
    return f"user_{user_id}"


class ProgressHub:
    """Fan document-processing events out to per-user websocket rooms."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._latest: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def handle(self, websocket: WebSocket, user_id: str) -> None:
        """Accept *websocket* into the user's room and serve join requests."""

        own_room = room_for(user_id)
        await websocket.accept()
        async with self._lock:
            self._rooms[own_room].add(websocket)
        await websocket.send_json({"event": "connected", "data": {"room": own_room}})
        try:
            while True:
                message = await websocket.receive_text()
                await self._handle_message(websocket, own_room, message)
        except WebSocketDisconnect:
            pass
        finally:
            async with self._lock:
                clients = self._rooms.get(own_room)
                if clients:
                    clients.discard(websocket)
                    if not clients:
                        self._rooms.pop(own_room, None)

    async def _handle_message(self, websocket: WebSocket, own_room: str, message: str) -> None:
        try:
            payload = json.loads(message)
        except ValueError:
            logger.debug("progress_ws_invalid_message", room=own_room)
            return
        if not isinstance(payload, Mapping) or payload.get("event") != "join":
            return
        requested = payload.get("room")
        if requested != own_room:
            await websocket.send_json({"event": "error", "data": {"message": "Cannot join another user's room"}})
            return
        await websocket.send_json({"event": "joined", "data": {"room": own_room}})

    async def publish(self, user_id: str, event: str, data: Mapping[str, Any]) -> int:
        """Send ``{event, data}`` to every client of *user_id*; returns the delivery count."""

        if event not in PROGRESS_EVENTS:
            raise ValueError(f"Unknown progress event: {event}")
        payload = {"event": event, "data": dict(data)}
        task_id = data.get("task_id")
        if task_id:
            self._latest[str(task_id)] = {**payload, "userId": user_id}
        return await self._fanout(room_for(user_id), payload)

    def latest(self, task_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        """Last event seen for *task_id*, if it belongs to *user_id*."""

        state = self._latest.get(task_id)
        if state is None or state.get("userId") != user_id:
            return None
        return {"event": state["event"], "data": state["data"]}

    def connection_count(self, user_id: str) -> int:
        return len(self._rooms.get(room_for(user_id), ()))

    async def _fanout(self, room: str, payload: Mapping[str, Any]) -> int:
        async with self._lock:
            clients: List[WebSocket] = list(self._rooms.get(room, set()))
        if not clients:
            return 0
        dead: List[WebSocket] = []
        for ws in clients:
            try:
                await ws.send_json(payload)
            except Exception as exc:
                logger.warning("progress_ws_send_failed", room=room, error=str(exc))
                dead.append(ws)
        if dead:
            async with self._lock:
                members = self._rooms.get(room)
                if members:
                    for ws in dead:
                        members.discard(ws)
                    if not members:
                        self._rooms.pop(room, None)
        return len(clients) - len(dead)


__all__ = ["PROGRESS_EVENTS", "ProgressHub", "room_for"]
