"""
In-process WebSocket channels for chat sessions and doctor dashboards
"""
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, Optional
import logging

from fastapi import WebSocket, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel

logger = logging.getLogger(__name__)


def chat_channel(session_id: str) -> str:
    return f"chat:{session_id}"


def doctors_channel(school: str) -> str:
    return f"doctors:{school}"


class SocketOwner(BaseModel):
    """Who a connection was authorised for"""
    user_id: str
    role: str
    session_id: str


class ConnectionManager:
    def __init__(self):
        self.channels: Dict[str, Dict[WebSocket, SocketOwner]] = defaultdict(dict)

    async def connect(self, channel: str, websocket: WebSocket, owner: SocketOwner):
        await websocket.accept()
        self.channels[channel][websocket] = owner
        logger.debug(f"WebSocket for {owner.role} {owner.user_id} joined {channel} "
                     f"({len(self.channels[channel])} connected)")

    def disconnect(self, channel: str, websocket: WebSocket):
        connections = self.channels.get(channel)
        if not connections:
            return
        connections.pop(websocket, None)
        if not connections:
            del self.channels[channel]

    async def broadcast(self, channel: str, event: str, data: Any):
        payload = {"event": event, "data": jsonable_encoder(data)}
        for connection in list(self.channels.get(channel, {})):
            try:
                await connection.send_json(payload)
            except Exception as e:
                logger.warning(f"Dropping broken WebSocket on {channel}: {e}")
                self.disconnect(channel, connection)

    async def close_where(self, predicate: Callable[[SocketOwner], bool], channel: Optional[str] = None,
                          code: int = status.WS_1008_POLICY_VIOLATION) -> int:
        """Close every connection (in one channel, or all of them) whose owner matches"""
        closed = 0
        names = [channel] if channel is not None else list(self.channels)
        for name in names:
            for websocket, owner in list(self.channels.get(name, {}).items()):
                if not predicate(owner):
                    continue
                self.disconnect(name, websocket)
                try:
                    await websocket.close(code=code)
                except Exception as e:
                    logger.debug(f"WebSocket on {name} already closed: {e}")
                closed += 1
        if closed:
            logger.info(f"Closed {closed} WebSocket connection(s){' on ' + channel if channel else ''}")
        return closed

    async def close_sessions(self, session_ids: Iterable[str]) -> int:
        """Close sockets opened with sessions that have been revoked"""
        ids = set(session_ids)
        if not ids:
            return 0
        return await self.close_where(lambda owner: owner.session_id in ids)

    async def restrict_to_doctor(self, channel: str, doctor_id: str) -> int:
        """Once a doctor takes a chat, other doctors watching it are dropped"""
        return await self.close_where(
            lambda owner: owner.role == "doctor" and owner.user_id != doctor_id, channel=channel
        )


manager = ConnectionManager()
