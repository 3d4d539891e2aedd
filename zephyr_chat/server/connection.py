import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

from websockets.exceptions import ConnectionClosed

from zephyr_chat.errors import TransportError
from zephyr_chat.protocol.packet import Packet
from zephyr_chat.protocol.types import ConnectionState


@dataclass(frozen=True)
class ConnectionRecord:
    user_id: str
    connection_id: str
    connected_at: str


class Connection:
    """Одно живое websocket-соединение пользователя (вкладка, устройство).

    connecting -> connected -> disconnected, последнее состояние конечное.
    """

    def __init__(self, websocket, user_id: str):
        self.websocket = websocket
        self.user_id = user_id
        self.connection_id = uuid.uuid4().hex
        self.connected_at: str | None = None
        self.state = ConnectionState.CONNECTING

    @property
    def record(self) -> ConnectionRecord:
        return ConnectionRecord(self.user_id, self.connection_id, self.connected_at)

    @property
    def is_live(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    async def send(self, event: str | Enum, data: Any = None, request_id: int | None = None):
        if not self.is_live:
            raise TransportError(f"Connection {self.connection_id} is {self.state.value}")
        try:
            await self.websocket.send(Packet.pack(event, data, request_id))
        except ConnectionClosed as err:
            raise TransportError(f"Connection {self.connection_id} closed") from err

    async def close(self, code: int = 1001, reason: str = ""):
        await self.websocket.close(code, reason)

    def __repr__(self):
        return f"<Connection {self.user_id}/{self.connection_id[:8]} {self.state.value}>"
