import logging
from enum import Enum
from typing import Any, Optional

from zephyr_chat.errors import TransportError
from zephyr_chat.protocol.messages import utc_now
from zephyr_chat.protocol.types import ConnectionState, ServerEvent
from .connection import Connection, ConnectionRecord

log = logging.getLogger(__name__)


class PresenceHub:
    """Реестр живых соединений и состояния "печатает".

    Онлайн = хотя бы одно соединение пользователя. Каждый обработчик
    меняет карты до первого await, поэтому в одном процессе блокировки
    не нужны. Для нескольких процессов нужен общий внешний реестр.
    """

    def __init__(self, storage: Optional[object] = None):
        # storage должен реализовывать set_last_seen(user_id)
        self.storage = storage
        self._connections: dict[str, dict[str, Connection]] = {}  # user_id: {connection_id: conn}
        self._typing: dict[str, str] = {}  # user_id: peer_id
        self.closed = False

    # ---- геттеры ----
    def online_users(self) -> list[str]:
        return sorted(self._connections)

    def typing_map(self) -> dict[str, str]:
        return dict(self._typing)

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def connections_for(self, user_id: str) -> list[Connection]:
        return list(self._connections.get(user_id, {}).values())

    def records(self) -> list[ConnectionRecord]:
        return [c.record for conns in self._connections.values() for c in conns.values()]

    # ---- жизненный цикл соединения ----
    async def connect(self, user_id: str, connection: Connection) -> ConnectionRecord:
        if self.closed:
            raise TransportError("Presence hub is closed")
        if connection.state is not ConnectionState.CONNECTING:
            raise TransportError(f"Cannot connect {connection!r}")

        connection.user_id = user_id
        connection.connected_at = utc_now()
        connection.state = ConnectionState.CONNECTED
        self._connections.setdefault(user_id, {})[connection.connection_id] = connection
        log.info("[+] %s connected (%d live)", user_id, len(self._connections[user_id]))

        await self.broadcast_online()
        return connection.record

    async def disconnect(self, connection: Connection):
        if connection.state is ConnectionState.DISCONNECTED:
            return
        was_live = connection.is_live
        connection.state = ConnectionState.DISCONNECTED
        if not was_live:
            return

        user_id = connection.user_id
        conns = self._connections.get(user_id, {})
        conns.pop(connection.connection_id, None)
        target = self._typing.pop(user_id, None)
        if not conns:
            self._connections.pop(user_id, None)
            # last seen только когда ушло последнее соединение
            if self.storage is not None:
                self.storage.set_last_seen(user_id)
        log.info("[-] %s disconnected (%d live)", user_id, len(conns))

        if target is not None:
            await self.emit_to_user(target, ServerEvent.USER_STOP_TYPING, {"userId": user_id})
        await self.broadcast_online()

    # ---- typing ----
    async def start_typing(self, user_id: str, peer_id: str):
        previous = self._typing.get(user_id)
        self._typing[user_id] = peer_id
        if previous is not None and previous != peer_id:
            # у пользователя одна цель набора, старую гасим
            await self.emit_to_user(previous, ServerEvent.USER_STOP_TYPING, {"userId": user_id})
        await self.emit_to_user(peer_id, ServerEvent.USER_TYPING, {"userId": user_id})

    async def stop_typing(self, user_id: str, peer_id: str) -> bool:
        if self._typing.get(user_id) != peer_id:
            return False  # устаревший stopTyping для другой цели
        del self._typing[user_id]
        await self.emit_to_user(peer_id, ServerEvent.USER_STOP_TYPING, {"userId": user_id})
        return True

    # ---- отправка ----
    async def send_to_user(self, user_id: str, event: str | Enum, data: Any = None) -> int:
        """Отправляет событие во все живые соединения user_id, возвращает число доставок.

        TransportError отдельного соединения не прерывает рассылку.
        """
        delivered = 0
        for conn in self.connections_for(user_id):
            try:
                await conn.send(event, data)
                delivered += 1
            except TransportError as err:
                log.debug("drop %s for %r: %s", getattr(event, "value", event), conn, err)
        return delivered

    async def emit_to_user(self, user_id: str, event: str | Enum, data: Any = None) -> int:
        # presence/typing: best effort, офлайн-получателю ничего не шлём
        if not self.is_online(user_id):
            return 0
        return await self.send_to_user(user_id, event, data)

    async def broadcast_online(self):
        online = self.online_users()
        for conns in list(self._connections.values()):
            for conn in list(conns.values()):
                try:
                    await conn.send(ServerEvent.ONLINE_USERS, online)
                except TransportError as err:
                    log.debug("drop online list for %r: %s", conn, err)

    async def close(self):
        """Остановка сервера: закрыть все соединения, очистить карты."""
        self.closed = True
        conns = [c for per_user in self._connections.values() for c in per_user.values()]
        self._connections.clear()
        self._typing.clear()
        for conn in conns:
            conn.state = ConnectionState.DISCONNECTED
            await conn.close(1001, "server shutdown")
