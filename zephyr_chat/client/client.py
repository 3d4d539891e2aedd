import asyncio
import inspect
import itertools
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from zephyr_chat import config
from zephyr_chat.errors import (
    ChatError, CryptoError, DirectoryError, KeyUnavailable,
    PermissionDenied, ProtocolError, TransportError,
)
from zephyr_chat.protocol.packet import Packet
from zephyr_chat.protocol.types import ClientEvent, ServerEvent

log = logging.getLogger(__name__)

_ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (CryptoError, KeyUnavailable, DirectoryError, TransportError, ProtocolError, PermissionDenied)
}


def _event_name(event: str | Enum) -> str:
    return event.value if isinstance(event, Enum) else event


class ChatClient:
    """Дуплексный канал к серверу: события + запросы с ответом по id.

    После close() события больше не доставляются, ничего не буферизуется.
    """

    def __init__(self, user_id: str, url: str = config.SERVER_URL,
                 request_timeout: float = config.REQUEST_TIMEOUT):
        self.user_id = user_id
        self.url = url
        self.request_timeout = request_timeout
        self.websocket = None
        self.closed = False
        self.online_users: list[str] = []
        self.typing_users: set[str] = set()  # кто сейчас печатает нам
        self._handlers: dict[str, list[Callable]] = defaultdict(list)
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._receiver_task = None
        self._dispatch_task = None
        self._events: asyncio.Queue | None = None

    @property
    def connected(self) -> bool:
        return self.websocket is not None and not self.closed

    async def connect(self):
        uri = f"{self.url}?{urlencode({'userId': self.user_id})}"
        try:
            self.websocket = await websockets.connect(uri, max_size=config.MAX_FRAME_SIZE)
        except (OSError, InvalidHandshake) as err:
            raise TransportError(f"Cannot connect to {self.url}: {err}") from err
        self.closed = False
        log.info("connected to %s as %s", self.url, self.user_id)
        # обработчики идут в отдельной задаче: им самим нужны ответы на запросы
        self._events = asyncio.Queue()
        self._receiver_task = asyncio.create_task(self._receiver())
        self._dispatch_task = asyncio.create_task(self._dispatcher())

    # ---- подписки ----
    def on(self, event: str | Enum, handler: Callable):
        self._handlers[_event_name(event)].append(handler)

    async def _receiver(self):
        try:
            async for raw in self.websocket:
                try:
                    event, data, request_id = Packet.unpack(raw)
                except ProtocolError as e:
                    log.debug("bad frame from server: %s", e)
                    continue

                if request_id is not None and event in (ServerEvent.RESPONSE.value, ServerEvent.ERROR.value):
                    self._resolve(event, data, request_id)
                    continue
                self._track_presence(event, data)
                if not self.closed:
                    self._events.put_nowait((event, data))
        except ConnectionClosed as e:
            log.info("connection closed: %s", e)
        finally:
            self._fail_pending(TransportError("connection closed"))

    async def _dispatcher(self):
        # по одному событию, в порядке прихода
        while not self.closed:
            event, data = await self._events.get()
            await self._dispatch(event, data)

    def _resolve(self, event: str, data: Any, request_id: int):
        fut = self._pending.pop(request_id, None)
        if fut is None or fut.done():
            return
        if event == ServerEvent.ERROR.value:
            data = data or {}
            exc_cls = _ERRORS_BY_CODE.get(data.get('code'), ChatError)
            fut.set_exception(exc_cls(data.get('message', 'request failed')))
        else:
            fut.set_result(data)

    def _track_presence(self, event: str, data: Any):
        if event == ServerEvent.ONLINE_USERS.value:
            self.online_users = list(data or [])
        elif not isinstance(data, dict):
            return
        elif event == ServerEvent.USER_TYPING.value:
            self.typing_users.add(data.get('userId'))
        elif event == ServerEvent.USER_STOP_TYPING.value:
            self.typing_users.discard(data.get('userId'))

    async def _dispatch(self, event: str, data: Any):
        for handler in list(self._handlers.get(event, [])):
            if self.closed:
                return
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # ошибка подписчика не должна останавливать приём
                log.exception("handler for %s failed", event)

    def _fail_pending(self, err: Exception):
        pending, self._pending = self._pending, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(err)

    # ---- отправка ----
    async def emit(self, event: str | Enum, data: Any = None, request_id: int | None = None):
        if not self.connected:
            raise TransportError("Channel is not connected")
        try:
            await self.websocket.send(Packet.pack(event, data, request_id))
        except ConnectionClosed as err:
            raise TransportError("Channel closed during send") from err

    async def request(self, event: str | Enum, data: Any = None) -> Any:
        request_id = next(self._ids)
        fut = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        try:
            await self.emit(event, data, request_id)
            return await asyncio.wait_for(fut, self.request_timeout)
        except asyncio.TimeoutError as err:
            raise TransportError(f"{_event_name(event)} timed out") from err
        finally:
            self._pending.pop(request_id, None)

    async def start_typing(self, receiver_id: str):
        try:
            await self.emit(ClientEvent.START_TYPING, {'receiverId': receiver_id})
        except TransportError as e:
            log.debug("startTyping dropped: %s", e)

    async def stop_typing(self, receiver_id: str):
        try:
            await self.emit(ClientEvent.STOP_TYPING, {'receiverId': receiver_id})
        except TransportError as e:
            log.debug("stopTyping dropped: %s", e)

    async def close(self):
        self.closed = True
        self._handlers.clear()
        tasks = (self._receiver_task, self._dispatch_task)
        self._receiver_task = self._dispatch_task = None
        for task in tasks:
            # close() может прийти из обработчика события
            if task is None or task is asyncio.current_task():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.websocket is not None:
            await self.websocket.close()
        self._fail_pending(TransportError("client closed"))
