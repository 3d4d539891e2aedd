import asyncio
import logging
from urllib.parse import parse_qs, urlsplit

import websockets
from websockets.exceptions import ConnectionClosed

from zephyr_chat import config
from zephyr_chat.errors import ChatError, PermissionDenied, ProtocolError, TransportError
from zephyr_chat.protocol.messages import EncryptedEnvelope, Message
from zephyr_chat.protocol.packet import Packet
from zephyr_chat.protocol.types import ClientEvent, ServerEvent
from .cache import RedisCache
from .chat_manager import ChatManager
from .connection import Connection
from .presence import PresenceHub
from .router import MessageRouter
from .storage import InMemoryStorage

log = logging.getLogger(__name__)


def _require(data: dict, key: str, kind: type = str):
    value = data.get(key)
    if not isinstance(value, kind) or (kind is str and not value):
        raise ProtocolError(f"'{key}' is required")
    return value


def _require_ids(data: dict, key: str, required: bool = True) -> list:
    ids = data.get(key)
    if ids is None and not required:
        return []
    if not isinstance(ids, list) or not all(isinstance(i, str) and i for i in ids):
        raise ProtocolError(f"'{key}' must be a list of user ids")
    return ids


def _message_body(data: dict) -> dict:
    """text / encryptedText из запроса, ровно одно из них согласно isEncrypted."""
    if data.get('isEncrypted'):
        envelope = EncryptedEnvelope.from_dict(data.get('encryptedText'))
        return {'encrypted_text': envelope, 'is_encrypted': True}
    return {'text': _require(data, 'text'), 'is_encrypted': False}


class ChatServer:
    def __init__(self, host=config.HOST, ws_port=config.WS_PORT,
                 storage: InMemoryStorage | None = None, cache: RedisCache | None = None):
        self.host = host
        self.ws_port = ws_port
        # при наличии переменной окружения USE_REDIS или REDIS_URL используем кеш
        if cache is None and config.USE_REDIS:
            cache = RedisCache(config.REDIS_URL)
        self.cache = cache
        self.storage = storage or InMemoryStorage(cache=cache)

        self.chat_mgr = ChatManager(self.storage, cache=self.cache)
        self.presence = PresenceHub(self.storage)
        self.router = MessageRouter(self.presence, self.storage, self.chat_mgr)
        self._ws_server = None
        self._handlers = {
            ClientEvent.START_TYPING.value: self.on_start_typing,
            ClientEvent.STOP_TYPING.value: self.on_stop_typing,
            ClientEvent.SEND_MESSAGE.value: self.on_send_message,
            ClientEvent.SEND_GROUP_MESSAGE.value: self.on_send_group_message,
            ClientEvent.EDIT_MESSAGE.value: self.on_edit_message,
            ClientEvent.DELETE_MESSAGE.value: self.on_delete_message,
            ClientEvent.GET_MESSAGES.value: self.on_get_messages,
            ClientEvent.GET_GROUP_MESSAGES.value: self.on_get_group_messages,
            ClientEvent.GET_PUBLIC_KEY.value: self.on_get_public_key,
            ClientEvent.GET_PRIVATE_KEY.value: self.on_get_private_key,
            ClientEvent.CREATE_GROUP.value: self.on_create_group,
            ClientEvent.ADD_MEMBERS.value: self.on_add_members,
        }

    @property
    def port(self) -> int:
        if self._ws_server is None:
            return self.ws_port
        return next(iter(self._ws_server.sockets)).getsockname()[1]

    @staticmethod
    def identify(websocket) -> str | None:
        """userId из query string (?userId=...) или заголовка X-User-Id."""
        request = websocket.request
        query = parse_qs(urlsplit(request.path).query)
        user_id = (query.get('userId') or [None])[0]
        return user_id or request.headers.get('X-User-Id')

    async def websocket_handler(self, websocket):
        user_id = self.identify(websocket)
        if not user_id:
            await websocket.close(1008, "userId is required")
            return

        self.storage.ensure_user(user_id)
        conn = Connection(websocket, user_id)
        try:
            await self.presence.connect(user_id, conn)
            async for raw in websocket:
                await self.handle_frame(conn, raw)
        except ConnectionClosed as e:
            log.debug("[WS-] %s closed: %s", user_id, e)
        except TransportError as e:
            log.debug("[WS-] %s transport: %s", user_id, e)
        finally:
            await self.presence.disconnect(conn)

    async def handle_frame(self, conn: Connection, raw):
        request_id = None
        try:
            event, data, request_id = Packet.unpack(raw)
            handler = self._handlers.get(event)
            if handler is None:
                raise ProtocolError(f"Unknown event {event}")
            if not isinstance(data, dict):
                raise ProtocolError("Event data must be an object")
            result = await handler(conn, data)
        except ChatError as err:
            log.warning("%s: %s (%s)", conn.user_id, err, err.code)
            if request_id is not None:
                await self._reply(conn, ServerEvent.ERROR, {'code': err.code, 'message': str(err)}, request_id)
            return
        if request_id is not None:
            await self._reply(conn, ServerEvent.RESPONSE, result, request_id)

    async def _reply(self, conn: Connection, event: ServerEvent, data, request_id: int):
        try:
            await conn.send(event, data, request_id)
        except TransportError as err:
            log.debug("reply %s to %r dropped: %s", request_id, conn, err)

    # ---- typing ----
    async def on_start_typing(self, conn: Connection, data: dict):
        await self.presence.start_typing(conn.user_id, _require(data, 'receiverId'))

    async def on_stop_typing(self, conn: Connection, data: dict):
        await self.presence.stop_typing(conn.user_id, _require(data, 'receiverId'))

    # ---- сообщения ----
    async def on_send_message(self, conn: Connection, data: dict) -> dict:
        message = Message(sender_id=conn.user_id, receiver_id=_require(data, 'receiverId'), **_message_body(data))
        stored = await self.router.submit(message)
        return stored.to_dict()

    async def on_send_group_message(self, conn: Connection, data: dict) -> dict:
        group_id = _require(data, 'groupId')
        if not self.chat_mgr.can_send(conn.user_id, group_id):
            raise PermissionDenied(f"{conn.user_id} is not a member of {group_id}")
        message = Message(sender_id=conn.user_id, group_id=group_id, **_message_body(data))
        stored = await self.router.submit(message)
        return stored.to_dict()

    async def on_edit_message(self, conn: Connection, data: dict) -> dict:
        body = _message_body(data)
        updated = self.storage.edit(
            _require(data, 'messageId'), conn.user_id,
            text=body.get('text'), encrypted_text=body.get('encrypted_text'),
        )
        await self.router.route_update(updated)
        return updated.to_dict()

    async def on_delete_message(self, conn: Connection, data: dict) -> dict:
        tombstone = self.storage.delete(_require(data, 'messageId'), conn.user_id)
        await self.router.route_delete(tombstone)
        return {'id': tombstone.id}

    async def on_get_messages(self, conn: Connection, data: dict) -> list:
        peer_id = _require(data, 'peerId')
        return [m.to_dict() for m in self.storage.find_conversation(conn.user_id, peer_id)]

    async def on_get_group_messages(self, conn: Connection, data: dict) -> list:
        group_id = _require(data, 'groupId')
        if not self.chat_mgr.is_member(conn.user_id, group_id):
            raise PermissionDenied(f"{conn.user_id} is not a member of {group_id}")
        return [m.to_dict() for m in self.storage.find_group(group_id)]

    # ---- каталог ключей ----
    async def on_get_public_key(self, conn: Connection, data: dict) -> dict:
        user_id = _require(data, 'userId')
        return {'userId': user_id, 'publicKey': self.storage.public_key(user_id)}

    async def on_get_private_key(self, conn: Connection, data: dict) -> dict:
        owner = data.get('userId') or conn.user_id
        return {'privateKey': self.storage.private_key(owner, requester_id=conn.user_id)}

    # ---- группы ----
    async def on_create_group(self, conn: Connection, data: dict) -> dict:
        name = data.get('name')
        if name is not None and not isinstance(name, str):
            raise ProtocolError("'name' must be a string")
        group = self.chat_mgr.create_group(conn.user_id, name, _require_ids(data, 'members', required=False))
        return ChatManager.to_dict(group)

    async def on_add_members(self, conn: Connection, data: dict) -> dict:
        group_id = _require(data, 'groupId')
        members = self.chat_mgr.add_members(group_id, _require_ids(data, 'userIds'), conn.user_id)
        return {'groupId': group_id, 'members': sorted(members)}

    async def start(self):
        self._ws_server = await websockets.serve(self.websocket_handler, self.host, self.ws_port)
        log.info("WS server on %s:%s", self.host, self.port)
        return self._ws_server

    async def serve_forever(self):
        if self._ws_server is None:
            await self.start()
        try:
            await self._ws_server.wait_closed()
        except asyncio.CancelledError:
            await self.stop()
            raise

    async def stop(self):
        await self.presence.close()
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
