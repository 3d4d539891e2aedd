import logging

from zephyr_chat.protocol.messages import Message
from zephyr_chat.protocol.types import ChatType, ServerEvent
from .chat_manager import ChatManager
from .presence import PresenceHub
from .storage import InMemoryStorage

log = logging.getLogger(__name__)


class MessageRouter:
    """Доставка сохранённых сообщений в живые соединения получателей.

    Очереди нет: офлайн-получатель увидит сообщение при загрузке истории.
    """

    def __init__(self, presence: PresenceHub, storage: InMemoryStorage, chat_mgr: ChatManager):
        self.presence = presence
        self.storage = storage
        self.chat_mgr = chat_mgr

    def _audience(self, message: Message) -> list[str]:
        if message.chat_type is ChatType.GROUP:
            return sorted(self.chat_mgr.members(message.group_id) - {message.sender_id})
        return [message.receiver_id]

    async def _fan_out(self, message: Message, event: ServerEvent, payload: dict) -> int:
        delivered = 0
        for user_id in self._audience(message):
            delivered += await self.presence.send_to_user(user_id, event, payload)
        log.debug("%s %s -> %d connection(s)", event.value, message.id, delivered)
        return delivered

    async def submit(self, message: Message) -> Message:
        # сначала сохраняем; если storage упал, ничего не рассылаем
        stored = self.storage.save(message)
        await self.dispatch(stored)
        return stored

    async def dispatch(self, message: Message) -> int:
        if message.chat_type is ChatType.GROUP:
            return await self.route_group(message)
        return await self.route(message)

    async def route(self, message: Message) -> int:
        return await self._fan_out(message, ServerEvent.NEW_MESSAGE, message.to_dict())

    async def route_group(self, message: Message) -> int:
        return await self._fan_out(message, ServerEvent.NEW_GROUP_MESSAGE, message.to_dict())

    async def route_update(self, message: Message) -> int:
        return await self._fan_out(message, ServerEvent.MESSAGE_UPDATED, message.to_dict())

    async def route_delete(self, message: Message) -> int:
        payload = {"id": message.id, "senderId": message.sender_id}
        if message.chat_type is ChatType.GROUP:
            payload["groupId"] = message.group_id
        else:
            payload["receiverId"] = message.receiver_id
        return await self._fan_out(message, ServerEvent.MESSAGE_DELETED, payload)
