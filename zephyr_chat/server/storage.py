import logging
import uuid
from dataclasses import replace
from typing import Optional

from zephyr_chat import config
from zephyr_chat.crypto.keys import KeyManager
from zephyr_chat.errors import DirectoryError, PermissionDenied, ProtocolError
from zephyr_chat.protocol.messages import EncryptedEnvelope, Message, utc_now
from zephyr_chat.protocol.types import ChatType

log = logging.getLogger(__name__)


class InMemoryStorage:
    """Хранилище аккаунтов, групп и сообщений одного процесса.

    Если передан cache (RedisCache), группы, сообщения и last seen
    дублируются туда.
    """

    def __init__(self, cache: Optional[object] = None, key_size: int = config.RSA_KEY_SIZE):
        self.users = {}  # user_id: {public_key, private_key, last_seen}
        self.groups = {}  # group_id: {id, name, created_by, members(set)}
        self.messages = {}  # message_id: Message, в порядке создания
        self.cache = cache
        self.key_size = key_size

    # ---- аккаунты и каталог ключей ----
    def ensure_user(self, user_id: str) -> dict:
        user = self.users.get(user_id)
        if user is None:
            # пара ключей создаётся один раз, при первом появлении аккаунта
            private_key, public_key = KeyManager.generate_keypair(self.key_size)
            user = {'private_key': private_key, 'public_key': public_key, 'last_seen': None}
            self.users[user_id] = user
            log.info("account keys generated for %s", user_id)
        return user

    def public_key(self, user_id: str) -> str:
        user = self.users.get(user_id)
        if user is None:
            raise DirectoryError(f"Unknown user {user_id}")
        return user['public_key']

    def private_key(self, user_id: str, requester_id: str) -> str:
        if requester_id != user_id:
            raise PermissionDenied("Private key is served to its owner only")
        user = self.users.get(user_id)
        if user is None:
            raise DirectoryError(f"Unknown user {user_id}")
        return user['private_key']

    def set_last_seen(self, user_id: str, when: str | None = None) -> str:
        when = when or utc_now()
        self.users.setdefault(user_id, {'private_key': None, 'public_key': None})['last_seen'] = when
        if self.cache:
            self.cache.set_last_seen(user_id, when)
        return when

    def last_seen(self, user_id: str) -> str | None:
        user = self.users.get(user_id)
        if user and user.get('last_seen'):
            return user['last_seen']
        if self.cache:
            return self.cache.get_last_seen(user_id)
        return None

    # ---- группы ----
    def create_group(self, creator_id: str, name: str | None = None) -> str:
        group_id = uuid.uuid4().hex
        self.groups[group_id] = {
            'id': group_id,
            'name': name or f"Group_{group_id[:8]}",
            'created_by': creator_id,
            'members': {creator_id},
        }
        return group_id

    # ---- сообщения ----
    def save(self, message: Message) -> Message:
        stored = replace(message, id=uuid.uuid4().hex, created_at=utc_now())
        self.messages[stored.id] = stored
        if self.cache:
            self.cache.add_message(self.conversation_key(stored), stored.to_dict())
        return stored

    def _put(self, message: Message) -> Message:
        self.messages[message.id] = message
        if self.cache:
            self.cache.update_message(message.to_dict())
        return message

    def get(self, message_id: str) -> Message:
        message = self.messages.get(message_id)
        if self.cache:
            # сообщение мог сохранить или изменить другой сервер
            cached = self.cache.get_message(message_id)
            if cached:
                message = Message.from_dict(cached)
        if message is None or message.deleted:
            raise ProtocolError(f"Unknown message {message_id}")
        return message

    def edit(self, message_id: str, editor_id: str, text: str | None = None,
             encrypted_text: EncryptedEnvelope | None = None) -> Message:
        current = self.get(message_id)
        if current.sender_id != editor_id:
            raise PermissionDenied("Only the sender can edit a message")
        return self._put(replace(
            current,
            text=None if encrypted_text else text,
            encrypted_text=encrypted_text,
            is_encrypted=encrypted_text is not None,
            updated_at=utc_now(),
        ))

    def delete(self, message_id: str, requester_id: str) -> Message:
        current = self.get(message_id)
        if current.sender_id != requester_id:
            raise PermissionDenied("Only the sender can delete a message")
        return self._put(replace(current, text=None, encrypted_text=None, deleted=True, updated_at=utc_now()))

    def _feed(self, key: str, local: list[Message]) -> list[Message]:
        # при общем кеше история берётся из него: там сообщения всех серверов
        if self.cache:
            local = [Message.from_dict(m) for m in self.cache.get_messages(key)]
        return [m for m in local if not m.deleted]

    def find_conversation(self, user_id: str, peer_id: str) -> list[Message]:
        pair = {user_id, peer_id}
        local = [m for m in self.messages.values() if m.group_id is None and {m.sender_id, m.receiver_id} == pair]
        return self._feed(self.dm_key(user_id, peer_id), local)

    def find_group(self, group_id: str) -> list[Message]:
        local = [m for m in self.messages.values() if m.group_id == group_id]
        return self._feed(f"group:{group_id}", local)

    @staticmethod
    def dm_key(user_id: str, peer_id: str) -> str:
        a, b = sorted((user_id, peer_id))
        return f"dm:{a}:{b}"

    @staticmethod
    def conversation_key(message: Message) -> str:
        if message.chat_type is ChatType.GROUP:
            return f"group:{message.group_id}"
        return InMemoryStorage.dm_key(message.sender_id, message.receiver_id)
