import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from zephyr_chat import config
from zephyr_chat.crypto.e2ee import CryptoEngine
from zephyr_chat.crypto.session_keys import SessionKeyManager
from zephyr_chat.errors import CryptoError, DirectoryError, KeyUnavailable, TransportError
from zephyr_chat.protocol.messages import EncryptedEnvelope, Message
from zephyr_chat.protocol.types import ClientEvent, ServerEvent

log = logging.getLogger(__name__)

PLACEHOLDER = "[Encrypted message - unable to decrypt]"


@dataclass(frozen=True)
class OutgoingEnvelope:
    is_encrypted: bool
    encrypted_text: Optional[EncryptedEnvelope] = None
    text: Optional[str] = None
    warning: Optional[str] = None  # не пусто, если пришлось отправить открытым текстом

    def to_dict(self) -> dict:
        if self.is_encrypted:
            return {'encryptedText': self.encrypted_text.to_dict(), 'isEncrypted': True}
        return {'text': self.text, 'isEncrypted': False}


class ChatSessionController:
    """Клиентская сторона: шифрование перед отправкой, расшифровка перед показом.

    Ошибка шифрования не блокирует доставку: сообщение уходит открытым
    текстом, подписчики on_warning получают предупреждение. Ошибка
    расшифровки превращается в PLACEHOLDER и наружу не пробрасывается.
    """

    def __init__(self, keys: SessionKeyManager, transport=None,
                 encryption_enabled: bool = config.ENCRYPTION_ENABLED):
        self.keys = keys
        self.transport = transport
        self.encryption_enabled = encryption_enabled
        self.engine = keys.engine
        self.on_warning: list[Callable[[str, str], None]] = []  # (peer_id, текст)
        self.on_message: list[Callable[[Message], None]] = []
        self.on_group_message: list[Callable[[Message], None]] = []
        self.on_update: list[Callable[[Message], None]] = []
        self.on_delete: list[Callable[[dict], None]] = []
        if transport is not None:
            self.attach(transport)

    @property
    def user_id(self) -> str:
        return self.keys.user_id

    def attach(self, transport):
        self.transport = transport
        transport.on(ServerEvent.NEW_MESSAGE, self._on_new_message)
        transport.on(ServerEvent.NEW_GROUP_MESSAGE, self._on_new_group_message)
        transport.on(ServerEvent.MESSAGE_UPDATED, self._on_message_updated)
        transport.on(ServerEvent.MESSAGE_DELETED, self._on_message_deleted)

    # ---- шифрование / расшифровка ----
    async def send_text(self, peer_id: str, plaintext: str) -> OutgoingEnvelope:
        if not self.encryption_enabled:
            return OutgoingEnvelope(False, text=plaintext)
        try:
            session = await self.keys.get_or_create_outgoing_key(peer_id)
            ciphertext, iv = self.engine.encrypt(plaintext, session.symmetric_key)
        except (CryptoError, DirectoryError) as err:
            warning = f"Failed to encrypt message, sending as plain text ({err})"
            log.warning("%s -> %s: %s", self.user_id, peer_id, warning)
            self._warn(peer_id, warning)
            return OutgoingEnvelope(False, text=plaintext, warning=warning)
        # обёртку берём только после успешного шифрования
        wrapped = self.keys.take_wrapped_key(peer_id)
        return OutgoingEnvelope(True, encrypted_text=EncryptedEnvelope(ciphertext, iv, wrapped))

    async def receive_text(self, envelope: EncryptedEnvelope, sender_id: str) -> str:
        try:
            key = await self.keys.resolve_incoming_key(envelope, sender_id)
            return self.engine.decrypt(envelope.ciphertext, envelope.iv, key)
        except (KeyUnavailable, CryptoError, DirectoryError) as err:
            log.warning("cannot decrypt message from %s: %s", sender_id, err)
            return PLACEHOLDER

    def _read_own(self, envelope: EncryptedEnvelope, peer_id: str) -> str:
        try:
            key = self.keys.own_key_for(peer_id)
            return self.engine.decrypt(envelope.ciphertext, envelope.iv, key)
        except (KeyUnavailable, CryptoError) as err:
            log.debug("cannot re-read own message to %s: %s", peer_id, err)
            return PLACEHOLDER

    async def render(self, message: Message) -> Message:
        if message.deleted or not message.is_encrypted:
            return message
        if message.sender_id == self.user_id:
            text = self._read_own(message.encrypted_text, message.receiver_id)
        else:
            text = await self.receive_text(message.encrypted_text, message.sender_id)
        return message.with_text(text)

    async def render_history(self, messages: Iterable[Message]) -> list[Message]:
        # строго по порядку: первое сообщение может нести wrappedSessionKey
        return [await self.render(m) for m in messages]

    def _warn(self, peer_id: str, warning: str):
        for callback in list(self.on_warning):
            callback(peer_id, warning)

    # ---- операции поверх транспорта ----
    def _require_transport(self):
        if self.transport is None:
            raise TransportError("No transport attached")
        return self.transport

    async def send(self, peer_id: str, text: str) -> Message:
        transport = self._require_transport()
        outgoing = await self.send_text(peer_id, text)
        stored = await transport.request(ClientEvent.SEND_MESSAGE, {'receiverId': peer_id, **outgoing.to_dict()})
        return Message.from_dict(stored).with_text(text)

    async def send_group(self, group_id: str, text: str) -> Message:
        transport = self._require_transport()
        stored = await transport.request(
            ClientEvent.SEND_GROUP_MESSAGE, {'groupId': group_id, 'text': text, 'isEncrypted': False},
        )
        return Message.from_dict(stored)

    async def edit(self, message_id: str, peer_id: str, text: str) -> Message:
        transport = self._require_transport()
        outgoing = await self.send_text(peer_id, text)
        updated = await transport.request(ClientEvent.EDIT_MESSAGE, {'messageId': message_id, **outgoing.to_dict()})
        return Message.from_dict(updated).with_text(text)

    async def delete(self, message_id: str) -> str:
        transport = self._require_transport()
        reply = await transport.request(ClientEvent.DELETE_MESSAGE, {'messageId': message_id})
        return reply['id']

    async def load_history(self, peer_id: str) -> list[Message]:
        transport = self._require_transport()
        raw = await transport.request(ClientEvent.GET_MESSAGES, {'peerId': peer_id})
        return await self.render_history(Message.from_dict(m) for m in raw)

    async def load_group_history(self, group_id: str) -> list[Message]:
        transport = self._require_transport()
        raw = await transport.request(ClientEvent.GET_GROUP_MESSAGES, {'groupId': group_id})
        return [Message.from_dict(m) for m in raw]

    async def logout(self):
        self.keys.reset()
        if self.transport is not None:
            await self.transport.close()

    # ---- живая доставка ----
    async def _on_new_message(self, data: dict):
        message = await self.render(Message.from_dict(data))
        for callback in list(self.on_message):
            callback(message)

    async def _on_new_group_message(self, data: dict):
        message = Message.from_dict(data)
        for callback in list(self.on_group_message):
            callback(message)

    async def _on_message_updated(self, data: dict):
        message = await self.render(Message.from_dict(data))
        for callback in list(self.on_update):
            callback(message)

    async def _on_message_deleted(self, data: dict):
        for callback in list(self.on_delete):
            callback(data)
