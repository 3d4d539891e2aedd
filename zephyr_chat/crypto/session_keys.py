import asyncio
import logging
from typing import Protocol

from cryptography.hazmat.primitives.asymmetric import rsa

from zephyr_chat.errors import DirectoryError, KeyUnavailable
from zephyr_chat.protocol.messages import EncryptedEnvelope
from .e2ee import CryptoEngine
from .keys import KeyStore, SessionKey

log = logging.getLogger(__name__)


class KeyDirectory(Protocol):
    """Каталог ключей аккаунтов (внешний сервис)."""

    async def public_key(self, user_id: str) -> str: ...

    async def private_key(self) -> str: ...


class SessionKeyManager:
    """Один сессионный AES-ключ на пару собеседников, создаётся лениво.

    Кто сгенерировал ключ, тот и главный: вторая сторона только разворачивает
    его из wrappedSessionKey. Кеш на обеих сторонах ключуется id собеседника.
    Если обе стороны отправили первое сообщение одновременно, каждое
    направление остаётся на ключе своего отправителя.
    """

    def __init__(self, store: KeyStore, directory: KeyDirectory, engine: type[CryptoEngine] = CryptoEngine):
        self.store = store
        self.directory = directory
        self.engine = engine
        self._inflight: dict[str, asyncio.Future] = {}  # peer_id: создание ключа
        self._private_lock = asyncio.Lock()

    @property
    def user_id(self) -> str:
        return self.store.user_id

    async def _peer_public_key(self, peer_id: str) -> rsa.RSAPublicKey:
        key = self.store.public_keys.get(peer_id)
        if key is not None:
            return key
        pem = await self.directory.public_key(peer_id)
        if not pem:
            raise DirectoryError(f"No public key for {peer_id}")
        return self.store.remember_public_key(peer_id, pem)

    async def _own_private_key(self) -> rsa.RSAPrivateKey:
        async with self._private_lock:
            if self.store.private_key is None:
                pem = await self.directory.private_key()
                if not pem:
                    raise DirectoryError("Private key is not available")
                self.store.set_private_key(pem)
                log.debug("private key loaded for %s", self.user_id)
            return self.store.private_key

    async def get_or_create_outgoing_key(self, peer_id: str) -> SessionKey:
        cached = self.store.outgoing.get(peer_id)
        if cached is not None:
            return cached

        # single-flight: параллельные отправки ждут одну и ту же задачу
        task = self._inflight.get(peer_id)
        if task is None:
            task = asyncio.ensure_future(self._create_outgoing_key(peer_id))
            self._inflight[peer_id] = task
            task.add_done_callback(lambda _t, p=peer_id: self._inflight.pop(p, None))
        return await asyncio.shield(task)

    async def _create_outgoing_key(self, peer_id: str) -> SessionKey:
        public_key = await self._peer_public_key(peer_id)
        # пока ждали каталог, могли получить ключ собеседника
        adopted = self.store.outgoing.get(peer_id)
        if adopted is not None:
            return adopted

        raw = self.engine.generate_symmetric_key()
        wrapped = self.engine.wrap_key(raw, public_key)
        session = SessionKey(peer_id, raw, wrapped_for_peer=wrapped, wrap_pending=True)
        self.store.outgoing[peer_id] = session
        log.info("session key created for %s -> %s", self.user_id, peer_id)
        return session

    def take_wrapped_key(self, peer_id: str) -> str | None:
        """Обёрнутый ключ для первого конверта после создания, дальше None."""
        session = self.store.outgoing.get(peer_id)
        if session is None or not session.wrap_pending:
            return None
        session.wrap_pending = False
        return session.wrapped_for_peer

    async def resolve_incoming_key(self, envelope: EncryptedEnvelope, sender_id: str) -> bytes:
        if envelope.wrapped_session_key:
            private_key = await self._own_private_key()
            raw = self.engine.unwrap_key(envelope.wrapped_session_key, private_key)
            # wrappedSessionKey всегда перезаписывает ключ этого отправителя
            self.store.incoming[sender_id] = raw
            # свой сгенерированный ключ не трогаем, принятый ранее заменяем новым
            current = self.store.outgoing.get(sender_id)
            if current is None or (not current.generated_locally and current.symmetric_key != raw):
                self.store.outgoing[sender_id] = SessionKey(sender_id, raw)
                log.info("session key adopted from %s", sender_id)
            return raw

        raw = self.store.incoming.get(sender_id)
        if raw is not None:
            return raw
        session = self.store.outgoing.get(sender_id)
        if session is not None:
            return session.symmetric_key
        raise KeyUnavailable(f"No session key for {sender_id}")

    def own_key_for(self, peer_id: str) -> bytes:
        """Ключ, которым мы сами шифровали сообщения для peer_id."""
        session = self.store.outgoing.get(peer_id)
        if session is None:
            raise KeyUnavailable(f"No outgoing session key for {peer_id}")
        return session.symmetric_key

    def reset(self):
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()
        self.store.clear()
