import asyncio

import pytest
from websockets.exceptions import ConnectionClosed

from zephyr_chat.crypto.keys import KeyManager, KeyStore
from zephyr_chat.crypto.session_keys import SessionKeyManager
from zephyr_chat.errors import DirectoryError
from zephyr_chat.protocol.packet import Packet
from zephyr_chat.server.presence import PresenceHub
from zephyr_chat.server.storage import InMemoryStorage


class FakeDirectory:
    """Каталог ключей в памяти, считает обращения за публичными ключами."""

    def __init__(self, keyring: dict, owner: str):
        self.keyring = keyring
        self.owner = owner
        self.public_calls = []
        self.fail_public = False

    async def public_key(self, user_id: str) -> str:
        self.public_calls.append(user_id)
        await asyncio.sleep(0)  # даём другим корутинам вклиниться
        if self.fail_public or user_id not in self.keyring:
            raise DirectoryError(f"no key for {user_id}")
        return self.keyring[user_id][1]

    async def private_key(self) -> str:
        await asyncio.sleep(0)
        return self.keyring[self.owner][0]


class FakeWebSocket:
    """Серверная сторона соединения: запоминает отправленные кадры."""

    def __init__(self, broken: bool = False):
        self.sent = []
        self.closed = False
        self.broken = broken

    async def send(self, raw):
        if self.closed or self.broken:
            raise ConnectionClosed(None, None)
        self.sent.append(raw)

    async def close(self, code=1000, reason=""):
        self.closed = True

    def events(self, name=None):
        frames = [Packet.unpack(raw) for raw in self.sent]
        return [(event, data) for event, data, _ in frames if name is None or event == name]


@pytest.fixture(scope="session")
def keyring():
    # RSA-2048 генерируется долго, одна связка на всю сессию
    return {user: KeyManager.generate_keypair() for user in ("alice", "bob", "carol")}


@pytest.fixture
def make_manager(keyring):
    def factory(user_id: str) -> SessionKeyManager:
        return SessionKeyManager(KeyStore(user_id), FakeDirectory(keyring, user_id))
    return factory


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def hub(storage):
    return PresenceHub(storage)


@pytest.fixture
def fake_ws():
    return FakeWebSocket
