import base64

import pytest

from zephyr_chat.client.session import PLACEHOLDER, ChatSessionController
from zephyr_chat.protocol.messages import EncryptedEnvelope, Message


class FakeTransport:
    """Транспорт без сети: регистрирует подписки и отвечает на запросы."""

    def __init__(self):
        self.handlers = {}
        self.requests = []
        self.replies = {}
        self.closed = False

    def on(self, event, handler):
        self.handlers.setdefault(event.value, []).append(handler)

    async def request(self, event, data=None):
        self.requests.append((event.value, data))
        reply = self.replies.get(event.value)
        return reply(data) if callable(reply) else reply

    async def close(self):
        self.closed = True

    async def deliver(self, event, data):
        for handler in self.handlers.get(event, []):
            await handler(data)


@pytest.fixture
def pair(make_manager):
    return ChatSessionController(make_manager("alice")), ChatSessionController(make_manager("bob"))


def _tamper(envelope: EncryptedEnvelope) -> EncryptedEnvelope:
    raw = bytearray(base64.b64decode(envelope.ciphertext))
    raw[0] ^= 0xFF
    return EncryptedEnvelope(base64.b64encode(bytes(raw)).decode(), envelope.iv, envelope.wrapped_session_key)


@pytest.mark.asyncio
async def test_hello_hi_end_to_end(pair):
    alice, bob = pair
    hello = await alice.send_text("bob", "hello")
    assert hello.is_encrypted and hello.warning is None
    assert hello.encrypted_text.wrapped_session_key
    assert await bob.receive_text(hello.encrypted_text, "alice") == "hello"

    hi = await bob.send_text("alice", "hi")
    assert hi.is_encrypted
    assert hi.encrypted_text.wrapped_session_key is None  # bob уже знает ключ alice
    assert await alice.receive_text(hi.encrypted_text, "bob") == "hi"


@pytest.mark.asyncio
async def test_reply_before_receipt_carries_own_wrap(pair):
    alice, bob = pair
    hello = await alice.send_text("bob", "hello")
    hi = await bob.send_text("alice", "hi")  # hello ещё не дошло
    assert hi.encrypted_text.wrapped_session_key

    assert await alice.receive_text(hi.encrypted_text, "bob") == "hi"
    assert await bob.receive_text(hello.encrypted_text, "alice") == "hello"
    follow_up = await alice.send_text("bob", "still there?")
    assert follow_up.encrypted_text.wrapped_session_key is None
    assert await bob.receive_text(follow_up.encrypted_text, "alice") == "still there?"


@pytest.mark.asyncio
async def test_peer_restart_keeps_replies_readable(pair, make_manager):
    alice, bob = pair
    hello = await alice.send_text("bob", "hello")
    assert await bob.receive_text(hello.encrypted_text, "alice") == "hello"

    restarted = ChatSessionController(make_manager("alice"))
    back = await restarted.send_text("bob", "back")
    assert await bob.receive_text(back.encrypted_text, "alice") == "back"

    reply = await bob.send_text("alice", "welcome back")
    assert await restarted.receive_text(reply.encrypted_text, "bob") == "welcome back"


@pytest.mark.asyncio
async def test_tampered_ciphertext_renders_placeholder(pair):
    alice, bob = pair
    hello = await alice.send_text("bob", "hello")
    assert await bob.receive_text(_tamper(hello.encrypted_text), "alice") == PLACEHOLDER


@pytest.mark.asyncio
async def test_missing_key_renders_placeholder(pair):
    alice, bob = pair
    await alice.send_text("bob", "first")  # обёртка ушла и потерялась
    second = await alice.send_text("bob", "second")
    assert second.encrypted_text.wrapped_session_key is None
    assert await bob.receive_text(second.encrypted_text, "alice") == PLACEHOLDER


@pytest.mark.asyncio
async def test_directory_failure_falls_back_to_plaintext_with_warning(make_manager):
    manager = make_manager("alice")
    manager.directory.fail_public = True
    controller = ChatSessionController(manager)
    warnings = []
    controller.on_warning.append(lambda peer, text: warnings.append((peer, text)))

    outgoing = await controller.send_text("bob", "hello")
    assert not outgoing.is_encrypted
    assert outgoing.to_dict() == {"text": "hello", "isEncrypted": False}
    assert outgoing.warning and warnings and warnings[0][0] == "bob"


@pytest.mark.asyncio
async def test_oversized_plaintext_falls_back(pair):
    alice, _ = pair
    big = "a" * (alice.engine.MAX_PLAINTEXT + 1)
    outgoing = await alice.send_text("bob", big)
    assert not outgoing.is_encrypted and outgoing.text == big
    # обёртка не потрачена на неудачную попытку
    assert alice.keys.take_wrapped_key("bob") is not None


@pytest.mark.asyncio
async def test_encryption_disabled_sends_plaintext_silently(make_manager):
    controller = ChatSessionController(make_manager("alice"), encryption_enabled=False)
    outgoing = await controller.send_text("bob", "hello")
    assert outgoing == type(outgoing)(False, text="hello")


@pytest.mark.asyncio
async def test_history_renders_in_order_including_own_messages(pair):
    alice, bob = pair
    hello = await alice.send_text("bob", "hello")
    again = await alice.send_text("bob", "again")
    history = [
        Message(sender_id="alice", receiver_id="bob", encrypted_text=hello.encrypted_text,
                is_encrypted=True, id="1"),
        Message(sender_id="alice", receiver_id="bob", encrypted_text=again.encrypted_text,
                is_encrypted=True, id="2"),
        Message(sender_id="bob", receiver_id="alice", text="plain", id="3"),
    ]
    assert [m.text for m in await bob.render_history(history)] == ["hello", "again", "plain"]
    assert [m.text for m in await alice.render_history(history)] == ["hello", "again", "plain"]


@pytest.mark.asyncio
async def test_live_delivery_decrypts_before_callback(pair):
    alice, _ = pair
    transport = FakeTransport()
    bob = ChatSessionController(pair[1].keys, transport)
    seen = []
    bob.on_message.append(seen.append)

    hello = await alice.send_text("bob", "hello")
    message = Message(sender_id="alice", receiver_id="bob", encrypted_text=hello.encrypted_text,
                      is_encrypted=True, id="m1", created_at="2026-01-01T00:00:00.000Z")
    await transport.deliver("newMessage", message.to_dict())
    assert [m.text for m in seen] == ["hello"]
    assert seen[0].is_encrypted and seen[0].id == "m1"


@pytest.mark.asyncio
async def test_send_posts_envelope_through_transport(pair):
    alice, _ = pair
    transport = FakeTransport()
    alice.attach(transport)

    def stored(data):
        return {"id": "m1", "senderId": "alice", "createdAt": "2026-01-01T00:00:00.000Z", **data}
    transport.replies["sendMessage"] = stored

    sent = await alice.send("bob", "hello")
    event, data = transport.requests[0]
    assert event == "sendMessage" and data["receiverId"] == "bob" and data["isEncrypted"] is True
    assert "wrappedSessionKey" in data["encryptedText"]
    assert sent.text == "hello" and sent.id == "m1"


@pytest.mark.asyncio
async def test_logout_clears_keys_and_closes_transport(pair):
    alice, _ = pair
    transport = FakeTransport()
    alice.attach(transport)
    await alice.send_text("bob", "hello")
    await alice.logout()
    assert alice.keys.store.outgoing == {}
    assert transport.closed
