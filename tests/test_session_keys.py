import asyncio

import pytest

from zephyr_chat.crypto.e2ee import CryptoEngine
from zephyr_chat.errors import DirectoryError, KeyUnavailable
from zephyr_chat.protocol.messages import EncryptedEnvelope


def _envelope(manager, peer_id, key, text="hi"):
    ciphertext, iv = CryptoEngine.encrypt(text, key)
    return EncryptedEnvelope(ciphertext, iv, manager.take_wrapped_key(peer_id))


@pytest.mark.asyncio
async def test_outgoing_key_is_created_once_and_cached(make_manager):
    alice = make_manager("alice")
    first = await alice.get_or_create_outgoing_key("bob")
    second = await alice.get_or_create_outgoing_key("bob")
    assert first is second
    assert len(first.symmetric_key) == 32
    assert first.generated_locally
    assert alice.directory.public_calls == ["bob"]


@pytest.mark.asyncio
async def test_wrapped_key_is_attached_to_first_envelope_only(make_manager):
    alice = make_manager("alice")
    session = await alice.get_or_create_outgoing_key("bob")
    assert alice.take_wrapped_key("bob") == session.wrapped_for_peer
    assert alice.take_wrapped_key("bob") is None
    assert alice.take_wrapped_key("carol") is None


@pytest.mark.asyncio
async def test_concurrent_creation_is_single_flight(make_manager):
    alice = make_manager("alice")
    results = await asyncio.gather(*(alice.get_or_create_outgoing_key("bob") for _ in range(10)))
    assert all(r is results[0] for r in results)
    assert alice.directory.public_calls == ["bob"]


@pytest.mark.asyncio
async def test_directory_failure_is_not_cached(make_manager):
    alice = make_manager("alice")
    alice.directory.fail_public = True
    with pytest.raises(DirectoryError):
        await alice.get_or_create_outgoing_key("bob")
    assert "bob" not in alice.store.outgoing

    alice.directory.fail_public = False
    session = await alice.get_or_create_outgoing_key("bob")
    assert session.symmetric_key


@pytest.mark.asyncio
async def test_first_receipt_unwraps_and_adopts_sender_key(make_manager):
    alice, bob = make_manager("alice"), make_manager("bob")
    session = await alice.get_or_create_outgoing_key("bob")
    envelope = _envelope(alice, "bob", session.symmetric_key)

    key = await bob.resolve_incoming_key(envelope, "alice")
    assert key == session.symmetric_key
    # bob отвечает тем же ключом и без своей обёртки
    reply_key = await bob.get_or_create_outgoing_key("alice")
    assert reply_key.symmetric_key == session.symmetric_key
    assert not reply_key.generated_locally
    assert bob.take_wrapped_key("alice") is None
    assert bob.directory.public_calls == []


@pytest.mark.asyncio
async def test_cached_key_used_when_no_wrap(make_manager):
    alice, bob = make_manager("alice"), make_manager("bob")
    session = await alice.get_or_create_outgoing_key("bob")
    await bob.resolve_incoming_key(_envelope(alice, "bob", session.symmetric_key), "alice")

    later = _envelope(alice, "bob", session.symmetric_key, "again")
    assert later.wrapped_session_key is None
    assert await bob.resolve_incoming_key(later, "alice") == session.symmetric_key


@pytest.mark.asyncio
async def test_no_key_and_no_wrap_is_key_unavailable(make_manager):
    bob = make_manager("bob")
    ciphertext, iv = CryptoEngine.encrypt("hi", CryptoEngine.generate_symmetric_key())
    with pytest.raises(KeyUnavailable):
        await bob.resolve_incoming_key(EncryptedEnvelope(ciphertext, iv), "alice")


@pytest.mark.asyncio
async def test_simultaneous_first_sends_converge_per_direction(make_manager):
    alice, bob = make_manager("alice"), make_manager("bob")
    # оба отправляют первыми, ещё не видя друг друга
    k_a = await alice.get_or_create_outgoing_key("bob")
    k_b = await bob.get_or_create_outgoing_key("alice")
    assert k_a.symmetric_key != k_b.symmetric_key
    env_a = _envelope(alice, "bob", k_a.symmetric_key, "from alice")
    env_b = _envelope(bob, "alice", k_b.symmetric_key, "from bob")

    assert await bob.resolve_incoming_key(env_a, "alice") == k_a.symmetric_key
    assert await alice.resolve_incoming_key(env_b, "bob") == k_b.symmetric_key

    # дальше alice -> bob идёт на K_A, bob -> alice на K_B, без обёрток
    next_a = _envelope(alice, "bob", (await alice.get_or_create_outgoing_key("bob")).symmetric_key)
    next_b = _envelope(bob, "alice", (await bob.get_or_create_outgoing_key("alice")).symmetric_key)
    assert next_a.wrapped_session_key is None and next_b.wrapped_session_key is None
    key_for_a = await bob.resolve_incoming_key(next_a, "alice")
    assert key_for_a == k_a.symmetric_key
    assert CryptoEngine.decrypt(next_a.ciphertext, next_a.iv, key_for_a) == "hi"
    assert await alice.resolve_incoming_key(next_b, "bob") == k_b.symmetric_key


@pytest.mark.asyncio
async def test_new_wrap_overwrites_incoming_key(make_manager):
    alice, bob = make_manager("alice"), make_manager("bob")
    first = await alice.get_or_create_outgoing_key("bob")
    await bob.resolve_incoming_key(_envelope(alice, "bob", first.symmetric_key), "alice")

    # alice перезапустилась: новый процесс, новый ключ
    restarted = make_manager("alice")
    second = await restarted.get_or_create_outgoing_key("bob")
    envelope = _envelope(restarted, "bob", second.symmetric_key)
    assert await bob.resolve_incoming_key(envelope, "alice") == second.symmetric_key
    assert bob.store.incoming["alice"] == second.symmetric_key

    # ответ bob идёт на новом ключе, и перезапущенная alice его читает
    reply_key = await bob.get_or_create_outgoing_key("alice")
    assert reply_key.symmetric_key == second.symmetric_key
    reply = _envelope(bob, "alice", reply_key.symmetric_key, "welcome back")
    assert reply.wrapped_session_key is None
    key = await restarted.resolve_incoming_key(reply, "bob")
    assert CryptoEngine.decrypt(reply.ciphertext, reply.iv, key) == "welcome back"


@pytest.mark.asyncio
async def test_new_wrap_keeps_locally_generated_outgoing_key(make_manager):
    alice, bob = make_manager("alice"), make_manager("bob")
    k_a = await alice.get_or_create_outgoing_key("bob")
    k_b = await bob.get_or_create_outgoing_key("alice")
    await bob.resolve_incoming_key(_envelope(alice, "bob", k_a.symmetric_key), "alice")
    assert bob.own_key_for("alice") == k_b.symmetric_key


@pytest.mark.asyncio
async def test_own_key_for_and_reset(make_manager):
    alice = make_manager("alice")
    with pytest.raises(KeyUnavailable):
        alice.own_key_for("bob")
    session = await alice.get_or_create_outgoing_key("bob")
    assert alice.own_key_for("bob") == session.symmetric_key

    alice.reset()
    assert alice.store.outgoing == {} and alice.store.private_key is None
    with pytest.raises(KeyUnavailable):
        alice.own_key_for("bob")
