import json

import pytest

from zephyr_chat.errors import ProtocolError
from zephyr_chat.protocol.messages import EncryptedEnvelope, Message
from zephyr_chat.protocol.packet import Packet
from zephyr_chat.protocol.types import ClientEvent, ServerEvent


def test_pack_uses_event_names_and_request_id():
    raw = Packet.pack(ClientEvent.START_TYPING, {"receiverId": "bob"}, request_id=7)
    assert json.loads(raw) == {"event": "startTyping", "data": {"receiverId": "bob"}, "id": 7}
    assert Packet.unpack(raw) == ("startTyping", {"receiverId": "bob"}, 7)


def test_unpack_event_without_id():
    event, data, request_id = Packet.unpack(Packet.pack(ServerEvent.ONLINE_USERS, ["alice"]))
    assert (event, data, request_id) == ("getOnlineUsers", ["alice"], None)


@pytest.mark.parametrize("raw", ["not json", "[]", '{"data": {}}', '{"event": "x", "id": "7"}'])
def test_unpack_rejects_malformed_frames(raw):
    with pytest.raises(ProtocolError):
        Packet.unpack(raw)


def test_oversized_frame_is_rejected():
    with pytest.raises(ProtocolError, match="too large"):
        Packet.pack("sendMessage", {"text": "x" * Packet.MAX_SIZE})


def test_envelope_omits_absent_wrapped_key():
    assert EncryptedEnvelope("c", "i").to_dict() == {"ciphertext": "c", "iv": "i"}
    env = EncryptedEnvelope.from_dict({"ciphertext": "c", "iv": "i", "wrappedSessionKey": "w"})
    assert env.wrapped_session_key == "w"
    with pytest.raises(ProtocolError):
        EncryptedEnvelope.from_dict({"ciphertext": "c"})


def test_message_wire_shape():
    msg = Message(sender_id="alice", receiver_id="bob", encrypted_text=EncryptedEnvelope("c", "i"),
                  is_encrypted=True, id="m1", created_at="2026-01-01T00:00:00.000Z")
    wire = msg.to_dict()
    assert wire == {
        "id": "m1", "senderId": "alice", "receiverId": "bob", "text": None,
        "encryptedText": {"ciphertext": "c", "iv": "i"}, "isEncrypted": True,
        "createdAt": "2026-01-01T00:00:00.000Z",
    }
    assert Message.from_dict(wire) == msg


def test_message_requires_exactly_one_body():
    with pytest.raises(ProtocolError):
        Message(sender_id="alice", receiver_id="bob", is_encrypted=True)
    with pytest.raises(ProtocolError):
        Message(sender_id="alice", receiver_id="bob")
    with pytest.raises(ProtocolError):
        Message(sender_id="alice", receiver_id="bob", group_id="g", text="hi")
    with pytest.raises(ProtocolError):
        Message(sender_id="alice", receiver_id="bob", text="hi", encrypted_text=EncryptedEnvelope("c", "i"))


def test_group_message_has_no_receiver():
    wire = Message(sender_id="alice", group_id="g1", text="hi").to_dict()
    assert wire["groupId"] == "g1" and "receiverId" not in wire
