from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from zephyr_chat.errors import ProtocolError
from zephyr_chat.protocol.types import ChatType


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class EncryptedEnvelope:
    """JSON-форма: {ciphertext, iv, wrappedSessionKey?}, всё в base64.

    wrappedSessionKey есть только в первом конверте после создания ключа.
    """

    ciphertext: str
    iv: str
    wrapped_session_key: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"ciphertext": self.ciphertext, "iv": self.iv}
        if self.wrapped_session_key:
            out["wrappedSessionKey"] = self.wrapped_session_key
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedEnvelope":
        if not isinstance(data, dict):
            raise ProtocolError("Envelope must be an object")
        try:
            ciphertext, iv = data["ciphertext"], data["iv"]
        except KeyError as err:
            raise ProtocolError(f"Envelope is missing {err.args[0]}") from err
        if not isinstance(ciphertext, str) or not isinstance(iv, str):
            raise ProtocolError("Envelope fields must be base64 strings")
        return cls(ciphertext, iv, data.get("wrappedSessionKey") or None)


@dataclass
class Message:
    """Сообщение в том виде, в каком его хранит storage и рассылает router.

    Ровно одно из text / encrypted_text заполнено согласно is_encrypted.
    У группового сообщения есть group_id и нет receiver_id.
    """

    sender_id: str
    receiver_id: Optional[str] = None
    group_id: Optional[str] = None
    text: Optional[str] = None
    encrypted_text: Optional[EncryptedEnvelope] = None
    is_encrypted: bool = False
    id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    deleted: bool = False
    extra: dict = field(default_factory=dict)

    def __post_init__(self):
        if (self.receiver_id is None) == (self.group_id is None):
            raise ProtocolError("Message needs exactly one of receiverId / groupId")
        if self.deleted:
            return
        if self.is_encrypted and self.encrypted_text is None:
            raise ProtocolError("Encrypted message without envelope")
        if not self.is_encrypted and (self.text is None or self.encrypted_text is not None):
            raise ProtocolError("Plain message needs text and no envelope")

    @property
    def chat_type(self) -> ChatType:
        return ChatType.GROUP if self.group_id is not None else ChatType.PRIVATE

    def with_text(self, text: str) -> "Message":
        # копия для отображения: расшифрованный текст, конверт сохраняем
        return replace(self, text=text)

    def to_dict(self) -> dict:
        out: dict[str, Any] = {
            "id": self.id,
            "senderId": self.sender_id,
            "text": self.text,
            "encryptedText": self.encrypted_text.to_dict() if self.encrypted_text else None,
            "isEncrypted": self.is_encrypted,
            "createdAt": self.created_at,
        }
        if self.group_id is not None:
            out["groupId"] = self.group_id
        else:
            out["receiverId"] = self.receiver_id
        if self.updated_at:
            out["updatedAt"] = self.updated_at
        if self.deleted:
            out["deleted"] = True
        out.update(self.extra)
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        if not isinstance(data, dict) or "senderId" not in data:
            raise ProtocolError("Message must be an object with senderId")
        known = {"id", "senderId", "receiverId", "groupId", "text", "encryptedText",
                 "isEncrypted", "createdAt", "updatedAt", "deleted"}
        envelope = data.get("encryptedText")
        return cls(
            sender_id=data["senderId"],
            receiver_id=data.get("receiverId"),
            group_id=data.get("groupId"),
            text=data.get("text"),
            encrypted_text=EncryptedEnvelope.from_dict(envelope) if envelope else None,
            is_encrypted=bool(data.get("isEncrypted")),
            id=data.get("id"),
            created_at=data.get("createdAt"),
            updated_at=data.get("updatedAt"),
            deleted=bool(data.get("deleted")),
            extra={k: v for k, v in data.items() if k not in known},
        )
