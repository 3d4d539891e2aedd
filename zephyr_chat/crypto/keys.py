from dataclasses import dataclass
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from zephyr_chat import config
from zephyr_chat.errors import CryptoError


class KeyManager:
    @staticmethod
    def generate_keypair(key_size: int = config.RSA_KEY_SIZE) -> tuple[str, str]:
        """RSA-OAEP пара при создании аккаунта: (private PKCS8 PEM, public SPKI PEM)."""
        private = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        public = private.public_key()
        return (
            private.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption()
            ).decode("ascii"),
            public.public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo
            ).decode("ascii"),
        )

    @staticmethod
    def load_public_key(pem: str) -> rsa.RSAPublicKey:
        try:
            key = serialization.load_pem_public_key(pem.encode("ascii"))
        except (ValueError, TypeError, AttributeError, UnicodeEncodeError) as err:
            raise CryptoError(f"Invalid public key PEM: {err}") from err
        if not isinstance(key, rsa.RSAPublicKey):
            raise CryptoError("Public key is not RSA")
        return key

    @staticmethod
    def load_private_key(pem: str) -> rsa.RSAPrivateKey:
        try:
            key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
        except (ValueError, TypeError, AttributeError, UnicodeEncodeError) as err:
            raise CryptoError(f"Invalid private key PEM: {err}") from err
        if not isinstance(key, rsa.RSAPrivateKey):
            raise CryptoError("Private key is not RSA")
        return key


@dataclass
class SessionKey:
    peer_id: str
    symmetric_key: bytes
    wrapped_for_peer: Optional[str] = None  # None, если ключ получен от собеседника
    wrap_pending: bool = False  # обёртку ещё не отправили

    @property
    def generated_locally(self) -> bool:
        return self.wrapped_for_peer is not None


class KeyStore:
    """Локальные ключи клиента: своя identity и сессионные ключи по собеседникам.

    Живёт в памяти процесса, clear() при logout.
    """

    def __init__(self, user_id: str):
        self.user_id = user_id
        self.private_key: Optional[rsa.RSAPrivateKey] = None
        self.public_keys: dict[str, rsa.RSAPublicKey] = {}  # peer_id: key
        self.outgoing: dict[str, SessionKey] = {}  # peer_id: ключ для отправки
        self.incoming: dict[str, bytes] = {}  # peer_id: ключ из последнего wrappedSessionKey

    def set_private_key(self, pem: str):
        self.private_key = KeyManager.load_private_key(pem)

    def remember_public_key(self, peer_id: str, pem: str) -> rsa.RSAPublicKey:
        key = KeyManager.load_public_key(pem)
        self.public_keys[peer_id] = key
        return key

    def clear(self):
        self.private_key = None
        self.public_keys.clear()
        self.outgoing.clear()
        self.incoming.clear()
