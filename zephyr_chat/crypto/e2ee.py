import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from zephyr_chat import config
from zephyr_chat.errors import CryptoError


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, AttributeError) as err:
        raise CryptoError(f"Invalid base64: {err}") from err


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


class CryptoEngine:
    """AES-256-GCM для содержимого, RSA-OAEP/SHA-256 для обёртки ключа.

    Все бинарные значения наружу уходят в base64.
    """

    KEY_SIZE = 32    # AES-256
    NONCE_SIZE = 12  # 96 бит, оптимально для GCM
    MAX_PLAINTEXT = config.MAX_PLAINTEXT_SIZE

    @staticmethod
    def generate_symmetric_key() -> bytes:
        return AESGCM.generate_key(bit_length=256)

    @staticmethod
    def _cipher(key: bytes) -> AESGCM:
        if not isinstance(key, (bytes, bytearray)) or len(key) != CryptoEngine.KEY_SIZE:
            raise CryptoError(f"Session key must be {CryptoEngine.KEY_SIZE} bytes")
        return AESGCM(bytes(key))

    @staticmethod
    def encrypt(plaintext: str, key: bytes) -> tuple[str, str]:
        """Возвращает (ciphertext, iv) в base64; ciphertext включает тег (16)."""
        data = plaintext.encode("utf-8")
        if len(data) > CryptoEngine.MAX_PLAINTEXT:
            raise CryptoError("Plaintext too large")
        aes = CryptoEngine._cipher(key)
        iv = os.urandom(CryptoEngine.NONCE_SIZE)  # новый iv на каждый вызов
        try:
            ct = aes.encrypt(iv, data, None)
        except OverflowError as err:
            raise CryptoError("Plaintext too large") from err
        return b64encode(ct), b64encode(iv)

    @staticmethod
    def decrypt(ciphertext: str, iv: str, key: bytes) -> str:
        aes = CryptoEngine._cipher(key)
        nonce = b64decode(iv)
        if len(nonce) != CryptoEngine.NONCE_SIZE:
            raise CryptoError(f"IV must be {CryptoEngine.NONCE_SIZE} bytes")
        try:
            data = aes.decrypt(nonce, b64decode(ciphertext), None)
        except InvalidTag as err:
            raise CryptoError("Authentication failed: wrong key or tampered ciphertext") from err
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as err:
            raise CryptoError("Decrypted payload is not UTF-8") from err

    @staticmethod
    def max_wrap_payload(public_key: rsa.RSAPublicKey) -> int:
        # OAEP: k - 2*hLen - 2, для 2048 бит и SHA-256 это 190 байт
        return public_key.key_size // 8 - 2 * hashes.SHA256.digest_size - 2

    @staticmethod
    def wrap_key(raw_key: bytes, recipient_public_key: rsa.RSAPublicKey) -> str:
        if not raw_key or len(raw_key) > CryptoEngine.max_wrap_payload(recipient_public_key):
            raise CryptoError("Key too large for RSA-OAEP modulus")
        try:
            wrapped = recipient_public_key.encrypt(raw_key, _oaep())
        except (ValueError, TypeError) as err:
            raise CryptoError(f"Key wrap failed: {err}") from err
        return b64encode(wrapped)

    @staticmethod
    def unwrap_key(wrapped: str, own_private_key: rsa.RSAPrivateKey) -> bytes:
        try:
            raw = own_private_key.decrypt(b64decode(wrapped), _oaep())
        except (ValueError, TypeError) as err:
            raise CryptoError("Key unwrap failed: malformed ciphertext or key mismatch") from err
        if len(raw) != CryptoEngine.KEY_SIZE:
            raise CryptoError(f"Unwrapped key must be {CryptoEngine.KEY_SIZE} bytes")
        return raw
