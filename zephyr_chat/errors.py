class ChatError(Exception):
    """Базовая ошибка zephyr_chat. `code` уходит клиенту в кадре error."""

    code = "chat_error"


class CryptoError(ChatError):
    """Сбой примитива: длина ключа/iv, тег GCM, слишком большой payload."""

    code = "crypto_error"


class KeyUnavailable(ChatError):
    """Нет сессионного ключа и нет обёрнутого ключа, чтобы его получить."""

    code = "key_unavailable"


class DirectoryError(ChatError):
    """Не удалось получить публичный/приватный ключ из каталога."""

    code = "directory_error"


class TransportError(ChatError):
    """Канал не подключён или закрылся во время отправки."""

    code = "transport_error"


class ProtocolError(ChatError):
    code = "protocol_error"


class PermissionDenied(ChatError):
    code = "permission_denied"
