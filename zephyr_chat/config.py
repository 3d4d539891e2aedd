import logging
import os


def _env_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


# ---- сервер ----
HOST = os.getenv("ZEPHYR_HOST", "0.0.0.0")
WS_PORT = int(os.getenv("ZEPHYR_WS_PORT", "8765"))
SERVER_URL = os.getenv("ZEPHYR_SERVER_URL", f"ws://127.0.0.1:{WS_PORT}")

# ---- Redis (кеш включается, если задан USE_REDIS или REDIS_URL) ----
REDIS_URL = os.getenv("REDIS_URL")
USE_REDIS = _env_bool("USE_REDIS", False) or bool(REDIS_URL)

# ---- протокол ----
MAX_FRAME_SIZE = 0xFFFFFF  # 16MB, как и лимит пакета
REQUEST_TIMEOUT = float(os.getenv("ZEPHYR_REQUEST_TIMEOUT", "10"))

# ---- крипто ----
RSA_KEY_SIZE = int(os.getenv("ZEPHYR_RSA_KEY_SIZE", "2048"))
MAX_PLAINTEXT_SIZE = 0xFFFFFF
ENCRYPTION_ENABLED = _env_bool("ZEPHYR_ENCRYPTION", True)

# ---- логирование ----
LOG_LEVEL = os.getenv("ZEPHYR_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level: str | None = None):
    logging.basicConfig(level=level or LOG_LEVEL, format=LOG_FORMAT)
    # websockets очень болтлив на DEBUG
    logging.getLogger("websockets").setLevel(logging.WARNING)
