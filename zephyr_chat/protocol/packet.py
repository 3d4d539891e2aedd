import json
from enum import Enum
from typing import Any

from zephyr_chat import config
from zephyr_chat.errors import ProtocolError


class Packet:
    """Текстовый кадр поверх websocket: {"event": ..., "data": {...}, "id": n}.

    `id` есть только у запросов клиента и у ответов (response/error) на них.
    """

    MAX_SIZE = config.MAX_FRAME_SIZE

    @staticmethod
    def pack(event: str | Enum, data: Any = None, request_id: int | None = None) -> str:
        if isinstance(event, Enum):
            event = event.value
        frame = {"event": event, "data": data if data is not None else {}}
        if request_id is not None:
            frame["id"] = request_id
        raw = json.dumps(frame, ensure_ascii=False, separators=(",", ":"))
        if len(raw) > Packet.MAX_SIZE:  # 16MB лимит
            raise ProtocolError("Payload too large")
        return raw

    @staticmethod
    def unpack(raw: str | bytes) -> tuple[str, Any, int | None]:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        if len(raw) > Packet.MAX_SIZE:
            raise ProtocolError("Payload too large")
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError as err:
            raise ProtocolError(f"Malformed frame: {err}") from err

        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            raise ProtocolError("Frame has no event name")

        request_id = frame.get("id")
        if request_id is not None and not isinstance(request_id, int):
            raise ProtocolError("Request id must be an integer")
        data = frame.get("data")
        return frame["event"], {} if data is None else data, request_id
