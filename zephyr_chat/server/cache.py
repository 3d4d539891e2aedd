import json
import logging

from zephyr_chat import config

log = logging.getLogger(__name__)


class RedisCache:
    """Простой распределённый кэш на базе Redis.

    Хранит метаданные групп (имя, участники), сообщения по id, ленты и last seen.
    Несколько серверов, разделяющих Redis, видят одни и те же группы и
    историю. Присутствие (онлайн/typing) сюда не пишется.
    """

    def __init__(self, url: str | None = None, client=None):
        if client is None:
            try:
                import redis
            except ImportError:
                raise RuntimeError("redis package is required for RedisCache")
            self.url = url or config.REDIS_URL or "redis://localhost:6379/0"
            # decode_responses=True позволяет работать со строками вместо байтов
            client = redis.from_url(self.url, decode_responses=True)
        else:
            self.url = url
        self.r = client

    def store_group(self, group_id: str, group_obj: dict):
        # подготовим объект, конвертируя множество в список
        obj = {**group_obj}
        if "members" in obj and isinstance(obj["members"], (set, list)):
            obj["members"] = sorted(obj["members"])
        self.r.hset("groups", group_id, json.dumps(obj))
        # хранение множества участников отдельно для быстрого доступа
        if "members" in group_obj:
            key = f"group:{group_id}:members"
            # перезаписать целиком
            self.r.delete(key)
            if group_obj["members"]:
                self.r.sadd(key, *group_obj["members"])

    def get_group(self, group_id: str) -> dict | None:
        val = self.r.hget("groups", group_id)
        if not val:
            return None
        obj = json.loads(val)
        if "members" in obj:
            obj["members"] = set(obj["members"])
        return obj

    def get_members(self, group_id: str) -> set:
        return set(self.r.smembers(f"group:{group_id}:members"))

    def add_message(self, conversation_key: str, message_obj: dict):
        # тело в хэше по id, лента хранит только порядок id
        self.r.hset("messages", message_obj["id"], json.dumps(message_obj))
        self.r.rpush(f"{conversation_key}:messages", message_obj["id"])

    def update_message(self, message_obj: dict):
        """Правка или tombstone: перезаписывает тело, место в ленте не меняется."""
        self.r.hset("messages", message_obj["id"], json.dumps(message_obj))

    def get_message(self, message_id: str) -> dict | None:
        val = self.r.hget("messages", message_id)
        return json.loads(val) if val else None

    def get_messages(self, conversation_key: str) -> list:
        ids = self.r.lrange(f"{conversation_key}:messages", 0, -1)
        messages = (self.get_message(message_id) for message_id in ids)
        return [m for m in messages if m is not None]

    def set_last_seen(self, user_id: str, when: str):
        self.r.hset("last_seen", user_id, when)

    def get_last_seen(self, user_id: str) -> str | None:
        return self.r.hget("last_seen", user_id)
