import logging

from zephyr_chat.errors import ChatError, DirectoryError
from zephyr_chat.protocol.types import ClientEvent

log = logging.getLogger(__name__)


class RemoteKeyDirectory:
    """Каталог ключей поверх соединения с сервером (getPublicKey / getPrivateKey)."""

    def __init__(self, client):
        self.client = client

    async def _fetch(self, event: ClientEvent, data: dict, field: str) -> str:
        try:
            reply = await self.client.request(event, data)
        except DirectoryError:
            raise
        except ChatError as err:
            raise DirectoryError(f"{event.value} failed: {err}") from err
        pem = (reply or {}).get(field)
        if not pem:
            raise DirectoryError(f"{event.value} returned no {field}")
        return pem

    async def public_key(self, user_id: str) -> str:
        return await self._fetch(ClientEvent.GET_PUBLIC_KEY, {'userId': user_id}, 'publicKey')

    async def private_key(self) -> str:
        log.debug("fetching own private key for %s", self.client.user_id)
        return await self._fetch(ClientEvent.GET_PRIVATE_KEY, {}, 'privateKey')
