from .storage import InMemoryStorage
from typing import Optional, Iterable

from zephyr_chat.errors import PermissionDenied, ProtocolError


class ChatManager:
    """Группы: создание, участники, право писать."""

    def __init__(self, storage: InMemoryStorage, cache: Optional[object] = None):
        self.storage = storage
        # cache должен реализовывать get_group, store_group, get_members
        self.cache = cache

    def _get_group(self, group_id: str) -> dict | None:
        if self.cache:
            group = self.cache.get_group(group_id)
            if group is not None:
                return group
        return self.storage.groups.get(group_id)

    def _save_group(self, group_id: str, group: dict):
        # сохраняем в обоих местах
        self.storage.groups[group_id] = group
        if self.cache:
            self.cache.store_group(group_id, group)

    def create_group(self, creator_id: str, name: str | None = None, members: Iterable[str] = ()) -> dict:
        group_id = self.storage.create_group(creator_id, name)
        group = self.storage.groups[group_id]
        group['members'].update(m for m in members if m)
        self._save_group(group_id, group)
        return group

    def get_group(self, group_id: str) -> dict:
        group = self._get_group(group_id)
        if group is None:
            raise ProtocolError(f"Unknown group {group_id}")
        return group

    def members(self, group_id: str) -> set:
        if self.cache:
            members = self.cache.get_members(group_id)
            if members:
                return members
        return set(self.get_group(group_id).get('members', set()))

    def is_member(self, user_id: str, group_id: str) -> bool:
        group = self._get_group(group_id)
        return bool(group) and user_id in group.get('members', set())

    def can_send(self, user_id: str, group_id: str) -> bool:
        return self.is_member(user_id, group_id)

    def add_members(self, group_id: str, user_ids: Iterable[str], inviter_id: str) -> set:
        group = self.get_group(group_id)
        members = group.setdefault('members', set())
        if inviter_id not in members:
            raise PermissionDenied("Only members can add members")
        members.update(u for u in user_ids if u)
        group['members'] = members
        self._save_group(group_id, group)
        return set(members)

    @staticmethod
    def to_dict(group: dict) -> dict:
        return {
            'id': group['id'],
            'name': group['name'],
            'createdBy': group['created_by'],
            'members': sorted(group['members']),
        }
