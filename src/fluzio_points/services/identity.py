"""Identity collaborator: existence checks for account owners."""

from __future__ import annotations

from typing import Iterable, Protocol


class IdentityDirectory(Protocol):
    async def exists(self, owner_id: str) -> bool:
        ...


class OpenIdentityDirectory:
    """Accepts every non-blank owner id; identity is managed upstream."""

    async def exists(self, owner_id: str) -> bool:
        return bool(owner_id and owner_id.strip())


class StaticIdentityDirectory:
    """Directory backed by a fixed set of known owners."""

    def __init__(self, owner_ids: Iterable[str]) -> None:
        self._owner_ids = set(owner_ids)

    async def exists(self, owner_id: str) -> bool:
        return owner_id in self._owner_ids


__all__ = ["IdentityDirectory", "OpenIdentityDirectory", "StaticIdentityDirectory"]
