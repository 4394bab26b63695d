"""Identity/profile provider used for compatibility scoring.

The engine only reads profiles; it never writes them.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questline.db.models import UserProfile
from questline.squads.compatibility import Traits


class ProfileProvider(Protocol):
    async def get_traits(self, user_ids: Iterable[int]) -> dict[int, Traits]:
        """Trait vectors keyed by user id; unknown users map to {}."""
        ...


class DatabaseProfileProvider:
    """Reads the ``user_profiles`` projection synced from the identity service."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_traits(self, user_ids: Iterable[int]) -> dict[int, Traits]:
        ids = list(user_ids)
        traits: dict[int, Traits] = {uid: {} for uid in ids}
        if not ids:
            return traits
        result = await self.db.execute(
            select(UserProfile.user_id, UserProfile.traits).where(UserProfile.user_id.in_(ids))
        )
        for user_id, user_traits in result.all():
            traits[user_id] = dict(user_traits or {})
        return traits


class StaticProfileProvider:
    """In-memory provider for scripts and tests."""

    def __init__(self, traits: Mapping[int, Traits] | None = None) -> None:
        self.traits = dict(traits or {})

    async def get_traits(self, user_ids: Iterable[int]) -> dict[int, Traits]:
        return {uid: dict(self.traits.get(uid, {})) for uid in user_ids}
