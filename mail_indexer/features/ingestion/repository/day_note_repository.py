"""
Day note ledger.

Append-only list of DayNotes per (grant, day key), plus the set of known day
keys per grant and the set of known grants. Rollups read from here; nothing
ever rewrites or deletes a note.
"""

import json

from mail_indexer.features.ingestion.domain.calendar_keys import (
    month_key_from_day_key,
    week_key_from_day_key,
)
from mail_indexer.features.ingestion.domain.models import DayNote
from mail_indexer.infrastructure.observability.logging import get_logger
from mail_indexer.services.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)


class DayNoteRepository:
    def __init__(self, redis: FastRedisClient | None = None):
        self.redis = redis or fast_redis

    def _notes_key(self, grant_id: str, day_key: str) -> str:
        return self.redis.key("grant", grant_id, "day", day_key, "notes")

    def _days_key(self, grant_id: str) -> str:
        return self.redis.key("grant", grant_id, "days")

    def _grants_key(self) -> str:
        return self.redis.key("grants")

    async def append(self, grant_id: str, day_key: str, note: DayNote) -> None:
        await self.redis.push_to_list(self._notes_key(grant_id, day_key), json.dumps(note.to_dict()))
        await self.redis.add_to_set(self._days_key(grant_id), day_key)
        await self.redis.add_to_set(self._grants_key(), grant_id)

    async def load(self, grant_id: str, day_key: str) -> list[DayNote]:
        """
        All notes for a day in append order.

        Redelivered messages append a second note with the same messageId;
        only the latest one is returned.
        """
        raw_notes = await self.redis.list_range(self._notes_key(grant_id, day_key))

        latest: dict[str, DayNote] = {}
        anonymous: list[DayNote] = []
        for raw in raw_notes:
            try:
                note = DayNote.from_dict(json.loads(raw))
            except (ValueError, TypeError, AttributeError):
                logger.warning("Skipping unreadable day note", grant_id=grant_id, day_key=day_key)
                continue

            if not note.messageId:
                anonymous.append(note)
                continue
            # Re-insert so the surviving entry takes the position of the latest append
            latest.pop(note.messageId, None)
            latest[note.messageId] = note

        return anonymous + list(latest.values())

    async def load_many(self, grant_id: str, day_keys: list[str]) -> list[DayNote]:
        notes: list[DayNote] = []
        for day_key in sorted(day_keys):
            notes.extend(await self.load(grant_id, day_key))
        return notes

    async def list_day_keys(self, grant_id: str) -> list[str]:
        return sorted(await self.redis.set_members(self._days_key(grant_id)))

    async def list_day_keys_for_week(self, grant_id: str, week_key: str) -> list[str]:
        return [
            day_key
            for day_key in await self.list_day_keys(grant_id)
            if week_key_from_day_key(day_key) == week_key
        ]

    async def list_day_keys_for_month(self, grant_id: str, month_key: str) -> list[str]:
        return [
            day_key
            for day_key in await self.list_day_keys(grant_id)
            if month_key_from_day_key(day_key) == month_key
        ]

    async def list_known_grants(self) -> list[str]:
        return sorted(await self.redis.set_members(self._grants_key()))


day_note_repository = DayNoteRepository()
