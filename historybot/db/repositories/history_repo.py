"""HistoryDocument repository – load and upsert the serialized history."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from historybot.models.history_document import HistoryDocument


class HistoryDocumentRepo:
    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def get_payload(self, name: str) -> str | None:
        """Return the stored document, or None if nothing was saved yet."""
        result = await self._s.execute(
            select(HistoryDocument.payload).where(HistoryDocument.name == name)
        )
        return result.scalar_one_or_none()

    async def save_payload(self, name: str, payload: str) -> None:
        """Upsert the document."""
        stmt = (
            pg_insert(HistoryDocument)
            .values(name=name, payload=payload)
            .on_conflict_do_update(
                index_elements=["name"],
                set_={"payload": payload, "updated_at": func.now()},
            )
        )
        await self._s.execute(stmt)
        await self._s.commit()
