"""HistoryDocument model – the serialized message history, one row per named store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from historybot.db.base import Base


class HistoryDocument(Base):
    __tablename__ = "history_documents"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<HistoryDocument {self.name} ({len(self.payload)} bytes)>"
