"""SQL-backed content store using SQLModel over an async SQLAlchemy engine."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional, Sequence

from sqlalchemy import JSON, Column, or_
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import Field, SQLModel, select

from ..security.classifier import SecurityLevel, accessible_levels, coerce_level
from .models import ContentItem, ContentSource


class ContentRecord(SQLModel, table=True):
    """Persisted form of a :class:`ContentItem` (relevance is never stored)."""

    __tablename__ = "content_items"

    id: str = Field(primary_key=True)
    source: str = Field(index=True)
    security_level: str = Field(index=True)
    content: str
    category: Optional[str] = None
    org_id: Optional[str] = Field(default=None, index=True)
    owner_id: Optional[str] = None
    categories: list = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def to_item(self) -> ContentItem:
        return ContentItem(
            id=self.id,
            source=ContentSource(self.source),
            security_level=coerce_level(self.security_level),
            content=self.content,
            category=self.category,
            org_id=self.org_id,
            owner_id=self.owner_id,
            categories=list(self.categories or []),
        )


class SQLContentStore:
    """Async content store for any SQLAlchemy async URL (e.g. ``sqlite+aiosqlite://``)."""

    def __init__(self, database_url: str) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine) as session:
            yield session

    async def add(self, item: ContentItem) -> None:
        record = ContentRecord(
            id=item.id,
            source=item.source.value,
            security_level=item.security_level.value,
            content=item.content,
            category=item.category,
            org_id=item.org_id,
            owner_id=item.owner_id,
            categories=list(item.categories),
        )
        async with self.session() as session:
            await session.merge(record)
            await session.commit()

    async def get(self, item_id: str) -> Optional[ContentItem]:
        async with self.session() as session:
            record = await session.get(ContentRecord, item_id)
            return record.to_item() if record else None

    async def candidates(
        self,
        sources: Sequence[ContentSource],
        max_level: SecurityLevel,
        org_id: Optional[str] = None,
        requester_id: Optional[str] = None,
    ) -> List[ContentItem]:
        levels = [level.value for level in accessible_levels(max_level)]
        stmt = select(ContentRecord).where(
            ContentRecord.source.in_([s.value for s in sources]),
            ContentRecord.security_level.in_(levels),
        )
        if org_id is not None:
            stmt = stmt.where(ContentRecord.org_id == org_id)
        if requester_id is not None:
            stmt = stmt.where(
                or_(ContentRecord.owner_id.is_(None), ContentRecord.owner_id == requester_id)
            )
        else:
            stmt = stmt.where(ContentRecord.owner_id.is_(None))
        async with self.session() as session:
            result = await session.execute(stmt)
            return [record.to_item() for record in result.scalars().all()]

    async def close(self) -> None:
        await self.engine.dispose()
