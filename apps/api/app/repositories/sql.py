"""SQLAlchemy-backed tracker store.

Blocking database work runs in a worker thread so the monitoring loop never
stalls the event loop. Timestamps are persisted as naive UTC.
"""

from __future__ import annotations

import asyncio
import hashlib
from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import DateTime, Enum, Index, String, Text, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from app.domain.generation_fsm import ensure_transition, is_noop_transition
from app.errors import ApiError
from app.repositories.base import CompletionRecord, GenerationRequestRecord, TrackerStore
from app.schemas.generation import GenerationStatus


class Base(DeclarativeBase):
    pass


class GenerationRequestRow(Base):
    __tablename__ = "generation_requests"
    __table_args__ = (
        Index("ix_generation_requests_user_correlation", "user_id", "correlation_id", unique=True),
        Index("ix_generation_requests_user_status", "user_id", "status", "created_at"),
        Index("ix_generation_requests_user_script", "user_id", "script_digest", "created_at"),
    )

    pk: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True)
    user_id: Mapped[str] = mapped_column(String(128))
    correlation_id: Mapped[str] = mapped_column(String(128))
    script: Mapped[str] = mapped_column(Text)
    script_digest: Mapped[str] = mapped_column(String(64))
    status: Mapped[GenerationStatus] = mapped_column(
        Enum(
            GenerationStatus,
            name="generation_status",
            native_enum=False,
            values_callable=lambda enum: [member.value for member in enum],
        )
    )
    start_time: Mapped[datetime] = mapped_column(DateTime())
    last_check_time: Mapped[datetime] = mapped_column(DateTime())
    created_at: Mapped[datetime] = mapped_column(DateTime())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)


class CompletionRow(Base):
    __tablename__ = "completion_records"
    __table_args__ = (
        Index("ix_completion_records_user_correlation", "user_id", "correlation_id", "created_at"),
        Index("ix_completion_records_user_created", "user_id", "created_at"),
        Index("ix_completion_records_user_script", "user_id", "script_digest", "created_at"),
    )

    pk: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True)
    user_id: Mapped[str] = mapped_column(String(128))
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    script: Mapped[str | None] = mapped_column(Text, nullable=True)
    script_digest: Mapped[str | None] = mapped_column(String(64), nullable=True)
    video_url: Mapped[str] = mapped_column(Text)
    title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime())


def _script_digest(script: str) -> str:
    # Script lookups filter on the indexed digest, then compare the full text.
    return hashlib.sha256(script.encode("utf-8")).hexdigest()


def _to_db(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _from_db(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def _request_record(row: GenerationRequestRow) -> GenerationRequestRecord:
    return GenerationRequestRecord(
        id=row.id,
        user_id=row.user_id,
        correlation_id=row.correlation_id,
        script=row.script,
        status=row.status,
        start_time=_from_db(row.start_time),
        last_check_time=_from_db(row.last_check_time),
        created_at=_from_db(row.created_at),
        updated_at=_from_db(row.updated_at),
    )


def _completion_record(row: CompletionRow) -> CompletionRecord:
    return CompletionRecord(
        id=row.id,
        user_id=row.user_id,
        correlation_id=row.correlation_id,
        script=row.script,
        video_url=row.video_url,
        title=row.title,
        created_at=_from_db(row.created_at),
    )


def create_store_engine(database_url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


class SqlTrackerStore(TrackerStore):
    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str) -> SqlTrackerStore:
        store = cls(create_store_engine(database_url))
        store.create_tables()
        return store

    def create_tables(self) -> None:
        Base.metadata.create_all(bind=self._engine)

    async def create_request(
        self,
        *,
        user_id: str,
        correlation_id: str,
        script: str,
        start_time: datetime,
    ) -> GenerationRequestRecord:
        return await asyncio.to_thread(self._create_request, user_id, correlation_id, script, start_time)

    async def get_request(self, *, user_id: str, correlation_id: str) -> GenerationRequestRecord | None:
        return await asyncio.to_thread(self._get_request, user_id, correlation_id)

    async def get_processing_request(self, *, user_id: str) -> GenerationRequestRecord | None:
        records = await asyncio.to_thread(self._list_requests, user_id, GenerationStatus.PROCESSING, 1)
        return records[0] if records else None

    async def get_latest_request(self, *, user_id: str) -> GenerationRequestRecord | None:
        records = await asyncio.to_thread(self._list_requests, user_id, None, 1)
        return records[0] if records else None

    async def list_processing_requests(self, *, user_id: str) -> list[GenerationRequestRecord]:
        return await asyncio.to_thread(self._list_requests, user_id, GenerationStatus.PROCESSING, None)

    async def find_latest_request_by_script(self, *, user_id: str, script: str) -> GenerationRequestRecord | None:
        return await asyncio.to_thread(self._find_latest_request_by_script, user_id, script)

    async def transition_request_status(
        self,
        *,
        user_id: str,
        correlation_id: str,
        new_status: GenerationStatus,
        checked_at: datetime,
    ) -> GenerationRequestRecord:
        return await asyncio.to_thread(self._transition, user_id, correlation_id, new_status, checked_at)

    async def touch_last_check(self, *, user_id: str, correlation_id: str, checked_at: datetime) -> None:
        await asyncio.to_thread(self._touch, user_id, correlation_id, checked_at)

    async def list_expired_requests(self, *, user_id: str, limit: int) -> list[GenerationRequestRecord]:
        return await asyncio.to_thread(self._list_requests, user_id, GenerationStatus.EXPIRED, limit)

    async def insert_completion(
        self,
        *,
        user_id: str,
        video_url: str,
        title: str | None = None,
        correlation_id: str | None = None,
        script: str | None = None,
        created_at: datetime | None = None,
    ) -> CompletionRecord:
        return await asyncio.to_thread(
            self._insert_completion,
            user_id,
            video_url,
            title,
            correlation_id,
            script,
            created_at or datetime.now(UTC),
        )

    async def find_completion_by_correlation(self, *, user_id: str, correlation_id: str) -> CompletionRecord | None:
        stmt = (
            select(CompletionRow)
            .where(CompletionRow.user_id == user_id, CompletionRow.correlation_id == correlation_id)
            .order_by(CompletionRow.created_at.desc(), CompletionRow.pk.desc())
            .limit(1)
        )
        return await asyncio.to_thread(self._first_completion, stmt)

    async def find_completion_by_script(
        self,
        *,
        user_id: str,
        script: str,
        since: datetime,
    ) -> CompletionRecord | None:
        stmt = (
            select(CompletionRow)
            .where(
                CompletionRow.user_id == user_id,
                CompletionRow.script_digest == _script_digest(script),
                CompletionRow.script == script,
                CompletionRow.created_at >= _to_db(since),
            )
            .order_by(CompletionRow.created_at.desc(), CompletionRow.pk.desc())
            .limit(1)
        )
        return await asyncio.to_thread(self._first_completion, stmt)

    async def list_completions(self, *, user_id: str, limit: int) -> list[CompletionRecord]:
        return await asyncio.to_thread(self._list_completions, user_id, limit)

    def _create_request(
        self,
        user_id: str,
        correlation_id: str,
        script: str,
        start_time: datetime,
    ) -> GenerationRequestRecord:
        start = _to_db(start_time)
        row = GenerationRequestRow(
            id=str(uuid4()),
            user_id=user_id,
            correlation_id=correlation_id,
            script=script,
            script_digest=_script_digest(script),
            status=GenerationStatus.PENDING,
            start_time=start,
            last_check_time=start,
            created_at=start,
            updated_at=start,
        )
        with self._session_factory() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ApiError(
                    status_code=409,
                    code="CORRELATION_ID_CONFLICT",
                    message="A request with this correlation id already exists.",
                ) from exc
            return _request_record(row)

    def _get_request(self, user_id: str, correlation_id: str) -> GenerationRequestRecord | None:
        with self._session_factory() as session:
            row = self._select_request(session, user_id, correlation_id)
            return _request_record(row) if row is not None else None

    def _list_requests(
        self,
        user_id: str,
        status: GenerationStatus | None,
        limit: int | None,
    ) -> list[GenerationRequestRecord]:
        stmt = (
            select(GenerationRequestRow)
            .where(GenerationRequestRow.user_id == user_id)
            .order_by(GenerationRequestRow.created_at.desc(), GenerationRequestRow.pk.desc())
        )
        if status is not None:
            stmt = stmt.where(GenerationRequestRow.status == status)
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session_factory() as session:
            return [_request_record(row) for row in session.scalars(stmt)]

    def _find_latest_request_by_script(self, user_id: str, script: str) -> GenerationRequestRecord | None:
        stmt = (
            select(GenerationRequestRow)
            .where(
                GenerationRequestRow.user_id == user_id,
                GenerationRequestRow.script_digest == _script_digest(script),
                GenerationRequestRow.script == script,
            )
            .order_by(GenerationRequestRow.created_at.desc(), GenerationRequestRow.pk.desc())
            .limit(1)
        )
        with self._session_factory() as session:
            row = session.scalars(stmt).first()
            return _request_record(row) if row is not None else None

    def _transition(
        self,
        user_id: str,
        correlation_id: str,
        new_status: GenerationStatus,
        checked_at: datetime,
    ) -> GenerationRequestRecord:
        with self._session_factory() as session:
            row = self._select_request(session, user_id, correlation_id, for_update=True)
            if row is None:
                raise ApiError(status_code=404, code="RESOURCE_NOT_FOUND", message="Resource not found")
            noop = is_noop_transition(row.status, new_status)
            ensure_transition(row.status, new_status)
            row.status = new_status
            row.last_check_time = _to_db(checked_at)
            if not noop:
                row.updated_at = _to_db(checked_at)
            session.commit()
            return _request_record(row)

    def _touch(self, user_id: str, correlation_id: str, checked_at: datetime) -> None:
        with self._session_factory() as session:
            row = self._select_request(session, user_id, correlation_id)
            if row is None:
                return
            row.last_check_time = _to_db(checked_at)
            session.commit()

    def _insert_completion(
        self,
        user_id: str,
        video_url: str,
        title: str | None,
        correlation_id: str | None,
        script: str | None,
        created_at: datetime,
    ) -> CompletionRecord:
        row = CompletionRow(
            id=str(uuid4()),
            user_id=user_id,
            video_url=video_url,
            title=title,
            correlation_id=correlation_id,
            script=script,
            script_digest=_script_digest(script) if script is not None else None,
            created_at=_to_db(created_at),
        )
        with self._session_factory() as session:
            session.add(row)
            session.commit()
            return _completion_record(row)

    def _first_completion(self, stmt) -> CompletionRecord | None:
        with self._session_factory() as session:
            row = session.scalars(stmt).first()
            return _completion_record(row) if row is not None else None

    def _list_completions(self, user_id: str, limit: int) -> list[CompletionRecord]:
        stmt = (
            select(CompletionRow)
            .where(CompletionRow.user_id == user_id)
            .order_by(CompletionRow.created_at.desc(), CompletionRow.pk.desc())
            .limit(limit)
        )
        with self._session_factory() as session:
            return [_completion_record(row) for row in session.scalars(stmt)]

    @staticmethod
    def _select_request(
        session: Session,
        user_id: str,
        correlation_id: str,
        *,
        for_update: bool = False,
    ) -> GenerationRequestRow | None:
        stmt = select(GenerationRequestRow).where(
            GenerationRequestRow.user_id == user_id,
            GenerationRequestRow.correlation_id == correlation_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return session.scalars(stmt).first()
