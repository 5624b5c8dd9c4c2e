"""Two-factor enrollment state and its storage backends."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from functools import lru_cache
from threading import Lock
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront_auth.config import get_settings
from storefront_auth.core.sessions import Clock, utcnow
from storefront_auth.db.session import get_session_factory
from storefront_auth.errors import StoreUnavailableError
from storefront_auth.models.two_factor import TwoFactorEnrollmentRecord


@dataclass(frozen=True)
class TwoFactorEnrollment:
    """A user's TOTP secret, toggle, and hashed backup codes."""

    user_id: str
    secret: str = field(repr=False)
    enabled: bool
    backup_code_hashes: tuple[str, ...] = field(default=(), repr=False)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def requires_code(self) -> bool:
        """Login must pass a TOTP challenge."""
        return self.enabled and bool(self.secret)


class TwoFactorStore(Protocol):
    """Durable storage for enrollments."""

    async def get(self, user_id: str) -> TwoFactorEnrollment | None: ...

    async def save(self, enrollment: TwoFactorEnrollment) -> TwoFactorEnrollment: ...

    async def delete(self, user_id: str) -> bool: ...

    async def consume_backup_code(self, user_id: str, code_hash: str) -> bool: ...


class InMemoryTwoFactorStore:
    """Process-local enrollment store."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._records: dict[str, TwoFactorEnrollment] = {}
        self._lock = Lock()

    async def get(self, user_id: str) -> TwoFactorEnrollment | None:
        return self._records.get(user_id)

    async def save(self, enrollment: TwoFactorEnrollment) -> TwoFactorEnrollment:
        now = self._clock()
        with self._lock:
            existing = self._records.get(enrollment.user_id)
            stored = replace(
                enrollment,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._records[enrollment.user_id] = stored
        return stored

    async def delete(self, user_id: str) -> bool:
        with self._lock:
            return self._records.pop(user_id, None) is not None

    async def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        """Burn one backup code; a code can only ever be burned once."""
        with self._lock:
            enrollment = self._records.get(user_id)
            if enrollment is None or code_hash not in enrollment.backup_code_hashes:
                return False
            remaining = tuple(item for item in enrollment.backup_code_hashes if item != code_hash)
            self._records[user_id] = replace(
                enrollment, backup_code_hashes=remaining, updated_at=self._clock()
            )
        return True


class SqlTwoFactorStore:
    """PostgreSQL enrollment store; writes lock the user's row."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, user_id: str) -> TwoFactorEnrollment | None:
        try:
            async with self._session_factory() as db_session:
                record = await db_session.get(TwoFactorEnrollmentRecord, user_id)
                return self._to_domain(record) if record is not None else None
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("Enrollment backend unavailable.") from exc

    async def save(self, enrollment: TwoFactorEnrollment) -> TwoFactorEnrollment:
        try:
            async with self._session_factory() as db_session:
                record = await self._fetch_for_update(db_session, enrollment.user_id)
                if record is None:
                    record = TwoFactorEnrollmentRecord(user_id=enrollment.user_id)
                    db_session.add(record)
                record.secret = enrollment.secret
                record.enabled = enrollment.enabled
                record.backup_code_hashes = list(enrollment.backup_code_hashes)
                await db_session.flush()
                await db_session.commit()
                await db_session.refresh(record)
                return self._to_domain(record)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("Enrollment backend unavailable.") from exc

    async def delete(self, user_id: str) -> bool:
        try:
            async with self._session_factory() as db_session:
                result = await db_session.execute(
                    delete(TwoFactorEnrollmentRecord).where(
                        TwoFactorEnrollmentRecord.user_id == user_id
                    )
                )
                await db_session.commit()
                return bool(result.rowcount)
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("Enrollment backend unavailable.") from exc

    async def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        try:
            async with self._session_factory() as db_session:
                record = await self._fetch_for_update(db_session, user_id)
                if record is None or code_hash not in record.backup_code_hashes:
                    await db_session.rollback()
                    return False
                record.backup_code_hashes = [
                    item for item in record.backup_code_hashes if item != code_hash
                ]
                await db_session.flush()
                await db_session.commit()
                return True
        except SQLAlchemyError as exc:
            raise StoreUnavailableError("Enrollment backend unavailable.") from exc

    @staticmethod
    async def _fetch_for_update(
        db_session: AsyncSession, user_id: str
    ) -> TwoFactorEnrollmentRecord | None:
        """Fetch the enrollment row with a row lock."""
        statement = (
            select(TwoFactorEnrollmentRecord)
            .where(TwoFactorEnrollmentRecord.user_id == user_id)
            .with_for_update()
        )
        result = await db_session.execute(statement)
        return result.scalar_one_or_none()

    @staticmethod
    def _to_domain(record: TwoFactorEnrollmentRecord) -> TwoFactorEnrollment:
        return TwoFactorEnrollment(
            user_id=record.user_id,
            secret=record.secret,
            enabled=record.enabled,
            backup_code_hashes=tuple(record.backup_code_hashes or ()),
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


@lru_cache
def get_two_factor_store() -> TwoFactorStore:
    """Create and cache the configured enrollment store."""
    settings = get_settings()
    if settings.store.backend == "redis":
        return SqlTwoFactorStore(session_factory=get_session_factory())
    return InMemoryTwoFactorStore()
