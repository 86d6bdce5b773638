import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Protocol

from auth.encryption import decrypt, decrypt_optional, encrypt, encrypt_optional
from core.logging_setup import log_step
from core.orm import AsyncSessionLocal
from models.integrations import Integration
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

LOG_STEP = "CREDENTIALS"

ENCRYPTED_FIELDS = ("token", "refresh_token")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class IntegrationRecord(BaseModel):
    """A stored integration with its tokens decrypted."""

    id: str
    user_id: str
    provider_identifier: str
    internal_id: str
    type: str = "social_media"
    name: str | None = None
    picture: str | None = None
    profile: str | None = None
    token: str
    refresh_token: str | None = None
    token_expiration: datetime | None = None
    token_version: int = 1
    refresh_needed: bool = False
    disabled: bool = False
    deleted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.deleted_at is None


class IntegrationUpsert(BaseModel):
    user_id: str
    provider_identifier: str
    internal_id: str
    name: str | None = None
    picture: str | None = None
    profile: str | None = None
    token: str
    refresh_token: str | None = None
    token_expiration: datetime | None = None


class CredentialStore(Protocol):
    async def find(
        self, user_id: str, provider: str, internal_id: str | None = None
    ) -> IntegrationRecord | None: ...

    async def get(self, integration_id: str) -> IntegrationRecord | None: ...

    async def upsert(self, data: IntegrationUpsert) -> IntegrationRecord: ...

    async def update(self, integration_id: str, **fields: Any) -> bool: ...

    async def update_tokens(
        self,
        integration_id: str,
        expected_version: int,
        token: str,
        refresh_token: str | None,
        token_expiration: datetime | None,
    ) -> bool: ...

    async def soft_delete(self, integration_id: str) -> bool: ...

    async def list_active(self, user_id: str) -> list[IntegrationRecord]: ...

    async def list_expiring(self, before: datetime) -> list[IntegrationRecord]: ...


def _to_record(row: Integration) -> IntegrationRecord:
    return IntegrationRecord(
        id=row.id,
        user_id=row.user_id,
        provider_identifier=row.provider_identifier,
        internal_id=row.internal_id,
        type=row.type or "social_media",
        name=row.name,
        picture=row.picture,
        profile=row.profile,
        token=decrypt(row.token),
        refresh_token=decrypt_optional(row.refresh_token),
        token_expiration=_as_utc(row.token_expiration),
        token_version=row.token_version or 1,
        refresh_needed=bool(row.refresh_needed),
        disabled=bool(row.disabled),
        deleted_at=_as_utc(row.deleted_at),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _encrypt_fields(fields: dict[str, Any]) -> dict[str, Any]:
    values = dict(fields)
    for key in ENCRYPTED_FIELDS:
        if key in values:
            values[key] = (
                encrypt(values[key]) if key == "token" else encrypt_optional(values[key])
            )
    return values


class SqlCredentialStore:
    """
    Integration persistence on SQLAlchemy async sessions.

    Uniqueness on (user_id, provider_identifier) is enforced by the table;
    upsert() resolves conflicts with INSERT .. ON CONFLICT DO UPDATE, which
    also revives a soft-deleted row for the same provider.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory or AsyncSessionLocal

    @staticmethod
    def _insert(session: AsyncSession):
        dialect = session.get_bind().dialect.name
        if dialect == "sqlite":
            return sqlite.insert(Integration)
        return postgresql.insert(Integration)

    async def find(
        self, user_id: str, provider: str, internal_id: str | None = None
    ) -> IntegrationRecord | None:
        query = select(Integration).where(
            Integration.user_id == user_id,
            Integration.provider_identifier == provider,
            Integration.deleted_at.is_(None),
        )
        if internal_id is not None:
            query = query.where(Integration.internal_id == internal_id)

        async with self._session_factory() as session:
            result = await session.execute(query)
            row = result.scalar_one_or_none()
        return _to_record(row) if row else None

    async def get(self, integration_id: str) -> IntegrationRecord | None:
        async with self._session_factory() as session:
            row = await session.get(Integration, integration_id)
        return _to_record(row) if row else None

    async def upsert(self, data: IntegrationUpsert) -> IntegrationRecord:
        now = utcnow()
        async with self._session_factory() as session:
            stmt = self._insert(session).values(
                id=str(uuid.uuid4()),
                user_id=data.user_id,
                provider_identifier=data.provider_identifier,
                internal_id=data.internal_id,
                type="social_media",
                name=data.name,
                picture=data.picture,
                profile=data.profile,
                token=encrypt(data.token),
                refresh_token=encrypt_optional(data.refresh_token),
                token_expiration=data.token_expiration,
                token_version=1,
                refresh_needed=False,
                disabled=False,
                deleted_at=None,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[Integration.user_id, Integration.provider_identifier],
                set_={
                    "internal_id": stmt.excluded.internal_id,
                    "name": stmt.excluded.name,
                    "picture": stmt.excluded.picture,
                    "profile": stmt.excluded.profile,
                    "token": stmt.excluded.token,
                    "refresh_token": stmt.excluded.refresh_token,
                    "token_expiration": stmt.excluded.token_expiration,
                    "token_version": Integration.token_version + 1,
                    "refresh_needed": False,
                    "disabled": False,
                    "deleted_at": None,
                    "updated_at": now,
                },
            )
            await session.execute(stmt)
            await session.commit()

            result = await session.execute(
                select(Integration).where(
                    Integration.user_id == data.user_id,
                    Integration.provider_identifier == data.provider_identifier,
                )
            )
            row = result.scalar_one()

        with log_step(LOG_STEP):
            logger.info(
                f"Stored {data.provider_identifier} integration {row.id} for user {data.user_id}."
            )
        return _to_record(row)

    async def update(self, integration_id: str, **fields: Any) -> bool:
        values = _encrypt_fields(fields)
        values.setdefault("updated_at", utcnow())
        async with self._session_factory() as session:
            result = await session.execute(
                update(Integration)
                .where(Integration.id == integration_id)
                .values(**values)
            )
            await session.commit()
        return result.rowcount > 0

    async def update_tokens(
        self,
        integration_id: str,
        expected_version: int,
        token: str,
        refresh_token: str | None,
        token_expiration: datetime | None,
    ) -> bool:
        """
        Writes freshly issued tokens only if nobody else wrote tokens since
        expected_version was read. Returns False when the write lost the race.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Integration)
                .where(
                    Integration.id == integration_id,
                    Integration.token_version == expected_version,
                )
                .values(
                    token=encrypt(token),
                    refresh_token=encrypt_optional(refresh_token),
                    token_expiration=token_expiration,
                    token_version=Integration.token_version + 1,
                    refresh_needed=False,
                    updated_at=utcnow(),
                )
            )
            await session.commit()

        applied = result.rowcount == 1
        if not applied:
            with log_step(LOG_STEP):
                logger.warning(
                    f"Token write for integration {integration_id} skipped: "
                    f"version {expected_version} is stale."
                )
        return applied

    async def soft_delete(self, integration_id: str) -> bool:
        now = utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(Integration)
                .where(
                    Integration.id == integration_id,
                    Integration.deleted_at.is_(None),
                )
                .values(deleted_at=now, updated_at=now)
            )
            await session.commit()
        return result.rowcount > 0

    async def list_active(self, user_id: str) -> list[IntegrationRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Integration)
                .where(
                    Integration.user_id == user_id,
                    Integration.deleted_at.is_(None),
                )
                .order_by(Integration.created_at)
            )
            rows = result.scalars().all()
        return [_to_record(row) for row in rows]

    async def list_expiring(self, before: datetime) -> list[IntegrationRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Integration)
                .where(
                    Integration.deleted_at.is_(None),
                    Integration.disabled.is_(False),
                    Integration.refresh_needed.is_(False),
                    Integration.refresh_token.is_not(None),
                    Integration.token_expiration.is_not(None),
                    Integration.token_expiration <= before,
                )
                .order_by(Integration.token_expiration)
            )
            rows = result.scalars().all()
        return [_to_record(row) for row in rows]
