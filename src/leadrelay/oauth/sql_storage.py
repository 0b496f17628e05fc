"""Table-backed token store (SQLite by default) via SQLAlchemy."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import DateTime, Integer, String, Text, create_engine, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import StorageError
from .storage import Clock, CredentialRecord, mask_secret, utc_now

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class CredentialRow(Base):
    """Current credential. The store keeps at most one row."""

    __tablename__ = "credential"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    access_token: Mapped[str] = mapped_column(Text)
    refresh_token: Mapped[str | None] = mapped_column(Text, default=None)
    expires_in: Mapped[int | None] = mapped_column(Integer, default=None)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    domain: Mapped[str | None] = mapped_column(String(255), default=None)
    scope: Mapped[str] = mapped_column(Text, default="")
    client_endpoint: Mapped[str | None] = mapped_column(String(512), default=None)
    server_endpoint: Mapped[str | None] = mapped_column(String(512), default=None)
    installation_id: Mapped[str] = mapped_column(String(100), index=True)
    status: Mapped[str | None] = mapped_column(String(20), default=None)
    application_token: Mapped[str | None] = mapped_column(String(255), default=None)
    acquisition_method: Mapped[str] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<CredentialRow {self.id!r} ({self.acquisition_method})>"

    @classmethod
    def from_record(cls, record: CredentialRecord) -> "CredentialRow":
        return cls(
            id=record.id,
            access_token=record.access_token,
            refresh_token=record.refresh_token,
            expires_in=record.expires_in,
            issued_at=record.issued_at,
            expires_at=record.expires_at,
            domain=record.domain,
            scope=record.scope,
            client_endpoint=record.client_endpoint,
            server_endpoint=record.server_endpoint,
            installation_id=record.installation_id,
            status=record.status,
            application_token=record.application_token,
            acquisition_method=record.acquisition_method.value,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def to_record(self) -> CredentialRecord:
        return CredentialRecord.from_dict(
            {
                "id": self.id,
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "expires_in": self.expires_in,
                "issued_at": self.issued_at,
                "domain": self.domain,
                "scope": self.scope,
                "client_endpoint": self.client_endpoint,
                "server_endpoint": self.server_endpoint,
                "installation_id": self.installation_id,
                "status": self.status,
                "application_token": self.application_token,
                "acquisition_method": self.acquisition_method,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )


class SQLTokenStorage:
    """Token store backed by a single-row ``credential`` table.

    Usage:
        storage = SQLTokenStorage("sqlite:///data/tokens.db")
        storage.save(record)
    """

    def __init__(self, url: str, clock: Clock = utc_now, echo: bool = False):
        self.url = url
        self._clock = clock
        self._lock = threading.RLock()

        engine_kwargs: dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite") and ":memory:" in url:
            engine_kwargs.update(
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        try:
            self.engine = create_engine(url, **engine_kwargs)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not open token database {url}: {e}") from e
        self._session_factory = sessionmaker(self.engine, class_=Session, expire_on_commit=False)

    def save(self, record: CredentialRecord) -> str:
        with self._lock:
            try:
                with self._session_factory.begin() as session:
                    session.execute(delete(CredentialRow))
                    session.add(CredentialRow.from_record(record))
            except SQLAlchemyError as e:
                raise StorageError(f"Could not save credential: {e}") from e
        logger.info(
            "Credential saved: id=%s installation=%s method=%s access_token=%s refresh_token=%s",
            record.id,
            record.installation_id,
            record.acquisition_method.value,
            mask_secret(record.access_token),
            mask_secret(record.refresh_token),
        )
        return record.id

    def get_current(self) -> CredentialRecord | None:
        try:
            with self._session_factory() as session:
                row = session.scalars(
                    select(CredentialRow).order_by(CredentialRow.created_at.desc()).limit(1)
                ).first()
                return row.to_record() if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Could not load credential: {e}") from e

    def update(self, record_id: str, patch: Mapping[str, Any]) -> bool:
        with self._lock:
            try:
                with self._session_factory.begin() as session:
                    row = session.get(CredentialRow, record_id)
                    if row is None:
                        return False
                    updated = row.to_record().with_patch({**patch, "updated_at": self._clock()})
                    fresh = CredentialRow.from_record(updated)
                    for column in CredentialRow.__table__.columns.keys():
                        setattr(row, column, getattr(fresh, column))
            except SQLAlchemyError as e:
                raise StorageError(f"Could not update credential {record_id}: {e}") from e
        logger.info("Credential updated: id=%s fields=%s", record_id, sorted(patch))
        return True

    def clear(self) -> bool:
        with self._lock:
            try:
                with self._session_factory.begin() as session:
                    removed = session.execute(delete(CredentialRow)).rowcount
            except SQLAlchemyError as e:
                raise StorageError(f"Could not clear credentials: {e}") from e
        if removed:
            logger.info("Credentials cleared from %s", self.url)
        return bool(removed)

    def close(self) -> None:
        self.engine.dispose()
