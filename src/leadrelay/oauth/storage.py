"""Credential record and token storage.

One credential record is current at a time. The JSON store keeps it in
``credentials.json`` under the config directory with restrictive file
permissions; see :mod:`leadrelay.oauth.sql_storage` for the table-backed store.

Note: Tokens are stored in plaintext and protected by file permissions (0o600).
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from ..errors import ReauthorizationRequiredError, StorageError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def mask_secret(value: str | None) -> str:
    """Describe a secret for logs without revealing it."""
    if not value:
        return "<none>"
    return f"<redacted len={len(value)}>"


class AcquisitionMethod(str, Enum):
    """How a credential was obtained. Decides refresh eligibility and call style."""

    SIMPLIFIED = "simplified"
    INSTALLATION_EVENT = "installation_event"
    AUTHORIZATION_CODE = "authorization_code"

    @property
    def uses_bearer_header(self) -> bool:
        return self is not AcquisitionMethod.SIMPLIFIED


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class CredentialRecord:
    """The persisted unit of authorization for one installation."""

    access_token: str
    installation_id: str
    acquisition_method: AcquisitionMethod
    issued_at: datetime = field(default_factory=utc_now)
    expires_in: int | None = None  # seconds; None = never expires
    refresh_token: str | None = None
    scope: str = ""
    domain: str | None = None
    client_endpoint: str | None = None
    server_endpoint: str | None = None
    status: str | None = None
    application_token: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def expires_at(self) -> datetime | None:
        """``issued_at + expires_in``, or None for non-expiring credentials."""
        if self.acquisition_method is AcquisitionMethod.SIMPLIFIED or self.expires_in is None:
            return None
        return self.issued_at + timedelta(seconds=self.expires_in)

    def is_expired(self, now: datetime | None = None) -> bool:
        expires_at = self.expires_at
        if expires_at is None:
            return False
        return (now or utc_now()) >= expires_at

    def expires_in_seconds(self, now: datetime | None = None) -> int | None:
        """Seconds until expiry (0 once expired), None if it never expires."""
        expires_at = self.expires_at
        if expires_at is None:
            return None
        return max(0, int((expires_at - (now or utc_now())).total_seconds()))

    @property
    def can_refresh(self) -> bool:
        return self.acquisition_method is not AcquisitionMethod.SIMPLIFIED and bool(self.refresh_token)

    @property
    def endpoint_base(self) -> str:
        """Base URL for REST calls.

        Bearer-style credentials use the provider-assigned client endpoint
        (``https://portal/rest/``); simplified credentials always address the
        portal's own ``/rest`` root, with the token as the next path segment.
        """
        if self.acquisition_method.uses_bearer_header and self.client_endpoint:
            return self.client_endpoint
        if self.domain:
            return f"https://{self.domain}/rest/"
        if self.client_endpoint:
            return self.client_endpoint
        raise ReauthorizationRequiredError(
            f"Credential {self.id} has neither a client endpoint nor a portal domain"
        )

    def with_patch(self, patch: Mapping[str, Any]) -> "CredentialRecord":
        allowed = {f.name for f in fields(self)} - {"id", "created_at"}
        unknown = set(patch) - allowed
        if unknown:
            raise StorageError(f"Cannot patch credential fields: {sorted(unknown)}")
        return replace(self, **dict(patch))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        expires_at = self.expires_at
        return {
            "id": self.id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": expires_at.isoformat() if expires_at else None,
            "domain": self.domain,
            "scope": self.scope,
            "client_endpoint": self.client_endpoint,
            "server_endpoint": self.server_endpoint,
            "installation_id": self.installation_id,
            "status": self.status,
            "application_token": self.application_token,
            "acquisition_method": self.acquisition_method.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CredentialRecord":
        """Create from dictionary. ``expires_at`` is recomputed, not read."""
        expires_in = data.get("expires_in")
        return cls(
            id=data["id"],
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            issued_at=_parse_dt(data["issued_at"]),
            domain=data.get("domain"),
            scope=data.get("scope") or "",
            client_endpoint=data.get("client_endpoint"),
            server_endpoint=data.get("server_endpoint"),
            installation_id=data["installation_id"],
            status=data.get("status"),
            application_token=data.get("application_token"),
            acquisition_method=AcquisitionMethod(data["acquisition_method"]),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
        )


class TokenStore(Protocol):
    """Durable single-record credential persistence."""

    def save(self, record: CredentialRecord) -> str: ...

    def get_current(self) -> CredentialRecord | None: ...

    def update(self, record_id: str, patch: Mapping[str, Any]) -> bool: ...

    def clear(self) -> bool: ...


class FileTokenStorage:
    """JSON-file token store.

    Writes go to a temp file in the same directory and are moved into place
    with ``os.replace``, so a reader sees either the old or the new record.

    Usage:
        storage = FileTokenStorage("~/.leadrelay")
        storage.save(record)
        current = storage.get_current()
    """

    FILENAME = "credentials.json"

    def __init__(self, config_dir: Path | str, clock: Clock = utc_now):
        self.config_dir = Path(config_dir).expanduser()
        self.tokens_file = self.config_dir / self.FILENAME
        self._clock = clock
        self._lock = threading.RLock()

    def _ensure_dir(self) -> None:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create config dir {self.config_dir}: {e}") from e

    def _read(self) -> CredentialRecord | None:
        try:
            with open(self.tokens_file, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"Could not read {self.tokens_file}: {e}") from e
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt token file {self.tokens_file}: {e}") from e

        credential = data.get("credential") if isinstance(data, dict) else None
        if not credential:
            return None
        try:
            return CredentialRecord.from_dict(credential)
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Invalid credential in {self.tokens_file}: {e}") from e

    def _write(self, record: CredentialRecord) -> None:
        self._ensure_dir()
        content = json.dumps(
            {"credential": record.to_dict(), "updated_at": self._clock().isoformat()},
            indent=2,
        )
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.config_dir, prefix=".credentials-", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.tokens_file)
        except OSError as e:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            raise StorageError(f"Could not write {self.tokens_file}: {e}") from e

    def save(self, record: CredentialRecord) -> str:
        """Persist ``record`` as the current credential, superseding any prior one."""
        with self._lock:
            self._write(record)
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
        with self._lock:
            return self._read()

    def update(self, record_id: str, patch: Mapping[str, Any]) -> bool:
        """Merge ``patch`` into the current record if its id matches."""
        with self._lock:
            current = self._read()
            if current is None or current.id != record_id:
                return False
            updated = current.with_patch({**patch, "updated_at": self._clock()})
            self._write(updated)
        logger.info("Credential updated: id=%s fields=%s", record_id, sorted(patch))
        return True

    def clear(self) -> bool:
        """Delete the stored credential. Returns False if there was nothing to delete."""
        with self._lock:
            try:
                self.tokens_file.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise StorageError(f"Could not delete {self.tokens_file}: {e}") from e
        logger.info("Credentials cleared from %s", self.tokens_file)
        return True
