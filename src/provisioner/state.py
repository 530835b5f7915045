"""State store for last-known actual resource state.

The store is keyed by resource identifier and holds one StateRecord per
provisioned resource. The executor is its only writer; the planner reads a
snapshot taken once via load().

FileStateStore keeps one JSON document per record so that a crash while
writing one record can never corrupt another. Each write goes to a
temporary file in the same directory, is fsynced, then atomically renamed
over the previous version.
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path

from pydantic import ValidationError

from .models import StateRecord

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".json"
LOCK_FILE_NAME = ".lock"

# Security constraint: refuse to read oversized state documents
MAX_RECORD_FILE_SIZE_BYTES = 5 * 1024 * 1024


class StateStoreError(Exception):
    """Raised when the state store cannot be read or written."""

    pass


class StateLockError(StateStoreError):
    """Raised when another process holds the state lock."""

    pass


class CorruptStateError(StateStoreError):
    """Raised when a persisted record cannot be parsed."""

    pass


def fingerprint(records: Mapping[str, StateRecord]) -> str:
    """Hash a state snapshot (identifiers and content hashes).

    Used to detect that a saved plan was computed from state that has
    changed since.
    """
    digest = hashlib.sha256()
    for identifier in sorted(records):
        record = records[identifier]
        digest.update(identifier.encode("utf-8"))
        digest.update(b"\0")
        digest.update(record.external_id.encode("utf-8"))
        digest.update(b"\0")
        digest.update(record.content_hash.encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()


class StateStore(ABC):
    """Durable key-value store of StateRecords keyed by identifier."""

    @abstractmethod
    def load(self) -> dict[str, StateRecord]:
        """Return a snapshot of every record."""

    @abstractmethod
    def get(self, identifier: str) -> StateRecord | None:
        """Return the record for ``identifier`` or None."""

    @abstractmethod
    def commit(self, identifier: str, record: StateRecord) -> None:
        """Create or replace the record for ``identifier``."""

    @abstractmethod
    def remove(self, identifier: str) -> None:
        """Delete the record for ``identifier`` (no-op when absent)."""

    def fingerprint(self) -> str:
        return fingerprint(self.load())

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold exclusive write access for the duration of the block."""
        yield


class InMemoryStateStore(StateStore):
    """Non-durable store, used for tests and dry runs."""

    def __init__(self, records: Mapping[str, StateRecord] | None = None) -> None:
        self._records: dict[str, StateRecord] = dict(records or {})

    def load(self) -> dict[str, StateRecord]:
        return {k: v.model_copy(deep=True) for k, v in self._records.items()}

    def get(self, identifier: str) -> StateRecord | None:
        record = self._records.get(identifier)
        return record.model_copy(deep=True) if record is not None else None

    def commit(self, identifier: str, record: StateRecord) -> None:
        self._records[identifier] = record.model_copy(deep=True)

    def remove(self, identifier: str) -> None:
        self._records.pop(identifier, None)


class FileStateStore(StateStore):
    """One JSON document per record in a directory."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def initialize(self) -> bool:
        """Create the state directory.

        Returns:
            True if it was created, False if it already existed.
        """
        if self._directory.exists():
            if not self._directory.is_dir():
                raise StateStoreError(f"State path is not a directory: {self._directory}")
            return False
        self._directory.mkdir(parents=True)
        logger.info("State directory created", extra={"state_dir": str(self._directory)})
        return True

    def _path_for(self, identifier: str) -> Path:
        if "/" in identifier or "\\" in identifier or identifier.startswith("."):
            raise StateStoreError(f"Invalid identifier for state record: {identifier}")
        return self._directory / f"{identifier}{RECORD_SUFFIX}"

    def _read(self, path: Path) -> StateRecord:
        try:
            if path.stat().st_size > MAX_RECORD_FILE_SIZE_BYTES:
                raise CorruptStateError(
                    f"State record exceeds maximum size of {MAX_RECORD_FILE_SIZE_BYTES} bytes: {path}"
                )
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateStoreError(f"Failed to read state record {path}: {e}") from e

        try:
            return StateRecord.model_validate_json(content)
        except ValidationError as e:
            raise CorruptStateError(f"Invalid state record {path}: {e}") from e

    def load(self) -> dict[str, StateRecord]:
        if not self._directory.exists():
            return {}

        records: dict[str, StateRecord] = {}
        for path in sorted(self._directory.glob(f"*{RECORD_SUFFIX}")):
            record = self._read(path)
            expected = path.name[: -len(RECORD_SUFFIX)]
            if record.identifier != expected:
                raise CorruptStateError(
                    f"State record {path} holds identifier {record.identifier!r}"
                )
            records[record.identifier] = record

        logger.debug(
            "State loaded",
            extra={"state_dir": str(self._directory), "record_count": len(records)},
        )
        return records

    def get(self, identifier: str) -> StateRecord | None:
        path = self._path_for(identifier)
        if not path.exists():
            return None
        return self._read(path)

    def commit(self, identifier: str, record: StateRecord) -> None:
        if record.identifier != identifier:
            raise StateStoreError(
                f"Record identifier {record.identifier!r} does not match key {identifier!r}"
            )
        path = self._path_for(identifier)
        self._directory.mkdir(parents=True, exist_ok=True)

        payload = record.model_dump_json(indent=2)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{identifier}.", suffix=".tmp", dir=self._directory
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateStoreError(f"Failed to write state record {path}: {e}") from e

        logger.debug("State record committed", extra={"identifier": identifier})

    def remove(self, identifier: str) -> None:
        path = self._path_for(identifier)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StateStoreError(f"Failed to remove state record {path}: {e}") from e
        logger.debug("State record removed", extra={"identifier": identifier})

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold ``<dir>/.lock`` for single-writer discipline.

        Raises:
            StateLockError: If the lock file already exists.
        """
        self._directory.mkdir(parents=True, exist_ok=True)
        lock_path = self._directory / LOCK_FILE_NAME
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError as e:
            raise StateLockError(
                f"State is locked by another run ({lock_path}). "
                f"Remove the file if no other run is active."
            ) from e

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            yield
        finally:
            lock_path.unlink(missing_ok=True)
