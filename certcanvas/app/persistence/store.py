from __future__ import annotations

import threading
from typing import Dict, List, Optional, Protocol, Set

from certcanvas.app.errors import (
    AlreadyVerifiedError,
    NotFoundError,
    PersistenceError,
)
from certcanvas.app.schemas.records import (
    ExportLogEntry,
    SaveRecord,
    VerificationRecord,
)


class PersistenceStore(Protocol):
    """
    Durable storage for saves, verifications and the export log.

    Contract:
    - every create is atomic: on failure nothing is stored
    - records are immutable; creates never overwrite
    - storage outages raise PersistenceError
    - deleting a session hides it from listings and reloads but keeps
      its records, so issued verification links stay resolvable
    """

    def create_save_record(self, record: SaveRecord) -> SaveRecord: ...

    def get_current_save_record(self, session_id: str) -> Optional[SaveRecord]: ...

    def get_save_record(
        self, session_id: str, save_id: str
    ) -> Optional[SaveRecord]: ...

    def create_verification_record(
        self, record: VerificationRecord
    ) -> VerificationRecord: ...

    def get_verification_record(
        self, verification_id: str
    ) -> Optional[VerificationRecord]: ...

    def get_verification_for_save(
        self, session_id: str, save_id: str
    ) -> Optional[VerificationRecord]: ...

    def record_export(self, entry: ExportLogEntry) -> ExportLogEntry: ...

    def list_exports(self, session_id: str) -> List[ExportLogEntry]: ...

    def list_current_saves(self, owner_id: str) -> List[SaveRecord]: ...

    def mark_session_deleted(self, session_id: str) -> None: ...

    def is_session_deleted(self, session_id: str) -> bool: ...


def check_next_revision(
    record: SaveRecord,
    current: Optional[SaveRecord],
) -> None:
    """Enforce append-only revision numbering for a session."""
    expected = 1 if current is None else current.revision + 1
    if record.revision != expected:
        raise PersistenceError(
            f"Save revision conflict for session '{record.session_id}': "
            f"expected {expected}, got {record.revision}."
        )


def check_verifiable(
    record: VerificationRecord,
    save: Optional[SaveRecord],
    existing: Optional[VerificationRecord],
) -> None:
    """Referential integrity and one-verification-per-save."""
    if save is None:
        raise NotFoundError(
            f"SaveRecord '{record.save_id}' does not exist for session "
            f"'{record.session_id}'."
        )
    if existing is not None:
        raise AlreadyVerifiedError(
            f"SaveRecord '{record.save_id}' is already verified as "
            f"'{existing.verification_id}'."
        )


class InMemoryPersistenceStore:
    """Process-local store. Used for development and tests."""

    def __init__(self) -> None:
        self._saves: Dict[str, List[SaveRecord]] = {}
        self._verifications: Dict[str, VerificationRecord] = {}
        self._by_save: Dict[str, str] = {}
        self._exports: Dict[str, List[ExportLogEntry]] = {}
        self._deleted: Set[str] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Saves
    # ------------------------------------------------------------------

    def create_save_record(self, record: SaveRecord) -> SaveRecord:
        with self._lock:
            history = self._saves.get(record.session_id, [])
            check_next_revision(record, history[-1] if history else None)
            self._saves[record.session_id] = [*history, record]
        return record

    def get_current_save_record(self, session_id: str) -> Optional[SaveRecord]:
        with self._lock:
            history = self._saves.get(session_id)
            return history[-1] if history else None

    def get_save_record(
        self, session_id: str, save_id: str
    ) -> Optional[SaveRecord]:
        with self._lock:
            for record in self._saves.get(session_id, []):
                if record.save_id == save_id:
                    return record
        return None

    # ------------------------------------------------------------------
    # Verifications
    # ------------------------------------------------------------------

    def create_verification_record(
        self, record: VerificationRecord
    ) -> VerificationRecord:
        save = self.get_save_record(record.session_id, record.save_id)
        with self._lock:
            existing_id = self._by_save.get(record.save_id)
            check_verifiable(
                record,
                save,
                self._verifications.get(existing_id) if existing_id else None,
            )
            if record.verification_id in self._verifications:
                raise PersistenceError(
                    f"Verification id collision: '{record.verification_id}'."
                )
            self._verifications[record.verification_id] = record
            self._by_save[record.save_id] = record.verification_id
        return record

    def get_verification_record(
        self, verification_id: str
    ) -> Optional[VerificationRecord]:
        with self._lock:
            return self._verifications.get(verification_id)

    def get_verification_for_save(
        self, session_id: str, save_id: str
    ) -> Optional[VerificationRecord]:
        with self._lock:
            verification_id = self._by_save.get(save_id)
            if verification_id is None:
                return None
            record = self._verifications[verification_id]
        return record if record.session_id == session_id else None

    # ------------------------------------------------------------------
    # Export log
    # ------------------------------------------------------------------

    def record_export(self, entry: ExportLogEntry) -> ExportLogEntry:
        with self._lock:
            self._exports.setdefault(entry.session_id, []).append(entry)
        return entry

    def list_exports(self, session_id: str) -> List[ExportLogEntry]:
        with self._lock:
            return list(self._exports.get(session_id, []))

    # ------------------------------------------------------------------
    # Canvas index
    # ------------------------------------------------------------------

    def list_current_saves(self, owner_id: str) -> List[SaveRecord]:
        with self._lock:
            return [
                history[-1]
                for session_id, history in self._saves.items()
                if history
                and session_id not in self._deleted
                and history[-1].saved_by == owner_id
            ]

    def mark_session_deleted(self, session_id: str) -> None:
        with self._lock:
            self._deleted.add(session_id)

    def is_session_deleted(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._deleted
