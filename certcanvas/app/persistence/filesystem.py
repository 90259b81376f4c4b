"""
Filesystem-backed persistence store (durable, single-node).

Layout under the storage root:

    sessions/<session_id>/saves/<revision>.json
    sessions/<session_id>/verifications/<save_id>.json
    sessions/<session_id>/exports.jsonl
    sessions/<session_id>/deleted.json       (deletion marker)
    verifications/<verification_id>.json      (public lookup index)

Every record file is written to a temporary file in the target
directory and moved into place with os.replace, so a crashed write never
leaves a partially written record behind.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from certcanvas.app.errors import PersistenceError
from certcanvas.app.persistence.store import (
    check_next_revision,
    check_verifiable,
)
from certcanvas.app.schemas.records import (
    ExportLogEntry,
    SaveRecord,
    VerificationRecord,
)

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def _safe_id(value: str) -> str:
    # Identifiers become path components; reject anything that could
    # escape the storage root.
    if not _SAFE_ID.match(value):
        raise PersistenceError(f"Unsafe storage identifier: {value!r}")
    return value


class FilesystemPersistenceStore:
    def __init__(self, root: Path) -> None:
        self._root = Path(root).expanduser().resolve()
        self._lock = threading.Lock()
        try:
            (self._root / "sessions").mkdir(parents=True, exist_ok=True)
            (self._root / "verifications").mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(
                f"Storage root is not usable: {self._root}: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _session_dir(self, session_id: str) -> Path:
        return self._root / "sessions" / _safe_id(session_id)

    def _saves_dir(self, session_id: str) -> Path:
        return self._session_dir(session_id) / "saves"

    def _verification_path(self, session_id: str, save_id: str) -> Path:
        return (
            self._session_dir(session_id)
            / "verifications"
            / f"{_safe_id(save_id)}.json"
        )

    def _index_path(self, verification_id: str) -> Path:
        return self._root / "verifications" / f"{_safe_id(verification_id)}.json"

    # ------------------------------------------------------------------
    # Low-level IO
    # ------------------------------------------------------------------

    def _write_atomic(self, path: Path, data: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=".tmp-", suffix=".json"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _read(self, path: Path) -> Optional[str]:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"Failed to read {path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Saves
    # ------------------------------------------------------------------

    def create_save_record(self, record: SaveRecord) -> SaveRecord:
        with self._lock:
            check_next_revision(
                record, self.get_current_save_record(record.session_id)
            )
            path = self._saves_dir(record.session_id) / f"{record.revision:08d}.json"
            try:
                self._write_atomic(path, record.model_dump_json())
            except OSError as exc:
                logger.error(
                    "save_record_write_failed",
                    extra={"session_id": record.session_id, "error": str(exc)},
                )
                raise PersistenceError(
                    f"Failed to persist SaveRecord: {exc}"
                ) from exc
        return record

    def get_current_save_record(self, session_id: str) -> Optional[SaveRecord]:
        if not _SAFE_ID.match(session_id):
            return None
        saves_dir = self._saves_dir(session_id)
        try:
            revisions = sorted(saves_dir.glob("[0-9]*.json"))
        except OSError as exc:
            raise PersistenceError(
                f"Failed to list saves for '{session_id}': {exc}"
            ) from exc
        if not revisions:
            return None
        raw = self._read(revisions[-1])
        return SaveRecord.model_validate_json(raw) if raw else None

    def get_save_record(
        self, session_id: str, save_id: str
    ) -> Optional[SaveRecord]:
        if not _SAFE_ID.match(session_id):
            return None
        for path in sorted(self._saves_dir(session_id).glob("[0-9]*.json")):
            raw = self._read(path)
            if raw is None:
                continue
            record = SaveRecord.model_validate_json(raw)
            if record.save_id == save_id:
                return record
        return None

    # ------------------------------------------------------------------
    # Verifications
    # ------------------------------------------------------------------

    def create_verification_record(
        self, record: VerificationRecord
    ) -> VerificationRecord:
        with self._lock:
            check_verifiable(
                record,
                self.get_save_record(record.session_id, record.save_id),
                self.get_verification_for_save(
                    record.session_id, record.save_id
                ),
            )
            index_path = self._index_path(record.verification_id)
            if index_path.exists():
                raise PersistenceError(
                    f"Verification id collision: '{record.verification_id}'."
                )

            record_path = self._verification_path(
                record.session_id, record.save_id
            )
            index = json.dumps(
                {"session_id": record.session_id, "save_id": record.save_id}
            )

            try:
                self._write_atomic(record_path, record.model_dump_json())
                try:
                    self._write_atomic(index_path, index)
                except OSError:
                    record_path.unlink(missing_ok=True)
                    raise
            except OSError as exc:
                logger.error(
                    "verification_record_write_failed",
                    extra={"session_id": record.session_id, "error": str(exc)},
                )
                raise PersistenceError(
                    f"Failed to persist VerificationRecord: {exc}"
                ) from exc
        return record

    def get_verification_record(
        self, verification_id: str
    ) -> Optional[VerificationRecord]:
        if not _SAFE_ID.match(verification_id):
            return None
        raw_index = self._read(self._index_path(verification_id))
        if raw_index is None:
            return None
        index = json.loads(raw_index)
        return self.get_verification_for_save(
            index["session_id"], index["save_id"]
        )

    def get_verification_for_save(
        self, session_id: str, save_id: str
    ) -> Optional[VerificationRecord]:
        if not (_SAFE_ID.match(session_id) and _SAFE_ID.match(save_id)):
            return None
        raw = self._read(self._verification_path(session_id, save_id))
        return VerificationRecord.model_validate_json(raw) if raw else None

    # ------------------------------------------------------------------
    # Export log
    # ------------------------------------------------------------------

    def record_export(self, entry: ExportLogEntry) -> ExportLogEntry:
        path = self._session_dir(entry.session_id) / "exports.jsonl"
        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as fh:
                    fh.write(entry.model_dump_json() + "\n")
            except OSError as exc:
                raise PersistenceError(
                    f"Failed to append export log: {exc}"
                ) from exc
        return entry

    def list_exports(self, session_id: str) -> List[ExportLogEntry]:
        raw = self._read(self._session_dir(session_id) / "exports.jsonl")
        if raw is None:
            return []
        return [
            ExportLogEntry.model_validate_json(line)
            for line in raw.splitlines()
            if line.strip()
        ]

    # ------------------------------------------------------------------
    # Canvas index
    # ------------------------------------------------------------------

    def list_current_saves(self, owner_id: str) -> List[SaveRecord]:
        try:
            session_dirs = sorted((self._root / "sessions").iterdir())
        except OSError as exc:
            raise PersistenceError(f"Failed to list sessions: {exc}") from exc

        saves = []
        for session_dir in session_dirs:
            session_id = session_dir.name
            if not _SAFE_ID.match(session_id) or self.is_session_deleted(session_id):
                continue
            current = self.get_current_save_record(session_id)
            if current is not None and current.saved_by == owner_id:
                saves.append(current)
        return saves

    def mark_session_deleted(self, session_id: str) -> None:
        path = self._session_dir(session_id) / "deleted.json"
        marker = json.dumps({"deleted_at": datetime.now(timezone.utc).isoformat()})
        with self._lock:
            try:
                self._write_atomic(path, marker)
            except OSError as exc:
                raise PersistenceError(
                    f"Failed to delete canvas '{session_id}': {exc}"
                ) from exc

    def is_session_deleted(self, session_id: str) -> bool:
        if not _SAFE_ID.match(session_id):
            return False
        return (self._session_dir(session_id) / "deleted.json").exists()
