"""
Save → verify → export coordinator.

IMPORTANT:
The coordinator is the ONLY place where pipeline gates are decided.

Its responsibilities are:
- validating save and verify input
- enforcing execution order (save before verify before export)
- enforcing staleness checks against both the session and the store
- creating immutable records through the persistence collaborator
- handing verified snapshots to the encoder registry

It MUST NOT:
- render anything itself
- read the live session design when exporting
- apply a session transition before the store has accepted the record
"""

from __future__ import annotations

import logging
import re
import secrets
from datetime import date
from typing import Dict, List, Optional, Tuple, Union
from uuid import uuid4

from anyio import to_thread

from certcanvas.app.canvas.registry import SessionRegistry
from certcanvas.app.canvas.session import CanvasSession
from certcanvas.app.config import Settings
from certcanvas.app.errors import (
    AlreadyVerifiedError,
    AuthorizationError,
    CanvasPipelineError,
    ExportNotAllowedError,
    NotFoundError,
    StaleSaveError,
    ValidationError,
)
from certcanvas.app.events import (
    NullEventEmitter,
    PipelineEvent,
    PipelineEventEmitter,
    PipelineEventType,
)
from certcanvas.app.persistence import (
    AssetLibrary,
    PersistenceStore,
    build_asset_library,
)
from certcanvas.app.render.base import ExportEncoder, RenderJob
from certcanvas.app.render.registry import build_encoder_registry
from certcanvas.app.schemas.records import (
    AssetInfo,
    CallerIdentity,
    ExportArtifact,
    ExportLogEntry,
    SaveRecord,
    VerificationRecord,
)
from certcanvas.app.schemas.status import (
    CertificateSummary,
    ExportBlockReason,
    PipelineStatus,
    VerificationLookup,
)
from certcanvas.app.utils.hashing import (
    canonicalize_payload,
    compute_content_hash,
)

logger = logging.getLogger(__name__)

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_STATUS_MESSAGES = {
    "editing": "Canvas not saved yet. Save to generate a verification link.",
    "saved": "No verification link generated. Verify the saved canvas to enable export.",
    "verified": "Verification link is generated and active.",
}


def compute_save_hash(title: str, design_payload: dict) -> str:
    return compute_content_hash(
        canonicalize_payload({"title": title, "design": design_payload})
    )


def _slug(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:48] or "certificate"


class CertificatePipeline:
    """
    Central pipeline coordinator.

    Execution order:
        1. save    (requires a non-empty design and a valid title)
        2. verify  (requires the current, non-stale save)
        3. export  (requires saved + verified + not dirty)
    """

    def __init__(
        self,
        *,
        settings: Settings,
        store: PersistenceStore,
        registry: Optional[SessionRegistry] = None,
        encoders: Optional[Dict[str, ExportEncoder]] = None,
        emitter: Optional[PipelineEventEmitter] = None,
        assets: Optional[AssetLibrary] = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self.registry = registry or SessionRegistry()
        self.assets = assets if assets is not None else build_asset_library(settings)
        self._encoders = (
            encoders
            if encoders is not None
            else build_encoder_registry(settings, assets=self.assets)
        )
        self._emitter = emitter or NullEventEmitter()

    @property
    def settings(self) -> Settings:
        return self._settings

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        caller: CallerIdentity,
        *,
        width: Optional[int] = None,
        height: Optional[int] = None,
        background: str = "#ffffff",
    ) -> CanvasSession:
        session = self.registry.create(
            caller,
            width=width or self._settings.default_canvas_width,
            height=height or self._settings.default_canvas_height,
            background=background,
        )
        await self._emit(
            session.session_id,
            PipelineEventType.SESSION_CREATED,
            {"owner_id": caller.user_id},
        )
        return session

    async def get_session(
        self,
        session_id: str,
        caller: CallerIdentity,
    ) -> CanvasSession:
        """Return the live session, rebuilding it from storage if needed."""
        if self.registry.get(session_id) is not None:
            return self.registry.require(session_id, caller)
        return await self.reload(session_id, caller=caller)

    async def reload(
        self,
        session_id: str,
        *,
        caller: CallerIdentity,
    ) -> CanvasSession:
        """
        Replace the live session with one rebuilt from the current save.

        Unsaved edits of the replaced session are discarded.
        """
        current = self._store.get_current_save_record(session_id)
        if current is None or self._store.is_session_deleted(session_id):
            raise NotFoundError(f"Canvas '{session_id}' not found.")
        if current.saved_by != caller.user_id:
            raise AuthorizationError(
                f"User '{caller.user_id}' may not open canvas '{session_id}'."
            )

        verification = self._store.get_verification_for_save(
            session_id, current.save_id
        )
        session = CanvasSession.restore(current, verification)
        self.registry.replace(session)

        logger.info(
            "canvas_reloaded",
            extra={
                "session_id": session_id,
                "save_id": current.save_id,
                "verified": verification is not None,
            },
        )
        await self._emit(
            session_id,
            PipelineEventType.SESSION_RELOADED,
            {"save_id": current.save_id, "state": session.state.kind},
        )
        return session

    async def list_sessions(self, caller: CallerIdentity) -> List[CanvasSession]:
        """
        The caller's canvases, most recently changed first.

        Live sessions are listed as they are. Canvases that are only in
        storage (saved by an earlier process) are listed from their
        current save without being loaded into the registry.
        """
        sessions = self.registry.list_for(caller)
        live = {session.session_id for session in sessions}

        stored = await to_thread.run_sync(
            self._store.list_current_saves, caller.user_id
        )
        for save in stored:
            if save.session_id in live:
                continue
            verification = self._store.get_verification_for_save(
                save.session_id, save.save_id
            )
            sessions.append(CanvasSession.restore(save, verification))

        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    async def delete_session(
        self,
        session_id: str,
        *,
        caller: CallerIdentity,
    ) -> None:
        """
        Remove a canvas from the caller's workspace.

        Saves and verifications are kept, so links already handed out
        keep resolving.
        """
        live = self.registry.get(session_id)
        if live is not None:
            live.require_owner(caller)
        else:
            current = self._store.get_current_save_record(session_id)
            if current is None or self._store.is_session_deleted(session_id):
                raise NotFoundError(f"Canvas '{session_id}' not found.")
            if current.saved_by != caller.user_id:
                raise AuthorizationError(
                    f"User '{caller.user_id}' may not delete canvas "
                    f"'{session_id}'."
                )

        await to_thread.run_sync(self._store.mark_session_deleted, session_id)
        self.registry.remove(session_id)

        logger.info(
            "canvas_deleted",
            extra={"session_id": session_id, "owner_id": caller.user_id},
        )
        await self._emit(
            session_id,
            PipelineEventType.SESSION_DELETED,
            {"owner_id": caller.user_id},
        )

    def resolve_save(self, session: CanvasSession, save_id: str) -> SaveRecord:
        """Look up a save of this session by id, current or not."""
        held = session.save_record
        if held is not None and held.save_id == save_id:
            return held
        record = self._store.get_save_record(session.session_id, save_id)
        if record is None:
            raise NotFoundError(
                f"Save '{save_id}' not found for canvas '{session.session_id}'."
            )
        return record

    # ------------------------------------------------------------------
    # 1. Save
    # ------------------------------------------------------------------

    async def save(
        self,
        session: CanvasSession,
        *,
        title: str,
        caller: CallerIdentity,
    ) -> SaveRecord:
        try:
            session.require_owner(caller)
            title = self._validate_title(title)

            if session.design.is_empty:
                raise ValidationError.for_field(
                    "design", "an empty design cannot be saved"
                )

            current = self._store.get_current_save_record(session.session_id)
            design = session.design

            record = SaveRecord(
                save_id=uuid4().hex,
                session_id=session.session_id,
                revision=current.revision + 1 if current else 1,
                title=title,
                design=design,
                saved_by=caller.user_id,
                content_hash=compute_save_hash(
                    title, design.model_dump(mode="json")
                ),
            )

            await to_thread.run_sync(self._store.create_save_record, record)

        except CanvasPipelineError as exc:
            await self._rejected(session, PipelineEventType.SAVE_REJECTED, exc)
            raise

        # Store accepted the record; only now does the session leave editing.
        session.mark_saved(record)

        logger.info(
            "canvas_saved",
            extra={
                "session_id": session.session_id,
                "save_id": record.save_id,
                "revision": record.revision,
                "elements": len(record.design.elements),
            },
        )
        await self._emit(
            session.session_id,
            PipelineEventType.SAVE_COMPLETED,
            {
                "save_id": record.save_id,
                "revision": record.revision,
                "content_hash": record.content_hash,
            },
        )
        return record

    # ------------------------------------------------------------------
    # 2. Verify
    # ------------------------------------------------------------------

    async def verify(
        self,
        session: CanvasSession,
        *,
        save_record: SaveRecord,
        author_name: str,
        authorized_date: Union[str, date],
        caller: CallerIdentity,
    ) -> VerificationRecord:
        """
        Bind the current save to an authorship claim.

        Re-verifying an unchanged save with the same author and date
        returns the existing record. A different claim for an already
        verified save raises AlreadyVerifiedError.
        """
        try:
            session.require_owner(caller)
            author_name = self._validate_author_name(author_name)
            authorized = self._validate_date(authorized_date)

            self._require_current(session, save_record)

            existing = self._store.get_verification_for_save(
                session.session_id, save_record.save_id
            )
            if existing is not None:
                if (
                    existing.author_name == author_name
                    and existing.authorized_date == authorized
                ):
                    if session.verification_record is None:
                        session.mark_verified(existing)
                    return existing
                raise AlreadyVerifiedError(
                    f"Save '{save_record.save_id}' is already verified by "
                    f"'{existing.author_name}' on "
                    f"{existing.authorized_date.isoformat()}. "
                    "Save again to issue a new verification."
                )

            record = VerificationRecord(
                verification_id=self._new_verification_id(),
                session_id=session.session_id,
                save_id=save_record.save_id,
                author_name=author_name,
                authorized_date=authorized,
                verified_by=caller.user_id,
                content_hash=save_record.content_hash,
            )

            await to_thread.run_sync(self._store.create_verification_record, record)

        except CanvasPipelineError as exc:
            await self._rejected(session, PipelineEventType.VERIFY_REJECTED, exc)
            raise

        session.mark_verified(record)

        logger.info(
            "canvas_verified",
            extra={
                "session_id": session.session_id,
                "save_id": record.save_id,
                "verification_id": record.verification_id,
            },
        )
        await self._emit(
            session.session_id,
            PipelineEventType.VERIFY_COMPLETED,
            {
                "save_id": record.save_id,
                "verification_id": record.verification_id,
            },
        )
        return record

    # ------------------------------------------------------------------
    # 3. Export
    # ------------------------------------------------------------------

    async def export(
        self,
        session: CanvasSession,
        *,
        export_format: str,
        caller: CallerIdentity,
    ) -> ExportArtifact:
        try:
            session.require_owner(caller)

            encoder = self._encoders.get(export_format)
            if encoder is None:
                raise ValidationError.for_field(
                    "format",
                    f"unsupported export format '{export_format}'; "
                    f"expected one of {sorted(self._encoders)}",
                )

            reason = self.export_block_reason(session)
            if reason is not None:
                raise ExportNotAllowedError(reason)

            # Snapshot-read: the records held by the verified state, never
            # the live design.
            save_record = session.save_record
            verification = session.verification_record

            current = self._store.get_current_save_record(session.session_id)
            if current is None or current.save_id != save_record.save_id:
                raise ExportNotAllowedError(ExportBlockReason.NOT_SAVED)

            verification_url = self._settings.verification_url(
                verification.verification_id
            )
            job = RenderJob(
                save_record=save_record,
                verification_record=verification,
                verification_url=verification_url,
                issued_by=self._settings.issued_by,
            )

            content = await to_thread.run_sync(encoder.encode, job)

            artifact = ExportArtifact(
                format=encoder.format,
                media_type=encoder.media_type,
                filename=(
                    f"{_slug(save_record.title)}-"
                    f"{verification.verification_id}.{encoder.extension}"
                ),
                content=content,
                verification_id=verification.verification_id,
                verification_url=verification_url,
                content_hash=verification.content_hash,
            )

            entry = ExportLogEntry(
                session_id=session.session_id,
                save_id=save_record.save_id,
                verification_id=verification.verification_id,
                format=encoder.format,
                exported_by=caller.user_id,
                byte_size=len(content),
            )
            await to_thread.run_sync(self._store.record_export, entry)

        except CanvasPipelineError as exc:
            await self._rejected(session, PipelineEventType.EXPORT_REJECTED, exc)
            raise

        logger.info(
            "canvas_exported",
            extra={
                "session_id": session.session_id,
                "format": artifact.format,
                "bytes": len(artifact.content),
            },
        )
        await self._emit(
            session.session_id,
            PipelineEventType.EXPORT_COMPLETED,
            {
                "format": artifact.format,
                "verification_id": artifact.verification_id,
                "bytes": len(artifact.content),
            },
        )
        return artifact

    # ------------------------------------------------------------------
    # Image assets
    # ------------------------------------------------------------------

    async def upload_asset(self, caller: CallerIdentity, data: bytes) -> AssetInfo:
        limit = self._settings.max_asset_bytes
        if len(data) > limit:
            raise ValidationError.for_field(
                "file", f"upload must not exceed {limit} bytes"
            )
        if not data:
            raise ValidationError.for_field("file", "upload is empty")

        info = await to_thread.run_sync(self.assets.store, caller.user_id, data)
        logger.info(
            "asset_uploaded",
            extra={
                "owner_id": caller.user_id,
                "image_ref": info.image_ref,
                "bytes": info.byte_size,
            },
        )
        return info

    async def list_assets(self, caller: CallerIdentity) -> List[AssetInfo]:
        return await to_thread.run_sync(self.assets.list, caller.user_id)

    async def read_asset(
        self, caller: CallerIdentity, image_ref: str
    ) -> Tuple[bytes, AssetInfo]:
        return await to_thread.run_sync(self.assets.read, caller.user_id, image_ref)

    async def delete_asset(self, caller: CallerIdentity, image_ref: str) -> None:
        """
        Delete an uploaded asset.

        Saved designs that still reference it render a placeholder in its
        place; uploading the same bytes again restores the reference.
        """
        await to_thread.run_sync(self.assets.delete, caller.user_id, image_ref)
        logger.info(
            "asset_deleted",
            extra={"owner_id": caller.user_id, "image_ref": image_ref},
        )

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    @staticmethod
    def export_block_reason(session: CanvasSession) -> Optional[ExportBlockReason]:
        if not session.is_saved:
            return ExportBlockReason.NOT_SAVED
        if session.verification_record is None:
            return ExportBlockReason.NOT_VERIFIED
        return None

    def status(self, session: CanvasSession) -> PipelineStatus:
        save_record = session.save_record
        verification = session.verification_record
        return PipelineStatus(
            session_id=session.session_id,
            state=session.state.kind,
            dirty=session.dirty,
            is_saved=session.is_saved,
            can_export=session.can_export,
            save_id=save_record.save_id if save_record else None,
            verification_id=(
                verification.verification_id if verification else None
            ),
            verification_url=(
                self._settings.verification_url(verification.verification_id)
                if verification
                else None
            ),
            export_blocked_reason=self.export_block_reason(session),
            message=_STATUS_MESSAGES[session.state.kind],
        )

    def export_history(self, session: CanvasSession) -> List[ExportLogEntry]:
        return self._store.list_exports(session.session_id)

    def lookup(self, verification_id: str) -> VerificationLookup:
        """
        Resolve a public verification identifier.

        Unknown or inconsistent identifiers are reported as invalid
        rather than raised, so third parties always get an answer.
        """
        record = self._store.get_verification_record(verification_id)
        if record is None:
            return VerificationLookup(
                valid=False,
                message="This certificate is NOT valid. The verification "
                "code does not exist.",
            )

        save = self._store.get_save_record(record.session_id, record.save_id)
        if save is None or save.content_hash != record.content_hash:
            logger.warning(
                "verification_record_inconsistent",
                extra={"verification_id": verification_id},
            )
            return VerificationLookup(
                valid=False,
                message="This certificate is NOT valid. The verification "
                "record does not match its saved design.",
            )

        return VerificationLookup(
            valid=True,
            message="This certificate is valid and authorized.",
            certificate=CertificateSummary(
                title=save.title,
                author_name=record.author_name,
                authorized_date=record.authorized_date,
                saved_at=save.saved_at,
                issued_by=self._settings.issued_by,
                verification_id=record.verification_id,
                content_hash=record.content_hash,
            ),
        )

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    def _validate_title(self, title: str) -> str:
        title = (title or "").strip()
        if not title:
            raise ValidationError.for_field("title", "title is required")
        limit = self._settings.max_title_length
        if len(title) > limit:
            raise ValidationError.for_field(
                "title", f"title must not exceed {limit} characters"
            )
        return title

    def _validate_author_name(self, author_name: str) -> str:
        author_name = (author_name or "").strip()
        if not author_name:
            raise ValidationError.for_field(
                "author_name", "author_name is required"
            )
        limit = self._settings.max_author_name_length
        if len(author_name) > limit:
            raise ValidationError.for_field(
                "author_name",
                f"author_name must not exceed {limit} characters",
            )
        return author_name

    @staticmethod
    def _validate_date(value: Union[str, date]) -> date:
        if isinstance(value, date):
            return value
        if isinstance(value, str) and _ISO_DATE.match(value.strip()):
            try:
                return date.fromisoformat(value.strip())
            except ValueError:
                pass
        raise ValidationError.for_field(
            "authorized_date",
            "authorized_date must be a valid date (YYYY-MM-DD)",
        )

    def _require_current(
        self,
        session: CanvasSession,
        save_record: SaveRecord,
    ) -> None:
        if save_record.session_id != session.session_id:
            raise NotFoundError(
                f"Save '{save_record.save_id}' does not belong to canvas "
                f"'{session.session_id}'."
            )

        if session.dirty:
            raise StaleSaveError(
                "The design changed after it was saved. "
                "Save again before verifying."
            )

        session_save = session.save_record
        if session_save is None or session_save.save_id != save_record.save_id:
            raise StaleSaveError(
                f"Save '{save_record.save_id}' has been superseded by a "
                "newer save."
            )

        current = self._store.get_current_save_record(session.session_id)
        if current is None or current.save_id != save_record.save_id:
            raise StaleSaveError(
                f"Save '{save_record.save_id}' is not the current save of "
                f"canvas '{session.session_id}'."
            )

    def _new_verification_id(self) -> str:
        # 144 bits of randomness; exposed publicly, so never sequential.
        token = secrets.token_urlsafe(18)
        prefix = self._settings.verification_id_prefix
        return f"{prefix}-{token}" if prefix else token

    # ------------------------------------------------------------------
    # Events (observational only)
    # ------------------------------------------------------------------

    async def _emit(
        self,
        session_id: str,
        event_type: PipelineEventType,
        details: Optional[dict] = None,
    ) -> None:
        try:
            await self._emitter.emit(
                PipelineEvent(
                    session_id=session_id,
                    event_type=event_type,
                    details=details,
                )
            )
        except Exception:
            logger.warning(
                "event_emission_failed",
                extra={"session_id": session_id, "event_type": event_type.value},
            )

    async def _rejected(
        self,
        session: CanvasSession,
        event_type: PipelineEventType,
        exc: CanvasPipelineError,
    ) -> None:
        logger.info(
            event_type.value,
            extra={"session_id": session.session_id, "kind": exc.kind},
        )
        await self._emit(
            session.session_id,
            event_type,
            {"kind": exc.kind, "message": exc.message},
        )
