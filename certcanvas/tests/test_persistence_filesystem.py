"""
Filesystem persistence tests.

Records must survive a new store instance over the same root (a process
restart), writes must be atomic, and identifiers must never escape the
storage root.
"""

import threading
from datetime import date

import pytest

from certcanvas.app.config import Settings
from certcanvas.app.errors import (
    AlreadyVerifiedError,
    AuthorizationError,
    NotFoundError,
    PersistenceError,
)
from certcanvas.app.persistence import (
    FilesystemPersistenceStore,
    InMemoryPersistenceStore,
    build_persistence_store,
)
from certcanvas.app.schemas.records import (
    ExportLogEntry,
    SaveRecord,
    VerificationRecord,
)
from certcanvas.tests.fixtures.design_factory import (
    INTRUDER,
    OWNER,
    designed_session,
    make_pipeline,
)

pytestmark = pytest.mark.anyio


def _save(revision: int, save_id: str = None) -> SaveRecord:
    return SaveRecord(
        save_id=save_id or f"save-{revision}",
        session_id="session-1",
        revision=revision,
        title="Award",
        design=designed_session().design,
        saved_by=OWNER.user_id,
        content_hash=f"SHA-256:{revision:064d}",
    )


def _verification(save: SaveRecord, verification_id: str = "cert-one") -> VerificationRecord:
    return VerificationRecord(
        verification_id=verification_id,
        session_id=save.session_id,
        save_id=save.save_id,
        author_name="Jane Doe",
        authorized_date=date(2024, 1, 1),
        verified_by=OWNER.user_id,
        content_hash=save.content_hash,
    )


def test_records_survive_a_new_store_instance(tmp_path):
    store = FilesystemPersistenceStore(tmp_path)
    first = store.create_save_record(_save(1))
    second = store.create_save_record(_save(2))
    verification = store.create_verification_record(_verification(second))

    reopened = FilesystemPersistenceStore(tmp_path)

    assert reopened.get_current_save_record("session-1") == second
    assert reopened.get_save_record("session-1", first.save_id) == first
    assert reopened.get_verification_record("cert-one") == verification
    assert reopened.get_verification_for_save("session-1", second.save_id) == verification


def test_revisions_must_be_consecutive(tmp_path):
    store = FilesystemPersistenceStore(tmp_path)
    store.create_save_record(_save(1))

    with pytest.raises(PersistenceError):
        store.create_save_record(_save(3))
    with pytest.raises(PersistenceError):
        store.create_save_record(_save(1, "save-dup"))


def test_second_verification_for_a_save_is_refused(tmp_path):
    store = FilesystemPersistenceStore(tmp_path)
    save = store.create_save_record(_save(1))
    store.create_verification_record(_verification(save))

    with pytest.raises(AlreadyVerifiedError):
        store.create_verification_record(_verification(save, "cert-two"))

    assert store.get_verification_record("cert-two") is None


def test_verification_requires_existing_save(tmp_path):
    store = FilesystemPersistenceStore(tmp_path)

    with pytest.raises(NotFoundError):
        store.create_verification_record(_verification(_save(1)))


def test_unsafe_identifiers_resolve_to_nothing(tmp_path):
    store = FilesystemPersistenceStore(tmp_path / "store")

    assert store.get_verification_record("../../etc/passwd") is None
    assert store.get_current_save_record("..") is None
    assert store.get_verification_for_save("session-1", "../x") is None


def test_no_temporary_files_are_left_behind(tmp_path):
    store = FilesystemPersistenceStore(tmp_path)
    store.create_save_record(_save(1))

    leftovers = [p for p in tmp_path.rglob(".tmp-*")]
    assert leftovers == []


def test_export_log_is_append_only(tmp_path):
    store = FilesystemPersistenceStore(tmp_path)
    for fmt in ("png", "pdf"):
        store.record_export(
            ExportLogEntry(
                session_id="session-1",
                save_id="save-1",
                verification_id="cert-one",
                format=fmt,
                exported_by=OWNER.user_id,
                byte_size=10,
            )
        )

    assert [e.format for e in store.list_exports("session-1")] == ["png", "pdf"]
    assert store.list_exports("other") == []


def test_build_store_follows_settings(tmp_path):
    memory = build_persistence_store(Settings(_env_file=None))
    disk = build_persistence_store(
        Settings(_env_file=None, storage_backend="filesystem", storage_dir=tmp_path)
    )

    assert isinstance(memory, InMemoryPersistenceStore)
    assert isinstance(disk, FilesystemPersistenceStore)


async def test_pipeline_reload_after_restart(tmp_path):
    pipeline = make_pipeline(store=FilesystemPersistenceStore(tmp_path))
    session = designed_session()
    save = await pipeline.save(session, title="Award", caller=OWNER)
    verification = await pipeline.verify(
        session,
        save_record=save,
        author_name="Jane Doe",
        authorized_date="2024-01-01",
        caller=OWNER,
    )

    restarted = make_pipeline(store=FilesystemPersistenceStore(tmp_path))
    restored = await restarted.get_session(session.session_id, OWNER)

    assert restored.state.kind == "verified"
    assert restored.verification_record == verification
    assert restored.design == session.design
    assert restarted.lookup(verification.verification_id).valid is True


@pytest.mark.parametrize("store_type", ["memory", "filesystem"])
def test_current_saves_are_listed_per_owner(tmp_path, store_type):
    store = (
        FilesystemPersistenceStore(tmp_path)
        if store_type == "filesystem"
        else InMemoryPersistenceStore()
    )
    store.create_save_record(_save(1))
    latest = store.create_save_record(_save(2))

    assert store.list_current_saves(OWNER.user_id) == [latest]
    assert store.list_current_saves(INTRUDER.user_id) == []

    store.mark_session_deleted("session-1")

    assert store.is_session_deleted("session-1") is True
    assert store.list_current_saves(OWNER.user_id) == []
    assert store.get_current_save_record("session-1") == latest


async def test_listing_includes_canvases_saved_by_an_earlier_process(tmp_path):
    pipeline = make_pipeline(store=FilesystemPersistenceStore(tmp_path))
    first = designed_session("session-a")
    second = designed_session("session-b")
    await pipeline.save(first, title="Award", caller=OWNER)
    save = await pipeline.save(second, title="Award", caller=OWNER)
    await pipeline.verify(
        second,
        save_record=save,
        author_name="Jane Doe",
        authorized_date="2024-01-01",
        caller=OWNER,
    )

    restarted = make_pipeline(store=FilesystemPersistenceStore(tmp_path))
    listed = {s.session_id: s.state.kind for s in await restarted.list_sessions(OWNER)}

    assert listed == {"session-a": "saved", "session-b": "verified"}
    assert await restarted.list_sessions(INTRUDER) == []


async def test_listing_merges_live_and_stored_canvases(tmp_path):
    store = FilesystemPersistenceStore(tmp_path)
    await make_pipeline(store=store).save(
        designed_session("session-old"), title="Award", caller=OWNER
    )

    pipeline = make_pipeline(store=store)
    live = await pipeline.create_session(OWNER)
    await pipeline.get_session("session-old", OWNER)

    listed = [s.session_id for s in await pipeline.list_sessions(OWNER)]

    assert sorted(listed) == sorted([live.session_id, "session-old"])


async def test_deleted_canvas_is_hidden_but_its_link_still_resolves(tmp_path):
    pipeline = make_pipeline(store=FilesystemPersistenceStore(tmp_path))
    session = designed_session()
    pipeline.registry.replace(session)
    save = await pipeline.save(session, title="Award", caller=OWNER)
    verification = await pipeline.verify(
        session,
        save_record=save,
        author_name="Jane Doe",
        authorized_date="2024-01-01",
        caller=OWNER,
    )

    await pipeline.delete_session(session.session_id, caller=OWNER)

    assert pipeline.registry.get(session.session_id) is None
    assert (tmp_path / "sessions" / session.session_id / "deleted.json").exists()

    restarted = make_pipeline(store=FilesystemPersistenceStore(tmp_path))
    assert await restarted.list_sessions(OWNER) == []
    with pytest.raises(NotFoundError):
        await restarted.get_session(session.session_id, OWNER)
    assert restarted.lookup(verification.verification_id).valid is True


async def test_only_owner_may_delete_a_canvas(tmp_path):
    pipeline = make_pipeline(store=FilesystemPersistenceStore(tmp_path))
    await pipeline.save(designed_session(), title="Award", caller=OWNER)

    with pytest.raises(AuthorizationError):
        await pipeline.delete_session("session-1", caller=INTRUDER)

    with pytest.raises(NotFoundError):
        await pipeline.delete_session("session-unknown", caller=OWNER)

    assert await pipeline.list_sessions(OWNER)


class _ThreadRecordingStore(InMemoryPersistenceStore):
    def __init__(self):
        super().__init__()
        self.write_threads = []

    def create_save_record(self, record):
        self.write_threads.append(threading.get_ident())
        return super().create_save_record(record)

    def create_verification_record(self, record):
        self.write_threads.append(threading.get_ident())
        return super().create_verification_record(record)

    def record_export(self, entry):
        self.write_threads.append(threading.get_ident())
        return super().record_export(entry)


async def test_record_writes_run_off_the_event_loop():
    store = _ThreadRecordingStore()
    pipeline = make_pipeline(store=store)
    session = designed_session()
    save = await pipeline.save(session, title="Award", caller=OWNER)
    await pipeline.verify(
        session,
        save_record=save,
        author_name="Jane Doe",
        authorized_date="2024-01-01",
        caller=OWNER,
    )
    await pipeline.export(session, export_format="png", caller=OWNER)

    loop_thread = threading.get_ident()
    assert len(store.write_threads) == 3
    assert loop_thread not in store.write_threads
