"""
Verification binder tests.

A verification may only bind the current, unchanged save. Re-verifying
with the same claim is idempotent; a conflicting claim is refused
because records are immutable.
"""

from datetime import date

import pytest

from certcanvas.app.errors import (
    AlreadyVerifiedError,
    StaleSaveError,
    ValidationError,
)
from certcanvas.app.persistence.store import InMemoryPersistenceStore
from certcanvas.tests.fixtures.design_factory import (
    OWNER,
    designed_session,
    make_pipeline,
    make_settings,
    text,
)

pytestmark = pytest.mark.anyio


async def _saved(pipeline, session=None):
    session = session or designed_session()
    record = await pipeline.save(session, title="Course Award", caller=OWNER)
    return session, record


async def test_verify_binds_current_save():
    pipeline = make_pipeline()
    session, save = await _saved(pipeline)

    record = await pipeline.verify(
        session,
        save_record=save,
        author_name="Dr. Ada Lovelace",
        authorized_date="2025-03-14",
        caller=OWNER,
    )

    assert record.save_id == save.save_id
    assert record.content_hash == save.content_hash
    assert record.authorized_date == date(2025, 3, 14)
    assert record.verification_id.startswith("cert-")
    assert session.state.kind == "verified"
    assert session.can_export is True


async def test_verification_ids_are_unique_and_unguessable():
    pipeline = make_pipeline()
    ids = set()
    for i in range(5):
        session, save = await _saved(pipeline, designed_session(f"s{i}"))
        record = await pipeline.verify(
            session,
            save_record=save,
            author_name="A",
            authorized_date="2025-01-01",
            caller=OWNER,
        )
        ids.add(record.verification_id)

    assert len(ids) == 5
    assert all(len(v) > 20 for v in ids)


async def test_verification_id_prefix_is_configurable():
    pipeline = make_pipeline(make_settings(verification_id_prefix=""))
    session, save = await _saved(pipeline)

    record = await pipeline.verify(
        session,
        save_record=save,
        author_name="A",
        authorized_date="2025-01-01",
        caller=OWNER,
    )

    assert not record.verification_id.startswith("cert-")


@pytest.mark.parametrize("author", ["", "   ", "x" * 101])
async def test_invalid_author_name_is_rejected(author):
    pipeline = make_pipeline()
    session, save = await _saved(pipeline)

    with pytest.raises(ValidationError) as exc:
        await pipeline.verify(
            session,
            save_record=save,
            author_name=author,
            authorized_date="2025-01-01",
            caller=OWNER,
        )

    assert exc.value.errors[0]["field"] == "author_name"
    assert session.state.kind == "saved"


@pytest.mark.parametrize(
    "value", ["2025-02-30", "14/03/2025", "2025-3-14", "", "tomorrow"]
)
async def test_invalid_date_is_rejected(value):
    pipeline = make_pipeline()
    session, save = await _saved(pipeline)

    with pytest.raises(ValidationError) as exc:
        await pipeline.verify(
            session,
            save_record=save,
            author_name="A",
            authorized_date=value,
            caller=OWNER,
        )

    assert exc.value.errors[0]["field"] == "authorized_date"


async def test_verify_after_edit_is_stale():
    pipeline = make_pipeline()
    session, save = await _saved(pipeline)
    session.add_element(text("extra", "late change"))

    with pytest.raises(StaleSaveError):
        await pipeline.verify(
            session,
            save_record=save,
            author_name="A",
            authorized_date="2025-01-01",
            caller=OWNER,
        )

    assert session.verification_record is None


async def test_verify_superseded_save_is_stale():
    pipeline = make_pipeline()
    session, first = await _saved(pipeline)
    session.add_element(text("extra", "v2"))
    await pipeline.save(session, title="Course Award", caller=OWNER)

    with pytest.raises(StaleSaveError):
        await pipeline.verify(
            session,
            save_record=first,
            author_name="A",
            authorized_date="2025-01-01",
            caller=OWNER,
        )


async def test_staleness_is_checked_against_the_store():
    store = InMemoryPersistenceStore()
    pipeline = make_pipeline(store=store)
    session, save = await _saved(pipeline)

    # Another process saved a newer revision of the same canvas.
    other = await pipeline.reload(session.session_id, caller=OWNER)
    other.add_element(text("extra", "elsewhere"))
    await pipeline.save(other, title="Course Award", caller=OWNER)

    with pytest.raises(StaleSaveError):
        await pipeline.verify(
            session,
            save_record=save,
            author_name="A",
            authorized_date="2025-01-01",
            caller=OWNER,
        )


async def test_same_claim_is_idempotent():
    pipeline = make_pipeline()
    session, save = await _saved(pipeline)

    first = await pipeline.verify(
        session,
        save_record=save,
        author_name="A",
        authorized_date="2025-01-01",
        caller=OWNER,
    )
    second = await pipeline.verify(
        session,
        save_record=save,
        author_name="A",
        authorized_date=date(2025, 1, 1),
        caller=OWNER,
    )

    assert first == second


async def test_conflicting_claim_is_refused():
    pipeline = make_pipeline()
    session, save = await _saved(pipeline)
    first = await pipeline.verify(
        session,
        save_record=save,
        author_name="A",
        authorized_date="2025-01-01",
        caller=OWNER,
    )

    with pytest.raises(AlreadyVerifiedError):
        await pipeline.verify(
            session,
            save_record=save,
            author_name="B",
            authorized_date="2025-01-01",
            caller=OWNER,
        )

    assert session.verification_record == first


async def test_resave_requires_fresh_verification():
    pipeline = make_pipeline()
    session, save = await _saved(pipeline)
    await pipeline.verify(
        session,
        save_record=save,
        author_name="A",
        authorized_date="2025-01-01",
        caller=OWNER,
    )

    session.add_element(text("extra", "v2"))
    new_save = await pipeline.save(session, title="Course Award", caller=OWNER)

    assert session.state.kind == "saved"
    assert session.can_export is False

    record = await pipeline.verify(
        session,
        save_record=new_save,
        author_name="B",
        authorized_date="2025-02-02",
        caller=OWNER,
    )
    assert record.save_id == new_save.save_id
