import threading

import pytest

from perfstat.api.session_store import FormSessionStore
from perfstat.config import NavigationSettings, Settings
from perfstat.data.uploads import LocalUploadStore
from perfstat.domain.fields import FieldKey, FieldKind
from perfstat.domain.models import Position, StatisticStatus, User
from perfstat.services.autosave import AutoSaver
from perfstat.services.forms import PerformanceFormService, month_of
from perfstat.exceptions import FieldError, MetadataError, NavigationExhausted, PersistenceFailure

USER = User(id=5, role="SP", battalion_id=1)
MONTH = "SEP 2026"
q = FieldKey.flat
cell = FieldKey.cell


@pytest.fixture
def sessions():
    return FormSessionStore(ttl_seconds=60)


@pytest.fixture
def service(catalog, store, rollup_config, sessions, tmp_path):
    uploads = LocalUploadStore(tmp_path / "uploads", "/uploads/performanceDocs/", max_bytes=1024)
    config = Settings(navigation=NavigationSettings(probe_delay_seconds=0, probe_error_delay_seconds=0, max_module_search=3))
    return PerformanceFormService(catalog, store, rollup_config, uploads, sessions, config=config)


def test_month_of():
    assert month_of("SEP 2026") == 9
    assert month_of("Dec 2025") == 12
    assert month_of("not a month") is None


def test_open_save_and_reopen(service):
    session = service.open_session(USER, 1, 1, month_year=MONTH)
    service.apply_changes(session, {q(101): "9", q(102): "3"})
    assert session.get(q(103)) == "6"

    result = service.save(session)
    assert (result.count, result.status, result.month_year) == (3, StatisticStatus.SAVED, MONTH)
    assert not session.dirty

    reopened = service.open_session(USER, 1, 1, month_year=MONTH)
    assert reopened.values() == session.values()
    assert reopened.status is StatisticStatus.DRAFT

    other = service.open_session(User(id=6), 1, 1, month_year=MONTH)
    assert other.get(q(101)) == ""


def test_submit_marks_topic_submitted(service):
    session = service.open_session(USER, 1, 1, month_year=MONTH)
    service.apply_changes(session, {q(101): "1"})
    service.submit(session)

    assert service.form_response(USER, 1, 1, MONTH).is_success
    assert service.open_session(USER, 1, 1, month_year=MONTH).status is StatisticStatus.SUBMITTED


def test_unknown_topic_cannot_be_opened(service):
    with pytest.raises(MetadataError):
        service.open_session(USER, 1, 4, month_year=MONTH)
    with pytest.raises(MetadataError):
        service.open_session(USER, 9, 1, month_year=MONTH)


def test_failed_save_leaves_session_untouched(service, store):
    session = service.open_session(USER, 1, 1, month_year=MONTH)
    service.apply_changes(session, {q(101): "9"})
    before = session.values()
    with store.db._connect() as conn:
        conn.execute("DROP TABLE performance_statistics")

    with pytest.raises(PersistenceFailure):
        service.save(session)
    assert session.dirty
    assert session.values() == before
    assert session.status is StatisticStatus.DRAFT


def test_summary_follows_source_session(service, sessions):
    source = service.open_session(USER, 2, 117, companies=[1, 2], month_year=MONTH)
    sessions.add(source)
    summary = service.open_session(USER, 2, 4, companies=[1, 2], month_year=MONTH)
    sessions.add(summary)
    assert summary.is_summary

    service.apply_changes(source, {cell(1078, 285, 1): "3", cell(1078, 285, 2): "5"})
    assert summary.get(cell(664, 114)) == "8"

    service.apply_changes(source, {cell(1078, 285, 2): "6"})
    assert summary.get(cell(664, 114)) == "9"


def test_summary_uses_saved_source_values(service):
    source = service.open_session(USER, 2, 117, companies=[1, 2], month_year=MONTH)
    service.apply_changes(source, {cell(1079, 286, 1): "2", cell(1079, 286, 2): "4"})
    service.save(source)
    service.close_session(source)

    summary = service.open_session(USER, 2, 4, companies=[1, 2], month_year=MONTH)
    assert summary.get(cell(665, 115)) == "6"


def test_upload_sets_document_field(service):
    session = service.open_session(USER, 1, 2, month_year=MONTH)
    key = q(203).with_kind(FieldKind.PDF)

    url = service.upload(session, key, "minutes.pdf", b"%PDF")
    assert session.get(key) == url
    assert url.startswith("/uploads/performanceDocs/")

    with pytest.raises(FieldError):
        service.upload(session, q(201), "minutes.pdf", b"%PDF")


def test_autosave_saves_dirty_sessions_as_draft(service, sessions, store):
    clean = service.open_session(USER, 1, 1, month_year=MONTH)
    dirty = service.open_session(USER, 1, 2, month_year=MONTH)
    sessions.add(clean)
    sessions.add(dirty)
    service.apply_changes(dirty, {q(201): "1"})

    saver = AutoSaver(service, sessions, interval_seconds=60)
    assert saver.run_once() == 1
    assert not dirty.dirty
    (record,) = [r for r in store.list_records(USER.id, MONTH) if r.question_id == 201]
    assert record.status is StatisticStatus.DRAFT
    assert saver.run_once() == 0


def test_edits_racing_snapshots_keep_state_consistent(service, sessions):
    session = service.open_session(USER, 1, 2, month_year=MONTH)
    sessions.add(session)
    errors = []
    done = threading.Event()

    def edit():
        try:
            for i in range(200):
                service.apply_changes(session, {q(201): "0" if i % 2 else "50"})
        except Exception as exc:
            errors.append(exc)
        finally:
            done.set()

    worker = threading.Thread(target=edit)
    worker.start()
    while not done.is_set():
        session.assemble(StatisticStatus.DRAFT)
    worker.join()

    assert errors == []
    assert session.get(q(201)) == "0"
    assert FieldKey.date(202, 0) not in session.state
    assert AutoSaver(service, sessions, interval_seconds=60).run_once() == 1


def test_edit_after_snapshot_keeps_session_dirty(service):
    session = service.open_session(USER, 1, 1, month_year=MONTH)
    service.apply_changes(session, {q(101): "4"})

    _, version = session.snapshot(StatisticStatus.DRAFT)
    service.apply_changes(session, {q(101): "5"})
    session.mark_saved(StatisticStatus.DRAFT, version)
    assert session.dirty

    service.save(session, StatisticStatus.DRAFT)
    assert not session.dirty


class _CrashingService:
    def __init__(self):
        self.calls = 0
        self.retried = threading.Event()

    def save(self, session, status):
        self.calls += 1
        if self.calls >= 2:
            self.retried.set()
        raise RuntimeError("boom")


def test_autosave_thread_survives_unexpected_errors(service):
    session = service.open_session(USER, 1, 1, month_year=MONTH)
    service.apply_changes(session, {q(101): "1"})
    crashing = _CrashingService()
    saver = AutoSaver(crashing, {"s1": session}, interval_seconds=0.01)

    saver.start()
    try:
        assert crashing.retried.wait(timeout=5)
    finally:
        saver.stop()


def test_navigation(service):
    assert service.next_position(USER, 1, 2) == Position(module_id=2, topic_id=4, is_same_module=False)
    assert service.previous_position(USER, 2, 4) == Position(module_id=1, topic_id=2, is_same_module=False)
    with pytest.raises(NavigationExhausted):
        service.next_position(USER, 3, 5)


def test_skip_uses_catalog_when_no_probe_is_configured(service):
    assert service.skip_to_next_available(USER, 1) == Position(module_id=2, topic_id=4, is_same_module=False)
    with pytest.raises(NavigationExhausted):
        service.skip_to_next_available(USER, 3)


def test_session_store_expiry(service):
    store = FormSessionStore(ttl_seconds=60)
    first = service.open_session(USER, 1, 1, month_year=MONTH)
    other = service.open_session(User(id=6), 1, 1, month_year=MONTH)
    sid = store.add(first)
    store.add(other)

    assert store.get(sid) is first
    assert store.for_user(USER.id) == [first]
    assert len(store) == 2

    store._sessions[sid].expires_at = 0
    assert store.get(sid) is None
    assert len(store) == 1
    assert store.pop("missing") is None
