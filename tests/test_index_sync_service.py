"""
Tests for the work index synchronization: event handler, paged full sync
and the single-flight background runner.
"""

import threading

import pytest

from trackflow.core.exceptions import ForbiddenError
from trackflow.core.state_machine import GENERIC_STATE_MACHINE
from trackflow.models import db, utcnow
from trackflow.models.event import EVENT_CREATED, EventRecord
from trackflow.models.project import Project
from trackflow.models.work import Work
from trackflow.services.actor import SYSTEM_ADMIN_PERMISSION, Actor
from trackflow.services.index_sync_service import (
    SYNC_BATCH_SIZE,
    WORK_INDEX_HANDLER,
    IndexSyncService,
    LoggingIndexer,
)
from trackflow.services.work_service import WorkCreation, WorkService
from trackflow.services.workflow_service import WorkflowCreation, WorkflowService

ADMIN = Actor(id="u-admin", name="root", permissions=frozenset({SYSTEM_ADMIN_PERMISSION}))


class RecordingIndexer:
    def __init__(self, fail_on_calls=()):
        self.indexed = []
        self.deleted = []
        self.calls = 0
        self.fail_on_calls = set(fail_on_calls)

    def index_works(self, works):
        self.calls += 1
        if self.calls in self.fail_on_calls:
            raise ConnectionError("search cluster unavailable")
        self.indexed.extend(w.id for w in works)

    def delete_work(self, work_id):
        self.deleted.append(work_id)


class BrokenLoader:
    def __init__(self):
        self.pages = []

    def load_works(self, page, size):
        self.pages.append(page)
        raise RuntimeError("db gone")


def _break_session():
    """Leave the session needing a rollback, as a failed statement would."""
    db.session.add(Project(name=None, identifier="BROKEN"))
    db.session.flush()


class FailOnceLoader:
    def __init__(self, works):
        self.works = works
        self.failed = False

    def load_works(self, page, size):
        if not self.failed:
            self.failed = True
            _break_session()
        return self.works.load_works(page, size)


class SessionBreakingIndexer(RecordingIndexer):
    def index_works(self, works):
        _break_session()


class TestFullSync:
    def test_default_batch_size(self):
        assert SYNC_BATCH_SIZE == 500
        assert IndexSyncService(indexer=LoggingIndexer()).batch_size == 500

    def test_pages_through_all_works(self, work_service, make_work):
        ids = sorted(make_work(f"w{i}").work.id for i in range(5))
        indexer = RecordingIndexer()

        count = IndexSyncService(works=work_service, indexer=indexer, batch_size=2).full_sync()

        assert count == 5
        assert indexer.indexed == ids
        assert indexer.calls == 3

    def test_failed_page_is_skipped(self, work_service, make_work):
        ids = sorted(make_work(f"w{i}").work.id for i in range(5))
        indexer = RecordingIndexer(fail_on_calls={2})

        count = IndexSyncService(works=work_service, indexer=indexer, batch_size=2).full_sync()

        assert count == 3
        assert indexer.indexed == ids[:2] + ids[4:]

    def test_gives_up_after_repeated_load_failures(self):
        loader = BrokenLoader()
        service = IndexSyncService(works=loader, indexer=RecordingIndexer(), max_failed_pages=3)
        assert service.full_sync() == 0
        assert loader.pages == [1, 2, 3]

    def test_session_recovers_after_failed_page(self, work_service, make_work):
        ids = sorted(make_work(f"w{i}").work.id for i in range(5))
        indexer = RecordingIndexer()
        service = IndexSyncService(
            works=FailOnceLoader(work_service), indexer=indexer, batch_size=2,
        )

        assert service.full_sync() == 3
        assert indexer.indexed == ids[2:]

    def test_empty_store(self, work_service):
        assert IndexSyncService(works=work_service, indexer=RecordingIndexer()).full_sync() == 0


class TestScheduleFullSync:
    def test_requires_system_admin(self, member):
        with pytest.raises(ForbiddenError):
            IndexSyncService(indexer=RecordingIndexer()).schedule_full_sync(member)

    def test_single_flight(self, app, monkeypatch):
        release = threading.Event()
        entered = threading.Event()

        class BlockingLoader:
            def load_works(self, page, size):
                entered.set()
                release.wait(timeout=5)
                return []

        service = IndexSyncService(works=BlockingLoader(), indexer=RecordingIndexer())
        monkeypatch.setitem(app.extensions, "index_sync", app.extensions["index_sync"])
        service.init_app(app)

        assert service.schedule_full_sync(ADMIN) is True
        assert entered.wait(timeout=5)
        assert service.running is True
        assert service.schedule_full_sync(ADMIN) is False

        release.set()
        service.join(timeout=5)
        assert service.running is False
        assert service.schedule_full_sync(ADMIN) is True
        service.join(timeout=5)

    def test_unbound_service(self):
        with pytest.raises(RuntimeError):
            IndexSyncService(indexer=RecordingIndexer()).schedule_full_sync(ADMIN)


class TestEventHandler:
    @pytest.fixture()
    def indexer(self, work_service, recording_registry):
        indexer = RecordingIndexer()
        service = IndexSyncService(works=work_service, indexer=indexer)
        recording_registry.register_handler(service.work_index_event_handler, WORK_INDEX_HANDLER)
        return indexer

    def test_created_work_is_indexed_and_event_synced(self, indexer, make_work):
        work_id = make_work().work.id
        assert indexer.indexed == [work_id]
        event = EventRecord.query.filter_by(source_id=work_id, event_category=EVENT_CREATED).one()
        assert event.synced is True

    def test_transition_reindexes(self, indexer, transition_service, generic_workflow, make_work, member):
        work_id = make_work().work.id
        transition_service.create_work_state_transition(generic_workflow.id, work_id, "PENDING", "DOING", member)
        assert indexer.indexed == [work_id, work_id]

    def test_deleted_work_is_removed(self, indexer, work_service, make_work, member):
        work_id = make_work().work.id
        work_service.delete_work(work_id, member)
        assert indexer.deleted == [work_id]

    def test_non_work_events_are_ignored(self, work_service):
        service = IndexSyncService(works=work_service, indexer=RecordingIndexer())
        record = EventRecord(
            source_type="LABEL", source_id="l-1", event_category=EVENT_CREATED, timestamp=utcnow(),
        )
        assert service.work_index_event_handler(record) is None

    def test_index_failure_reported_not_synced(self, work_service, make_work, recording_registry):
        indexer = RecordingIndexer(fail_on_calls={1})
        service = IndexSyncService(works=work_service, indexer=indexer)
        results = []
        recording_registry.register_handler(
            lambda record: results.append(service.work_index_event_handler(record)), "capture",
        )

        work_id = make_work().work.id

        assert results[0].success is False
        assert results[0].handler_identifier == WORK_INDEX_HANDLER
        assert "search cluster unavailable" in results[0].message
        assert EventRecord.query.filter_by(source_id=work_id).one().synced is False

    def test_failed_handler_leaves_session_usable(self, work_service, make_work, recording_registry):
        service = IndexSyncService(works=work_service, indexer=SessionBreakingIndexer())
        recording_registry.register_handler(service.work_index_event_handler, WORK_INDEX_HANDLER)

        work_id = make_work().work.id

        assert Work.query.count() == 1
        assert EventRecord.query.filter_by(source_id=work_id).one().synced is False


class TestAppRegistry:
    def test_app_registers_index_handler(self, app):
        assert app.extensions["event_registry"].handler_identifiers == [WORK_INDEX_HANDLER]

    def test_default_built_services_reach_app_indexer(self, project, manager, member):
        workflow = WorkflowService().create_workflow(
            WorkflowCreation(name="Generic", project_id=project.id, state_machine=GENERIC_STATE_MACHINE),
            manager,
        )
        created = WorkService().create_work(
            WorkCreation(
                name="Indexed", project_id=project.id,
                flow_id=workflow.id, initial_state_name="PENDING",
            ),
            member,
        )

        event = EventRecord.query.filter_by(
            source_id=created.work.id, event_category=EVENT_CREATED,
        ).one()
        assert event.synced is True
