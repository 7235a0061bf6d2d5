"""
Workflow Engine
Index Sync Service — keeps the external work search index in step.

Two paths feed the indexer:
    - work_index_event_handler: registered with the EventHandlerRegistry,
      re-indexes (or removes) the work an event is about and marks the
      event synced.
    - full_sync: pages through every work in id order; scheduled on a
      daemon thread by schedule_full_sync, at most one run at a time.

The indexer itself lives outside the engine. Anything with
``index_works(works)`` and ``delete_work(work_id)`` will do;
``LoggingIndexer`` is used when none is configured.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from flask import Flask

from trackflow.core.exceptions import ForbiddenError
from trackflow.models import db
from trackflow.models.event import EVENT_DELETED, SOURCE_TYPE_WORK, EventRecord
from trackflow.models.work import Work
from trackflow.services.actor import INDEX_ROBOT, SYSTEM_ADMIN_PERMISSION, Actor
from trackflow.services.event_service import HandleResult, mark_synced
from trackflow.services.work_service import WorkService

logger = logging.getLogger(__name__)

SYNC_BATCH_SIZE = 500
WORK_INDEX_HANDLER = "work-indexer"


class WorkIndexer(Protocol):
    def index_works(self, works: list[Work]) -> None: ...

    def delete_work(self, work_id: str) -> None: ...


class LoggingIndexer:
    """Indexer that only records what it was asked to do."""

    def index_works(self, works: list[Work]) -> None:
        logger.info("index works count=%d", len(works))

    def delete_work(self, work_id: str) -> None:
        logger.info("delete work index id=%s", work_id)


class IndexSyncService:
    """Event-driven and full resynchronization of the work index."""

    def __init__(
        self,
        works: WorkService | None = None,
        indexer: WorkIndexer | None = None,
        batch_size: int = SYNC_BATCH_SIZE,
        max_failed_pages: int = 3,
    ):
        self.works = works or WorkService()
        self.indexer = indexer or LoggingIndexer()
        self.batch_size = batch_size
        self.max_failed_pages = max_failed_pages
        self._app: Flask | None = None
        self._lock = threading.Lock()
        self._running = False
        self._thread: threading.Thread | None = None

    def init_app(self, app: Flask) -> None:
        self._app = app
        self.batch_size = app.config.get("INDEX_SYNC_BATCH_SIZE", self.batch_size)
        app.extensions["index_sync"] = self

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    # ── Full resync ──────────────────────────────────────────────────────

    def schedule_full_sync(self, actor: Actor) -> bool:
        """Start a background full sync unless one is already running.

        Returns:
            True if a run was started, False if one was already active.

        Raises:
            ForbiddenError: actor lacks the system admin permission.
        """
        if not actor.has_role(SYSTEM_ADMIN_PERMISSION):
            raise ForbiddenError("schedule index sync")
        if self._app is None:
            raise RuntimeError("IndexSyncService is not bound to an app; call init_app first")

        with self._lock:
            if self._running:
                logger.info("Index full sync already running, schedule skipped")
                return False
            self._running = True

        self._thread = threading.Thread(
            target=self._run_in_background, name="index-full-sync", daemon=True,
        )
        self._thread.start()
        logger.info("Index full sync scheduled by %s", actor.name)
        return True

    def join(self, timeout: float | None = None) -> None:
        """Wait for the background run started last (used by tests and the CLI)."""
        if self._thread is not None:
            self._thread.join(timeout)

    def _run_in_background(self) -> None:
        try:
            with self._app.app_context():
                self.full_sync()
        except Exception:
            logger.exception("Index full sync aborted")
        finally:
            with self._lock:
                self._running = False

    def full_sync(self) -> int:
        """Index every work page by page. Returns the number of works indexed.

        A page that fails to load or index is logged and skipped after the
        session is rolled back, so the next page starts clean. The run
        stops at the first empty page, or after ``max_failed_pages``
        consecutive load failures.
        """
        page, indexed, failed_loads = 1, 0, 0
        while True:
            try:
                works = self.works.load_works(page, self.batch_size)
            except Exception as exc:
                logger.warning("index full sync: error on retrieve works (page=%d, size=%d): %s",
                               page, self.batch_size, exc)
                db.session.rollback()
                failed_loads += 1
                if failed_loads >= self.max_failed_pages:
                    logger.error("index full sync: giving up after %d failed pages", failed_loads)
                    return indexed
                page += 1
                continue
            failed_loads = 0

            if not works:
                logger.info("index full sync: done, %d works indexed", indexed)
                return indexed

            try:
                self.indexer.index_works(works)
                indexed += len(works)
            except Exception as exc:
                logger.warning("index full sync: error on index works (page=%d, size=%d): %s",
                               page, self.batch_size, exc)
                db.session.rollback()
            page += 1

    # ── Event consumption ────────────────────────────────────────────────

    def work_index_event_handler(self, event: EventRecord) -> HandleResult | None:
        """Re-index the work ``event`` is about; None for non-work events."""
        if event.source_type != SOURCE_TYPE_WORK:
            return None

        work_id, event_id = event.source_id, event.id
        try:
            if event.event_category == EVENT_DELETED:
                self.indexer.delete_work(work_id)
            else:
                detail = self.works.detail_work(work_id, INDEX_ROBOT)
                self.indexer.index_works([detail.work])
        except Exception as exc:
            logger.warning("index work %s for event %s failed: %s",
                           work_id, event_id, exc,
                           extra={"work_id": work_id, "event_id": event_id, "handler": WORK_INDEX_HANDLER})
            db.session.rollback()
            return HandleResult(
                success=False,
                message=f"index work {work_id}: {exc}",
                handler_identifier=WORK_INDEX_HANDLER,
            )

        if not mark_synced(event_id):
            return HandleResult(
                success=False,
                message=f"event {event_id} of work {event.source_desc} vanished before sync",
                handler_identifier=WORK_INDEX_HANDLER,
            )
        return HandleResult(success=True, handler_identifier=WORK_INDEX_HANDLER)
