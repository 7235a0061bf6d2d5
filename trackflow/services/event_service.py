"""
Workflow Engine
Event Service — transactional event creation + post-commit dispatch.

Contract:
    1. ``EventEmitter.create_event`` adds the EventRecord to the caller's
       session and flushes; it never commits. An event therefore exists
       only if the change it describes commits.
    2. After commit the caller hands the created events to
       ``EventEmitter.dispatch``, which invokes every registered handler
       synchronously on the same thread.
    3. Each handler yields an independent ``HandleResult``. Failures are
       logged and returned, never raised to the mutation's caller. A crash
       between commit and dispatch drops the notification; the stored
       EventRecord (``synced`` = False) remains for offline reconciliation.

Usage:
    from trackflow.services.event_service import EventHandlerRegistry, EventEmitter

    registry = EventHandlerRegistry()
    registry.register_handler(index_handler, "work-indexer")
    emitter = EventEmitter(registry)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable

from flask import current_app, has_app_context

from trackflow.models import db
from trackflow.models.event import EVENT_CATEGORIES, EventRecord
from trackflow.services.actor import Actor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdatedProperty:
    """Field-level change carried by PROPERTY_UPDATED / EXTENSION_UPDATED events."""

    name: str
    old_value: str | None
    new_value: str | None
    desc: str | None = None
    old_value_desc: str | None = None
    new_value_desc: str | None = None

    def to_dict(self) -> dict:
        return {
            "propertyName": self.name,
            "propertyDesc": self.desc or self.name,
            "oldValue": self.old_value,
            "oldValueDesc": self.old_value_desc if self.old_value_desc is not None else self.old_value,
            "newValue": self.new_value,
            "newValueDesc": self.new_value_desc if self.new_value_desc is not None else self.new_value,
        }


@dataclass(frozen=True)
class UpdatedRelation:
    """Relation change carried by RELATION_UPDATED events."""

    name: str
    target_type: str
    old_target_id: str | None = None
    new_target_id: str | None = None
    old_target_desc: str | None = None
    new_target_desc: str | None = None

    def to_dict(self) -> dict:
        return {
            "propertyName": self.name,
            "propertyDesc": self.name,
            "targetType": self.target_type,
            "targetTypeDesc": self.target_type,
            "oldTargetId": self.old_target_id,
            "oldTargetDesc": self.old_target_desc,
            "newTargetId": self.new_target_id,
            "newTargetDesc": self.new_target_desc,
        }


@dataclass(frozen=True)
class HandleResult:
    success: bool
    message: str = ""
    handler_identifier: str = ""


# A handler returns None when it does not care about the event.
EventHandler = Callable[[EventRecord], "HandleResult | None"]


class EventHandlerRegistry:
    """Ordered collection of event handlers."""

    def __init__(self):
        self._handlers: list[tuple[str, EventHandler]] = []

    def register_handler(self, handler: EventHandler, identifier: str | None = None) -> None:
        identifier = identifier or getattr(handler, "__name__", repr(handler))
        self._handlers.append((identifier, handler))
        logger.info("Event handler registered: %s", identifier)

    def clear(self) -> None:
        self._handlers.clear()

    @property
    def handler_identifiers(self) -> list[str]:
        return [identifier for identifier, _ in self._handlers]

    def dispatch(self, record: EventRecord) -> list[HandleResult]:
        """Invoke every handler with ``record`` and collect their results."""
        results: list[HandleResult] = []
        for identifier, handler in self._handlers:
            logger.debug("pre handle event %s by %s", record.id, identifier)
            try:
                result = handler(record)
            except Exception as exc:
                logger.exception("Event handler %s raised on event %s", identifier, record.id)
                result = HandleResult(success=False, message=str(exc), handler_identifier=identifier)

            if result is None:
                continue
            results.append(result)

            if result.success:
                logger.info(
                    "post handle event %s by %s", record.id, result.handler_identifier,
                    extra={"event_id": record.id, "event_category": record.event_category,
                           "handler": result.handler_identifier},
                )
            else:
                logger.error(
                    "post handle event %s failed by %s: %s",
                    record.id, result.handler_identifier, result.message,
                    extra={"event_id": record.id, "event_category": record.event_category,
                           "handler": result.handler_identifier},
                )
        return results


# Fallback for emitters used outside an app that registered its own handlers.
default_registry = EventHandlerRegistry()


class EventEmitter:
    """Creates EventRecords inside the caller's transaction and dispatches them afterwards.

    Without an explicit registry the emitter dispatches to
    ``current_app.extensions["event_registry"]`` (set up by ``create_app``)
    and falls back to ``default_registry`` outside an app context.
    """

    def __init__(self, registry: EventHandlerRegistry | None = None):
        self._registry = registry

    @property
    def registry(self) -> EventHandlerRegistry:
        if self._registry is not None:
            return self._registry
        if has_app_context():
            return current_app.extensions.get("event_registry", default_registry)
        return default_registry

    def create_event(
        self,
        *,
        source_type: str,
        source_id: str,
        source_desc: str,
        category: str,
        actor: Actor,
        timestamp: datetime,
        updated_properties: Iterable[UpdatedProperty] | None = None,
        updated_relations: Iterable[UpdatedRelation] | None = None,
    ) -> EventRecord:
        """Persist one EventRecord in the current session (flush only).

        Raises:
            ValueError: ``category`` is not a known event category.
        """
        if category not in EVENT_CATEGORIES:
            raise ValueError(f"Unknown event category: {category}")

        record = EventRecord(
            source_type=source_type,
            source_id=str(source_id),
            source_desc=source_desc or "",
            event_category=category,
            updated_properties=[p.to_dict() for p in (updated_properties or [])],
            updated_relations=[r.to_dict() for r in (updated_relations or [])],
            creator_id=actor.id,
            creator_name=actor.name,
            timestamp=timestamp,
        )
        db.session.add(record)
        db.session.flush()
        return record

    def dispatch(self, events: Iterable[EventRecord | None]) -> list[HandleResult]:
        """Hand committed events to the registry. Never raises for handler failures."""
        results: list[HandleResult] = []
        for record in events:
            if record is None:
                continue
            results.extend(self.registry.dispatch(record))
        return results


def mark_synced(event_id: str) -> bool:
    """Flag an event as consumed by the index synchronizer. Returns False if absent."""
    affected = EventRecord.query.filter_by(id=event_id).update(
        {"synced": True}, synchronize_session=False,
    )
    db.session.commit()
    return affected == 1
