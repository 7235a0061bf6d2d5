"""
Workflow Engine
Event domain model.

Models:
    - EventRecord: immutable, append-only record of a change to a source
      entity (currently only WORK), written in the same transaction as the
      change it describes.
"""

from datetime import UTC, datetime

from trackflow.models import db, iso, new_id

# ── Constants ────────────────────────────────────────────────────────────────

EVENT_CREATED = "CREATED"
EVENT_DELETED = "DELETED"
EVENT_PROPERTY_UPDATED = "PROPERTY_UPDATED"
EVENT_RELATION_UPDATED = "RELATION_UPDATED"
EVENT_EXTENSION_UPDATED = "EXTENSION_UPDATED"

EVENT_CATEGORIES = {
    EVENT_CREATED,
    EVENT_DELETED,
    EVENT_PROPERTY_UPDATED,
    EVENT_RELATION_UPDATED,
    EVENT_EXTENSION_UPDATED,
}

SOURCE_TYPE_WORK = "WORK"


class EventRecord(db.Model):
    """
    One row per change.

    ``updated_properties`` carries ``[{propertyName, oldValue, newValue, ...}]``
    for field-level changes; ``updated_relations`` the relation counterpart.
    """

    __tablename__ = "events"
    __table_args__ = (
        db.Index("idx_event_source", "source_type", "source_id"),
        db.Index("idx_event_ts", "timestamp"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    source_type = db.Column(db.String(30), nullable=False, comment="WORK | …")
    source_id = db.Column(db.String(36), nullable=False)
    source_desc = db.Column(db.String(200), nullable=False, default="")

    event_category = db.Column(
        db.String(30), nullable=False,
        comment="CREATED | DELETED | PROPERTY_UPDATED | RELATION_UPDATED | EXTENSION_UPDATED",
    )
    updated_properties = db.Column(db.JSON, nullable=False, default=list)
    updated_relations = db.Column(db.JSON, nullable=False, default=list)

    creator_id = db.Column(db.String(36), nullable=True)
    creator_name = db.Column(db.String(150), nullable=False, default="")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )
    synced = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Set once the search-index consumer has handled the event",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "source_desc": self.source_desc,
            "event_category": self.event_category,
            "updated_properties": list(self.updated_properties or []),
            "updated_relations": list(self.updated_relations or []),
            "creator_id": self.creator_id,
            "creator_name": self.creator_name,
            "timestamp": iso(self.timestamp),
            "synced": self.synced,
        }

    def __repr__(self):
        return f"<EventRecord {self.id}: {self.event_category} on {self.source_type}/{self.source_id}>"
