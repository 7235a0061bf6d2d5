"""Project row — the owning namespace of workflows and works.

Project CRUD and membership live outside this engine; only the fields the
engine reads (identifier prefix and the work identifier counter) are
modelled here.
"""

from datetime import datetime, timezone

from trackflow.models import db, new_id


class Project(db.Model):
    """Project namespace with a monotonically increasing work counter."""

    __tablename__ = "projects"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    identifier = db.Column(
        db.String(20), nullable=False, unique=True,
        comment="Human prefix of work identifiers, e.g. DEMO → DEMO-12",
    )
    next_work_id = db.Column(
        db.Integer, nullable=False, default=1,
        comment="Next sequence number handed out to a work item",
    )
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "identifier": self.identifier,
            "next_work_id": self.next_work_id,
        }

    def __repr__(self):
        return f"<Project {self.identifier}>"
