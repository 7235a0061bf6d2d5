"""
Workflow Engine
Flask Application Factory.

Usage:
    from trackflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_migrate import Migrate

from trackflow.config import config
from trackflow.middleware.logging_config import configure_logging
from trackflow.models import db

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name])

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Import all models so Alembic can detect them ─────────────────────
    from trackflow.models import event as _event_models        # noqa: F401
    from trackflow.models import project as _project_models    # noqa: F401
    from trackflow.models import work as _work_models          # noqa: F401
    from trackflow.models import workflow as _workflow_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except Exception as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Event handlers ───────────────────────────────────────────────────
    from trackflow.services.event_service import EventEmitter, EventHandlerRegistry
    from trackflow.services.index_sync_service import WORK_INDEX_HANDLER, IndexSyncService
    from trackflow.services.work_service import WorkService

    registry = EventHandlerRegistry()
    index_sync = IndexSyncService(works=WorkService(emitter=EventEmitter(registry)))
    index_sync.init_app(app)
    registry.register_handler(index_sync.work_index_event_handler, WORK_INDEX_HANDLER)
    app.extensions["event_registry"] = registry

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("sync-work-index")
    def sync_work_index_cmd():
        """Re-index every work item in the foreground."""
        count = app.extensions["index_sync"].full_sync()
        logger.info("Indexed %s works.", count)

    return app
