"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db upgrade
    flask sync-work-index
"""

from trackflow import create_app

app = create_app()
