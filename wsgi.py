"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db upgrade
"""

from orbit import create_app

app = create_app()
