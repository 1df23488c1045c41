"""
Flask-Migrate / Alembic entry point.

Usage:
    flask db init       # first time only (creates migrations/)
    flask db migrate -m "description"
    flask db upgrade
    flask seed-directory
"""

from approval_engine import create_app

app = create_app()
