"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask db migrate -m "description"
    flask db upgrade
    flask seed-workflow
"""

from orderflow import create_app

app = create_app()
