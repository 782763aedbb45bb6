"""
WSGI / Flask CLI entry point for the Translation KPI Platform.

Usage:
    flask db upgrade                         # apply migrations
    flask kpi generate-month 2026-09         # monthly KPI run
    gunicorn wsgi:app
"""

from app import create_app

app = create_app()
