"""
WSGI / Flask CLI entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi seed-demo
    flask --app wsgi dispatch-notifications
    flask --app wsgi run-scheduled-workflows
"""

from admin_console import create_app

app = create_app()
