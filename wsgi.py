"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db migrate -m "description"
    flask --app wsgi run-job auto_escalate_complaints
"""

from complaint_portal import create_app

app = create_app()
