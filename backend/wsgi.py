# Overview: WSGI entry point for production servers.

# backend/wsgi.py
# Point any WSGI server at wsgi:app from the backend directory,
# or `python -m flask --app wsgi run` for local development.
from pharmapos import create_app

app = create_app()
