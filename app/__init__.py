"""
CLASSCHAT APPLICATION PACKAGE
=============================

This directory is the main Python package for the ClassChat backend.

  from app.main import app
  from app.models import ChatRequest
  from app.services.stream_relay import StreamRelay

FILE STRUCTURE:
  app/
    __init__.py   - This file; marks 'app' as a package.
    main.py       - FastAPI app and all HTTP endpoints (/api/chat, /api/sessions, /api/auth/*, /health).
    models.py     - Pydantic models for API requests, responses, stored sessions and users.
    errors.py     - Domain exceptions and their HTTP status codes.
    auth.py       - JWT login tokens and the user-id dependencies.
    services/     - Business logic: document store, Groq generation, stream relay, transcripts, users.
    utils/        - Helpers: timestamps and stream timings.
"""
