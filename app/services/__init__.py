"""
SERVICES PACKAGE
=================

Business logic lives here. The API layer (app.main) calls these services;
they don't handle HTTP, only chat flow, LLM calls, and data.

MODULES:
    document_store      - JSON-file collections with find / update / push / indexes
    generation_service  - Groq streaming through langchain-groq (round-robin keys)
    stream_relay        - token/meta/error envelopes and the relay state machine
    transcript_service  - create-or-append reconciliation and session CRUD
    user_service        - registration and bcrypt password checks
"""
