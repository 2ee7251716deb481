"""
CLASSCHAT MAIN API
==================

This module defines the FastAPI application and all HTTP endpoints. One
instance serves one classroom: students log in, pick a model, tune the
sampling parameters and watch the reply stream in token by token.

ENDPOINTS:
  GET    /                    - Returns API name and list of endpoints.
  GET    /health              - Returns status of all services (for monitoring).
  GET    /api/models          - Models the UI can offer plus default sampling parameters.
  POST   /api/chat            - Streams a reply as text/event-stream. Anonymous callers
                                get the stream only; logged-in callers who send a
                                sessionId also get the turn stored.
  GET    /api/sessions        - Paginated list of the caller's sessions (?page&pageSize&q).
  POST   /api/sessions        - Create an empty or seeded session (201).
  PATCH  /api/sessions        - Rename / update a session (204).
  DELETE /api/sessions?id=... - Delete a session (204, idempotent).
  GET    /api/sessions/{id}   - Full transcript of one session.
  POST   /api/auth/register   - Create an account (201, 409 if the email exists).
  POST   /api/auth/login      - Exchange email + password for a bearer token.

STATUS CODES:
  400 malformed body or missing field, 401 no valid token on owner-scoped
  endpoints, 404 session not found, 409 duplicate email, 500 unexpected or
  upstream failure before the stream opened, 503 services not initialized.

STARTUP:
  The lifespan function opens the document store, builds its indexes and
  creates the Groq clients once. They are shared by every request and
  dropped again at shutdown.
"""

from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
import uvicorn

from app.auth import create_access_token, get_optional_user_id, require_user_id
from app.errors import ClassChatError, InvalidRequestError, PersistenceError, UpstreamError, to_http_exception
from app.models import (
    ChatListResponse,
    ChatSession,
    CreateSessionRequest,
    CreateSessionResponse,
    GenerationConfig,
    LoginRequest,
    ModelsResponse,
    RegisterRequest,
    TokenResponse,
    UpdateSessionRequest,
)
from app.services.document_store import JsonDocumentStore
from app.services.generation_service import GenerationService
from app.services.stream_relay import SSE_HEADERS, SSE_MEDIA_TYPE, StreamRelay, sse_lines
from app.services.transcript_service import TranscriptService
from app.services.user_service import UserService
from config import (
    DATABASE_DIR,
    DEFAULT_MAX_TOKENS,
    DEFAULT_PAGE_SIZE,
    DEFAULT_SYSTEM_PROMPT,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_P,
    GROQ_MODEL,
    GROQ_MODELS,
    LOG_LEVEL,
)


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("ClassChat")


# -----------------------------------------------------------------------------
# GLOBAL SERVICE REFERENCES
# -----------------------------------------------------------------------------
# Set during startup (lifespan) and used by all route handlers.
document_store: JsonDocumentStore = None
generation_service: GenerationService = None
transcript_service: TranscriptService = None
user_service: UserService = None


def print_title():
    """Print the ClassChat banner to the console when the server starts."""
    CYAN  = "\033[96m"
    WHITE = "\033[97m"
    BOLD  = "\033[1m"
    RESET = "\033[0m"
    print(f"\n{BOLD}{CYAN}  ClassChat{RESET}  {WHITE}streaming LLM chat for the classroom{RESET}\n")


# -------------------------------------------------------------------------
# LIFESPAN (STARTUP / SHUTDOWN)
# -------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    - STARTUP: opens the document store at DATABASE_DIR, builds the secondary
      indexes (session/owner, owner, email), then creates the long-lived Groq
      clients. Missing Groq keys do not stop startup; chat requests answer 500.
    - SHUTDOWN: drops the Groq clients.
    """
    global document_store, generation_service, transcript_service, user_service

    print_title()
    logger.info("=" * 60)
    logger.info("ClassChat - Starting Up...")
    logger.info("=" * 60)

    try:
        logger.info("Opening document store at %s...", DATABASE_DIR)
        document_store = JsonDocumentStore(DATABASE_DIR)
        transcript_service = TranscriptService(document_store)
        await transcript_service.ensure_indexes()
        user_service = UserService(document_store)
        await user_service.ensure_indexes()
        logger.info("Document store ready")

        logger.info("Initializing generation service...")
        generation_service = GenerationService()
        logger.info("Generation service initialized (%s)", "ready" if generation_service.ready else "no API key")

        logger.info("=" * 60)
        logger.info("ClassChat is online and ready!")
        logger.info("Docs: http://localhost:8000/docs")
        logger.info("=" * 60)
    except Exception as e:
        logger.error(f"Fatal error during startup: {e}", exc_info=True)
        raise

    yield

    logger.info("Shutting down ClassChat...")
    if generation_service:
        generation_service.close()
    logger.info("Goodbye!")


# -------------------------------------------------------------------------
# FASTAPI APP AND CORS
# -------------------------------------------------------------------------
app = FastAPI(
    title="ClassChat API",
    description="Streaming LLM chat with tunable sampling and saved transcripts",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies and query strings are client errors: answer 400, not FastAPI's default 422."""
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


def _require_services():
    if not transcript_service or not user_service:
        raise HTTPException(status_code=503, detail="Services not initialized")


# =========================================================================
# API ENDPOINTS
# =========================================================================

@app.get("/")
async def root():
    """Return the API name and a short description of each endpoint (for discovery)."""
    return {
        "message": "ClassChat API",
        "endpoints": {
            "/api/chat": "Streamed chat reply (text/event-stream)",
            "/api/models": "Available models and default parameters",
            "/api/sessions": "List / create / update / delete saved sessions",
            "/api/sessions/{session_id}": "Full transcript of one session",
            "/api/auth/register": "Create an account",
            "/api/auth/login": "Get a bearer token",
            "/health": "System health check"
        }
    }


@app.get("/health")
async def health():
    """Return 'healthy' and whether each service is initialized."""
    return {
        "status": "healthy",
        "document_store": document_store is not None,
        "generation_service": generation_service is not None and generation_service.ready,
        "transcript_service": transcript_service is not None,
        "user_service": user_service is not None,
    }


@app.get("/api/models", response_model=ModelsResponse)
async def list_models():
    """Models offered in the UI's picker, the default config and the default system prompt."""
    return ModelsResponse(
        models=GROQ_MODELS,
        defaults=GenerationConfig(
            model=GROQ_MODEL,
            temperature=DEFAULT_TEMPERATURE,
            top_p=DEFAULT_TOP_P,
            max_tokens=DEFAULT_MAX_TOKENS,
        ),
        system_prompt=DEFAULT_SYSTEM_PROMPT,
    )


@app.post("/api/chat")
async def chat(request: Request, user_id: Optional[str] = Depends(get_optional_user_id)):
    """
    Stream a reply for the posted conversation.

    REQUEST BODY:
    {
        "messages": [{"role": "system", "content": "..."}, {"role": "user", "content": "Hi"}],
        "model": "llama-3.3-70b-versatile",
        "temperature": 0.7,
        "topP": 0.9,
        "maxTokens": 256,
        "sessionId": "optional-client-chosen-id"
    }

    RESPONSE (text/event-stream):
        data: {"type":"token","data":"Hel"}
        data: {"type":"token","data":"lo"}
        data: {"type":"meta","data":{"tokenCount":2,"elapsedMs":318}}
        data: [DONE]

    If the upstream fails mid-stream the last line is {"type":"error",...} instead.
    """
    if not generation_service:
        raise HTTPException(status_code=503, detail="Generation service not initialized")

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    relay = StreamRelay(generation_service, transcript_service)
    try:
        envelopes = await relay.open(body, user_id)
    except InvalidRequestError as e:
        logger.warning(f"Rejected chat request: {e.message}")
        raise HTTPException(status_code=400, detail=e.message)
    except UpstreamError as e:
        raise HTTPException(status_code=500, detail=f"Upstream error: {e.message}")

    return StreamingResponse(sse_lines(envelopes), media_type=SSE_MEDIA_TYPE, headers=SSE_HEADERS)


@app.get("/api/sessions", response_model=ChatListResponse)
async def list_sessions(
    page: int = 1,
    page_size: int = Query(DEFAULT_PAGE_SIZE, alias="pageSize"),
    q: str = "",
    user_id: str = Depends(require_user_id),
):
    """Lightweight metadata of the caller's sessions, newest activity first. pageSize is clamped to 5..50."""
    _require_services()
    try:
        return await transcript_service.list_sessions(user_id, page=page, page_size=page_size, query=q)
    except PersistenceError as e:
        logger.error(f"Error listing sessions: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to list sessions")


@app.post("/api/sessions", response_model=CreateSessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(body: CreateSessionRequest, user_id: str = Depends(require_user_id)):
    """Create a session with a server-generated id; title defaults to the first user message."""
    _require_services()
    try:
        session_id = await transcript_service.create_session(user_id, body)
        return CreateSessionResponse(session_id=session_id)
    except PersistenceError as e:
        logger.error(f"Error creating session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create")


@app.patch("/api/sessions", status_code=status.HTTP_204_NO_CONTENT)
async def update_session(body: UpdateSessionRequest, user_id: str = Depends(require_user_id)):
    """Overwrite any of title / messages / model / temperature / topP / maxTokens."""
    _require_services()
    try:
        await transcript_service.update_session(user_id, body)
    except PersistenceError as e:
        logger.error(f"Error updating session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to update")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.delete("/api/sessions", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(id: Optional[str] = None, user_id: str = Depends(require_user_id)):
    """Delete one of the caller's sessions. Unknown or foreign ids are a silent no-op."""
    if not id:
        raise HTTPException(status_code=400, detail="Missing id")
    _require_services()
    try:
        deleted = await transcript_service.delete_session(user_id, id)
        logger.info("Delete session %s: %s", id, "removed" if deleted else "nothing to remove")
    except PersistenceError as e:
        logger.error(f"Error deleting session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to delete")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/api/sessions/{session_id}", response_model=ChatSession)
async def get_session(session_id: str, user_id: str = Depends(require_user_id)):
    """Full stored document (transcript + config) of one of the caller's sessions."""
    _require_services()
    try:
        return await transcript_service.get_session(user_id, session_id)
    except PersistenceError as e:
        logger.error(f"Error fetching session: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch")
    except ClassChatError as e:
        raise to_http_exception(e)


@app.post("/api/auth/register", status_code=status.HTTP_201_CREATED)
async def register(body: RegisterRequest):
    """Create an account. Password must be at least 6 characters."""
    _require_services()
    try:
        await user_service.register(body.email, body.password)
    except PersistenceError as e:
        logger.error(f"Registration failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Registration failed")
    except ClassChatError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_201_CREATED)


@app.post("/api/auth/login", response_model=TokenResponse)
async def login(body: LoginRequest):
    """Check the credentials and hand back a bearer token for the Authorization header."""
    _require_services()
    try:
        user = await user_service.authenticate(body.email, body.password)
    except PersistenceError as e:
        logger.error(f"Login failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Login failed")
    except ClassChatError as e:
        raise to_http_exception(e)
    return TokenResponse(access_token=create_access_token(user), user_id=user.user_id, email=user.email)


# -------------------------------------------------------------------------
# STANDALONE RUN (python -m app.main)
# -------------------------------------------------------------------------
def run():
    """Start the uvicorn server (same as run.py); used if someone does python -m app.main"""
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )

if __name__ == "__main__":
    run()
