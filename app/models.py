"""
DATA MODELS MODULE
==================

This file defines the Pydantic models used for API requests, responses, and
stored documents. FastAPI uses these to validate incoming JSON and to
serialize responses; the services use them when saving/loading sessions.

Documents on disk use snake_case keys; the browser speaks camelCase. Every
model therefore carries a camelCase alias and accepts either spelling.

MODELS:
  ChatMessage          - One message in a conversation (role + content).
  GenerationConfig     - model / temperature / topP / maxTokens for one request.
  ChatRequest          - Body of POST /api/chat (messages + config + optional sessionId).
  StreamMeta           - Summary sent at the end of a stream (tokenCount, elapsedMs).
  StreamEnvelope       - One line of relay output: token | meta | error.
  ChatSession          - Full stored transcript returned by GET /api/sessions/{id}.
  ChatListItem         - Lightweight session metadata for the sidebar list.
  ChatListResponse     - Paginated list returned by GET /api/sessions.
  CreateSessionRequest - Body of POST /api/sessions.
  UpdateSessionRequest - Body of PATCH /api/sessions.
  AppUser              - Stored account (email + bcrypt hash).
  RegisterRequest / LoginRequest / TokenResponse - auth bodies.
"""

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from config import DEFAULT_TEMPERATURE, DEFAULT_TOP_P


class CamelModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python and on disk."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ==============================================================================
# MESSAGES AND GENERATION CONFIG
# ==============================================================================

Role = Literal["system", "user", "assistant"]


def positive_or_none(value: Optional[int]) -> Optional[int]:
    # The UI sends 0 when the field is cleared; treat that as "no cap".
    if value is not None and value <= 0:
        return None
    return value


class ChatMessage(CamelModel):
    """
    A single message in a conversation.
    Stored in order inside a session. No timestamp; order defines chronology.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: Role
    content: str


class GenerationConfig(CamelModel):
    """Sampling parameters supplied per request. Only the model is required."""
    model: str = Field(..., min_length=1)
    temperature: float = DEFAULT_TEMPERATURE
    top_p: float = DEFAULT_TOP_P
    max_tokens: Optional[int] = None

    @field_validator("max_tokens")
    @classmethod
    def _drop_non_positive(cls, value: Optional[int]) -> Optional[int]:
        return positive_or_none(value)


class ChatRequest(GenerationConfig):
    """
    Request body for POST /api/chat.

    - messages: Required, non-empty. The whole conversation so far, including
      the new user message (and usually a leading system prompt).
    - session_id: Optional. When present and the caller is logged in, the turn
      is persisted under this client-chosen id.
    """
    messages: List[ChatMessage] = Field(..., min_length=1)
    session_id: Optional[str] = None

    def generation_config(self) -> GenerationConfig:
        return GenerationConfig(
            model=self.model,
            temperature=self.temperature,
            top_p=self.top_p,
            max_tokens=self.max_tokens,
        )


# ==============================================================================
# STREAM ENVELOPES
# ==============================================================================

class StreamMeta(CamelModel):
    """Teaching metrics emitted once at the end of a successful stream."""
    token_count: int    # One per streamed fragment, not a tokenizer count.
    elapsed_ms: int


class StreamEnvelope(CamelModel):
    """One unit of relay output. Never persisted; only the assembled text is."""
    type: Literal["token", "meta", "error"]
    data: Union[StreamMeta, str]


# ==============================================================================
# STORED SESSIONS
# ==============================================================================

class ChatSession(CamelModel):
    """A durable, owner-scoped transcript plus its generation config."""
    session_id: str
    owner_id: str
    title: str
    messages: List[ChatMessage] = Field(default_factory=list)
    model: str
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    created_at: str
    updated_at: str


class ChatListItem(CamelModel):
    session_id: str
    title: str
    created_at: str
    updated_at: str
    model: str


class ChatListResponse(CamelModel):
    items: List[ChatListItem]
    page: int
    total: int
    total_pages: int


class CreateSessionRequest(CamelModel):
    """Body of POST /api/sessions; messages optionally seed the transcript."""
    title: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    config: GenerationConfig


class CreateSessionResponse(CamelModel):
    session_id: str


class UpdateSessionRequest(CamelModel):
    """Body of PATCH /api/sessions. Fields left out are not touched; maxTokens <= 0 clears the cap."""
    session_id: str = Field(..., min_length=1)
    title: Optional[str] = None
    messages: Optional[List[ChatMessage]] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None

    @field_validator("max_tokens")
    @classmethod
    def _drop_non_positive(cls, value: Optional[int]) -> Optional[int]:
        return positive_or_none(value)


class ModelsResponse(CamelModel):
    """Models the UI may pick from plus the default sampling parameters."""
    models: List[str]
    defaults: GenerationConfig
    system_prompt: str


# ==============================================================================
# USERS AND AUTH
# ==============================================================================

class AppUser(CamelModel):
    user_id: str
    email: str
    password_hash: str
    created_at: str
    updated_at: str


class RegisterRequest(CamelModel):
    email: str
    password: str


class LoginRequest(CamelModel):
    email: str
    password: str


class TokenResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    email: str
