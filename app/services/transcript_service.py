"""
TRANSCRIPT SERVICE MODULE
=========================

Keeps the stored chat session consistent with what was actually streamed.
Best effort and at-least-once: nothing here is transactional with the relay,
and the relay only logs our failures.

RELAY HOOKS:
  record_user_turn       - before the upstream call. Decides explicitly between
                           CreateTranscript (first turn: store every message so far)
                           and AppendUserMessage (later turns: push only the
                           newest user message, unless it is already stored last).
  record_assistant_reply - after the sentinel: push the assembled assistant text.

SESSION OPERATIONS (owner-scoped, used by /api/sessions):
  list_sessions, get_session, create_session, update_session, delete_session

Every read and write filters on (session_id, owner_id); a session owned by
someone else behaves exactly like one that does not exist.
"""

import logging
import math
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from app.errors import NotFoundError
from app.models import (
    ChatListItem,
    ChatListResponse,
    ChatMessage,
    ChatSession,
    CreateSessionRequest,
    GenerationConfig,
    UpdateSessionRequest,
)
from app.services.document_store import DESCENDING, JsonDocumentStore
from app.utils.time_info import utc_now_iso
from config import (
    CHATS_COLLECTION,
    DEFAULT_PAGE_SIZE,
    DEFAULT_TITLE,
    MAX_PAGE_SIZE,
    MIN_PAGE_SIZE,
    TITLE_MAX_LENGTH,
)

logger = logging.getLogger("ClassChat")

_LIST_FIELDS = ("session_id", "title", "created_at", "updated_at", "model")


# ==============================================================================
# PRE-STEP DECISION
# ==============================================================================

@dataclass(frozen=True)
class CreateTranscript:
    """No stored session yet: insert it with the full message sequence."""
    messages: List[ChatMessage]
    title: str


@dataclass(frozen=True)
class AppendUserMessage:
    """Stored session exists. message is None when the newest user message is already stored last."""
    message: Optional[ChatMessage]


TranscriptPlan = Union[CreateTranscript, AppendUserMessage]


def latest_user_message(messages: Sequence[ChatMessage]) -> Optional[ChatMessage]:
    for message in reversed(messages):
        if message.role == "user":
            return message
    return None


def derive_title(messages: Sequence[ChatMessage], title: Optional[str] = None) -> str:
    """Explicit title, else the first non-blank user message cut to 60 characters, else 'New Chat'."""
    if title:
        return title
    for message in messages:
        if message.role == "user" and message.content.strip():
            return message.content[:TITLE_MAX_LENGTH]
    return DEFAULT_TITLE


def plan_user_turn(
    stored: Optional[Mapping[str, Any]],
    messages: Sequence[ChatMessage],
    title: Optional[str] = None,
) -> TranscriptPlan:
    """Pick Create vs Append for the pre-step. stored is the existing document (or None)."""
    if stored is None:
        return CreateTranscript(messages=list(messages), title=derive_title(messages, title))

    latest = latest_user_message(messages)
    stored_messages = stored.get("messages") or []
    if latest is None or (stored_messages and stored_messages[-1] == latest.model_dump()):
        return AppendUserMessage(message=None)
    return AppendUserMessage(message=latest)


def _config_fields(config: GenerationConfig) -> Dict[str, Any]:
    return {
        "model": config.model,
        "temperature": config.temperature,
        "top_p": config.top_p,
        "max_tokens": config.max_tokens,
    }


# ==============================================================================
# TRANSCRIPT SERVICE CLASS
# ==============================================================================

class TranscriptService:
    """Owner-scoped access to the chats collection."""

    def __init__(self, store: JsonDocumentStore):
        self.chats = store.collection(CHATS_COLLECTION)

    async def ensure_indexes(self) -> None:
        await self.chats.create_index(["session_id", "owner_id"], unique=True)
        await self.chats.create_index(["owner_id"])

    @staticmethod
    def _key(owner_id: str, session_id: str) -> Dict[str, str]:
        return {"session_id": session_id, "owner_id": owner_id}

    # ------------------------------------------------------------------
    # Relay hooks
    # ------------------------------------------------------------------

    async def record_user_turn(
        self,
        owner_id: str,
        session_id: str,
        messages: Sequence[ChatMessage],
        config: GenerationConfig,
        title: Optional[str] = None,
    ) -> TranscriptPlan:
        key = self._key(owner_id, session_id)
        stored = await self.chats.find_one(key, projection={"messages": 1})
        plan = plan_user_turn(stored, messages, title)
        now = utc_now_iso()

        if isinstance(plan, CreateTranscript):
            await self.chats.insert_one({
                **key,
                "title": plan.title,
                "messages": [m.model_dump() for m in plan.messages],
                **_config_fields(config),
                "created_at": now,
                "updated_at": now,
            })
            logger.info("Created session %s (%d messages)", session_id, len(plan.messages))
        else:
            push = {"messages": plan.message.model_dump()} if plan.message else None
            await self.chats.update_one(
                key,
                set_fields={"updated_at": now, **_config_fields(config)},
                push=push,
            )
            if plan.message is None:
                logger.info("Session %s already ends with this user message; refreshed only", session_id)
        return plan

    async def record_assistant_reply(self, owner_id: str, session_id: str, text: str) -> bool:
        reply = ChatMessage(role="assistant", content=text)
        matched = await self.chats.update_one(
            self._key(owner_id, session_id),
            set_fields={"updated_at": utc_now_iso()},
            push={"messages": reply.model_dump()},
        )
        if not matched:
            logger.warning("Session %s not found; assistant reply not stored", session_id)
        return matched

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    async def list_sessions(
        self,
        owner_id: str,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        query: str = "",
    ) -> ChatListResponse:
        page = max(1, page)
        page_size = min(MAX_PAGE_SIZE, max(MIN_PAGE_SIZE, page_size))
        query = (query or "").strip()

        criteria: Dict[str, Any] = {"owner_id": owner_id}
        if query:
            # Literal, case-insensitive substring match on the title.
            criteria["title"] = re.compile(re.escape(query), re.IGNORECASE)

        total = await self.chats.count_documents(criteria)
        docs = await self.chats.find(
            criteria,
            projection={"messages": 0},
            sort=[("updated_at", DESCENDING)],
            skip=(page - 1) * page_size,
            limit=page_size,
        )
        items = [
            ChatListItem.model_validate(doc)
            for doc in docs
            if all(doc.get(field) for field in _LIST_FIELDS)
        ]
        return ChatListResponse(
            items=items,
            page=page,
            total=total,
            total_pages=math.ceil(total / page_size) or 1,
        )

    async def get_session(self, owner_id: str, session_id: str) -> ChatSession:
        doc = await self.chats.find_one(self._key(owner_id, session_id))
        if doc is None:
            raise NotFoundError("Not found")
        return ChatSession.model_validate(doc)

    async def create_session(self, owner_id: str, request: CreateSessionRequest) -> str:
        session_id = str(uuid.uuid4())
        now = utc_now_iso()
        await self.chats.insert_one({
            **self._key(owner_id, session_id),
            "title": derive_title(request.messages, request.title),
            "messages": [m.model_dump() for m in request.messages],
            **_config_fields(request.config),
            "created_at": now,
            "updated_at": now,
        })
        logger.info("Created session %s from the sessions API", session_id)
        return session_id

    async def update_session(self, owner_id: str, request: UpdateSessionRequest) -> bool:
        update: Dict[str, Any] = {"updated_at": utc_now_iso()}
        if request.title:
            update["title"] = request.title
        if request.messages is not None:
            update["messages"] = [m.model_dump() for m in request.messages]
        if request.model:
            update["model"] = request.model
        if request.temperature is not None:
            update["temperature"] = request.temperature
        if request.top_p is not None:
            update["top_p"] = request.top_p
        if "max_tokens" in request.model_fields_set:
            update["max_tokens"] = request.max_tokens
        return await self.chats.update_one(self._key(owner_id, request.session_id), set_fields=update)

    async def delete_session(self, owner_id: str, session_id: str) -> bool:
        """Idempotent: deleting a missing or foreign session just returns False."""
        return await self.chats.delete_one(self._key(owner_id, session_id))
