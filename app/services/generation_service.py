"""
GENERATION SERVICE MODULE
=========================

The upstream text-generation collaborator. Wraps Groq chat models (through
langchain-groq) and exposes one operation: stream(messages, config), an async
iterator of text fragments.

PROMPT:
  The conversation is flattened into a single prompt, one "ROLE: content" line
  per message (role upper-cased), joined by newlines. No structured multi-turn
  API is used; this keeps the classroom demo easy to inspect.

CLIENTS AND ROUND-ROBIN API KEYS:
  One ChatGroq client per configured key is created once at startup and reused
  for every request. Requests take keys in turn (key 1, key 2, ..., back to 1),
  using a class-level counter shared by every instance. A failed request is NOT
  retried on the next key and the clients are built with max_retries=0: each
  relay makes exactly one upstream attempt.

ERRORS:
  No keys configured -> UpstreamError as soon as the stream is pulled.
  Anything the SDK raises while connecting or streaming propagates unchanged;
  the relay decides whether that is a 500 or an in-band error envelope.
"""

import logging
from typing import AsyncIterator, List, Optional, Sequence

from langchain_groq import ChatGroq

from app.errors import UpstreamError
from app.models import ChatMessage, GenerationConfig
from config import GROQ_API_KEYS, GROQ_MODEL

logger = logging.getLogger("ClassChat")


def build_prompt(messages: Sequence[ChatMessage]) -> str:
    """Map the chat history onto one prompt: 'ROLE: content' per message, newline separated."""
    return "\n".join(f"{m.role.upper()}: {m.content}" for m in messages)


def _mask_api_key(key: str) -> str:
    """Show only the first and last four characters of a key in logs."""
    if len(key) <= 12:
        return "***"
    return f"{key[:4]}...{key[-4:]}"


class GenerationService:
    """
    Streams text fragments from Groq. Created once in the app lifespan and
    shared by all requests; nothing on it changes per request except the
    round-robin counter.
    """

    _shared_key_index = 0

    def __init__(self, api_keys: Optional[List[str]] = None, default_model: str = GROQ_MODEL):
        keys = GROQ_API_KEYS if api_keys is None else api_keys
        self._keys = list(keys)
        self._clients: List[ChatGroq] = [
            ChatGroq(
                model=default_model,
                api_key=key,
                max_retries=0,
                streaming=True,
            )
            for key in self._keys
        ]
        if self._clients:
            logger.info("Groq clients ready (%d API key(s))", len(self._clients))
        else:
            logger.warning("GROQ_API_KEY not set. Streaming requests will fail with 500.")

    @property
    def ready(self) -> bool:
        return bool(self._clients)

    def _next_client(self) -> ChatGroq:
        if not self._clients:
            raise UpstreamError("GROQ_API_KEY is not configured")
        index = GenerationService._shared_key_index % len(self._clients)
        GenerationService._shared_key_index += 1
        logger.info("Using Groq API key #%d (%s)", index + 1, _mask_api_key(self._keys[index]))
        return self._clients[index]

    async def stream(self, messages: Sequence[ChatMessage], config: GenerationConfig) -> AsyncIterator[str]:
        """
        Yield the text of each streamed chunk as it arrives. Chunks without text
        (Groq opens with a role-only chunk) are yielded as "" so the caller can
        tell "connected" apart from "produced text".

        Sampling parameters are passed per call so the long-lived client can
        serve every model and setting the UI offers.
        """
        client = self._next_client()
        prompt = build_prompt(messages)
        params = {
            "model": config.model,
            "temperature": config.temperature,
            "top_p": config.top_p,
        }
        if config.max_tokens is not None:
            params["max_tokens"] = config.max_tokens

        async for chunk in client.astream(prompt, **params):
            yield chunk.content if isinstance(chunk.content, str) else ""

    def close(self) -> None:
        """Drop the clients at shutdown; the service must not be used afterwards."""
        self._clients = []
        self._keys = []
