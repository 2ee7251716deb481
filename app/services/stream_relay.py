"""
STREAM RELAY MODULE
===================

Turns one chat request into a live sequence of envelopes:

  token* -> meta -> [DONE]       normal completion
  token* -> error                upstream failed mid-stream (no meta, no sentinel)

and wires the transcript hooks around it when the caller is logged in and
supplied a session id.

STATES (RelayState):
  IDLE -> VALIDATING -> REJECTED                      bad body, InvalidRequestError (400)
                     -> INVOKING -> ERRORED_NO_STREAM  upstream unusable, UpstreamError (500)
                                 -> STREAMING -> COMPLETED
                                              -> ERRORED_MID_STREAM
  Terminal states are final; a relay is used for exactly one request.

INVOKING waits for the first upstream chunk (often an empty opening chunk)
before the HTTP response starts, so a failure to reach the upstream at all
becomes a 500 instead of a stream. Failures after that chunk, even before
any text, end the stream with an error envelope.

The assistant reply is stored once the upstream is exhausted and before meta
and [DONE] are emitted, so a client that disconnects right after [DONE]
still has its turn saved. A client that disconnects earlier closes the
upstream stream and nothing of the partial reply is stored.

TOKEN COUNT:
  One per non-empty fragment. This is an approximation kept on purpose for
  teaching; it is not what a tokenizer would report.

WIRE FORMAT (text/event-stream):
  data: {"type":"token","data":"Hel"}
  data: {"type":"meta","data":{"tokenCount":3,"elapsedMs":412}}
  data: [DONE]
"""

import json
import logging
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Optional, Union

from pydantic import ValidationError

from app.errors import InvalidRequestError, UpstreamError
from app.models import ChatRequest, StreamEnvelope, StreamMeta
from app.services.generation_service import GenerationService
from app.services.transcript_service import TranscriptService
from app.utils.time_info import elapsed_ms, monotonic_ms

logger = logging.getLogger("ClassChat")

SENTINEL = "[DONE]"

SSE_MEDIA_TYPE = "text/event-stream; charset=utf-8"
SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # For some proxies
}

RelayItem = Union[StreamEnvelope, str]


class RelayState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    REJECTED = "rejected"
    INVOKING = "invoking"
    ERRORED_NO_STREAM = "errored_no_stream"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED_MID_STREAM = "errored_mid_stream"


def validate_chat_request(body: Any) -> ChatRequest:
    """Parse a decoded JSON body. Raises InvalidRequestError without touching the upstream."""
    if not isinstance(body, dict):
        raise InvalidRequestError("Missing required fields")
    try:
        return ChatRequest.model_validate(body)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise InvalidRequestError(f"Missing required fields ({problems})") from e


def encode_event(item: RelayItem) -> str:
    """One SSE line: 'data: ' + compact JSON envelope (or the sentinel) + newline."""
    if isinstance(item, StreamEnvelope):
        payload = json.dumps(item.model_dump(by_alias=True), ensure_ascii=False, separators=(",", ":"))
    else:
        payload = item
    return f"data: {payload}\n"


async def sse_lines(items: AsyncIterator[RelayItem]) -> AsyncIterator[str]:
    async for item in items:
        yield encode_event(item)


class StreamRelay:
    """
    Relays one upstream generation to one caller. Create a new instance per
    request; open() may only be called once.
    """

    def __init__(self, generation_service: GenerationService, transcript_service: Optional[TranscriptService] = None):
        self.generation_service = generation_service
        self.transcript_service = transcript_service
        self.state = RelayState.IDLE
        self.token_count = 0
        self.text = ""

    async def open(self, body: Any, owner_id: Optional[str] = None) -> AsyncIterator[RelayItem]:
        """
        Validate, run the pre-step, start the upstream call and return the
        envelope iterator.

        Raises:
            InvalidRequestError: body is not a chat request (nothing was contacted).
            UpstreamError: the upstream failed before its first chunk.
        """
        if self.state is not RelayState.IDLE:
            raise RuntimeError(f"StreamRelay already used (state={self.state.value})")

        self.state = RelayState.VALIDATING
        try:
            request = validate_chat_request(body)
        except InvalidRequestError:
            self.state = RelayState.REJECTED
            raise

        persist = bool(owner_id and request.session_id and self.transcript_service)
        if persist:
            await self._record_user_turn(owner_id, request)

        self.state = RelayState.INVOKING
        started = monotonic_ms()
        fragments = self.generation_service.stream(request.messages, request.generation_config())
        try:
            first: Optional[str] = await fragments.__anext__()
        except StopAsyncIteration:
            first = None
        except Exception as e:
            self.state = RelayState.ERRORED_NO_STREAM
            logger.error("Upstream generation could not start: %s", e, exc_info=True)
            raise UpstreamError(str(e) or "unknown error") from e

        self.state = RelayState.STREAMING
        return self._relay(first, fragments, started, owner_id if persist else None, request)

    async def _relay(
        self,
        first: Optional[str],
        fragments: AsyncGenerator[str, None],
        started: float,
        owner_id: Optional[str],
        request: ChatRequest,
    ) -> AsyncIterator[RelayItem]:
        parts = []
        try:
            if first:
                parts.append(first)
                self.token_count += 1
                yield StreamEnvelope(type="token", data=first)
            async for fragment in fragments:
                if not fragment:
                    continue
                parts.append(fragment)
                self.token_count += 1
                yield StreamEnvelope(type="token", data=fragment)
        except Exception as e:
            self.state = RelayState.ERRORED_MID_STREAM
            self.text = "".join(parts)
            logger.error("Upstream stream failed after %d fragment(s): %s", self.token_count, e)
            yield StreamEnvelope(type="error", data=str(e) or "stream error")
            return
        finally:
            # Also runs when the caller disconnects mid-stream; the partial text is dropped.
            await fragments.aclose()

        self.text = "".join(parts)
        meta = StreamMeta(token_count=self.token_count, elapsed_ms=elapsed_ms(started))

        # Store the reply before emitting the final lines: clients stop reading at [DONE].
        if owner_id:
            await self._record_assistant_reply(owner_id, request.session_id, self.text)

        self.state = RelayState.COMPLETED
        logger.info("Stream completed: %d fragment(s) in %d ms", meta.token_count, meta.elapsed_ms)
        yield StreamEnvelope(type="meta", data=meta)
        yield SENTINEL

    # ------------------------------------------------------------------
    # Transcript hooks: failures are logged and never reach the caller.
    # ------------------------------------------------------------------

    async def _record_user_turn(self, owner_id: str, request: ChatRequest) -> None:
        try:
            await self.transcript_service.record_user_turn(
                owner_id,
                request.session_id,
                request.messages,
                request.generation_config(),
            )
        except Exception as e:
            logger.warning("Failed to persist (create or append) user message pre-stream: %s", e, exc_info=True)

    async def _record_assistant_reply(self, owner_id: str, session_id: str, text: str) -> None:
        try:
            await self.transcript_service.record_assistant_reply(owner_id, session_id, text)
        except Exception as e:
            logger.warning("Failed to persist assistant message: %s", e, exc_info=True)
