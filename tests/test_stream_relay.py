import json

import pytest

from app.errors import InvalidRequestError, PersistenceError, UpstreamError
from app.models import StreamEnvelope, StreamMeta
from app.services.stream_relay import SENTINEL, RelayState, StreamRelay, encode_event, validate_chat_request
from tests.conftest import make_generation


def chat_body(**overrides):
    body = {
        "messages": [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Say hello"},
        ],
        "model": "llama-3.3-70b-versatile",
        "temperature": 0.5,
        "topP": 0.9,
        "maxTokens": 64,
    }
    body.update(overrides)
    return body


async def collect(items):
    return [item async for item in items]


@pytest.mark.asyncio
async def test_normal_completion_emits_tokens_then_meta_then_sentinel():
    generation = make_generation(fragments=("Hel", "", "lo", "!"))
    relay = StreamRelay(generation)

    items = await collect(await relay.open(chat_body()))

    tokens = [i for i in items if isinstance(i, StreamEnvelope) and i.type == "token"]
    assert [t.data for t in tokens] == ["Hel", "lo", "!"]
    assert items[:3] == tokens
    meta = items[3]
    assert meta.type == "meta"
    assert meta.data.token_count == len(tokens)
    assert meta.data.elapsed_ms >= 0
    assert items[4] == SENTINEL
    assert len(items) == 5
    assert relay.state is RelayState.COMPLETED
    assert relay.text == "Hello!"


@pytest.mark.asyncio
async def test_empty_generation_still_completes():
    relay = StreamRelay(make_generation(fragments=()))

    items = await collect(await relay.open(chat_body()))

    assert items[0].type == "meta"
    assert items[0].data.token_count == 0
    assert items[1] == SENTINEL


@pytest.mark.parametrize("emitted", [0, 2])
@pytest.mark.asyncio
async def test_mid_stream_failure_emits_k_tokens_then_one_error(emitted):
    fragments = tuple(f"t{i}" for i in range(emitted))
    relay = StreamRelay(make_generation(fragments=fragments, error=RuntimeError("quota exceeded")))

    items = await collect(await relay.open(chat_body()))

    assert [i.type for i in items] == ["token"] * emitted + ["error"]
    assert items[-1].data == "quota exceeded"
    assert SENTINEL not in items
    assert relay.state is RelayState.ERRORED_MID_STREAM


@pytest.mark.asyncio
async def test_error_without_message_uses_fallback_text():
    relay = StreamRelay(make_generation(fragments=("a",), error=RuntimeError()))

    items = await collect(await relay.open(chat_body()))

    assert items[-1] == StreamEnvelope(type="error", data="stream error")


@pytest.mark.asyncio
async def test_failure_before_first_chunk_opens_no_stream():
    generation = make_generation(start_error=ConnectionError("connection refused"))
    relay = StreamRelay(generation)

    with pytest.raises(UpstreamError) as exc_info:
        await relay.open(chat_body())

    assert exc_info.value.message == "connection refused"
    assert relay.state is RelayState.ERRORED_NO_STREAM


@pytest.mark.parametrize(
    "body",
    [
        None,
        [],
        "hello",
        {"model": "m"},
        {"model": "m", "messages": []},
        {"model": "m", "messages": "not a list"},
        {"messages": [{"role": "user", "content": "hi"}]},
        {"model": "", "messages": [{"role": "user", "content": "hi"}]},
        {"model": "m", "messages": [{"role": "wizard", "content": "hi"}]},
    ],
)
@pytest.mark.asyncio
async def test_invalid_bodies_are_rejected_before_the_upstream_is_called(body):
    generation = make_generation()
    relay = StreamRelay(generation)

    with pytest.raises(InvalidRequestError):
        await relay.open(body)

    assert relay.state is RelayState.REJECTED
    assert generation.calls == []


def test_validate_accepts_camel_case_config_and_drops_zero_max_tokens():
    request = validate_chat_request(chat_body(maxTokens=0, sessionId="S1"))

    assert request.top_p == 0.9
    assert request.max_tokens is None
    assert request.session_id == "S1"


@pytest.mark.asyncio
async def test_relay_is_single_use():
    relay = StreamRelay(make_generation())
    await collect(await relay.open(chat_body()))

    with pytest.raises(RuntimeError):
        await relay.open(chat_body())


@pytest.mark.asyncio
async def test_generation_receives_messages_and_sampling_parameters():
    generation = make_generation()
    relay = StreamRelay(generation)

    await collect(await relay.open(chat_body()))

    messages, config = generation.calls[0]
    assert [m.role for m in messages] == ["system", "user"]
    assert config.model == "llama-3.3-70b-versatile"
    assert (config.temperature, config.top_p, config.max_tokens) == (0.5, 0.9, 64)


@pytest.mark.asyncio
async def test_authenticated_turn_is_persisted_around_the_stream(transcripts):
    relay = StreamRelay(make_generation(fragments=("Hi", " there")), transcripts)

    await collect(await relay.open(chat_body(sessionId="S1"), owner_id="owner-1"))

    session = await transcripts.get_session("owner-1", "S1")
    assert [(m.role, m.content) for m in session.messages] == [
        ("system", "Be brief."),
        ("user", "Say hello"),
        ("assistant", "Hi there"),
    ]


@pytest.mark.asyncio
async def test_anonymous_or_sessionless_turns_are_not_persisted(transcripts):
    await collect(await StreamRelay(make_generation(), transcripts).open(chat_body(sessionId="S1")))
    await collect(await StreamRelay(make_generation(), transcripts).open(chat_body(), owner_id="owner-1"))

    listing = await transcripts.list_sessions("owner-1")
    assert listing.total == 0


@pytest.mark.asyncio
async def test_failed_stream_keeps_user_message_but_no_assistant_reply(transcripts):
    relay = StreamRelay(make_generation(fragments=("partial",), error=RuntimeError("boom")), transcripts)

    await collect(await relay.open(chat_body(sessionId="S1"), owner_id="owner-1"))

    session = await transcripts.get_session("owner-1", "S1")
    assert [m.role for m in session.messages] == ["system", "user"]


class BrokenTranscripts:
    async def record_user_turn(self, *args, **kwargs):
        raise PersistenceError("disk full")

    async def record_assistant_reply(self, *args, **kwargs):
        raise PersistenceError("disk full")


@pytest.mark.asyncio
async def test_persistence_failures_never_interrupt_the_stream():
    relay = StreamRelay(make_generation(fragments=("ok",)), BrokenTranscripts())

    items = await collect(await relay.open(chat_body(sessionId="S1"), owner_id="owner-1"))

    assert [getattr(i, "type", i) for i in items] == ["token", "meta", SENTINEL]
    assert relay.state is RelayState.COMPLETED


def test_encode_event_wire_format():
    assert encode_event(StreamEnvelope(type="token", data="héllo\n")) == 'data: {"type":"token","data":"héllo\\n"}\n'
    assert encode_event(SENTINEL) == "data: [DONE]\n"

    meta_line = encode_event(StreamEnvelope(type="meta", data=StreamMeta(token_count=3, elapsed_ms=12)))
    assert meta_line.startswith("data: ")
    assert json.loads(meta_line[len("data: "):]) == {"type": "meta", "data": {"tokenCount": 3, "elapsedMs": 12}}


@pytest.mark.asyncio
async def test_reply_is_stored_when_the_client_stops_reading_at_the_sentinel(transcripts):
    generation = make_generation(fragments=("Hi", " there"))
    relay = StreamRelay(generation, transcripts)

    items = await relay.open(chat_body(sessionId="S1"), owner_id="owner-1")
    async for item in items:
        if item == SENTINEL:
            break
    await items.aclose()

    session = await transcripts.get_session("owner-1", "S1")
    assert [m.role for m in session.messages] == ["system", "user", "assistant"]
    assert session.messages[-1].content == "Hi there"
    assert relay.state is RelayState.COMPLETED
    assert generation.upstream_closed is True


@pytest.mark.asyncio
async def test_disconnect_mid_stream_stores_no_partial_reply_and_closes_upstream(transcripts):
    generation = make_generation(fragments=("one", "two", "three"))
    relay = StreamRelay(generation, transcripts)

    items = await relay.open(chat_body(sessionId="S1"), owner_id="owner-1")
    first = await items.__anext__()
    assert first.data == "one"
    await items.aclose()

    assert generation.upstream_closed is True
    session = await transcripts.get_session("owner-1", "S1")
    assert [m.role for m in session.messages] == ["system", "user"]
    assert relay.state is RelayState.STREAMING
