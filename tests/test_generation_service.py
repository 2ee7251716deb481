import pytest

from app.errors import UpstreamError
from app.models import ChatMessage, GenerationConfig
from app.services import generation_service
from app.services.generation_service import GenerationService, _mask_api_key, build_prompt


class FakeChunk:
    def __init__(self, content):
        self.content = content


class FakeChatGroq:
    """Records how it was built and which call parameters it received."""

    def __init__(self, model, api_key, **kwargs):
        self.model = model
        self.api_key = api_key
        self.kwargs = kwargs
        self.calls = []

    async def astream(self, prompt, **params):
        self.calls.append((prompt, params))
        yield FakeChunk("")
        yield FakeChunk("Hi")
        yield FakeChunk([{"type": "text"}])
        yield FakeChunk(" there")


@pytest.fixture
def fake_groq(monkeypatch):
    monkeypatch.setattr(generation_service, "ChatGroq", FakeChatGroq)
    monkeypatch.setattr(GenerationService, "_shared_key_index", 0)


MESSAGES = [
    ChatMessage(role="system", content="You are a helpful teaching assistant."),
    ChatMessage(role="user", content="What is 2+2?"),
    ChatMessage(role="assistant", content="4"),
]


def test_build_prompt_uses_one_role_line_per_message():
    assert build_prompt(MESSAGES) == (
        "SYSTEM: You are a helpful teaching assistant.\n"
        "USER: What is 2+2?\n"
        "ASSISTANT: 4"
    )


def test_mask_api_key_hides_the_middle():
    assert _mask_api_key("gsk_abcdefghijklmnop") == "gsk_...mnop"
    assert _mask_api_key("short") == "***"


@pytest.mark.asyncio
async def test_stream_passes_sampling_parameters_and_yields_text(fake_groq):
    service = GenerationService(api_keys=["key-one"], default_model="llama-3.3-70b-versatile")
    config = GenerationConfig(model="llama-3.1-8b-instant", temperature=0.3, top_p=0.95, max_tokens=100)

    fragments = [f async for f in service.stream(MESSAGES, config)]

    assert fragments == ["", "Hi", "", " there"]
    client = service._clients[0]
    assert client.kwargs["max_retries"] == 0
    prompt, params = client.calls[0]
    assert prompt == build_prompt(MESSAGES)
    assert params == {"model": "llama-3.1-8b-instant", "temperature": 0.3, "top_p": 0.95, "max_tokens": 100}


@pytest.mark.asyncio
async def test_max_tokens_is_omitted_when_unset(fake_groq):
    service = GenerationService(api_keys=["key-one"])
    config = GenerationConfig(model="m", max_tokens=None)

    [f async for f in service.stream(MESSAGES, config)]

    _, params = service._clients[0].calls[0]
    assert "max_tokens" not in params


@pytest.mark.asyncio
async def test_keys_are_used_round_robin_across_instances(fake_groq):
    first = GenerationService(api_keys=["k1", "k2", "k3"])
    second = GenerationService(api_keys=["k1", "k2", "k3"])
    config = GenerationConfig(model="m")

    for service in (first, second, first, second):
        [f async for f in service.stream(MESSAGES, config)]

    assert [len(c.calls) for c in first._clients] == [1, 0, 1]
    assert [len(c.calls) for c in second._clients] == [0, 1, 0]


@pytest.mark.asyncio
async def test_missing_keys_fail_on_first_pull(fake_groq):
    service = GenerationService(api_keys=[])
    assert service.ready is False

    fragments = service.stream(MESSAGES, GenerationConfig(model="m"))
    with pytest.raises(UpstreamError, match="GROQ_API_KEY"):
        await fragments.__anext__()


def test_close_drops_clients(fake_groq):
    service = GenerationService(api_keys=["k1"])
    assert service.ready is True
    service.close()
    assert service.ready is False
