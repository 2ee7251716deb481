"""
Shared pytest configuration.

Puts the project root on sys.path so that `import app` and `import config`
work in every test, and provides the scripted upstream used instead of Groq.
"""

import sys
from pathlib import Path
from typing import List, Optional, Sequence

import pytest


# Ensure project root is importable for test modules.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.models import ChatMessage, GenerationConfig  # noqa: E402
from app.services.document_store import JsonDocumentStore  # noqa: E402
from app.services.transcript_service import TranscriptService  # noqa: E402


class FakeGenerationService:
    """
    In-process stand-in for the Groq service.

    Like the real upstream it opens with an empty chunk, then yields the
    scripted fragments. start_error is raised before anything is produced
    (connection failure); error is raised after all fragments.
    """

    fragments: Sequence[str] = ("Hello", ", ", "class!")
    error: Optional[Exception] = None
    start_error: Optional[Exception] = None

    def __init__(self, *args, **kwargs):
        self.calls: List[tuple] = []
        self.closed = False
        self.upstream_closed = False

    @property
    def ready(self) -> bool:
        return True

    async def stream(self, messages: Sequence[ChatMessage], config: GenerationConfig):
        self.calls.append((list(messages), config))
        if self.start_error is not None:
            raise self.start_error
        try:
            yield ""
            for fragment in self.fragments:
                yield fragment
            if self.error is not None:
                raise self.error
        finally:
            self.upstream_closed = True

    def close(self) -> None:
        self.closed = True


def make_generation(fragments=("Hello", ", ", "class!"), error=None, start_error=None) -> FakeGenerationService:
    service = FakeGenerationService()
    service.fragments = fragments
    service.error = error
    service.start_error = start_error
    return service


@pytest.fixture
def store(tmp_path) -> JsonDocumentStore:
    return JsonDocumentStore(tmp_path / "database")


@pytest.fixture
async def transcripts(store) -> TranscriptService:
    service = TranscriptService(store)
    await service.ensure_indexes()
    return service
