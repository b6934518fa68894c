from unittest.mock import AsyncMock

import pytest

from tests.fakes import FakeStore, ManualScheduler


@pytest.fixture
def store():
    """In-memory conversation store."""
    return FakeStore()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def llm():
    """LLM collaborator with canned answers."""
    mock = AsyncMock()
    mock.chat_completion.return_value = "¡Hola! ¿En qué te ayudo?"
    mock.summarize.return_value = "Resumen de la sesión"
    mock.transcribe_audio.return_value = "texto transcrito"
    return mock
