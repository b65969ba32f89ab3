"""
Unit tests for the OpenAI client wrapper.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from parley.core.voice_errors import VoiceError
from parley.services.llm_client import LLMClient, LLMConfig


def completion_chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class FakeStream:
    def __init__(self, chunks):
        self.chunks = chunks

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk


@pytest.fixture
def openai_client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=FakeStream(
            [
                completion_chunk("Hel"),
                SimpleNamespace(choices=[]),
                completion_chunk(None),
                completion_chunk("lo."),
            ]
        )
    )
    client.embeddings.create = AsyncMock(return_value=SimpleNamespace(data=[SimpleNamespace(embedding=[0.1, 0.2])]))
    return client


class TestStreamChat:
    """Test streamed generation."""

    @pytest.mark.asyncio
    async def test_yields_non_empty_deltas(self, openai_client):
        llm = LLMClient(config=LLMConfig(model="gpt-test", temperature=0.5), client=openai_client)
        messages = [{"role": "user", "content": "Hi"}]

        deltas = [delta async for delta in llm.stream_chat(messages)]

        assert deltas == ["Hel", "lo."]
        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["temperature"] == 0.5
        assert kwargs["stream"] is True
        assert kwargs["messages"] == messages

    @pytest.mark.asyncio
    async def test_unconfigured_client(self):
        llm = LLMClient(config=LLMConfig(), client=None)
        assert llm.enabled is False

        with pytest.raises(VoiceError) as exc_info:
            async for _ in llm.stream_chat([{"role": "user", "content": "Hi"}]):
                pass
        assert exc_info.value.code == "LLM_002"


class TestEmbed:
    """Test embeddings."""

    @pytest.mark.asyncio
    async def test_returns_vector(self, openai_client):
        llm = LLMClient(config=LLMConfig(embedding_model="embed-test"), client=openai_client)

        assert await llm.embed("privacy") == [0.1, 0.2]
        kwargs = openai_client.embeddings.create.call_args.kwargs
        assert kwargs == {"model": "embed-test", "input": "privacy"}

    @pytest.mark.asyncio
    async def test_unconfigured_client(self):
        with pytest.raises(VoiceError) as exc_info:
            await LLMClient(config=LLMConfig(), client=None).embed("x")
        assert exc_info.value.code == "RAG_001"
