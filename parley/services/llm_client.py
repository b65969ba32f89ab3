"""
LLM Client

Thin wrapper around the OpenAI async client used by the chat path:
- ``stream_chat``: role-tagged messages in, incremental text deltas out
- ``embed``: text in, embedding vector out (retrieval queries and indexing)

Both fail fast while the OpenAI circuit breaker is open.
"""

from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Protocol

from openai import AsyncOpenAI

from parley.core.config import settings
from parley.core.logging import get_logger
from parley.core.resilience import breaker_tracking, ensure_breaker_closed, openai_breaker, retry_openai_operation
from parley.core.voice_errors import LLM_002, RAG_001, VoiceError

logger = get_logger(__name__)

ChatMessage = Dict[str, str]


class TokenStreamer(Protocol):
    def stream_chat(self, messages: List[ChatMessage]) -> AsyncIterator[str]:
        ...


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


@dataclass
class LLMConfig:
    model: str = "gpt-4o-mini"
    temperature: float = 1.0
    embedding_model: str = "text-embedding-3-small"
    timeout_sec: float = 30.0


class LLMClient:
    def __init__(self, config: Optional[LLMConfig] = None, client: Optional[AsyncOpenAI] = None):
        self.config = config or LLMConfig(
            model=settings.OPENAI_MODEL,
            temperature=settings.OPENAI_TEMPERATURE,
            embedding_model=settings.EMBEDDING_MODEL,
            timeout_sec=settings.OPENAI_TIMEOUT_SEC,
        )
        if client is None and settings.OPENAI_API_KEY:
            client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, timeout=self.config.timeout_sec)
        self.openai_client = client

        if self.openai_client is None:
            logger.warning("OpenAI API key not configured - chat and embeddings disabled")

    @property
    def enabled(self) -> bool:
        return self.openai_client is not None

    def _require_client(self, error_code) -> AsyncOpenAI:
        if self.openai_client is None:
            raise VoiceError(error_code, message="OpenAI API key not configured", provider="openai")
        ensure_breaker_closed(openai_breaker, error_code, "openai")
        return self.openai_client

    async def stream_chat(self, messages: List[ChatMessage]) -> AsyncIterator[str]:
        """
        Stream a chat completion, yielding non-empty text deltas in order.

        Raises:
            VoiceError: LLM_002 when the client is not configured or the breaker is open
            openai.OpenAIError: on API failures (wrapped by the caller)
        """
        client = self._require_client(LLM_002)

        logger.info("Streaming cloud model %s messages=%d", self.config.model, len(messages))
        async with breaker_tracking(openai_breaker):
            stream = await client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                temperature=self.config.temperature,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                text_piece = chunk.choices[0].delta.content or ""
                if text_piece:
                    yield text_piece

    @retry_openai_operation()
    async def embed(self, text: str) -> List[float]:
        """Embed ``text`` with the configured embedding model."""
        client = self._require_client(RAG_001)
        async with breaker_tracking(openai_breaker):
            response = await client.embeddings.create(model=self.config.embedding_model, input=text)
        return list(response.data[0].embedding)
