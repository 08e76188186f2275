"""Generation gateway: walks the provider chain, with streaming support."""
import asyncio
import logging
import re
import time
from typing import AsyncIterator, List, Tuple, Union

from models.prompt import PromptEnvelope
from models.results import GeneratedResponse, TextChunk
from services.errors import GenerationExhaustedError
from services.providers import AIProvider, ProviderCallError, ProviderChain
from config import PROVIDER_TIMEOUT, STREAM_FLUSH_CHARS

logger = logging.getLogger(__name__)

INTERRUPTED_NOTICE = " (Sorry, my answer was interrupted. Please ask again if you need more detail.)"

_STREAM_SENTENCE_END_RE = re.compile(r"[.!?][\"')\]]*\s+")


def split_ready_text(buffer: str, flush_chars: int = STREAM_FLUSH_CHARS) -> Tuple[List[str], str]:
    """
    Split a stream buffer into complete sentences and the unfinished rest.

    Without a sentence end, a buffer longer than `flush_chars` is flushed up
    to its last space so words are never split.
    """
    pieces = []
    start = 0
    for match in _STREAM_SENTENCE_END_RE.finditer(buffer):
        pieces.append(buffer[start:match.end()])
        start = match.end()
    rest = buffer[start:]

    if len(rest) > flush_chars:
        space = rest.rfind(" ")
        if space > 0:
            pieces.append(rest[:space + 1])
            rest = rest[space + 1:]
    return pieces, rest


class GenerationGateway:
    """Sends prompt envelopes to the first provider in the chain that answers."""

    def __init__(
        self,
        chain: ProviderChain,
        attempt_timeout: float = PROVIDER_TIMEOUT,
        flush_chars: int = STREAM_FLUSH_CHARS,
    ):
        """
        Initialize the gateway.

        Args:
            chain: Ordered providers; the last is usually the canned fallback
            attempt_timeout: Seconds allowed per provider attempt (per delta when streaming)
            flush_chars: Stream buffer size that forces a word-boundary flush
        """
        self.chain = chain
        self.attempt_timeout = attempt_timeout
        self.flush_chars = flush_chars
        logger.info(f"Initialized GenerationGateway with providers: {[p.name for p in chain]}")

    async def generate(
        self,
        envelope: PromptEnvelope,
        streaming: bool = False,
    ) -> Union[GeneratedResponse, AsyncIterator[TextChunk]]:
        """
        Generate an answer for the envelope.

        Args:
            envelope: Screened prompt envelope
            streaming: Return an async iterator of TextChunk instead of a full response

        Returns:
            GeneratedResponse, or an async iterator of TextChunk when streaming

        Raises:
            GenerationExhaustedError: Every provider failed, or the request was
                rejected as invalid (non-streaming; streaming raises on iteration)
        """
        if streaming:
            return self._stream(envelope)
        return await self._complete(envelope)

    def _providers(self, envelope: PromptEnvelope) -> List[AIProvider]:
        providers = self.chain.generation_providers(envelope.model_hint)
        if not providers:
            raise GenerationExhaustedError(f"No generation provider serves model hint '{envelope.model_hint}'")
        return providers

    def _record_failure(self, provider: AIProvider, error: Exception, attempts: List[str]) -> bool:
        """Log a failed attempt; returns True when the failure is fatal for the request."""
        if isinstance(error, asyncio.TimeoutError):
            attempts.append(f"{provider.name}: TIMEOUT_ERROR")
            logger.warning(f"Provider {provider.name} timed out after {self.attempt_timeout}s, trying next")
            return False

        if isinstance(error, ProviderCallError):
            attempts.append(f"{provider.name}: {error.error.code}")
            if error.error.fatal:
                logger.error(
                    f"Provider {provider.name} rejected the request: {error}",
                    extra={"error_code": error.error.code, "error_details": error.error.details},
                )
                return True
            logger.warning(
                f"Provider {provider.name} failed: {error}, trying next",
                extra={"error_code": error.error.code, "provider": provider.name},
            )
            return False

        attempts.append(f"{provider.name}: UNKNOWN_ERROR")
        logger.error(f"Unexpected error from provider {provider.name}: {error}", exc_info=True)
        return False

    async def _complete(self, envelope: PromptEnvelope) -> GeneratedResponse:
        providers = self._providers(envelope)
        attempts: List[str] = []

        for provider in providers:
            start_time = time.time()
            try:
                response = await asyncio.wait_for(provider.generate(envelope), timeout=self.attempt_timeout)
            except Exception as e:
                if self._record_failure(provider, e, attempts):
                    raise GenerationExhaustedError(f"Request rejected by {provider.name}", attempts)
                continue

            if not response.latency_ms:
                response.latency_ms = int((time.time() - start_time) * 1000)
            logger.info(
                f"Generated response: provider={provider.name}, model={response.model_used}, "
                f"input_tokens={response.tokens_input}, output_tokens={response.tokens_output}, "
                f"latency={response.latency_ms}ms, fallback={response.is_fallback}"
            )
            return response

        raise GenerationExhaustedError(f"All {len(providers)} generation providers failed", attempts)

    async def _stream(self, envelope: PromptEnvelope) -> AsyncIterator[TextChunk]:
        providers = self._providers(envelope)
        attempts: List[str] = []
        index = 0

        for provider in providers:
            deltas = provider.stream(envelope)
            buffer = ""
            emitted = False
            received = False
            try:
                while True:
                    try:
                        delta = await asyncio.wait_for(deltas.__anext__(), timeout=self.attempt_timeout)
                    except StopAsyncIteration:
                        break
                    received = received or bool(delta.strip())
                    buffer += delta
                    pieces, buffer = split_ready_text(buffer, self.flush_chars)
                    for piece in pieces:
                        yield TextChunk(text=piece, index=index, provider=provider.name)
                        index += 1
                        emitted = True
            except Exception as e:
                fatal = self._record_failure(provider, e, attempts)
                if emitted:
                    # Text already reached the caller; finish instead of switching providers
                    yield TextChunk(text=buffer + INTERRUPTED_NOTICE, index=index, is_final=True, provider=provider.name)
                    return
                if fatal:
                    raise GenerationExhaustedError(f"Request rejected by {provider.name}", attempts)
                continue
            finally:
                await deltas.aclose()

            if not received:
                attempts.append(f"{provider.name}: EMPTY_RESPONSE")
                logger.warning(f"Provider {provider.name} streamed no text, trying next")
                continue

            yield TextChunk(text=buffer, index=index, is_final=True, provider=provider.name)
            logger.info(f"Streamed response: provider={provider.name}, chunks={index + 1}")
            return

        raise GenerationExhaustedError(f"All {len(providers)} generation providers failed", attempts)
