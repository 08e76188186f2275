"""Unit tests for GenerationGateway."""
import sys
import asyncio
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from models.prompt import PromptEnvelope
from models.results import GeneratedResponse
from services.errors import GenerationExhaustedError
from services.generation_gateway import INTERRUPTED_NOTICE, GenerationGateway, split_ready_text
from services.providers import (
    AIProvider,
    CannedResponseProvider,
    ProviderCallError,
    ProviderChain,
    error_for_status,
)


class ScriptedProvider(AIProvider):
    """Provider whose behaviour is scripted per test."""

    supports_generation = True

    def __init__(self, name, text="", error=None, delay=0.0, deltas=None, fail_after=None, premium_only=False):
        super().__init__(chat_models={"standard": f"{name}-model"}, premium_only=premium_only)
        self.name = name
        self.text = text
        self.error = error
        self.delay = delay
        self.deltas = deltas
        self.fail_after = fail_after
        self.calls = 0

    async def generate(self, envelope):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return GeneratedResponse(text=self.text, model_used=f"{self.name}-model", provider=self.name)

    async def stream(self, envelope):
        self.calls += 1
        if self.error and self.fail_after is None:
            raise self.error
        for i, delta in enumerate(self.deltas or []):
            if self.fail_after is not None and i == self.fail_after:
                raise self.error
            if self.delay:
                await asyncio.sleep(self.delay)
            yield delta


def failure(status):
    return ProviderCallError(error_for_status("test", status))


def make_envelope(hint="standard"):
    return PromptEnvelope(
        system_instructions="You are a helpful shopping assistant.",
        context_chunks=["We ship to the US and Canada."],
        user_query="Do you ship to Canada?",
        model_hint=hint,
    )


async def stream_all(gateway, envelope):
    stream = await gateway.generate(envelope, streaming=True)
    return [chunk async for chunk in stream]


class TestGenerate:
    """Test suite for non-streaming generation."""

    def test_primary_answers(self):
        """Test the first healthy provider answers."""
        primary = ScriptedProvider("primary", text="Yes, we do.")
        secondary = ScriptedProvider("secondary", text="Unused.")
        gateway = GenerationGateway(ProviderChain([primary, secondary]))

        response = asyncio.run(gateway.generate(make_envelope()))

        assert response.text == "Yes, we do."
        assert response.provider == "primary"
        assert secondary.calls == 0

    def test_falls_back_on_retryable_failure(self):
        """Test rate limits and server errors move on to the next provider."""
        primary = ScriptedProvider("primary", error=failure(503))
        secondary = ScriptedProvider("secondary", error=failure(429))
        tertiary = ScriptedProvider("tertiary", text="Yes, we ship to Canada.")
        gateway = GenerationGateway(ProviderChain([primary, secondary, tertiary]))

        response = asyncio.run(gateway.generate(make_envelope()))

        assert response.provider == "tertiary"
        assert primary.calls == 1
        assert secondary.calls == 1

    def test_auth_failure_advances(self):
        """Test an authentication failure skips to the next provider."""
        gateway = GenerationGateway(ProviderChain([
            ScriptedProvider("primary", error=failure(401)),
            ScriptedProvider("secondary", text="Answer."),
        ]))
        assert asyncio.run(gateway.generate(make_envelope())).provider == "secondary"

    def test_bad_request_is_fatal(self):
        """Test a rejected request does not try other providers."""
        secondary = ScriptedProvider("secondary", text="Answer.")
        gateway = GenerationGateway(ProviderChain([ScriptedProvider("primary", error=failure(400)), secondary]))

        with pytest.raises(GenerationExhaustedError):
            asyncio.run(gateway.generate(make_envelope()))
        assert secondary.calls == 0

    def test_timeout_advances(self):
        """Test a slow provider is abandoned after the attempt timeout."""
        gateway = GenerationGateway(
            ProviderChain([ScriptedProvider("slow", text="Late.", delay=1.0), ScriptedProvider("fast", text="Quick.")]),
            attempt_timeout=0.05,
        )
        assert asyncio.run(gateway.generate(make_envelope())).provider == "fast"

    def test_all_fail_raises_with_attempts(self):
        """Test exhaustion raises with every attempt recorded."""
        gateway = GenerationGateway(ProviderChain([
            ScriptedProvider("primary", error=failure(500)),
            ScriptedProvider("secondary", error=failure(503)),
        ]))

        with pytest.raises(GenerationExhaustedError) as exc_info:
            asyncio.run(gateway.generate(make_envelope()))
        assert exc_info.value.attempts == ["primary: SERVER_ERROR", "secondary: SERVER_ERROR"]

    def test_canned_provider_as_last_resort(self):
        """Test the canned provider answers when every model fails."""
        gateway = GenerationGateway(ProviderChain([ScriptedProvider("primary", error=failure(503)), CannedResponseProvider()]))

        response = asyncio.run(gateway.generate(make_envelope()))

        assert response.is_fallback is True
        assert "We ship to the US and Canada." in response.text

    def test_premium_only_provider_skipped_for_standard(self):
        """Test providers only serve the hints they support."""
        premium = ScriptedProvider("premium", text="Premium.", premium_only=True)
        standard = ScriptedProvider("standard", text="Standard.")
        gateway = GenerationGateway(ProviderChain([premium, standard]))

        assert asyncio.run(gateway.generate(make_envelope("standard"))).provider == "standard"
        assert asyncio.run(gateway.generate(make_envelope("premium"))).provider == "premium"

    def test_no_provider_for_hint(self):
        """Test an empty chain raises immediately."""
        with pytest.raises(GenerationExhaustedError):
            asyncio.run(GenerationGateway(ProviderChain([])).generate(make_envelope()))


class TestStream:
    """Test suite for streaming generation."""

    def test_stream_yields_sentences_and_final_chunk(self):
        """Test deltas are regrouped at sentence boundaries with one final chunk."""
        provider = ScriptedProvider("primary", deltas=["We ship ", "to Canada. Deliv", "ery takes 5 days."])
        chunks = asyncio.run(stream_all(GenerationGateway(ProviderChain([provider])), make_envelope()))

        assert "".join(c.text for c in chunks) == "We ship to Canada. Delivery takes 5 days."
        assert chunks[0].text == "We ship to Canada. "
        assert [c.index for c in chunks] == list(range(len(chunks)))
        assert chunks[-1].is_final is True
        assert all(not c.is_final for c in chunks[:-1])

    def test_stream_falls_back_before_first_chunk(self):
        """Test a provider failing before any output is replaced by the next."""
        broken = ScriptedProvider("broken", error=failure(503))
        healthy = ScriptedProvider("healthy", deltas=["Yes, we do."])
        gateway = GenerationGateway(ProviderChain([broken, healthy]))

        chunks = asyncio.run(stream_all(gateway, make_envelope()))

        assert "".join(c.text for c in chunks) == "Yes, we do."
        assert {c.provider for c in chunks} == {"healthy"}

    def test_stream_failure_after_output_ends_with_notice(self):
        """Test a mid-stream failure finishes the answer with a notice instead of switching providers."""
        flaky = ScriptedProvider("flaky", deltas=["We ship to Canada. ", "Delivery", " takes"], error=failure(503), fail_after=2)
        backup = ScriptedProvider("backup", deltas=["Unused."])
        gateway = GenerationGateway(ProviderChain([flaky, backup]))

        chunks = asyncio.run(stream_all(gateway, make_envelope()))

        assert chunks[0].text == "We ship to Canada. "
        assert chunks[-1].is_final is True
        assert chunks[-1].text.endswith(INTERRUPTED_NOTICE)
        assert "Delivery" in chunks[-1].text
        assert backup.calls == 0

    def test_stream_empty_output_advances(self):
        """Test a provider that streams nothing is treated as failed."""
        empty = ScriptedProvider("empty", deltas=[])
        healthy = ScriptedProvider("healthy", deltas=["Answer."])
        gateway = GenerationGateway(ProviderChain([empty, healthy]))

        chunks = asyncio.run(stream_all(gateway, make_envelope()))
        assert "".join(c.text for c in chunks) == "Answer."

    def test_stream_all_fail_raises_on_iteration(self):
        """Test streaming exhaustion surfaces while iterating."""
        gateway = GenerationGateway(ProviderChain([ScriptedProvider("broken", error=failure(503))]))
        with pytest.raises(GenerationExhaustedError):
            asyncio.run(stream_all(gateway, make_envelope()))


class TestSplitReadyText:
    """Test suite for stream buffering."""

    def test_splits_complete_sentences(self):
        """Test complete sentences are released and the rest kept."""
        pieces, rest = split_ready_text("One. Two! Thr", flush_chars=200)
        assert pieces == ["One. ", "Two! "]
        assert rest == "Thr"

    def test_long_buffer_flushed_at_word(self):
        """Test a long sentence-free buffer is flushed at the last space."""
        pieces, rest = split_ready_text("word " * 10 + "tail", flush_chars=20)
        assert pieces == ["word " * 10]
        assert rest == "tail"
