"""AI provider adapters sharing one capability interface, and the chain that orders them."""
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Sequence

import httpx
from groq import AsyncGroq
from groq import APIConnectionError, APIStatusError, APITimeoutError

from models.prompt import PromptEnvelope
from models.results import GeneratedResponse
from services.prompt_builder import canned_answer
from config import PROVIDER_TIMEOUT

logger = logging.getLogger(__name__)

STANDARD = "standard"
PREMIUM = "premium"


@dataclass
class ProviderError:
    """Structured error information for a failed provider call."""
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    retryable: bool = True
    fatal: bool = False


class ProviderCallError(Exception):
    """Raised by providers with structured error information."""

    def __init__(self, error: ProviderError):
        self.error = error
        super().__init__(error.message)


def error_for_status(provider: str, status_code: int, body: str = "") -> ProviderError:
    """Map an HTTP status to a provider error."""
    details = {"provider": provider, "status_code": status_code, "body": body[:500]}
    if status_code == 429:
        return ProviderError("RATE_LIMIT_ERROR", f"{provider}: rate limit exceeded", details)
    if status_code >= 500:
        return ProviderError("SERVER_ERROR", f"{provider}: server error {status_code}", details)
    if status_code in (401, 403):
        return ProviderError(
            "AUTHENTICATION_ERROR", f"{provider}: authentication failed", details, retryable=False
        )
    if status_code in (400, 422):
        return ProviderError(
            "BAD_REQUEST", f"{provider}: request rejected ({status_code})", details,
            retryable=False, fatal=True,
        )
    return ProviderError(
        "CLIENT_ERROR", f"{provider}: request failed with status {status_code}", details, retryable=False
    )


class AIProvider:
    """
    Capability interface every provider implements.

    Providers advertise what they can do through `supports_embeddings`,
    `supports_generation` and the model hints they serve; gateways walk a
    ProviderChain without knowing which concrete provider they talk to.
    """

    name = "provider"
    supports_embeddings = False
    supports_generation = False

    def __init__(self, chat_models: Optional[Dict[str, str]] = None, premium_only: bool = False):
        self.chat_models = dict(chat_models or {})
        self.premium_only = premium_only

    def serves(self, model_hint: str) -> bool:
        if self.premium_only:
            return model_hint == PREMIUM
        return True

    def model_for(self, model_hint: str) -> str:
        return self.chat_models.get(model_hint) or self.chat_models.get(STANDARD, "")

    @property
    def embedding_model_id(self) -> str:
        raise NotImplementedError(f"{self.name} does not provide embeddings")

    async def embed(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError(f"{self.name} does not provide embeddings")

    async def generate(self, envelope: PromptEnvelope) -> GeneratedResponse:
        raise NotImplementedError(f"{self.name} does not provide generation")

    async def stream(self, envelope: PromptEnvelope) -> AsyncIterator[str]:
        """Yield text deltas. Default: one delta holding the full response."""
        response = await self.generate(envelope)
        yield response.text


class OpenAICompatibleProvider(AIProvider):
    """Provider speaking the OpenAI REST dialect (OpenAI, OpenRouter, ...)."""

    def __init__(
        self,
        name: str,
        api_key: str,
        base_url: str,
        chat_models: Optional[Dict[str, str]] = None,
        embedding_model: Optional[str] = None,
        timeout: float = PROVIDER_TIMEOUT,
        premium_only: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the provider.

        Args:
            name: Label used in logs and responses
            api_key: Bearer token
            base_url: API root, e.g. https://api.openai.com/v1
            chat_models: Model per hint ({"standard": ..., "premium": ...})
            embedding_model: Embedding model id; None disables embeddings
            timeout: HTTP timeout in seconds
            premium_only: Only serve premium-hint requests
            transport: Optional httpx transport (used by tests)
        """
        if not api_key:
            raise ValueError(f"API key is required for provider {name}")
        super().__init__(chat_models=chat_models, premium_only=premium_only)
        self.name = name
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.embedding_model = embedding_model
        self.timeout = timeout
        self.transport = transport
        self.supports_embeddings = bool(embedding_model)
        self.supports_generation = bool(self.chat_models)

        logger.info(f"Initialized provider {name} at {self.base_url}")

    @property
    def embedding_model_id(self) -> str:
        return self.embedding_model

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(f"{self.base_url}{path}", headers=self._headers(), json=payload)
        except httpx.TimeoutException as e:
            raise ProviderCallError(ProviderError(
                "TIMEOUT_ERROR", f"{self.name}: request timed out after {self.timeout}s",
                {"provider": self.name, "original_error": str(e)},
            ))
        except httpx.RequestError as e:
            raise ProviderCallError(ProviderError(
                "NETWORK_ERROR", f"{self.name}: network error: {e}",
                {"provider": self.name, "original_error": str(e)},
            ))

        if response.status_code != 200:
            raise ProviderCallError(error_for_status(self.name, response.status_code, response.text))

        try:
            return response.json()
        except ValueError as e:
            raise ProviderCallError(ProviderError(
                "INVALID_RESPONSE", f"{self.name}: response is not JSON",
                {"provider": self.name, "original_error": str(e)}, retryable=False,
            ))

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not self.supports_embeddings:
            return await super().embed(texts)

        data = await self._post("/embeddings", {"model": self.embedding_model, "input": texts})
        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            embeddings = [item["embedding"] for item in items]
        except (KeyError, TypeError) as e:
            raise ProviderCallError(ProviderError(
                "INVALID_RESPONSE", f"{self.name}: malformed embedding response",
                {"provider": self.name, "original_error": str(e)}, retryable=False,
            ))

        if len(embeddings) != len(texts):
            raise ProviderCallError(ProviderError(
                "INVALID_RESPONSE",
                f"{self.name}: expected {len(texts)} embeddings, got {len(embeddings)}",
                {"provider": self.name}, retryable=False,
            ))
        return embeddings

    def _chat_payload(self, envelope: PromptEnvelope, stream: bool) -> Dict[str, Any]:
        return {
            "model": self.model_for(envelope.model_hint),
            "messages": envelope.to_messages(),
            "stream": stream,
            "temperature": envelope.temperature,
            "max_tokens": envelope.max_tokens,
        }

    async def generate(self, envelope: PromptEnvelope) -> GeneratedResponse:
        start_time = time.time()
        payload = self._chat_payload(envelope, stream=False)
        data = await self._post("/chat/completions", payload)

        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderCallError(ProviderError(
                "INVALID_RESPONSE", f"{self.name}: malformed completion",
                {"provider": self.name, "original_error": str(e)},
            ))
        if not text.strip():
            raise ProviderCallError(ProviderError(
                "EMPTY_RESPONSE", f"{self.name}: empty completion", {"provider": self.name}
            ))

        usage = data.get("usage") or {}
        return GeneratedResponse(
            text=text,
            model_used=data.get("model") or payload["model"],
            provider=self.name,
            tokens_input=usage.get("prompt_tokens", 0),
            tokens_output=usage.get("completion_tokens", 0),
            latency_ms=int((time.time() - start_time) * 1000),
        )

    async def stream(self, envelope: PromptEnvelope) -> AsyncIterator[str]:
        payload = self._chat_payload(envelope, stream=True)
        url = f"{self.base_url}/chat/completions"
        try:
            async with self._client() as client:
                async with client.stream("POST", url, headers=self._headers(), json=payload) as response:
                    if response.status_code != 200:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise ProviderCallError(error_for_status(self.name, response.status_code, body))

                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if data == "[DONE]":
                            break
                        try:
                            event = json.loads(data)
                        except ValueError:
                            logger.debug(f"{self.name}: skipping malformed SSE line")
                            continue
                        choices = event.get("choices") or [{}]
                        delta = (choices[0].get("delta") or {}).get("content")
                        if delta:
                            yield delta
        except httpx.TimeoutException as e:
            raise ProviderCallError(ProviderError(
                "TIMEOUT_ERROR", f"{self.name}: stream timed out",
                {"provider": self.name, "original_error": str(e)},
            ))
        except httpx.RequestError as e:
            raise ProviderCallError(ProviderError(
                "NETWORK_ERROR", f"{self.name}: network error: {e}",
                {"provider": self.name, "original_error": str(e)},
            ))


class GroqProvider(AIProvider):
    """Generation through the Groq SDK."""

    name = "groq"
    supports_generation = True

    def __init__(
        self,
        api_key: str,
        chat_models: Optional[Dict[str, str]] = None,
        timeout: float = PROVIDER_TIMEOUT,
        premium_only: bool = False,
    ):
        if not api_key:
            raise ValueError("GROQ_API_KEY must be provided or set in environment")
        super().__init__(chat_models=chat_models, premium_only=premium_only)
        self.client = AsyncGroq(api_key=api_key, timeout=timeout, max_retries=0)
        logger.info("GroqProvider initialized successfully")

    def _map_error(self, e: Exception, model: str) -> ProviderError:
        if isinstance(e, APITimeoutError):
            return ProviderError("TIMEOUT_ERROR", "groq: request timed out", {"model": model, "original_error": str(e)})
        if isinstance(e, APIConnectionError):
            return ProviderError("NETWORK_ERROR", f"groq: connection error: {e}", {"model": model, "original_error": str(e)})
        if isinstance(e, APIStatusError):
            error = error_for_status(self.name, e.status_code, str(e))
            error.details["model"] = model
            return error
        return ProviderError(
            "UNKNOWN_ERROR", f"groq: unexpected error: {e}",
            {"model": model, "original_error": str(e), "error_type": type(e).__name__},
        )

    async def generate(self, envelope: PromptEnvelope) -> GeneratedResponse:
        start_time = time.time()
        model = self.model_for(envelope.model_hint)
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=envelope.to_messages(),
                max_tokens=envelope.max_tokens,
                temperature=envelope.temperature,
            )
        except (APITimeoutError, APIConnectionError, APIStatusError) as e:
            raise ProviderCallError(self._map_error(e, model))

        text = response.choices[0].message.content or ""
        if not text.strip():
            raise ProviderCallError(ProviderError("EMPTY_RESPONSE", "groq: empty completion", {"model": model}))

        return GeneratedResponse(
            text=text,
            model_used=model,
            provider=self.name,
            tokens_input=response.usage.prompt_tokens if response.usage else 0,
            tokens_output=response.usage.completion_tokens if response.usage else 0,
            latency_ms=int((time.time() - start_time) * 1000),
        )

    async def stream(self, envelope: PromptEnvelope) -> AsyncIterator[str]:
        model = self.model_for(envelope.model_hint)
        try:
            stream = await self.client.chat.completions.create(
                model=model,
                messages=envelope.to_messages(),
                max_tokens=envelope.max_tokens,
                temperature=envelope.temperature,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except (APITimeoutError, APIConnectionError, APIStatusError) as e:
            raise ProviderCallError(self._map_error(e, model))


class CannedResponseProvider(AIProvider):
    """Deterministic last resort: answers from the context text or a template."""

    name = "canned"
    supports_generation = True

    def __init__(self):
        super().__init__(chat_models={STANDARD: "canned-response"})

    async def generate(self, envelope: PromptEnvelope) -> GeneratedResponse:
        return GeneratedResponse(
            text=canned_answer(envelope.user_query, envelope.context_chunks),
            model_used="canned-response",
            provider=self.name,
            is_fallback=True,
        )


class ProviderChain:
    """Ordered providers tried in sequence until one succeeds."""

    def __init__(self, providers: Sequence[AIProvider]):
        self.providers = list(providers)

    def __iter__(self) -> Iterator[AIProvider]:
        return iter(self.providers)

    def __len__(self) -> int:
        return len(self.providers)

    def embedding_providers(self) -> List[AIProvider]:
        return [p for p in self.providers if p.supports_embeddings]

    def generation_providers(self, model_hint: str = STANDARD) -> List[AIProvider]:
        return [p for p in self.providers if p.supports_generation and p.serves(model_hint)]
