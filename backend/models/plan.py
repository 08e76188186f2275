"""Plan policy value object."""
from dataclasses import dataclass

from .prompt import ResponseMode


@dataclass(frozen=True)
class PlanPolicy:
    """
    Per-request decisions derived from the store's plan tier.

    Attributes:
        plan: Plan tier name (free, pro, unlimited)
        model_hint: Provider model tier to request (standard or premium)
        context_token_budget: Maximum estimated tokens of retrieved context
        max_response_tokens: Generation cap
        top_k: Candidates fetched from the vector store before reranking
        response_mode: Prompt style
        temperature: Sampling temperature for the response mode
        requests_per_minute: Advertised rate limit, enforced by the host
        skip_retrieval: Greetings and meta questions bypass the knowledge base
    """
    plan: str
    model_hint: str
    context_token_budget: int
    max_response_tokens: int
    top_k: int
    response_mode: ResponseMode = ResponseMode.STANDARD
    temperature: float = 0.5
    requests_per_minute: int = 10
    skip_retrieval: bool = False
