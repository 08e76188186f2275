"""Token-budgeted context window assembly."""
import logging
from typing import List, Sequence

from models.chunk import RetrievalCandidate
from models.prompt import ContextWindow
from services.errors import InvalidConfigError
from services.text_utils import (
    CHARS_PER_TOKEN,
    estimate_tokens,
    last_sentence_boundary,
    last_word_boundary,
)

logger = logging.getLogger(__name__)


class ContextWindowBuilder:
    """Packs reranked chunk texts into a prompt context under a token budget."""

    def build(self, candidates: Sequence[RetrievalCandidate], token_budget: int) -> List[str]:
        """Chunk texts in rank order, never exceeding the budget."""
        return self.build_window(candidates, token_budget).texts

    def build_window(self, candidates: Sequence[RetrievalCandidate], token_budget: int) -> ContextWindow:
        """
        Build the context window.

        Candidates are taken in order until the next one would overflow the
        budget. A first candidate that alone overflows is truncated at the
        last sentence boundary that fits, or the last word boundary if no
        sentence fits.

        Args:
            candidates: Reranked candidates, best first
            token_budget: Maximum estimated tokens (chars / 4)

        Returns:
            ContextWindow; empty when there are no candidates

        Raises:
            InvalidConfigError: If token_budget is not positive
        """
        if token_budget <= 0:
            raise InvalidConfigError(f"token_budget must be positive, got {token_budget}")

        window = ContextWindow()
        if not candidates:
            return window

        for candidate in candidates:
            text = candidate.chunk.text
            tokens = estimate_tokens(text)

            if window.estimated_tokens + tokens <= token_budget:
                window.texts.append(text)
                window.chunk_ids.append(candidate.chunk.chunk_id)
                window.estimated_tokens += tokens
                continue

            if not window.texts:
                truncated = self.truncate(text, token_budget)
                if truncated:
                    window.texts.append(truncated)
                    window.chunk_ids.append(candidate.chunk.chunk_id)
                    window.estimated_tokens = estimate_tokens(truncated)
                    window.truncated = True
            break

        logger.debug(
            f"Context window: {len(window.texts)}/{len(candidates)} chunks, "
            f"{window.estimated_tokens}/{token_budget} tokens, truncated={window.truncated}"
        )
        return window

    @staticmethod
    def truncate(text: str, token_budget: int) -> str:
        """Longest prefix within budget that ends on a sentence (or word) boundary."""
        max_chars = token_budget * CHARS_PER_TOKEN
        if len(text) <= max_chars:
            return text

        cut = last_sentence_boundary(text, max_chars)
        if cut == 0:
            cut = last_word_boundary(text, max_chars)
        return text[:cut].rstrip()
