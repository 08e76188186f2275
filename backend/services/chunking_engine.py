"""Sentence-aware chunking engine with overlap and content hashing."""
import hashlib
import logging
import re
from typing import Dict, List, Optional, Tuple

from models.chunk import Chunk, ChunkConfig
from models.content import ContentUnit, SourceType
from services.errors import InvalidConfigError
from services.text_utils import (
    estimate_tokens,
    normalize_whitespace,
    sentence_spans,
    strip_markup,
)
from config import CHUNK_DEFAULTS, CHUNK_OVERLAP, CHUNK_SIZE, MAX_CHUNK_SIZE, MIN_CHUNK_SIZE

logger = logging.getLogger(__name__)

# Words that dominate navigation menus, footers and cart widgets
BOILERPLATE_WORDS = frozenset({
    "home", "menu", "cart", "checkout", "login", "logout", "account", "search",
    "skip", "content", "navigation", "copyright", "rights", "reserved", "privacy",
    "terms", "cookies", "subscribe", "newsletter", "share", "facebook", "twitter",
    "instagram", "pinterest", "read", "more", "previous", "next", "wishlist",
})

_WORD_RE = re.compile(r"[a-z0-9']+")


def content_hash(text: str) -> str:
    """SHA-256 of whitespace-normalized, case-folded text."""
    normalized = normalize_whitespace(text).casefold()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def make_chunk_id(source_id: str, offset: int) -> str:
    return hashlib.sha256(f"{source_id}:{offset}".encode("utf-8")).hexdigest()[:32]


class ChunkingEngine:
    """Splits content units into bounded, overlapping, sentence-aligned chunks."""

    def __init__(self, type_defaults: Optional[Dict[str, Tuple[int, int]]] = None):
        """
        Initialize ChunkingEngine.

        Args:
            type_defaults: Per-source-type (chunk_size, overlap) in characters;
                types not listed use CHUNK_SIZE/CHUNK_OVERLAP
        """
        self.type_defaults = dict(CHUNK_DEFAULTS if type_defaults is None else type_defaults)
        for chunk_size, overlap in self.type_defaults.values():
            self.validate_config(ChunkConfig(chunk_size, overlap))

    @staticmethod
    def validate_config(config: ChunkConfig) -> None:
        """
        Reject unusable chunk parameters.

        Raises:
            InvalidConfigError: If chunk_size is outside the allowed range or
                does not exceed the overlap
        """
        if not MIN_CHUNK_SIZE <= config.chunk_size <= MAX_CHUNK_SIZE:
            raise InvalidConfigError(
                f"chunk_size must be within [{MIN_CHUNK_SIZE}, {MAX_CHUNK_SIZE}], got {config.chunk_size}"
            )
        if config.overlap < 0:
            raise InvalidConfigError(f"overlap cannot be negative, got {config.overlap}")
        if config.chunk_size <= config.overlap:
            raise InvalidConfigError(
                f"chunk_size ({config.chunk_size}) must be greater than overlap ({config.overlap})"
            )

    def config_for(self, source_type: SourceType) -> ChunkConfig:
        key = source_type.value if isinstance(source_type, SourceType) else str(source_type)
        chunk_size, overlap = self.type_defaults.get(key, (CHUNK_SIZE, CHUNK_OVERLAP))
        return ChunkConfig(chunk_size=chunk_size, overlap=overlap)

    @staticmethod
    def normalize(text: str) -> str:
        """Strip markup and collapse whitespace."""
        return normalize_whitespace(strip_markup(text))

    def chunk(self, unit: ContentUnit, config: Optional[ChunkConfig] = None) -> List[Chunk]:
        """
        Chunk a content unit.

        Args:
            unit: Content unit to split
            config: Window parameters (defaults to the source type's config)

        Returns:
            Chunks in source order; empty for empty input

        Raises:
            InvalidConfigError: For invalid window parameters
        """
        config = config or self.config_for(unit.source_type)
        self.validate_config(config)

        text = self.normalize(unit.raw_text)
        if not text:
            logger.debug(f"No text to chunk for source {unit.source_id}")
            return []

        windows = self._pack_windows(text, config)

        chunks = []
        for position, (start, end, hard_cut) in enumerate(windows):
            chunk_text = text[start:end]
            if hard_cut:
                logger.warning(
                    f"Hard-cut oversized sentence in source {unit.source_id} at offset {start}",
                    extra={"source_id": unit.source_id, "offset": start},
                )
            chunks.append(Chunk(
                chunk_id=make_chunk_id(unit.source_id, start),
                source_id=unit.source_id,
                source_type=unit.source_type,
                text=chunk_text,
                token_estimate=estimate_tokens(chunk_text),
                content_hash=content_hash(chunk_text),
                position=position,
                start_offset=start,
                title=unit.title,
                url=unit.url,
                language=unit.language,
                last_modified_at=unit.last_modified_at,
                quality_score=self.quality_score(chunk_text),
                hard_cut=hard_cut,
            ))

        logger.debug(f"Created {len(chunks)} chunks for source {unit.source_id}")
        return chunks

    def _pack_windows(self, text: str, config: ChunkConfig) -> List[Tuple[int, int, bool]]:
        """
        Greedily pack sentences into windows.

        Returns (start, end, hard_cut) offsets into the normalized text.
        """
        spans = sentence_spans(text)
        windows: List[Tuple[int, int, bool]] = []
        size = config.chunk_size
        i = 0

        while i < len(spans):
            window_start = spans[i][0]
            j = i
            while j < len(spans) and spans[j][1] - window_start <= size:
                j += 1

            if j == i:
                # A single sentence longer than the window
                windows.extend(self._hard_cut(text, spans[i][0], spans[i][1], size))
                i += 1
                continue

            windows.append((window_start, spans[j - 1][1], False))
            if j >= len(spans):
                break

            # Carry trailing sentences into the next window while that window
            # can still take the next unseen sentence
            k = j
            while (
                k - 1 > i
                and spans[j - 1][1] - spans[k - 1][0] <= config.overlap
                and spans[j][1] - spans[k - 1][0] <= size
            ):
                k -= 1
            i = k

        return windows

    @staticmethod
    def _hard_cut(text: str, start: int, end: int, size: int) -> List[Tuple[int, int, bool]]:
        pieces = []
        pos = start
        while pos < end:
            cut = min(pos + size, end)
            if cut < end:
                space = text.rfind(" ", pos, cut + 1)
                if space > pos:
                    cut = space
            pieces.append((pos, cut, True))
            pos = cut
            while pos < end and text[pos] == " ":
                pos += 1
        return pieces

    @staticmethod
    def quality_score(text: str) -> float:
        """Static heuristic: short, unterminated or navigation-heavy text scores lower."""
        score = 1.0
        stripped = text.strip()
        if len(stripped) < 100:
            score *= 0.6
        if not stripped or stripped[-1] not in ".!?:":
            score *= 0.8

        words = _WORD_RE.findall(stripped.lower())
        if words:
            boilerplate = sum(1 for w in words if w in BOILERPLATE_WORDS)
            if boilerplate / len(words) > 0.5:
                score *= 0.5

        if len(sentence_spans(stripped)) >= 2:
            score *= 1.1

        return round(max(0.0, min(1.0, score)), 4)
