"""Unit tests for ChunkingEngine."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import pytest
from models.chunk import ChunkConfig
from models.content import ContentUnit, SourceType
from services.chunking_engine import ChunkingEngine, content_hash, make_chunk_id
from services.errors import InvalidConfigError


def make_unit(text, source_id="page:1", source_type=SourceType.PAGE):
    return ContentUnit(source_id=source_id, source_type=source_type, title="About us", raw_text=text)


def numbered_sentences(count):
    return " ".join(f"Sentence number {i} describes our store in detail." for i in range(count))


class TestChunkingEngine:
    """Test suite for ChunkingEngine."""

    def setup_method(self):
        self.engine = ChunkingEngine()
        self.config = ChunkConfig(chunk_size=200, overlap=60)

    def test_empty_text_yields_no_chunks(self):
        """Test empty and whitespace-only text produce nothing."""
        assert self.engine.chunk(make_unit("")) == []
        assert self.engine.chunk(make_unit("   \n\t ")) == []
        assert self.engine.chunk(make_unit("<p> </p>")) == []

    def test_short_text_single_chunk(self):
        """Test text shorter than the window becomes one chunk."""
        chunks = self.engine.chunk(make_unit("We ship worldwide. Orders leave within 2 days."), self.config)

        assert len(chunks) == 1
        assert chunks[0].text == "We ship worldwide. Orders leave within 2 days."
        assert chunks[0].position == 0
        assert chunks[0].start_offset == 0
        assert chunks[0].source_id == "page:1"
        assert chunks[0].title == "About us"
        assert chunks[0].hard_cut is False

    def test_chunks_never_exceed_window(self):
        """Test every chunk fits in chunk_size characters."""
        chunks = self.engine.chunk(make_unit(numbered_sentences(40)), self.config)

        assert len(chunks) > 1
        for chunk in chunks:
            assert len(chunk.text) <= self.config.chunk_size

    def test_chunks_are_exact_slices_of_normalized_text(self):
        """Test chunk offsets point back into the normalized text."""
        raw = "<h2>Shipping</h2>\n<p>" + numbered_sentences(25) + "</p>"
        normalized = ChunkingEngine.normalize(raw)
        chunks = self.engine.chunk(make_unit(raw), self.config)

        for chunk in chunks:
            assert normalized[chunk.start_offset:chunk.end_offset] == chunk.text
            assert "<" not in chunk.text

    def test_every_sentence_is_covered(self):
        """Test no sentence is lost between windows."""
        text = numbered_sentences(30)
        chunks = self.engine.chunk(make_unit(text), self.config)
        joined = " ".join(c.text for c in chunks)

        for i in range(30):
            assert f"Sentence number {i} describes" in joined

    def test_consecutive_chunks_overlap_and_advance(self):
        """Test windows overlap by whole sentences and always move forward."""
        chunks = self.engine.chunk(make_unit(numbered_sentences(30)), self.config)

        for previous, current in zip(chunks, chunks[1:]):
            assert current.start_offset > previous.start_offset
            assert current.start_offset < previous.end_offset
            overlap = previous.text[current.start_offset - previous.start_offset:]
            assert current.text.startswith(overlap)

    def test_zero_overlap_windows_are_disjoint(self):
        """Test windows do not share text without overlap."""
        chunks = self.engine.chunk(make_unit(numbered_sentences(30)), ChunkConfig(chunk_size=200, overlap=0))

        for previous, current in zip(chunks, chunks[1:]):
            assert current.start_offset >= previous.end_offset

    def test_positions_are_sequential(self):
        """Test chunk positions follow source order."""
        chunks = self.engine.chunk(make_unit(numbered_sentences(30)), self.config)
        assert [c.position for c in chunks] == list(range(len(chunks)))

    def test_chunking_is_deterministic(self):
        """Test identical input gives identical ids and hashes."""
        unit = make_unit(numbered_sentences(20))
        first = self.engine.chunk(unit, self.config)
        second = self.engine.chunk(unit, self.config)

        assert [c.chunk_id for c in first] == [c.chunk_id for c in second]
        assert [c.content_hash for c in first] == [c.content_hash for c in second]

    def test_chunk_id_derives_from_source_and_offset(self):
        """Test chunk ids are stable hashes of source id and offset."""
        chunks = self.engine.chunk(make_unit(numbered_sentences(20), source_id="faq:7"), self.config)

        for chunk in chunks:
            assert chunk.chunk_id == make_chunk_id("faq:7", chunk.start_offset)
            assert len(chunk.chunk_id) == 32

    def test_oversized_sentence_is_hard_cut_at_words(self):
        """Test a sentence longer than the window is split on word boundaries."""
        long_sentence = " ".join(["cotton"] * 80) + "."
        chunks = self.engine.chunk(make_unit(long_sentence), ChunkConfig(chunk_size=100, overlap=10))

        assert len(chunks) > 1
        assert all(c.hard_cut for c in chunks)
        for chunk in chunks:
            assert len(chunk.text) <= 100
            assert not chunk.text.startswith(" ")
            assert all(word in ("cotton", "cotton.") for word in chunk.text.split())

    def test_oversized_sentence_without_spaces(self):
        """Test text without any spaces is cut at the window size."""
        chunks = self.engine.chunk(make_unit("x" * 250), ChunkConfig(chunk_size=100, overlap=10))

        assert [len(c.text) for c in chunks] == [100, 100, 50]
        assert all(c.hard_cut for c in chunks)

    def test_abbreviations_do_not_split_sentences(self):
        """Test abbreviations keep their sentence together."""
        text = "Contact Dr. Smith about sizing. Our team replies within a day."
        chunks = self.engine.chunk(make_unit(text), ChunkConfig(chunk_size=100, overlap=0))
        assert chunks[0].text.startswith("Contact Dr. Smith about sizing.")

    def test_token_estimate(self):
        """Test token estimate uses four characters per token."""
        chunks = self.engine.chunk(make_unit("Free returns within 30 days."), self.config)
        assert chunks[0].token_estimate == 7

    def test_metadata_copied_from_unit(self):
        """Test url, language and type flow from the unit to its chunks."""
        unit = ContentUnit(
            source_id="product:42", source_type=SourceType.PRODUCT, title="Blue Tee",
            raw_text="Soft cotton tee. Machine washable.", url="https://shop.test/blue-tee", language="de",
        )
        chunk = self.engine.chunk(unit)[0]

        assert chunk.source_type == SourceType.PRODUCT
        assert chunk.url == "https://shop.test/blue-tee"
        assert chunk.language == "de"

    def test_type_defaults_used_when_no_config(self):
        """Test per-type window defaults apply."""
        engine = ChunkingEngine(type_defaults={"faq": (150, 20)})
        chunks = engine.chunk(make_unit(numbered_sentences(20), source_type=SourceType.FAQ))

        assert all(len(c.text) <= 150 for c in chunks)
        assert engine.config_for(SourceType.PRODUCT).chunk_size == 1000

    @pytest.mark.parametrize("chunk_size,overlap", [(50, 0), (5000, 100), (200, 200), (200, 300), (200, -1)])
    def test_invalid_config_rejected(self, chunk_size, overlap):
        """Test unusable windows raise InvalidConfigError."""
        with pytest.raises(InvalidConfigError):
            self.engine.chunk(make_unit("Some text."), ChunkConfig(chunk_size=chunk_size, overlap=overlap))

    def test_invalid_type_defaults_rejected(self):
        """Test bad defaults fail at construction."""
        with pytest.raises(InvalidConfigError):
            ChunkingEngine(type_defaults={"page": (100, 100)})


class TestContentHash:
    """Test suite for content hashing."""

    def test_hash_ignores_case_and_whitespace(self):
        """Test the hash is stable across case and spacing differences."""
        assert content_hash("Free  Shipping\nover $50") == content_hash("free shipping over $50")

    def test_hash_differs_for_different_text(self):
        """Test different text hashes differently."""
        assert content_hash("Free shipping") != content_hash("Paid shipping")


class TestQualityScore:
    """Test suite for the static quality heuristic."""

    def test_full_paragraph_scores_high(self):
        """Test a well-formed multi-sentence chunk scores 1.0."""
        text = (
            "Our organic cotton tees are made in Portugal from certified yarn. "
            "Each shirt is pre-washed to limit shrinking and keeps its shape after many washes."
        )
        assert ChunkingEngine.quality_score(text) == 1.0

    def test_navigation_text_scores_low(self):
        """Test short unterminated boilerplate is penalized on every count."""
        assert ChunkingEngine.quality_score("Home Menu Cart Login") == pytest.approx(0.24)

    def test_score_within_bounds(self):
        """Test scores stay inside [0, 1]."""
        for text in ["", "x", "A. B. C.", numbered_sentences(5)]:
            assert 0.0 <= ChunkingEngine.quality_score(text) <= 1.0
