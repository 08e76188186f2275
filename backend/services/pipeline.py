"""
Pipeline orchestrator for the store knowledge base.

Indexing:  ContentScanner → ChunkingEngine → EmbeddingGateway → VectorStore
Querying:  SafetyGuard → PlanPolicy → EmbeddingGateway → VectorStore →
           RetrievalReranker → ContextWindowBuilder → PromptBuilder →
           SafetyGuard → GenerationGateway

All collaborators are injected. Query failures never escape to the caller:
every outcome is a well-formed QueryResult.
"""
import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Set, Tuple

from models.content import ChangeType, ContentChangeEvent, ContentUnit, SourceFilter, SourceType
from models.plan import PlanPolicy
from models.prompt import ContextWindow, PromptEnvelope, QueryContext
from models.results import QueryResult, ReindexResult, TextChunk
from services.chunking_engine import ChunkingEngine
from services.content_scanner import ContentScanner
from services.context_builder import ContextWindowBuilder
from services.embedding_gateway import EmbeddingGateway
from services.errors import (
    EmbeddingUnavailableError,
    GenerationExhaustedError,
    InvalidConfigError,
    SafetyBlockedError,
    StoreUnavailableError,
)
from services.generation_gateway import INTERRUPTED_NOTICE, GenerationGateway
from services.plan_policy import PlanPolicyResolver
from services.prompt_builder import PromptBuilder
from services.reranker import RetrievalReranker, response_confidence, sources_used
from services.safety_guard import SafetyGuard, refusal_message
from services.text_utils import estimate_tokens
from services.vector_store import VectorStore
from config import DEFAULT_PLAN, INDEX_WORKERS, SCAN_BATCH_SIZE, TOTAL_QUERY_TIMEOUT

logger = logging.getLogger(__name__)

NO_INFORMATION_MESSAGE = (
    "I couldn't find relevant information right now. Please try again in a little "
    "while or contact the store directly."
)
BUSY_MESSAGE = (
    "Our AI service is temporarily busy and I'm unable to answer right now. "
    "Please try again in a few moments."
)

PROCESSED = "processed"
SKIPPED = "skipped"
DELETED = "deleted"
FAILED = "failed"

FILTER_HINTS = ("source_type", "language")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineOrchestrator:
    """Runs the indexing and query pipelines over injected components."""

    def __init__(
        self,
        scanner: ContentScanner,
        embedder: EmbeddingGateway,
        store: VectorStore,
        generator: GenerationGateway,
        chunker: Optional[ChunkingEngine] = None,
        reranker: Optional[RetrievalReranker] = None,
        context_builder: Optional[ContextWindowBuilder] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        safety_guard: Optional[SafetyGuard] = None,
        policy_resolver: Optional[PlanPolicyResolver] = None,
        total_timeout: float = TOTAL_QUERY_TIMEOUT,
        index_workers: int = INDEX_WORKERS,
        scan_batch_size: int = SCAN_BATCH_SIZE,
        default_plan: str = DEFAULT_PLAN,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        Initialize the orchestrator.

        Args:
            scanner: Source of content units
            embedder: Embedding gateway
            store: Vector store shared by indexing and queries
            generator: Generation gateway
            chunker: Chunking engine (default instance when None)
            reranker: Retrieval reranker (default instance when None)
            context_builder: Context window builder (default instance when None)
            prompt_builder: Prompt builder (default instance when None)
            safety_guard: Safety guard (default tier from config when None)
            policy_resolver: Plan policy resolver (default plan table when None)
            total_timeout: Seconds allowed for a whole non-streaming query
            index_workers: Sources indexed concurrently
            scan_batch_size: Page size for scanner pagination
            default_plan: Plan used when a query names none
            clock: Current time, for freshness scoring
        """
        if index_workers < 1:
            raise InvalidConfigError("index_workers must be at least 1")
        if scan_batch_size < 1:
            raise InvalidConfigError("scan_batch_size must be at least 1")

        self.scanner = scanner
        self.embedder = embedder
        self.store = store
        self.generator = generator
        self.chunker = chunker or ChunkingEngine()
        self.reranker = reranker or RetrievalReranker()
        self.context_builder = context_builder or ContextWindowBuilder()
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.safety_guard = safety_guard or SafetyGuard()
        self.policy_resolver = policy_resolver or PlanPolicyResolver()
        self.total_timeout = total_timeout
        self.index_workers = index_workers
        self.scan_batch_size = scan_batch_size
        self.default_plan = default_plan
        self.clock = clock

        logger.info("Initialized PipelineOrchestrator")

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def reindex(self, source_filter: Optional[SourceFilter] = None, force_rescan: bool = False) -> ReindexResult:
        """
        Scan, chunk, embed and store content.

        A failure in one source is recorded in the result and never aborts
        the others. When a whole source type is scanned (no source-id
        filter), sources that disappeared from the store are removed.

        Args:
            source_filter: Restrict to source types and/or source ids
            force_rescan: Re-embed sources even when their content is unchanged

        Returns:
            ReindexResult with processed/skipped/failed/deleted counts
        """
        start_time = time.time()
        source_filter = source_filter or SourceFilter()
        source_types = sorted(source_filter.source_types or set(SourceType), key=lambda t: t.value)
        semaphore = asyncio.Semaphore(self.index_workers)
        claims: Dict[str, str] = {}
        result = ReindexResult()

        logger.info(
            f"Starting reindex: types={[t.value for t in source_types]}, "
            f"source_ids={len(source_filter.source_ids)}, force={force_rescan}"
        )

        for source_type in source_types:
            seen: Set[str] = set()
            scan_complete = True
            offset = 0

            while True:
                try:
                    page = await asyncio.to_thread(
                        self.scanner.scan, source_type, self.scan_batch_size, offset, force_rescan
                    )
                except Exception as e:
                    logger.error(f"Scan failed for {source_type.value} at offset {offset}: {e}", exc_info=True)
                    result.failed += 1
                    result.failures[f"scan:{source_type.value}"] = str(e)
                    scan_complete = False
                    break

                units = [u for u in page if source_filter.includes(u)]
                seen.update(u.source_id for u in page)
                outcomes = await asyncio.gather(*(self._index_guarded(u, force_rescan, semaphore, claims) for u in units))
                for unit, (outcome, reason) in zip(units, outcomes):
                    if outcome == FAILED:
                        result.failed += 1
                        result.failures[unit.source_id] = reason
                    elif outcome == SKIPPED:
                        result.skipped += 1
                    else:
                        result.processed += 1

                if len(page) < self.scan_batch_size:
                    break
                offset += self.scan_batch_size

            if scan_complete and not source_filter.source_ids:
                result.deleted += await self._prune(source_type, seen, result)

        await self._flush(result)

        result.duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Reindex finished: processed={result.processed}, skipped={result.skipped}, "
            f"failed={result.failed}, deleted={result.deleted}, duration={result.duration_ms}ms"
        )
        return result

    async def _flush(self, result: Optional[ReindexResult] = None) -> None:
        """Persist buffered store writes once per run."""
        try:
            await asyncio.to_thread(self.store.flush)
        except StoreUnavailableError as e:
            logger.error(f"Could not persist the index: {e}")
            if result is not None:
                result.failures["flush"] = str(e)

    async def _prune(self, source_type: SourceType, seen: Set[str], result: ReindexResult) -> int:
        try:
            stale = await asyncio.to_thread(self.store.source_ids, source_type) - seen
            for source_id in sorted(stale):
                await asyncio.to_thread(self.store.delete_by_source, source_id)
                logger.info(f"Removed vanished source {source_id}")
            return len(stale)
        except StoreUnavailableError as e:
            logger.error(f"Could not prune {source_type.value} sources: {e}")
            result.failures[f"prune:{source_type.value}"] = str(e)
            return 0

    async def _index_guarded(
        self,
        unit: ContentUnit,
        force: bool,
        semaphore: asyncio.Semaphore,
        claims: Dict[str, str],
    ) -> Tuple[str, str]:
        async with semaphore:
            try:
                return await self.index_unit(unit, force=force, claims=claims), ""
            except Exception as e:
                logger.error(
                    f"Failed to index source {unit.source_id}: {e}",
                    exc_info=True,
                    extra={"source_id": unit.source_id},
                )
                return FAILED, f"{type(e).__name__}: {e}"

    async def index_unit(self, unit: ContentUnit, force: bool = False, claims: Optional[Dict[str, str]] = None) -> str:
        """
        Index one content unit, replacing whatever the store held for it.

        `claims` maps content hashes to the source keeping them. Calls that
        run concurrently must share one mapping for the length of the run so
        a chunk is kept by exactly one source.

        Returns:
            "processed" when the store changed, "skipped" when the content
            was unchanged

        Raises:
            InvalidConfigError, StoreUnavailableError, EmbeddingUnavailableError
        """
        chunks = await asyncio.to_thread(self.chunker.chunk, unit)
        claims = {} if claims is None else claims

        taken = await asyncio.to_thread(self.store.content_hashes, None, unit.source_id)
        # No await between the check and the claim, so concurrent sources cannot both keep a hash
        unique = []
        hashes: Set[str] = set()
        for chunk in chunks:
            owner = claims.get(chunk.content_hash, unit.source_id)
            if chunk.content_hash in hashes or chunk.content_hash in taken or owner != unit.source_id:
                logger.debug(f"Dropping duplicate chunk {chunk.chunk_id} of {unit.source_id}")
                continue
            hashes.add(chunk.content_hash)
            unique.append(chunk)
        for content_hash in hashes:
            claims[content_hash] = unit.source_id

        existing = await asyncio.to_thread(self.store.content_hashes, unit.source_id)
        if not force and existing == hashes:
            logger.debug(f"Source {unit.source_id} unchanged, skipping")
            return SKIPPED

        vectors = await self.embedder.embed_batch([c.text for c in unique]) if unique else []
        stored = await asyncio.to_thread(self.store.replace_source, unit.source_id, list(zip(unique, vectors)))
        logger.info(
            f"Indexed {unit.source_id}: {stored} chunks ({len(chunks) - len(unique)} duplicates dropped)",
            extra={"source_id": unit.source_id, "chunks": stored},
        )
        return PROCESSED

    async def handle_content_change(self, event: ContentChangeEvent) -> str:
        """
        Apply a single content change from the host platform.

        Returns:
            "processed", "deleted" or "failed"
        """
        logger.info(f"Content change: {event.change_type.value} {event.source_id}")
        try:
            if event.change_type == ChangeType.DELETED:
                await asyncio.to_thread(self.store.delete_by_source, event.source_id)
                return DELETED

            unit = await asyncio.to_thread(self.scanner.get, event.source_id)
            if unit is None:
                logger.info(f"Source {event.source_id} no longer exists, removing")
                await asyncio.to_thread(self.store.delete_by_source, event.source_id)
                return DELETED

            return await self.index_unit(unit, force=True)
        except Exception as e:
            logger.error(f"Failed to apply content change for {event.source_id}: {e}", exc_info=True)
            return FAILED
        finally:
            await self._flush()

    # ------------------------------------------------------------------
    # Querying
    # ------------------------------------------------------------------

    async def query(
        self,
        text: str,
        context_hints: Optional[Mapping[str, Any]] = None,
        plan: Optional[str] = None,
        response_mode: Optional[str] = None,
        streaming: bool = False,
        page_type: Optional[str] = None,
    ) -> QueryResult:
        """
        Answer a shopper's question.

        Never raises for pipeline failures; cancelling the calling task
        cancels in-flight provider requests and propagates CancelledError.

        Args:
            text: The question
            context_hints: Caller hints (product_id, category, locale, ...)
            plan: Plan tier (defaults to the configured plan)
            response_mode: standard, detailed or concise; inferred when None
            streaming: Return `stream` (async iterator of TextChunk) instead of `answer_text`
            page_type: Page the shopper is on

        Returns:
            QueryResult
        """
        start_time = time.time()
        try:
            result = await asyncio.wait_for(
                self._answer(text, context_hints or {}, plan or self.default_plan, response_mode, streaming, page_type),
                timeout=self.total_timeout,
            )
        except SafetyBlockedError as e:
            result = QueryResult(answer_text=refusal_message(e.reason), blocked=True, block_reason=e.reason)
        except asyncio.TimeoutError:
            logger.warning(f"Query exceeded total timeout of {self.total_timeout}s")
            result = QueryResult(answer_text=BUSY_MESSAGE, degraded=True)
        except (StoreUnavailableError, EmbeddingUnavailableError) as e:
            logger.error(f"Knowledge base unavailable: {e}", extra={"error_type": type(e).__name__})
            result = QueryResult(answer_text=NO_INFORMATION_MESSAGE, degraded=True)
        except GenerationExhaustedError as e:
            logger.error(f"Generation exhausted: {e}", extra={"attempts": e.attempts})
            result = QueryResult(answer_text=BUSY_MESSAGE, degraded=True)
        except Exception as e:
            logger.error(f"Unexpected query failure: {e}", exc_info=True)
            result = QueryResult(answer_text=NO_INFORMATION_MESSAGE, degraded=True)

        if streaming and result.stream is None:
            result.stream = self._single_chunk(result.answer_text)

        logger.info(
            f"Query completed in {int((time.time() - start_time) * 1000)}ms: "
            f"blocked={result.blocked}, degraded={result.degraded}, chunks={len(result.used_chunk_ids)}"
        )
        return result

    async def _answer(
        self,
        text: str,
        context_hints: Mapping[str, Any],
        plan: str,
        response_mode: Optional[str],
        streaming: bool,
        page_type: Optional[str],
    ) -> QueryResult:
        # Step 1: Screen the raw query
        screen = self.safety_guard.screen_query(text)
        if not screen.allowed:
            raise SafetyBlockedError(screen.reason, screen.category)

        # Step 2: Resolve plan policy
        policy = self.policy_resolver.resolve(plan, text, response_mode)

        # Step 3: Retrieve and rerank
        query_context = QueryContext(query=text, page_type=page_type, context_hints=context_hints, now=self.clock())
        candidates = [] if policy.skip_retrieval else await self._retrieve(text, policy, query_context)

        # Step 4: Build the context window and envelope
        window = self.context_builder.build_window(candidates, policy.context_token_budget)
        envelope = self.prompt_builder.build_envelope(text, window, policy, page_type, context_hints)

        # Step 5: Screen the assembled prompt
        envelope = self._screen_envelope(envelope, window, policy, page_type, context_hints)

        used_ids = set(envelope.chunk_ids)
        used = [c for c in candidates if c.chunk.chunk_id in used_ids]

        # Step 6: Generate
        if streaming:
            chunks = await self.generator.generate(envelope, streaming=True)
            return QueryResult(
                used_chunk_ids=list(envelope.chunk_ids),
                stream=self._guarded_stream(chunks),
                confidence=response_confidence(used),
                sources=sources_used(used),
            )

        response = await self.generator.generate(envelope)
        return QueryResult(
            answer_text=response.text,
            used_chunk_ids=list(envelope.chunk_ids),
            degraded=response.is_fallback,
            model_used=response.model_used,
            confidence=response_confidence(used, response.text),
            sources=sources_used(used),
        )

    async def _retrieve(self, text: str, policy: PlanPolicy, query_context: QueryContext):
        query_vector = await self.embedder.embed_query(text)
        filters: Dict[str, Any] = {
            key: query_context.context_hints[key] for key in FILTER_HINTS if query_context.context_hints.get(key)
        }
        raw = await asyncio.to_thread(self.store.query, query_vector, policy.top_k, filters or None)
        return self.reranker.rerank(raw, query_context)

    def _screen_envelope(
        self,
        envelope: PromptEnvelope,
        window: ContextWindow,
        policy: PlanPolicy,
        page_type: Optional[str],
        context_hints: Mapping[str, Any],
    ) -> PromptEnvelope:
        screen = self.safety_guard.screen_prompt(envelope)
        if screen.allowed:
            return envelope

        if screen.flagged_chunks:
            flagged = set(screen.flagged_chunks)
            logger.warning(
                f"Dropping {len(flagged)} context chunks carrying embedded instructions",
                extra={"chunk_ids": [window.chunk_ids[i] for i in sorted(flagged)]},
            )
            texts = [t for i, t in enumerate(window.texts) if i not in flagged]
            clean = replace(
                window,
                texts=texts,
                chunk_ids=[c for i, c in enumerate(window.chunk_ids) if i not in flagged],
                estimated_tokens=sum(estimate_tokens(t) for t in texts),
            )
            envelope = self.prompt_builder.build_envelope(envelope.user_query, clean, policy, page_type, context_hints)
            screen = self.safety_guard.screen_prompt(envelope)
            if screen.allowed:
                return envelope

        raise SafetyBlockedError(screen.reason, screen.category)

    async def _guarded_stream(self, chunks: AsyncIterator[TextChunk]) -> AsyncIterator[TextChunk]:
        index = 0
        try:
            async for chunk in chunks:
                index = chunk.index + 1
                yield chunk
        except GenerationExhaustedError as e:
            logger.error(f"Generation exhausted while streaming: {e}", extra={"attempts": e.attempts})
            yield TextChunk(text=BUSY_MESSAGE if index == 0 else INTERRUPTED_NOTICE, index=index, is_final=True)
        except Exception as e:
            logger.error(f"Unexpected streaming failure: {e}", exc_info=True)
            yield TextChunk(text=BUSY_MESSAGE if index == 0 else INTERRUPTED_NOTICE, index=index, is_final=True)

    @staticmethod
    async def _single_chunk(text: str) -> AsyncIterator[TextChunk]:
        yield TextChunk(text=text, index=0, is_final=True)

    def stats(self) -> Dict[str, Any]:
        """Store statistics for health reporting."""
        return self.store.stats()
