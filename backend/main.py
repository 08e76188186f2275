"""Main entry point for the StoreSage knowledge base API."""
import json
import logging
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from config import CORS_ORIGINS, LOG_LEVEL, PORT
from logger import setup_logging
from bootstrap import build_orchestrator
from models.api import (
    ContentChangeRequest,
    ContentChangeResponse,
    QueryRequest,
    QueryResponse,
    ReindexRequest,
    ReindexResponse,
)
from models.content import ChangeType, ContentChangeEvent, SourceFilter, SourceType
from models.results import TextChunk
from services.pipeline import PipelineOrchestrator

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="StoreSage Knowledge Base",
    description="Retrieval-augmented shopping assistant for WooCommerce stores",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Built on startup
orchestrator: PipelineOrchestrator = None


@app.on_event("startup")
async def startup_event():
    """Initialize the pipeline on startup."""
    global orchestrator

    setup_logging(LOG_LEVEL)
    logger.info("Initializing StoreSage services...")

    try:
        orchestrator = build_orchestrator()
        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "StoreSage Knowledge Base API"}


@app.get("/health")
async def health():
    """Detailed health check including index statistics."""
    try:
        index = orchestrator.stats()
    except Exception as e:
        logger.error(f"Health check could not read the index: {e}")
        return {"status": "degraded", "service": "storesage-kb", "version": "1.0.0", "error": str(e)}

    return {
        "status": "healthy",
        "service": "storesage-kb",
        "version": "1.0.0",
        "index": index,
    }


def _validate_question(request: QueryRequest) -> None:
    if not request.question or not request.question.strip():
        raise HTTPException(status_code=400, detail="Question field is required and cannot be empty")


@app.post("/query", response_model=QueryResponse)
async def query_endpoint(request: QueryRequest) -> QueryResponse:
    """
    Answer a shopper's question from the store knowledge base.

    Blocked and degraded answers are still 200 responses; the flags tell
    the widget how to render them.
    """
    _validate_question(request)
    logger.info(f"Processing query: {request.question[:100]}...")

    result = await orchestrator.query(
        request.question,
        context_hints=request.context_hints,
        plan=request.plan,
        response_mode=request.response_mode,
        page_type=request.page_type,
    )
    return QueryResponse(
        answer=result.answer_text,
        used_chunk_ids=result.used_chunk_ids,
        blocked=result.blocked,
        block_reason=result.block_reason,
        degraded=result.degraded,
        model_used=result.model_used,
        confidence=result.confidence,
        sources=result.sources,
    )


@app.post("/query/stream")
async def query_stream_endpoint(request: QueryRequest):
    """
    Streaming variant of /query as Server-Sent Events.

    Events:
        data: {"type": "token", "content": "..."} per text chunk
        data: {"type": "done", "data": {...}} once, with result flags
    """
    _validate_question(request)
    logger.info(f"Processing streaming query: {request.question[:100]}...")

    result = await orchestrator.query(
        request.question,
        context_hints=request.context_hints,
        plan=request.plan,
        response_mode=request.response_mode,
        page_type=request.page_type,
        streaming=True,
    )

    async def generate_stream() -> AsyncIterator[bytes]:
        chunks: AsyncIterator[TextChunk] = result.stream
        async for chunk in chunks:
            if chunk.text:
                yield f"data: {json.dumps({'type': 'token', 'content': chunk.text})}\n\n".encode("utf-8")

        done = {
            "type": "done",
            "data": {
                "used_chunk_ids": result.used_chunk_ids,
                "blocked": result.blocked,
                "block_reason": result.block_reason,
                "degraded": result.degraded,
                "confidence": result.confidence,
                "sources": result.sources,
            },
        }
        yield f"data: {json.dumps(done)}\n\n".encode("utf-8")

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        }
    )


@app.post("/reindex", response_model=ReindexResponse)
async def reindex_endpoint(request: ReindexRequest) -> ReindexResponse:
    """Rebuild the index for all content or a filtered subset."""
    try:
        source_filter = SourceFilter(
            source_types=frozenset(SourceType(t) for t in request.source_types),
            source_ids=frozenset(request.source_ids),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid source type: {e}")

    result = await orchestrator.reindex(source_filter, force_rescan=request.force_rescan)
    return ReindexResponse(
        processed=result.processed,
        skipped=result.skipped,
        failed=result.failed,
        deleted=result.deleted,
        duration_ms=result.duration_ms,
        failures=result.failures,
    )


@app.post("/content-change", response_model=ContentChangeResponse)
async def content_change_endpoint(request: ContentChangeRequest) -> ContentChangeResponse:
    """Apply a single create/update/delete notification from the store."""
    try:
        event = ContentChangeEvent(
            source_id=request.source_id,
            change_type=ChangeType(request.change_type),
            source_type=SourceType(request.source_type) if request.source_type else None,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid content change: {e}")

    outcome = await orchestrator.handle_content_change(event)
    return ContentChangeResponse(source_id=request.source_id, outcome=outcome)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
