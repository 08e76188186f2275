"""Vector store contract with in-memory snapshot and Supabase pgvector backends."""
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

import numpy as np
from supabase import Client, create_client

from models.chunk import Chunk, EmbeddingVector, RetrievalCandidate
from models.content import SourceType
from services.errors import StoreUnavailableError
from config import SUPABASE_KEY, SUPABASE_TABLE, SUPABASE_URL

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def chunk_to_record(chunk: Chunk, vector: EmbeddingVector) -> Dict[str, Any]:
    """Persisted layout: one record per chunk."""
    return {
        "chunk_id": chunk.chunk_id,
        "source_id": chunk.source_id,
        "source_type": chunk.source_type.value,
        "text": chunk.text,
        "content_hash": chunk.content_hash,
        "vector": [float(v) for v in vector.values],
        "model_id": vector.model_id,
        "position": chunk.position,
        "last_modified_at": _iso(chunk.last_modified_at),
        "start_offset": chunk.start_offset,
        "title": chunk.title,
        "url": chunk.url,
        "language": chunk.language,
        "quality_score": chunk.quality_score,
        "token_estimate": chunk.token_estimate,
        "hard_cut": chunk.hard_cut,
        "created_at": _iso(chunk.created_at),
    }


def record_to_chunk(row: Mapping[str, Any]) -> Chunk:
    chunk = Chunk(
        chunk_id=row["chunk_id"],
        source_id=row["source_id"],
        source_type=SourceType(row["source_type"]),
        text=row["text"],
        token_estimate=row.get("token_estimate") or 0,
        content_hash=row["content_hash"],
        position=row.get("position", 0),
        start_offset=row.get("start_offset") or 0,
        title=row.get("title") or "",
        url=row.get("url") or "",
        language=row.get("language") or "en",
        last_modified_at=_parse_dt(row.get("last_modified_at")),
        quality_score=row.get("quality_score", 1.0),
        hard_cut=bool(row.get("hard_cut", False)),
    )
    if row.get("created_at"):
        chunk.created_at = _parse_dt(row["created_at"])
    return chunk


def matches_filters(chunk: Chunk, filters: Optional[Mapping[str, Any]]) -> bool:
    if not filters:
        return True
    source_type = filters.get("source_type")
    if source_type and chunk.source_type != SourceType(source_type):
        return False
    language = filters.get("language")
    if language and chunk.language != language:
        return False
    return True


class VectorStore(ABC):
    """Persists chunk vectors and answers top-K cosine similarity queries."""

    @abstractmethod
    def upsert(self, chunk: Chunk, vector: EmbeddingVector) -> None:
        """Insert or replace the entry with the same chunk_id."""

    @abstractmethod
    def delete_by_source(self, source_id: str) -> int:
        """Remove every chunk of a source; returns the number removed."""

    @abstractmethod
    def replace_source(self, source_id: str, entries: Iterable[Tuple[Chunk, EmbeddingVector]]) -> int:
        """Atomically swap a source's chunks for new ones; returns the number stored."""

    @abstractmethod
    def query(
        self,
        vector: EmbeddingVector,
        top_k: int,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[RetrievalCandidate]:
        """Most similar chunks, similarity descending."""

    @abstractmethod
    def content_hashes(self, source_id: Optional[str] = None, exclude_source_id: Optional[str] = None) -> Set[str]:
        """Content hashes in the active index, optionally scoped by source."""

    @abstractmethod
    def source_ids(self, source_type: Optional[SourceType] = None) -> Set[str]:
        """Sources that currently have chunks."""

    @abstractmethod
    def count(self) -> int:
        """Total stored chunks."""

    @abstractmethod
    def clear(self) -> None:
        """Remove everything."""

    def flush(self) -> None:
        """Persist buffered writes. Stores that write through have nothing to do."""

    def stats(self) -> Dict[str, Any]:
        return {"chunks": self.count()}


@dataclass(frozen=True)
class _Entry:
    chunk: Chunk
    vector: EmbeddingVector


@dataclass(frozen=True)
class _Snapshot:
    """Immutable view of the index at one generation."""
    generation: int
    entries: Mapping[str, _Entry]
    by_source: Mapping[str, FrozenSet[str]]


def _empty_snapshot(generation: int = 0) -> _Snapshot:
    return _Snapshot(generation, MappingProxyType({}), MappingProxyType({}))


class InMemoryVectorStore(VectorStore):
    """
    Copy-on-write, generation-tagged in-memory index.

    Writers build a complete new snapshot under a lock and publish it with a
    single reference assignment; readers grab the current snapshot once and
    never see a half-applied write. Optionally mirrors every snapshot to a
    JSON file and reloads it on start; with autosave off the file is only
    rewritten by flush().
    """

    def __init__(
        self,
        dimension: Optional[int] = None,
        persist_path: Optional[str] = None,
        autosave: bool = True,
    ):
        """
        Initialize the store.

        Args:
            dimension: Reject vectors of any other dimension when set
            persist_path: JSON file to load from and save to
            autosave: Rewrite the file on every write; otherwise wait for flush()
        """
        self.dimension = dimension
        self.persist_path = persist_path
        self.autosave = autosave
        self._dirty = False
        self._write_lock = threading.Lock()
        self._snapshot = _empty_snapshot()

        if persist_path and os.path.exists(persist_path):
            self._snapshot = self._load(persist_path)

        logger.info(
            f"Initialized InMemoryVectorStore: {len(self._snapshot.entries)} chunks, "
            f"generation {self._snapshot.generation}"
        )

    @property
    def generation(self) -> int:
        return self._snapshot.generation

    def snapshot(self) -> _Snapshot:
        return self._snapshot

    def _check_dimension(self, vector: EmbeddingVector) -> None:
        if self.dimension is not None and vector.dimension != self.dimension:
            raise ValueError(f"Vector dimension {vector.dimension} does not match store dimension {self.dimension}")

    def _publish(self, entries: Dict[str, _Entry], by_source: Dict[str, FrozenSet[str]]) -> None:
        """Swap in a new snapshot, saving it when autosave is on. Caller holds the lock."""
        snapshot = _Snapshot(
            generation=self._snapshot.generation + 1,
            entries=MappingProxyType(entries),
            by_source=MappingProxyType(by_source),
        )
        if self.persist_path and self.autosave:
            self._save(snapshot, self.persist_path)
        else:
            self._dirty = True
        self._snapshot = snapshot

    def flush(self) -> None:
        """Write the current snapshot to persist_path if anything changed since the last save."""
        with self._write_lock:
            if not self.persist_path or not self._dirty:
                return
            self._save(self._snapshot, self.persist_path)
            self._dirty = False
        logger.info(f"Flushed {len(self._snapshot.entries)} chunks to {self.persist_path}")

    def upsert(self, chunk: Chunk, vector: EmbeddingVector) -> None:
        self._check_dimension(vector)
        entry = _Entry(chunk, replace(vector, chunk_id=chunk.chunk_id))

        with self._write_lock:
            current = self._snapshot
            entries = dict(current.entries)
            by_source = dict(current.by_source)

            previous = entries.get(chunk.chunk_id)
            if previous and previous.chunk.source_id != chunk.source_id:
                remaining = by_source[previous.chunk.source_id] - {chunk.chunk_id}
                if remaining:
                    by_source[previous.chunk.source_id] = remaining
                else:
                    del by_source[previous.chunk.source_id]

            entries[chunk.chunk_id] = entry
            by_source[chunk.source_id] = by_source.get(chunk.source_id, frozenset()) | {chunk.chunk_id}
            self._publish(entries, by_source)

    def delete_by_source(self, source_id: str) -> int:
        with self._write_lock:
            current = self._snapshot
            chunk_ids = current.by_source.get(source_id)
            if not chunk_ids:
                return 0
            entries = {cid: e for cid, e in current.entries.items() if cid not in chunk_ids}
            by_source = {sid: ids for sid, ids in current.by_source.items() if sid != source_id}
            self._publish(entries, by_source)

        logger.info(f"Deleted {len(chunk_ids)} chunks for source {source_id}")
        return len(chunk_ids)

    def replace_source(self, source_id: str, entries: Iterable[Tuple[Chunk, EmbeddingVector]]) -> int:
        new_entries = []
        for chunk, vector in entries:
            if chunk.source_id != source_id:
                raise ValueError(f"Chunk {chunk.chunk_id} belongs to {chunk.source_id}, not {source_id}")
            self._check_dimension(vector)
            new_entries.append(_Entry(chunk, replace(vector, chunk_id=chunk.chunk_id)))

        with self._write_lock:
            current = self._snapshot
            old_ids = current.by_source.get(source_id, frozenset())
            merged = {cid: e for cid, e in current.entries.items() if cid not in old_ids}
            by_source = {sid: ids for sid, ids in current.by_source.items() if sid != source_id}
            for entry in new_entries:
                merged[entry.chunk.chunk_id] = entry
            if new_entries:
                by_source[source_id] = frozenset(e.chunk.chunk_id for e in new_entries)
            self._publish(merged, by_source)
            generation = self._snapshot.generation

        logger.debug(
            f"Replaced source {source_id}: {len(old_ids)} -> {len(new_entries)} chunks (generation {generation})"
        )
        return len(new_entries)

    def query(
        self,
        vector: EmbeddingVector,
        top_k: int,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[RetrievalCandidate]:
        """
        Find the most similar chunks to a query vector.

        Only vectors from the same model and dimension are compared. Cosine
        similarity is the dot product of unit vectors, clamped to [0, 1].

        Raises:
            ValueError: If top_k is not positive
        """
        if top_k <= 0:
            raise ValueError("top_k must be positive")

        snapshot = self._snapshot
        entries = [
            e for e in snapshot.entries.values()
            if e.vector.is_comparable(vector) and matches_filters(e.chunk, filters)
        ]
        if not entries:
            return []

        matrix = np.stack([e.vector.values for e in entries])
        scores = matrix @ np.asarray(vector.values, dtype=matrix.dtype)
        order = sorted(range(len(entries)), key=lambda i: (-float(scores[i]), entries[i].chunk.chunk_id))

        return [
            RetrievalCandidate(
                chunk=entries[i].chunk,
                similarity_score=max(0.0, min(1.0, float(scores[i]))),
            )
            for i in order[:top_k]
        ]

    def content_hashes(self, source_id: Optional[str] = None, exclude_source_id: Optional[str] = None) -> Set[str]:
        snapshot = self._snapshot
        return {
            e.chunk.content_hash for e in snapshot.entries.values()
            if (source_id is None or e.chunk.source_id == source_id)
            and (exclude_source_id is None or e.chunk.source_id != exclude_source_id)
        }

    def source_ids(self, source_type: Optional[SourceType] = None) -> Set[str]:
        snapshot = self._snapshot
        if source_type is None:
            return set(snapshot.by_source)
        return {e.chunk.source_id for e in snapshot.entries.values() if e.chunk.source_type == source_type}

    def chunks_for_source(self, source_id: str) -> List[Chunk]:
        snapshot = self._snapshot
        ids = snapshot.by_source.get(source_id, frozenset())
        return sorted((snapshot.entries[cid].chunk for cid in ids), key=lambda c: c.position)

    def count(self) -> int:
        return len(self._snapshot.entries)

    def clear(self) -> None:
        with self._write_lock:
            self._publish({}, {})
        logger.info("Cleared in-memory vector store")

    def stats(self) -> Dict[str, Any]:
        snapshot = self._snapshot
        by_type: Dict[str, int] = {}
        models: Dict[str, int] = {}
        for entry in snapshot.entries.values():
            by_type[entry.chunk.source_type.value] = by_type.get(entry.chunk.source_type.value, 0) + 1
            models[entry.vector.model_id] = models.get(entry.vector.model_id, 0) + 1
        return {
            "backend": "memory",
            "chunks": len(snapshot.entries),
            "sources": len(snapshot.by_source),
            "generation": snapshot.generation,
            "by_source_type": by_type,
            "models": models,
        }

    @staticmethod
    def _save(snapshot: _Snapshot, path: str) -> None:
        document = {
            "generation": snapshot.generation,
            "records": [chunk_to_record(e.chunk, e.vector) for e in snapshot.entries.values()],
        }
        tmp_path = f"{path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(document, f)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to persist vector store to {path}: {e}")
            raise StoreUnavailableError(f"Failed to persist vector store: {e}") from e

    @staticmethod
    def _load(path: str) -> _Snapshot:
        try:
            with open(path, "r", encoding="utf-8") as f:
                document = json.load(f)
            entries: Dict[str, _Entry] = {}
            by_source: Dict[str, Set[str]] = {}
            for row in document.get("records", []):
                chunk = record_to_chunk(row)
                vector = EmbeddingVector(
                    values=np.asarray(row["vector"], dtype=np.float32),
                    model_id=row["model_id"],
                    chunk_id=chunk.chunk_id,
                    is_fallback=row["model_id"].startswith("hash-fallback"),
                )
                entries[chunk.chunk_id] = _Entry(chunk, vector)
                by_source.setdefault(chunk.source_id, set()).add(chunk.chunk_id)
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Failed to load vector store from {path}: {e}")
            raise StoreUnavailableError(f"Failed to load vector store: {e}") from e

        logger.info(f"Loaded {len(entries)} chunks from {path}")
        return _Snapshot(
            generation=document.get("generation", 0),
            entries=MappingProxyType(entries),
            by_source=MappingProxyType({sid: frozenset(ids) for sid, ids in by_source.items()}),
        )


class SupabaseVectorStore(VectorStore):
    """
    Store chunk vectors in Supabase pgvector.

    Expected schema (the vector column sized to the embedding dimension):

        CREATE TABLE kb_chunks (
          chunk_id text PRIMARY KEY,
          source_id text NOT NULL,
          source_type text NOT NULL,
          text text NOT NULL,
          content_hash text NOT NULL,
          vector vector(1536) NOT NULL,
          model_id text NOT NULL,
          position int NOT NULL,
          last_modified_at timestamptz,
          start_offset int, title text, url text, language text,
          quality_score float, token_estimate int, hard_cut boolean,
          created_at timestamptz
        );

        -- Runs in a single transaction, so readers see either set
        CREATE FUNCTION replace_source_chunks(p_source_id text, p_records jsonb)
        RETURNS int LANGUAGE plpgsql AS $$
        BEGIN
          DELETE FROM kb_chunks WHERE source_id = p_source_id;
          INSERT INTO kb_chunks
            SELECT * FROM jsonb_populate_recordset(null::kb_chunks, p_records);
          RETURN jsonb_array_length(p_records);
        END; $$;

        CREATE FUNCTION match_kb_chunks(
          query_embedding vector(1536), match_count int, filter_model_id text,
          filter_source_type text DEFAULT NULL, filter_language text DEFAULT NULL
        ) RETURNS TABLE (... all kb_chunks columns except vector ..., similarity float)
        -- 1 - (vector <=> query_embedding) ordered by distance, model and filters applied
    """

    def __init__(
        self,
        supabase_url: str = SUPABASE_URL,
        supabase_key: str = SUPABASE_KEY,
        table_name: str = SUPABASE_TABLE,
    ):
        """
        Initialize the vector store with Supabase client.

        Raises:
            ValueError: If Supabase credentials are missing
        """
        if not supabase_url or not supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_KEY environment variables are required")

        self.table_name = table_name
        self.client: Client = create_client(supabase_url, supabase_key)

        logger.info(f"Initialized SupabaseVectorStore with table: {table_name}")

    def _run(self, action: str, request):
        try:
            return request.execute()
        except Exception as e:
            error_msg = f"Failed to {action}: {str(e)}"
            logger.error(error_msg)
            raise StoreUnavailableError(error_msg) from e

    def upsert(self, chunk: Chunk, vector: EmbeddingVector) -> None:
        record = chunk_to_record(chunk, vector)
        self._run("upsert chunk", self.client.table(self.table_name).upsert(record))

    def delete_by_source(self, source_id: str) -> int:
        response = self._run(
            "delete source chunks",
            self.client.table(self.table_name).delete().eq("source_id", source_id),
        )
        deleted = len(response.data or [])
        logger.info(f"Deleted {deleted} chunks for source {source_id}")
        return deleted

    def replace_source(self, source_id: str, entries: Iterable[Tuple[Chunk, EmbeddingVector]]) -> int:
        records = [chunk_to_record(chunk, vector) for chunk, vector in entries]
        self._run(
            "replace source chunks",
            self.client.rpc("replace_source_chunks", {"p_source_id": source_id, "p_records": records}),
        )
        return len(records)

    def query(
        self,
        vector: EmbeddingVector,
        top_k: int,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[RetrievalCandidate]:
        if top_k <= 0:
            raise ValueError("top_k must be positive")

        filters = filters or {}
        response = self._run("search vector store", self.client.rpc(
            "match_kb_chunks",
            {
                "query_embedding": [float(v) for v in vector.values],
                "match_count": top_k,
                "filter_model_id": vector.model_id,
                "filter_source_type": filters.get("source_type"),
                "filter_language": filters.get("language"),
            },
        ))

        candidates = []
        for row in response.data or []:
            chunk = record_to_chunk(row)
            if not matches_filters(chunk, filters):
                continue
            candidates.append(RetrievalCandidate(
                chunk=chunk,
                similarity_score=max(0.0, min(1.0, float(row["similarity"]))),
            ))

        candidates.sort(key=lambda c: (-c.similarity_score, c.chunk.chunk_id))
        logger.debug(f"Found {len(candidates)} chunks for query")
        return candidates[:top_k]

    def content_hashes(self, source_id: Optional[str] = None, exclude_source_id: Optional[str] = None) -> Set[str]:
        request = self.client.table(self.table_name).select("content_hash")
        if source_id is not None:
            request = request.eq("source_id", source_id)
        if exclude_source_id is not None:
            request = request.neq("source_id", exclude_source_id)
        response = self._run("read content hashes", request)
        return {row["content_hash"] for row in response.data or []}

    def source_ids(self, source_type: Optional[SourceType] = None) -> Set[str]:
        request = self.client.table(self.table_name).select("source_id")
        if source_type is not None:
            request = request.eq("source_type", SourceType(source_type).value)
        response = self._run("read source ids", request)
        return {row["source_id"] for row in response.data or []}

    def count(self) -> int:
        response = self._run(
            "count chunks",
            self.client.table(self.table_name).select("chunk_id", count="exact"),
        )
        return response.count or 0

    def clear(self) -> None:
        self._run("clear vector store", self.client.table(self.table_name).delete().neq("chunk_id", ""))
        logger.info("Cleared all chunks from vector store")

    def stats(self) -> Dict[str, Any]:
        return {"backend": "supabase", "table": self.table_name, "chunks": self.count()}
