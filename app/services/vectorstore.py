# =============================================================================
# Local Chunk Store — Pre-embedded Uploaded Files
# =============================================================================
#
# Uploaded files are extracted and embedded by an external pipeline. At
# query time the rerank engine needs, for a set of file ids, every chunk of
# text together with its stored embedding vector. This module reads them.
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# The rerank pipeline only needs `load_chunks()`, so any object providing
# it (including a test fake) can be used.
#
# ARCHITECTURE:
#   ChunkStore (Protocol)
#   ├── FileChunkStore   — <upload_dir>/<id>-extracted.json +
#   │                      <id>-embeddings.json written by the uploader
#   └── ChromaChunkStore — ChromaDB collection (in-process or client/server)
#       ├── add_chunks() — sync (ChromaDB client is sync)
#       └── load_chunks()— async via asyncio.to_thread() wrapper
#
# FILE FORMAT (FileChunkStore):
#   <id>-extracted.json   {"title": str, "contents": [str, ...],
#                          "metadata": {"uploadDate": str}}
#   <id>-embeddings.json  {"embeddings": [[float, ...], ...]}
#   contents[i] pairs with embeddings[i].
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Protocol

import chromadb

from app.agents.types import LocalChunk
from app.config import settings

logger = logging.getLogger(__name__)

# Tried in order; the first match wins
_PAGE_PATTERNS = (
    re.compile(r"page\s*(\d+)", re.IGNORECASE),
    re.compile(r"p\.\s*(\d+)", re.IGNORECASE),
    re.compile(r"(\d+)\s*of\s*\d+", re.IGNORECASE),
    re.compile(r"^(\d+)\s*\n"),
)


def extract_page_number(content: str) -> int | None:
    """Best-effort page number from markers like 'Page 4', 'p. 4', '4 of 12'."""
    for pattern in _PAGE_PATTERNS:
        match = pattern.search(content)
        if match:
            return int(match.group(1))
    return None


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class ChunkStore(Protocol):
    async def load_chunks(self, file_ids: list[str]) -> list[LocalChunk]:
        """Return every stored chunk of the given files, in file then chunk order."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: JSON files on disk
# ---------------------------------------------------------------------------


class FileChunkStore:
    """Reads the extracted text and embeddings written by the upload pipeline."""

    def __init__(self, upload_dir: str | Path | None = None) -> None:
        self._upload_dir = Path(upload_dir or settings.upload_dir)

    def _load_file(self, file_id: str) -> list[LocalChunk]:
        content_path = self._upload_dir / f"{file_id}-extracted.json"
        embeddings_path = self._upload_dir / f"{file_id}-embeddings.json"

        try:
            content = json.loads(content_path.read_text(encoding="utf-8"))
            embeddings = json.loads(embeddings_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.warning("No extracted chunks found for file %s", file_id)
            return []

        contents: list[str] = content.get("contents", [])
        vectors: list[list[float]] = embeddings.get("embeddings", [])
        if len(contents) != len(vectors):
            logger.warning(
                "File %s has %d chunks but %d embeddings; using the shorter",
                file_id, len(contents), len(vectors),
            )

        title = content.get("title") or file_id
        upload_date = (content.get("metadata") or {}).get("uploadDate")

        return [
            LocalChunk(
                file_id=file_id,
                file_name=title,
                content=text,
                embedding=tuple(vector),
                chunk_index=i,
                page_number=extract_page_number(text),
                uploaded_at=upload_date,
            )
            for i, (text, vector) in enumerate(zip(contents, vectors))
        ]

    async def load_chunks(self, file_ids: list[str]) -> list[LocalChunk]:
        if not file_ids:
            return []

        def _sync_load() -> list[LocalChunk]:
            chunks: list[LocalChunk] = []
            for file_id in file_ids:
                chunks.extend(self._load_file(file_id))
            return chunks

        chunks = await asyncio.to_thread(_sync_load)
        logger.info("Loaded %d local chunks from %d files", len(chunks), len(file_ids))
        return chunks


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaChunkStore:
    """
    ChromaDB-backed chunk store.

    Single collection; each chunk carries its `file_id` in metadata so a
    query can be restricted to the files attached to a conversation.

    ChromaDB supports both in-process and client/server modes:
    - In-process (default): No extra infra, data stored in memory
    - Client/server: Set CHROMA_URL for Docker deployment
    """

    def __init__(self, collection_name: str | None = None) -> None:
        if settings.chroma_url:
            self._client = chromadb.HttpClient(host=settings.chroma_url)
        else:
            self._client = chromadb.Client()

        self._collection = self._client.get_or_create_collection(
            name=collection_name or settings.chroma_collection,
            metadata={"hnsw:space": "cosine"},
        )

    def add_chunks(
        self,
        file_id: str,
        file_name: str,
        contents: list[str],
        embeddings: list[list[float]],
        upload_date: str | None = None,
    ) -> list[str]:
        """Store one file's chunks. Re-adding a file upserts its chunks."""
        ids = [f"{file_id}_chunk{i}" for i in range(len(contents))]
        metadatas = [
            _sanitise_chroma_metadata({
                "file_id": file_id,
                "file_name": file_name,
                "chunk_index": i,
                "page_number": extract_page_number(text),
                "upload_date": upload_date,
            })
            for i, text in enumerate(contents)
        ]

        self._collection.upsert(
            ids=ids,
            documents=contents,
            embeddings=embeddings,
            metadatas=metadatas,
        )
        logger.info("Stored %d chunks for file %s in ChromaDB", len(ids), file_id)
        return ids

    async def load_chunks(self, file_ids: list[str]) -> list[LocalChunk]:
        if not file_ids:
            return []

        def _sync_load() -> list[LocalChunk]:
            where = (
                {"file_id": file_ids[0]}
                if len(file_ids) == 1
                else {"file_id": {"$in": list(file_ids)}}
            )
            results = self._collection.get(
                where=where,
                include=["documents", "metadatas", "embeddings"],
            )

            chunks: list[LocalChunk] = []
            documents = results.get("documents") or []
            metadatas = results.get("metadatas") or []
            embeddings = results.get("embeddings")
            if embeddings is None:
                embeddings = []
            for text, meta, vector in zip(documents, metadatas, embeddings):
                page = meta.get("page_number")
                chunks.append(LocalChunk(
                    file_id=str(meta.get("file_id", "")),
                    file_name=str(meta.get("file_name", "")),
                    content=text or "",
                    embedding=tuple(float(v) for v in vector),
                    chunk_index=int(meta.get("chunk_index", 0)),
                    page_number=page if isinstance(page, int) else None,
                    uploaded_at=meta.get("upload_date") or None,
                ))

            order = {file_id: i for i, file_id in enumerate(file_ids)}
            chunks.sort(key=lambda c: (order.get(c.file_id, len(order)), c.chunk_index))
            return chunks

        return await asyncio.to_thread(_sync_load)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def get_chunk_store(
    override_type: str | None = None,
) -> FileChunkStore | ChromaChunkStore:
    """
    Factory that returns the configured chunk store backend.

    Reads `chunk_store_type` from settings:
    - "file" → FileChunkStore (default)
    - "chroma" → ChromaChunkStore
    """
    store_type = override_type or settings.chunk_store_type

    if store_type == "chroma":
        logger.info("Using ChromaDB chunk store")
        return ChromaChunkStore()

    return FileChunkStore()


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    Sanitise metadata for ChromaDB compatibility.

    ChromaDB requires all metadata values to be str, int, float, or bool.
    We convert:
    - list → comma-separated string
    - None → empty string
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            sanitised[key] = ""
        elif isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
