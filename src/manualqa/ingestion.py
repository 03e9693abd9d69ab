"""
Ingestion coordinator: source bytes -> pages -> chunks -> embeddings -> store.

Two explicit modes:
- incremental: content-hash dedup; re-running on unchanged text creates nothing.
- full rebuild: clears the document's chunks, then re-inserts everything.

Batches run sequentially. A failing batch aborts the run; batches already
inserted stay in place and the partial counts travel on the raised error.
"""
from __future__ import annotations

import time
from dataclasses import dataclass

from .chunker import chunk_pages
from .config import (
    CHUNK_TARGET_CHARS,
    EMBEDDING_BATCH_SIZE,
    MANUAL_DESCRIPTION,
    MANUAL_SOURCE,
    MANUAL_TITLE,
    MANUAL_VERSION,
    console,
)
from .document_manager import DocumentStore
from .embeddings import EmbeddingClient
from .errors import IngestionAbortedError, ManualQAError
from .models import Chunk, IngestResult
from .observability import get_logger
from .pdf_extractor import extract_pages
from .storage_provider import SourceProvider

logger = get_logger(__name__)

MODE_INCREMENTAL = "incremental"
MODE_FULL_REBUILD = "full_rebuild"
INGEST_MODES = (MODE_INCREMENTAL, MODE_FULL_REBUILD)


@dataclass(frozen=True)
class DocumentSource:
    source_ref: str
    title: str = MANUAL_TITLE
    version: str | None = MANUAL_VERSION
    description: str | None = MANUAL_DESCRIPTION

    @classmethod
    def default(cls) -> "DocumentSource":
        return cls(source_ref=MANUAL_SOURCE)


class IngestionCoordinator:
    def __init__(
        self,
        store: DocumentStore,
        embedder: EmbeddingClient,
        source_provider: SourceProvider,
        *,
        batch_size: int = EMBEDDING_BATCH_SIZE,
        target_chars: int = CHUNK_TARGET_CHARS,
        verbose: bool = False,
    ):
        self.store = store
        self.embedder = embedder
        self.source_provider = source_provider
        self.batch_size = max(1, int(batch_size))
        self.target_chars = int(target_chars)
        self.verbose = bool(verbose)

    def _echo(self, message: str):
        if self.verbose:
            console.print(message)

    def ingest_incremental(self, source: DocumentSource) -> IngestResult:
        return self._ingest(source, MODE_INCREMENTAL)

    def ingest_full_rebuild(self, source: DocumentSource) -> IngestResult:
        return self._ingest(source, MODE_FULL_REBUILD)

    def ingest(self, source: DocumentSource, mode: str = MODE_INCREMENTAL) -> IngestResult:
        if mode not in INGEST_MODES:
            raise ValueError(f"unknown ingestion mode: {mode!r}")
        return self._ingest(source, mode)

    def _prepare(self, source: DocumentSource) -> tuple[int, list[Chunk]]:
        data = self.source_provider.fetch(source.source_ref)
        # Extraction completes before any stored chunk is touched.
        pages = list(extract_pages(data))
        chunks = chunk_pages(pages, self.target_chars)
        logger.info(
            "ingest_prepared",
            source=source.source_ref,
            pages=len(pages),
            chunks=len(chunks),
        )
        return len(pages), chunks

    def _ingest(self, source: DocumentSource, mode: str) -> IngestResult:
        started = time.perf_counter()
        self._echo(f"[cyan]Ingesting '{source.title}' ({mode})...[/cyan]")
        total_pages, chunks = self._prepare(source)

        document, created = self.store.get_or_create_document(
            source.title,
            version=source.version,
            description=source.description,
            source_ref=source.source_ref,
            total_pages=total_pages,
        )
        result = IngestResult(
            document_id=document.id,
            total_pages=total_pages,
            total_chunks=len(chunks),
            mode=mode,
        )
        result.extra["document_created"] = created

        if mode == MODE_FULL_REBUILD:
            result.extra["chunks_deleted"] = self.store.delete_chunks(document.id)

        total_batches = (len(chunks) + self.batch_size - 1) // self.batch_size
        for batch_no, offset in enumerate(range(0, len(chunks), self.batch_size), start=1):
            batch = chunks[offset:offset + self.batch_size]
            try:
                inserted = self._ingest_batch(document.id, batch, mode)
            except ManualQAError as exc:
                logger.error(
                    "ingest_batch_failed",
                    document_id=document.id,
                    batch=batch_no,
                    error_kind=exc.kind,
                    error=str(exc),
                    chunks_created=result.chunks_created,
                )
                self._echo(f"[bold red]Batch {batch_no}/{total_batches} failed: {exc}[/bold red]")
                raise IngestionAbortedError(
                    f"ingestion aborted at batch {batch_no}/{total_batches}: {exc}",
                    progress=result,
                ) from exc

            result.chunks_created += inserted
            result.chunks_skipped += len(batch) - inserted
            result.batches_completed = batch_no
            logger.info(
                "ingest_batch_inserted",
                document_id=document.id,
                batch=batch_no,
                inserted=inserted,
                skipped=len(batch) - inserted,
            )
            self._echo(f"[dim]Batch {batch_no}/{total_batches}: +{inserted} chunks[/dim]")

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "ingest_completed",
            document_id=document.id,
            mode=mode,
            total_pages=total_pages,
            chunks_created=result.chunks_created,
            chunks_skipped=result.chunks_skipped,
            elapsed_ms=round(elapsed_ms, 1),
        )
        self._echo(
            f"[green]OK {result.chunks_created} created, {result.chunks_skipped} skipped "
            f"from {total_pages} pages.[/green]"
        )
        return result

    def _ingest_batch(self, document_id: str, batch: list[Chunk], mode: str) -> int:
        pending = batch
        if mode == MODE_INCREMENTAL:
            known = self.store.existing_hashes(document_id, [c.content_hash for c in batch])
            pending = [c for c in batch if c.content_hash not in known]
        if not pending:
            return 0
        vectors = self.embedder.embed([c.text for c in pending])
        return self.store.insert_chunks(document_id, pending, vectors)

    def ensure_index(self, source: DocumentSource | None = None) -> dict:
        """Seeds the index from the configured manual when it holds no chunks at all."""
        existing = self.store.count_chunks()
        if existing > 0:
            logger.info("index_already_seeded", chunks=existing)
            return {"seeded": False, "chunks": existing}
        source = source or DocumentSource.default()
        if not source.source_ref:
            raise ValueError("no manual source configured (set MANUAL_SOURCE)")
        result = self.ingest_incremental(source)
        return {"seeded": True, "chunks": result.chunks_created, "documentId": result.document_id}
