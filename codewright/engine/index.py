"""Incremental semantic index over the definitions in a workspace."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .embeddings import Embedder
from .filesystem import iter_source_files
from .grammar import Grammar
from .store import ChunkRecord, ScoredChunk, VectorStore

logger = logging.getLogger("codewright.index")


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SemanticChunk:
    id: str
    path: str
    kind: str
    name: str
    text: str
    start_line: int
    end_line: int
    hash: str


@dataclass
class IndexOutcome:
    path: str
    status: str  # unchanged | indexed | error | removed
    embedded: int = 0
    deleted: int = 0
    kept: int = 0
    error: str = ""


@dataclass
class IndexReport:
    files: int = 0
    unchanged: int = 0
    errors: list[str] = field(default_factory=list)
    embedded: int = 0
    deleted: int = 0

    def to_dict(self) -> dict:
        return {
            "files": self.files,
            "unchanged": self.unchanged,
            "errors": list(self.errors),
            "embedded": self.embedded,
            "deleted": self.deleted,
        }


class SemanticIndex:
    """Chunks definitions with the grammar, embeds only what changed.

    Two caches keep re-indexing cheap: the whole-file hash skips files that
    did not change at all, and per-chunk hashes skip definitions whose text
    is identical to what is already stored.
    """

    def __init__(self, root: Path, grammar: Grammar, embedder: Embedder, store: VectorStore) -> None:
        self.root = Path(root).resolve()
        self.grammar = grammar
        self.embedder = embedder
        self.store = store
        self._lock = asyncio.Lock()

    @property
    def file_hashes(self) -> dict[str, str]:
        return self.store.file_hashes

    def relative(self, path: str | Path) -> str:
        p = Path(path)
        if not p.is_absolute():
            p = self.root / p
        try:
            return p.resolve().relative_to(self.root).as_posix()
        except ValueError:
            return p.as_posix()

    async def index_workspace(self) -> IndexReport:
        """Reconcile the store with every source file on disk."""
        files = await asyncio.to_thread(
            lambda: list(iter_source_files(self.root, self.grammar.extensions))
        )
        report = IndexReport()
        on_disk = set()
        for file_path in files:
            outcome = await self.index_file(file_path, persist=False)
            on_disk.add(outcome.path)
            report.files += 1
            report.embedded += outcome.embedded
            report.deleted += outcome.deleted
            if outcome.status == "unchanged":
                report.unchanged += 1
            elif outcome.status == "error":
                report.errors.append(outcome.path)

        # Files indexed in an earlier session that are gone now
        for stale in sorted(set(self.file_hashes) - on_disk):
            outcome = await self.remove_file(stale, persist=False)
            report.deleted += outcome.deleted

        await asyncio.to_thread(self.store.save)
        logger.info(
            f"Index reconciled: {report.files} files, {report.unchanged} unchanged, "
            f"{report.embedded} chunks embedded, {report.deleted} deleted"
        )
        return report

    async def index_file(self, path: str | Path, persist: bool = True) -> IndexOutcome:
        rel = self.relative(path)
        file_path = self.root / rel
        try:
            source = await asyncio.to_thread(file_path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return await self.remove_file(rel, persist=persist)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Index: cannot read {rel}: {e}")
            return IndexOutcome(rel, "error", error=str(e))

        file_hash = sha256_text(source)
        async with self._lock:
            if self.file_hashes.get(rel) == file_hash:
                return IndexOutcome(rel, "unchanged", kept=len(self.store.records_for_path(rel)))

            try:
                chunks = self.chunk_source(rel, source)
            except (SyntaxError, ValueError) as e:
                # Leave the previous chunks in place until the file parses again
                logger.warning(f"Index: cannot parse {rel}, keeping previous chunks: {e}")
                return IndexOutcome(rel, "error", error=str(e))

            existing = {r.id: r for r in self.store.records_for_path(rel)}
            fresh = [c for c in chunks if c.id not in existing or existing[c.id].hash != c.hash]
            live_ids = {c.id for c in chunks}
            vanished = [chunk_id for chunk_id in existing if chunk_id not in live_ids]

            vectors = await self.embedder.embed([c.text for c in fresh]) if fresh else []
            self.store.upsert([
                ChunkRecord(
                    id=c.id, vector=vector, path=c.path, kind=c.kind, name=c.name,
                    text=c.text, start_line=c.start_line, end_line=c.end_line, hash=c.hash,
                )
                for c, vector in zip(fresh, vectors)
            ])
            self.store.delete(vanished)
            self.file_hashes[rel] = file_hash

        if persist:
            await asyncio.to_thread(self.store.save)
        logger.debug(f"Indexed {rel}: {len(fresh)} embedded, {len(vanished)} deleted")
        return IndexOutcome(
            rel, "indexed", embedded=len(fresh), deleted=len(vanished), kept=len(chunks) - len(fresh)
        )

    async def remove_file(self, path: str | Path, persist: bool = True) -> IndexOutcome:
        rel = self.relative(path)
        async with self._lock:
            ids = [r.id for r in self.store.records_for_path(rel)]
            self.store.delete(ids)
            self.file_hashes.pop(rel, None)
        if persist:
            await asyncio.to_thread(self.store.save)
        if ids:
            logger.debug(f"Removed {len(ids)} chunks for {rel}")
        return IndexOutcome(rel, "removed", deleted=len(ids))

    async def search(self, query: str, limit: int = 5) -> list[ScoredChunk]:
        if not query.strip() or len(self.store) == 0:
            return []
        vectors = await self.embedder.embed([query])
        return self.store.search(vectors[0], limit)

    def chunk_source(self, rel: str, source: str) -> list[SemanticChunk]:
        """Split ``source`` into definition chunks. Raises SyntaxError."""
        tree = self.grammar.parse(source, filename=rel)
        lines = source.split("\n")
        chunks: list[SemanticChunk] = []
        for definition in self.grammar.definitions(tree):
            text = "\n".join(lines[definition.start_line - 1:definition.end_line])
            chunks.append(SemanticChunk(
                id=f"{rel}:{definition.start_line}",
                path=rel,
                kind=definition.kind,
                name=definition.name,
                text=text,
                start_line=definition.start_line,
                end_line=definition.end_line,
                hash=sha256_text(text),
            ))

        if not chunks and source.strip():
            chunks.append(SemanticChunk(
                id=f"{rel}:1",
                path=rel,
                kind="other",
                name=Path(rel).stem,
                text=source,
                start_line=1,
                end_line=len(lines),
                hash=sha256_text(source),
            ))

        # `a = b = lambda: ...` yields two definitions with one id
        unique: dict[str, SemanticChunk] = {}
        for chunk in chunks:
            unique.setdefault(chunk.id, chunk)
        return list(unique.values())
