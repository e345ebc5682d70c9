"""Persisted chunk records with nearest-neighbour search."""

from __future__ import annotations

import hashlib
import json
import logging
import tempfile
import threading
from dataclasses import asdict, dataclass
from pathlib import Path

import numpy as np

from .config import get_app_dir

logger = logging.getLogger("codewright.store")

STORE_FILENAME = "chunks.json"


@dataclass
class ChunkRecord:
    id: str
    vector: list[float]
    path: str
    kind: str
    name: str
    text: str
    start_line: int
    end_line: int
    hash: str


@dataclass
class ScoredChunk:
    path: str
    kind: str
    name: str
    text: str
    start_line: int
    end_line: int
    score: float

    def to_dict(self) -> dict:
        return asdict(self)


def store_dir_for(root: Path) -> Path:
    """~/.codewright/index/<name>-<hash of absolute path> for one workspace."""
    root = Path(root).resolve()
    digest = hashlib.sha256(str(root).encode("utf-8")).hexdigest()[:12]
    return get_app_dir() / "index" / f"{root.name or 'root'}-{digest}"


class VectorStore:
    """Chunk records keyed by id, persisted as one JSON document."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path) if path else None
        self.records: dict[str, ChunkRecord] = {}
        self.file_hashes: dict[str, str] = {}
        self._lock = threading.RLock()

    def load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load vector store {self.path}: {e}. Starting empty.")
            return
        with self._lock:
            self.records = {r["id"]: ChunkRecord(**r) for r in data.get("records", [])}
            self.file_hashes = dict(data.get("file_hashes", {}))
        logger.info(f"Loaded {len(self.records)} chunks from {self.path}")

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Saves are serialized; the temp name is unique per call
        with self._lock:
            data = {
                "records": [asdict(r) for r in self.records.values()],
                "file_hashes": dict(self.file_hashes),
            }
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=self.path.parent, prefix=".chunks-", suffix=".tmp", delete=False
            ) as f:
                tmp = Path(f.name)
                json.dump(data, f)
            try:
                tmp.replace(self.path)
            except OSError:
                tmp.unlink(missing_ok=True)
                raise

    def records_for_path(self, path: str) -> list[ChunkRecord]:
        with self._lock:
            return [r for r in self.records.values() if r.path == path]

    def upsert(self, records: list[ChunkRecord]) -> None:
        with self._lock:
            for record in records:
                self.records.pop(record.id, None)
                self.records[record.id] = record

    def delete(self, ids: list[str]) -> None:
        with self._lock:
            for chunk_id in ids:
                self.records.pop(chunk_id, None)

    def __len__(self) -> int:
        return len(self.records)

    def search(self, vector: list[float], limit: int = 5) -> list[ScoredChunk]:
        """Top ``limit`` records by cosine similarity to ``vector``."""
        with self._lock:
            candidates = [r for r in self.records.values() if len(r.vector) == len(vector)]
        if not candidates or limit <= 0:
            return []

        query = np.asarray(vector, dtype=np.float32)
        matrix = np.asarray([r.vector for r in candidates], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        scores = np.divide(matrix @ query, norms, out=np.zeros(len(candidates), dtype=np.float32), where=norms > 0)

        order = np.argsort(-scores)[:limit]
        return [
            ScoredChunk(
                path=candidates[i].path,
                kind=candidates[i].kind,
                name=candidates[i].name,
                text=candidates[i].text,
                start_line=candidates[i].start_line,
                end_line=candidates[i].end_line,
                score=float(scores[i]),
            )
            for i in order
        ]
