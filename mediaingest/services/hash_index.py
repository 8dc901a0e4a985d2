"""
Hash index - records of content hash -> stored object.

InMemoryHashIndex is sufficient for correctness inside one process.
JsonHashIndex persists the same records to a local JSON file so dedup
survives restarts.
"""
import json
import logging
import time
from pathlib import Path
from typing import Dict, Optional

from ..models import DedupRecord
from ..protocols import IHashIndex

logger = logging.getLogger(__name__)

# Default index location
DEFAULT_INDEX_DIR = Path.home() / ".cache" / "mediaingest"
DEFAULT_INDEX_FILE = "hashes.json"


class InMemoryHashIndex(IHashIndex):
    """Dict-backed index. Callers serialize access (see DeduplicationEngine)."""

    def __init__(self):
        self._records: Dict[str, DedupRecord] = {}

    async def get(self, content_hash: str) -> Optional[DedupRecord]:
        return self._records.get(content_hash)

    async def put(self, record: DedupRecord) -> None:
        self._records[record.content_hash] = record

    async def delete(self, content_hash: str) -> None:
        self._records.pop(content_hash, None)

    def __len__(self) -> int:
        return len(self._records)


class JsonHashIndex(InMemoryHashIndex):
    """
    Index persisted to a JSON file.

    Writes are buffered: ``put``/``delete`` mark the index dirty and
    ``save`` flushes it.
    """

    def __init__(self, index_dir: Optional[Path] = None, index_file: str = DEFAULT_INDEX_FILE):
        """
        Initialize hash index.

        Args:
            index_dir: Directory to store index file (default: ~/.cache/mediaingest)
            index_file: Name of index file (default: hashes.json)
        """
        super().__init__()
        self._index_dir = Path(index_dir) if index_dir else DEFAULT_INDEX_DIR
        self._index_file = self._index_dir / index_file
        self._dirty = False

    @property
    def path(self) -> Path:
        return self._index_file

    async def load(self) -> None:
        """Load index from disk."""
        try:
            if self._index_file.exists():
                with open(self._index_file, "r", encoding="utf-8") as f:
                    raw = json.load(f)
                self._records = {h: DedupRecord.from_dict(entry) for h, entry in raw.items()}
                logger.info("HashIndex: Loaded %d entries from %s", len(self._records), self._index_file)
            else:
                logger.debug("HashIndex: No index file found at %s, starting fresh", self._index_file)
                self._records = {}
        except json.JSONDecodeError as e:
            logger.warning("HashIndex: Failed to parse index file: %s - starting fresh", e)
            self._records = {}
        except (OSError, KeyError, TypeError) as e:
            logger.warning("HashIndex: Failed to load index: %s - starting fresh", e)
            self._records = {}

    async def save(self) -> None:
        """Save index to disk if dirty."""
        if not self._dirty:
            return

        self._index_dir.mkdir(parents=True, exist_ok=True)
        tmp_file = self._index_file.with_suffix(".tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump({h: r.to_dict() for h, r in self._records.items()}, f, indent=2)
        tmp_file.replace(self._index_file)

        self._dirty = False
        logger.info("HashIndex: Saved %d entries to %s", len(self._records), self._index_file)

    async def put(self, record: DedupRecord) -> None:
        await super().put(record)
        self._dirty = True
        logger.debug("HashIndex: Stored - %s... -> %s", record.content_hash[:16], record.storage_key)

    async def delete(self, content_hash: str) -> None:
        if content_hash in self._records:
            await super().delete(content_hash)
            self._dirty = True
            logger.debug("HashIndex: Removed - %s...", content_hash[:16])

    async def clear(self) -> None:
        """Clear all index entries."""
        self._records = {}
        self._dirty = True
        logger.info("HashIndex: Cleared all entries")

    def stats(self) -> Dict[str, int]:
        """Get index statistics."""
        return {
            "entries": len(self._records),
            "dirty": self._dirty,
        }

    async def cleanup_stale(self, max_age_days: int = 30) -> int:
        """
        Remove entries older than ``max_age_days`` that no caller owns any more.

        Returns:
            Number of entries removed
        """
        cutoff = time.time() - (max_age_days * 24 * 60 * 60)
        stale = [
            h for h, r in self._records.items()
            if not r.owners and r.created_at < cutoff
        ]
        for h in stale:
            del self._records[h]

        if stale:
            self._dirty = True
            logger.info("HashIndex: Cleaned up %d stale entries", len(stale))

        return len(stale)
