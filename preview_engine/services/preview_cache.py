"""
Preview Cache
Bounded in-memory store of generated previews keyed by (style, orientation).
"""
import logging
from typing import Dict, List, Optional

from preview_engine.config import settings
from preview_engine.models import CacheDiagnostics, Orientation, StylePreviewCacheEntry

logger = logging.getLogger(__name__)


def cache_key(style_id: str, orientation: Orientation) -> str:
    return f"{style_id}:{orientation.value}"


class PreviewCacheStore:
    """
    LRU-on-write cache of style previews.

    Entries are ordered by insertion; re-inserting a key makes it the most
    recent. Reads never reorder entries, so a preview that is only looked up
    still ages out once enough newer previews have been written.

    Lookups and evictions are counted for diagnostics. The counters only go up
    and are reset by ``clear()``.
    """

    def __init__(self, limit: Optional[int] = None):
        self.limit = limit if limit is not None else settings.PREVIEW_CACHE_LIMIT
        if self.limit < 1:
            raise ValueError("Preview cache limit must be at least 1")

        self._entries: Dict[str, Dict[Orientation, StylePreviewCacheEntry]] = {}
        self._order: List[str] = []
        self._metrics = CacheDiagnostics()

    def get(self, style_id: str, orientation: Orientation) -> Optional[StylePreviewCacheEntry]:
        entry = self._entries.get(style_id, {}).get(orientation)
        if entry:
            self._metrics.hits += 1
        else:
            self._metrics.misses += 1

        if (self._metrics.hits + self._metrics.misses) % 10 == 0:
            self._log_metrics()
        return entry

    def has(self, style_id: str, orientation: Orientation) -> bool:
        return orientation in self._entries.get(style_id, {})

    def put(self, style_id: str, entry: StylePreviewCacheEntry) -> None:
        key = cache_key(style_id, entry.orientation)
        if key in self._order:
            self._order.remove(key)
        self._order.append(key)
        self._entries.setdefault(style_id, {})[entry.orientation] = entry

        while len(self._order) > self.limit:
            self._evict(self._order.pop(0))

    def _evict(self, key: str) -> None:
        old_style_id, _, raw_orientation = key.rpartition(":")
        orientation = Orientation(raw_orientation)
        style_entries = self._entries.get(old_style_id)
        if not style_entries or orientation not in style_entries:
            return

        del style_entries[orientation]
        if not style_entries:
            del self._entries[old_style_id]
        self._metrics.evictions += 1
        logger.debug(f"Evicted preview {key} (limit {self.limit})")
        self._log_metrics()

    def delete_entries_for_style(self, style_id: str) -> None:
        if style_id not in self._entries:
            return
        del self._entries[style_id]
        prefix = f"{style_id}:"
        self._order = [key for key in self._order if not key.startswith(prefix)]

    def clear(self) -> None:
        self._entries = {}
        self._order = []
        self._metrics = CacheDiagnostics()
        logger.info("Preview cache cleared")

    def diagnostics(self) -> CacheDiagnostics:
        return CacheDiagnostics(
            hits=self._metrics.hits,
            misses=self._metrics.misses,
            evictions=self._metrics.evictions,
        )

    def keys(self) -> List[str]:
        """Cache keys from least to most recently written"""
        return list(self._order)

    def __len__(self) -> int:
        return len(self._order)

    def _log_metrics(self) -> None:
        m = self._metrics
        logger.debug(
            f"[PreviewCache] hits={m.hits} misses={m.misses} "
            f"evictions={m.evictions} hitRate={m.hit_rate}%"
        )
