"""
Location History Store.

Append-only, per-peer ordered sequence of samples. Out-of-order samples are
rejected, not reordered. Peers with no recent sample are evicted by prune();
eviction listeners let predictors drop the matching per-peer state.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from mesh_predict.errors import StaleSampleError
from mesh_predict.metrics import get_metrics
from mesh_predict.proto.location_sample import LocationSample
from mesh_predict.proto.peer_history import DEFAULT_MAX_ENTRIES, HistoryWindow, PeerLocationHistory

logger = logging.getLogger(__name__)

EvictionListener = Callable[[str], None]


def wall_clock_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


@dataclass
class HistoryStoreConfig:
    """
    Configuration for the history store.

    Attributes:
        max_entries_per_peer: Samples retained per peer (oldest dropped first)
        max_history_age_minutes: Default age bound for prune()
    """

    max_entries_per_peer: int = DEFAULT_MAX_ENTRIES
    max_history_age_minutes: float = 30.0


class LocationHistoryStore:
    """
    Thread-safe store of per-peer location histories.

    Usage:
        store = LocationHistoryStore()
        store.record("peer-1", sample)          # may raise StaleSampleError
        window = store.history_for("peer-1", 30)
        evicted = store.prune(30)
    """

    def __init__(self, config: Optional[HistoryStoreConfig] = None,
                 clock: Callable[[], int] = wall_clock_ms):
        self.config = config or HistoryStoreConfig()
        self.clock = clock
        self.metrics = get_metrics()

        self._lock = threading.Lock()
        self._histories: Dict[str, PeerLocationHistory] = {}
        self._listeners: List[EvictionListener] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._histories)

    def __contains__(self, peer_id: str) -> bool:
        with self._lock:
            return peer_id in self._histories

    def add_eviction_listener(self, listener: EvictionListener):
        """Register a callback invoked with the peer id of every evicted peer."""
        self._listeners.append(listener)

    def record(self, peer_id: str, sample: LocationSample) -> PeerLocationHistory:
        """
        Append a sample to a peer's history.

        Args:
            peer_id: Peer identifier
            sample: New sample (timestamp must be >= newest recorded)

        Returns:
            The updated history

        Raises:
            StaleSampleError: sample older than newest recorded; history unchanged
        """
        with self._lock:
            history = self._histories.get(peer_id)
            if history is None:
                history = PeerLocationHistory(peer_id=peer_id, max_entries=self.config.max_entries_per_peer)
            updated = history.append(sample)
            self._histories[peer_id] = updated

        self.metrics.increment('samples_recorded')
        return updated

    def get(self, peer_id: str) -> Optional[PeerLocationHistory]:
        """Current history for a peer, or None if unknown."""
        with self._lock:
            return self._histories.get(peer_id)

    def history_for(self, peer_id: str, max_age_minutes: Optional[float] = None,
                    now_ms: Optional[int] = None) -> HistoryWindow:
        """
        Lazy view of a peer's samples within the age bound.

        Unknown peers yield an empty window.
        """
        if max_age_minutes is None:
            max_age_minutes = self.config.max_history_age_minutes
        if now_ms is None:
            now_ms = self.clock()

        history = self.get(peer_id)
        if history is None:
            return HistoryWindow((), 0, peer_id)
        return history.window(max_age_minutes, now_ms)

    def peer_ids(self) -> List[str]:
        with self._lock:
            return list(self._histories.keys())

    def prune(self, max_history_age_minutes: Optional[float] = None,
              now_ms: Optional[int] = None) -> List[str]:
        """
        Evict peers with no sample inside the age bound and trim expired samples.

        Returns:
            Peer ids that were evicted
        """
        if max_history_age_minutes is None:
            max_history_age_minutes = self.config.max_history_age_minutes
        if now_ms is None:
            now_ms = self.clock()
        cutoff = now_ms - int(max_history_age_minutes * 60_000)

        evicted = []
        with self._lock:
            for peer_id, history in list(self._histories.items()):
                latest = history.latest
                if latest is None or latest.timestamp < cutoff:
                    del self._histories[peer_id]
                    evicted.append(peer_id)
                else:
                    self._histories[peer_id] = history.without_entries_before(cutoff)

        for peer_id in evicted:
            logger.info(f"Evicted peer {peer_id}: no sample within {max_history_age_minutes} min")
            self._notify_evicted(peer_id)

        return evicted

    def forget(self, peer_id: str) -> bool:
        """Remove a peer's history. Returns True if the peer was known."""
        with self._lock:
            existed = self._histories.pop(peer_id, None) is not None

        if existed:
            logger.info(f"Forgot peer {peer_id}")
            self._notify_evicted(peer_id)
        return existed

    def _notify_evicted(self, peer_id: str):
        for listener in list(self._listeners):
            try:
                listener(peer_id)
            except Exception as e:
                logger.error(f"Eviction listener failed for peer {peer_id}: {e}")


__all__ = ['HistoryStoreConfig', 'LocationHistoryStore', 'StaleSampleError', 'wall_clock_ms']
