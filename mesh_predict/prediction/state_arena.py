"""
Per-peer state arena.

Holds one filter state object per peer id. The internal lock guards only the
dictionary structure; mutation of a peer's state is serialised by the
engine's per-peer lock.
"""

import logging
import threading
from typing import Callable, Dict, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class PeerStateArena(Generic[T]):
    """Dictionary of per-peer state with explicit ownership."""

    def __init__(self, name: str = 'state'):
        self.name = name
        self._lock = threading.Lock()
        self._states: Dict[str, T] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def __contains__(self, peer_id: str) -> bool:
        with self._lock:
            return peer_id in self._states

    def get(self, peer_id: str) -> Optional[T]:
        with self._lock:
            return self._states.get(peer_id)

    def get_or_create(self, peer_id: str, factory: Callable[[], T]) -> T:
        with self._lock:
            state = self._states.get(peer_id)
            if state is None:
                state = factory()
                self._states[peer_id] = state
            return state

    def put(self, peer_id: str, state: T):
        with self._lock:
            self._states[peer_id] = state

    def evict(self, peer_id: str) -> bool:
        """Drop a peer's state. Returns True if there was any."""
        with self._lock:
            existed = self._states.pop(peer_id, None) is not None
        if existed:
            logger.debug(f"Evicted {self.name} for peer {peer_id}")
        return existed

    def clear(self):
        with self._lock:
            self._states.clear()

    def peer_ids(self) -> List[str]:
        with self._lock:
            return list(self._states.keys())
