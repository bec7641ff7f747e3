"""
Per-peer location history.

PeerLocationHistory is immutable: append() returns a new history, so a
reader holding a history (or a HistoryWindow over it) never sees it change
underneath. Entries are chronological, newest last, bounded by max_entries.
"""

from dataclasses import dataclass, replace
from typing import Iterator, List, Optional, Sequence, Tuple, Union, overload

from mesh_predict.errors import StaleSampleError
from mesh_predict.proto.location_sample import LocationSample

DEFAULT_MAX_ENTRIES = 100


def _first_index_at_or_after(entries: Sequence[LocationSample], cutoff_ms: int) -> int:
    """Binary search for the first entry with timestamp >= cutoff_ms."""
    lo, hi = 0, len(entries)
    while lo < hi:
        mid = (lo + hi) // 2
        if entries[mid].timestamp < cutoff_ms:
            lo = mid + 1
        else:
            hi = mid
    return lo


class HistoryWindow(Sequence[LocationSample]):
    """
    Read-only view of the suffix of a history within an age bound.

    The start index is found by bisection; samples are not copied.
    """

    def __init__(self, entries: Tuple[LocationSample, ...], start: int = 0, peer_id: str = ''):
        self._entries = entries
        self._start = max(0, min(start, len(entries)))
        self.peer_id = peer_id

    @overload
    def __getitem__(self, index: int) -> LocationSample: ...

    @overload
    def __getitem__(self, index: slice) -> List[LocationSample]: ...

    def __getitem__(self, index: Union[int, slice]):
        if isinstance(index, slice):
            return list(self._entries[self._start:][index])
        n = len(self)
        if index < 0:
            index += n
        if not 0 <= index < n:
            raise IndexError('HistoryWindow index out of range')
        return self._entries[self._start + index]

    def __len__(self) -> int:
        return len(self._entries) - self._start

    def __iter__(self) -> Iterator[LocationSample]:
        for i in range(self._start, len(self._entries)):
            yield self._entries[i]

    def __repr__(self) -> str:
        return f"HistoryWindow(peer_id={self.peer_id!r}, len={len(self)})"

    @property
    def latest(self) -> Optional[LocationSample]:
        return self._entries[-1] if len(self) else None

    @property
    def earliest(self) -> Optional[LocationSample]:
        return self._entries[self._start] if len(self) else None

    @property
    def span_s(self) -> float:
        """Seconds between earliest and latest sample."""
        if len(self) < 2:
            return 0.0
        return (self.latest.timestamp - self.earliest.timestamp) / 1000.0


@dataclass(frozen=True)
class PeerLocationHistory:
    """
    Chronological sample history for one peer.

    Attributes:
        peer_id: Peer identifier
        entries: Samples, oldest first
        max_entries: Bound on retained samples (oldest dropped first)
    """

    peer_id: str
    entries: Tuple[LocationSample, ...] = ()
    max_entries: int = DEFAULT_MAX_ENTRIES

    def __post_init__(self):
        if self.max_entries < 1:
            raise ValueError(f"max_entries must be positive: {self.max_entries}")

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def latest(self) -> Optional[LocationSample]:
        return self.entries[-1] if self.entries else None

    def append(self, sample: LocationSample) -> 'PeerLocationHistory':
        """
        Return a new history with sample appended.

        Raises:
            StaleSampleError: sample is older than the newest entry
        """
        last = self.latest
        if last is not None and sample.timestamp < last.timestamp:
            raise StaleSampleError(self.peer_id, sample.timestamp, last.timestamp)

        entries = self.entries + (sample,)
        if len(entries) > self.max_entries:
            entries = entries[-self.max_entries:]
        return replace(self, entries=entries)

    def window(self, max_age_minutes: float, now_ms: int) -> HistoryWindow:
        """Lazy view of samples no older than max_age_minutes before now_ms."""
        cutoff = now_ms - int(max_age_minutes * 60_000)
        return HistoryWindow(self.entries, _first_index_at_or_after(self.entries, cutoff), self.peer_id)

    def all(self) -> HistoryWindow:
        """View over every retained sample."""
        return HistoryWindow(self.entries, 0, self.peer_id)

    def without_entries_before(self, cutoff_ms: int) -> 'PeerLocationHistory':
        """Return a new history holding only samples at or after cutoff_ms."""
        start = _first_index_at_or_after(self.entries, cutoff_ms)
        if start == 0:
            return self
        return replace(self, entries=self.entries[start:])

    def is_chronological(self) -> bool:
        return all(a.timestamp <= b.timestamp for a, b in zip(self.entries, self.entries[1:]))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'peer_id': self.peer_id,
            'entries': [e.to_dict() for e in self.entries],
            'max_entries': self.max_entries,
        }

    @classmethod
    def from_samples(cls, peer_id: str, samples: Sequence[LocationSample],
                     max_entries: int = DEFAULT_MAX_ENTRIES) -> 'PeerLocationHistory':
        """Build a history by appending samples in order (raises StaleSampleError)."""
        history = cls(peer_id=peer_id, max_entries=max_entries)
        for sample in samples:
            history = history.append(sample)
        return history
