"""
History Module: per-peer location history store.
"""

from .history_store import (
    HistoryStoreConfig,
    LocationHistoryStore,
    wall_clock_ms,
)

__all__ = [
    'HistoryStoreConfig',
    'LocationHistoryStore',
    'wall_clock_ms',
]
