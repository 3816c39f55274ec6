"""
Bounded PCM buffers with canonical depth measurement.

Requirements:
- Depth measured in seconds of PCM16 audio (not chunk count)
- Explicit drop behavior with distinguishable reasons
- clear() discards everything without counting drops (barge-in)
- Deterministic, synchronous behavior
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

from spec import pcm_bytes_to_seconds


@dataclass
class DropCounters:
    """
    Drop counters for observability.
    """
    overflow: int = 0
    oversized: int = 0


class PcmBuffer:
    """
    Bounded FIFO of PCM16 chunks.

    Drop rules:
    - a single chunk longer than max_depth_s is dropped (OVERSIZED)
    - drop_oldest=True: evict oldest chunks until the new one fits
    - else: drop the NEW chunk if it would exceed max_depth_s (OVERFLOW)
    """

    def __init__(self, *, max_depth_s: float, drop_oldest: bool = False) -> None:
        if max_depth_s <= 0:
            raise ValueError("max_depth_s must be > 0")

        self._max_depth_s = max_depth_s
        self._drop_oldest = drop_oldest
        self._chunks: Deque[bytes] = deque()
        self._bytes = 0
        self.drops: DropCounters = DropCounters()

    # -------------------------
    # Core operations
    # -------------------------

    def enqueue(self, pcm: bytes) -> bool:
        """
        Returns:
            True if enqueued
            False if dropped
        """
        if not pcm:
            return True

        incoming_s = pcm_bytes_to_seconds(len(pcm))
        if incoming_s > self._max_depth_s:
            self.drops.oversized += 1
            return False

        if self._drop_oldest:
            while self._chunks and self.depth_seconds() + incoming_s > self._max_depth_s:
                evicted = self._chunks.popleft()
                self._bytes -= len(evicted)
                self.drops.overflow += 1
        elif self.depth_seconds() + incoming_s > self._max_depth_s:
            self.drops.overflow += 1
            return False

        self._chunks.append(pcm)
        self._bytes += len(pcm)
        return True

    def dequeue(self) -> Optional[bytes]:
        if not self._chunks:
            return None
        chunk = self._chunks.popleft()
        self._bytes -= len(chunk)
        return chunk

    def clear(self) -> None:
        """
        Drop all queued chunks without counting them as drops.

        Used on barge-in and disconnect.
        """
        self._chunks.clear()
        self._bytes = 0

    # -------------------------
    # Introspection helpers
    # -------------------------

    def __len__(self) -> int:
        return len(self._chunks)

    def is_empty(self) -> bool:
        return not self._chunks

    def depth_seconds(self) -> float:
        return pcm_bytes_to_seconds(self._bytes)

    def total_drops(self) -> int:
        return self.drops.overflow + self.drops.oversized

    def snapshot(self) -> dict[str, float | int]:
        """
        Lightweight snapshot for logging.
        """
        return {
            "chunks": len(self._chunks),
            "depth_s": self.depth_seconds(),
            "dropped_overflow": self.drops.overflow,
            "dropped_oversized": self.drops.oversized,
            "dropped_total": self.total_drops(),
        }
