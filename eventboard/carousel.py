"""Banner carousel index."""

from __future__ import annotations

import threading
from typing import Sequence, TypeVar

T = TypeVar("T")


class Carousel:
    """Index into the banner list, advanced by a periodic tick.

    The index stays put while there are fewer than two banners and snaps back
    to zero whenever the banner count changes.
    """

    def __init__(self, interval_seconds: int = 5):
        if interval_seconds <= 0:
            raise ValueError("Carousel interval must be positive")
        self.interval_seconds = interval_seconds
        self._index = 0
        self._count = 0
        self._lock = threading.Lock()

    @property
    def index(self) -> int:
        return self._index

    @property
    def count(self) -> int:
        return self._count

    def update_count(self, count: int) -> None:
        with self._lock:
            if count != self._count:
                self._count = max(count, 0)
                self._index = 0

    def on_banners(self, banners: Sequence[object]) -> None:
        self.update_count(len(banners))

    def tick(self) -> int:
        with self._lock:
            if self._count > 1:
                self._index = (self._index + 1) % self._count
            return self._index

    def current(self, banners: Sequence[T]) -> T | None:
        if not banners:
            return None
        index = self._index
        return banners[index] if index < len(banners) else banners[0]
