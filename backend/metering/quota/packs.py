"""Oldest-first selection over a user's prepaid call packs."""

from collections import deque
from typing import Iterable

from metering.quota.models import ApiCallPack


class CallPackQueue:
    """FIFO queue of non-exhausted packs ordered by purchase time.

    Ties on ``purchased_at`` fall back to the pack id so the order is total.
    The queue mutates the ``calls_remaining`` of the pack objects it was built
    from; persisting them is the caller's job.
    """

    def __init__(self, packs: Iterable[ApiCallPack]):
        ordered = sorted(packs, key=lambda p: (p.purchased_at, p.id))
        self._queue = deque(p for p in ordered if p.calls_remaining > 0)

    def __len__(self) -> int:
        return len(self._queue)

    def head(self) -> ApiCallPack | None:
        return self._queue[0] if self._queue else None

    def remaining(self) -> int:
        return sum(p.calls_remaining for p in self._queue)

    def draw(self, calls: int = 1) -> ApiCallPack | None:
        """Take ``calls`` from the oldest pack; returns it, or None when empty.

        A single draw never spans two packs.
        """
        pack = self.head()
        if pack is None:
            return None
        taken = min(calls, pack.calls_remaining)
        pack.calls_remaining -= taken
        if pack.calls_remaining <= 0:
            self._queue.popleft()
        return pack
