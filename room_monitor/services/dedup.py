from __future__ import annotations
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class DedupWindow:
    signature: bytes
    observed_at: float  # monotonic seconds


class DedupCache:
    """One-slot memory of the last raw telemetry payload.

    Suppresses a redelivery of the same bytes arriving within ``window_s``
    of the remembered one. Best effort only; storage uniqueness is the
    real backstop.
    """

    def __init__(self, window_s: float = 1.5) -> None:
        self._window_s = window_s
        self._last: Optional[DedupWindow] = None

    @property
    def last(self) -> Optional[DedupWindow]:
        return self._last

    def should_suppress(self, signature: bytes, now: float) -> bool:
        last = self._last
        if last is not None and last.signature == signature and (now - last.observed_at) < self._window_s:
            return True
        # remember before any downstream await so a back-to-back redelivery is caught
        self._last = DedupWindow(signature=signature, observed_at=now)
        return False
