#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
frames.py

Latest-frame store between the image subscription and the focus task.

- offer() keeps at most one frame per gating interval and bumps a sequence
  number, waking every waiter.
- wait_newer() blocks until a frame newer than the last one consumed shows up,
  with a bound and an optional abort predicate polled while waiting.
"""

import threading
import time
from typing import Callable, Optional

import numpy as np


class FrameBuffer:
    def __init__(self, gating_interval_s: float = 0.05, clock: Callable[[], float] = time.monotonic):
        self.gating_interval_s = float(gating_interval_s)
        self._clock = clock
        self._cond = threading.Condition()
        self._frame: Optional[np.ndarray] = None
        self._seq = 0
        self._last_read_seq = 0
        self._last_store: Optional[float] = None

    @property
    def seq(self) -> int:
        with self._cond:
            return self._seq

    def offer(self, frame: np.ndarray) -> bool:
        """Store `frame` unless the previous store is younger than the gating interval."""
        now = self._clock()
        with self._cond:
            if self._last_store is not None and (now - self._last_store) < self.gating_interval_s:
                return False
            self._frame = frame
            self._seq += 1
            self._last_store = now
            self._cond.notify_all()
        return True

    def wait_newer(
        self,
        timeout_s: float,
        abort: Optional[Callable[[], bool]] = None,
        poll_s: float = 0.05,
    ) -> Optional[np.ndarray]:
        """
        Return a copy of the first frame newer than the last one consumed, or
        None on timeout or when `abort()` turns true.
        """
        deadline = time.monotonic() + max(0.0, timeout_s)
        with self._cond:
            while self._seq <= self._last_read_seq or self._frame is None:
                remaining = deadline - time.monotonic()
                if remaining <= 0.0:
                    return None
                if abort is not None and abort():
                    return None
                self._cond.wait(min(poll_s, remaining))
            self._last_read_seq = self._seq
            return np.array(self._frame, copy=True)
