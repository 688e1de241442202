#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
pulse.py

Minimum-width boolean pulses for signals the console polls.

The console samples robot_data at its own rate, so a flag that is only true
for one 5 ms tick can be missed. A Pulse stays high for at least `width_s`,
measured on a monotonic clock, no matter how often it is polled.
"""

import enum
import time
from typing import Callable, Optional


class Pulse:
    def __init__(self, width_s: float = 0.02, clock: Callable[[], float] = time.monotonic):
        self.width_s = float(width_s)
        self._clock = clock
        self._raised_at: Optional[float] = None

    def trigger(self) -> None:
        """(Re)start the pulse. Re-triggering while high extends it."""
        self._raised_at = self._clock()

    def clear(self) -> None:
        self._raised_at = None

    @property
    def high(self) -> bool:
        if self._raised_at is None:
            return False
        if (self._clock() - self._raised_at) >= self.width_s:
            self._raised_at = None
            return False
        return True


class ScanState(enum.Enum):
    IDLE = "idle"
    BUSY = "busy"


class ScanGate:
    """
    Scan trigger handshake with the console.

    trigger(mirror) raises the scan_trigger pulse and goes BUSY, remembering the
    console's current scan_trigger mirror. The gate returns to IDLE when that
    mirror changes (the console toggles it when the scan is done).
    A step gated on the scan is complete only once the gate is IDLE *and* the
    pulse has ended, so every scan produces an observable rising edge.
    """

    def __init__(self, width_s: float = 0.02, clock: Callable[[], float] = time.monotonic):
        self.pulse = Pulse(width_s, clock)
        self.state = ScanState.IDLE
        self._stored_mirror = False

    @property
    def trigger_high(self) -> bool:
        return self.pulse.high

    def trigger(self, mirror: bool) -> None:
        self.pulse.trigger()
        self.state = ScanState.BUSY
        self._stored_mirror = bool(mirror)

    def observe(self, mirror: bool) -> None:
        """Feed the console's scan_trigger mirror once per tick."""
        if bool(mirror) != self._stored_mirror:
            self.state = ScanState.IDLE
            self._stored_mirror = bool(mirror)

    def reset(self, mirror: Optional[bool] = None) -> None:
        """Force IDLE (cancel, idle branch)."""
        self.state = ScanState.IDLE
        if mirror is not None:
            self._stored_mirror = bool(mirror)

    @property
    def done(self) -> bool:
        return self.state is ScanState.IDLE and not self.pulse.high
