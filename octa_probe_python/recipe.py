#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
recipe.py

The scripted full-scan program and the cursor that walks it.

A Step says *what* to do (action kind), in *which* imaging mode, and with one
numeric argument (the yaw increment in degrees for MOVE_Z_ANGLE steps).

The RecipePlayer only ever reads program[cursor]. The cursor is advanced by
the arbiter when the result of the goal it dispatched for the current step
comes back SUCCEEDED, or when the scan gate of a SCAN step returns to IDLE.
Those two paths both run inside the arbiter tick, so the cursor has exactly
one writer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from .types import Mode, UserAction


@dataclass(frozen=True)
class Step:
    action: UserAction
    mode: Mode
    argument: float = 0.0

    def describe(self) -> str:
        return f"{self.action.label} Action, {self.mode.label}"


def _sweep(step_deg: float = 10.0, stops: int = 6) -> Tuple[Step, ...]:
    """Rotate, then take an OCT and an OCE volume, `stops` times."""
    out = []
    for _ in range(stops):
        out.append(Step(UserAction.MOVE_Z_ANGLE, Mode.OCT, +step_deg))
        out.append(Step(UserAction.SCAN, Mode.OCT))
        out.append(Step(UserAction.SCAN, Mode.OCE))
    return tuple(out)


_OCTA = Step(UserAction.SCAN, Mode.OCTA)

# Focus, then three 60 degree sweeps with an OCTA volume before, between and after.
FULL_SCAN_RECIPE: Tuple[Step, ...] = (
    (Step(UserAction.FOCUS, Mode.ROBOT), _OCTA)
    + _sweep()
    + (_OCTA,)
    + _sweep()
    + (_OCTA,)
    + _sweep()
    + (_OCTA,)
)


class RecipePlayer:
    def __init__(self, program: Sequence[Step] = FULL_SCAN_RECIPE):
        if not program:
            raise ValueError("recipe program must contain at least one step")
        self.program: Tuple[Step, ...] = tuple(program)
        self.cursor = 0
        self.active = False

    def __len__(self) -> int:
        return len(self.program)

    def start(self) -> None:
        self.cursor = 0
        self.active = True

    def stop(self) -> None:
        """Cancel, failure, or normal completion: back to step 0, inactive."""
        self.cursor = 0
        self.active = False

    def current(self) -> Optional[Step]:
        """
        The step to run now, or None when the program has completed (in which
        case the player resets itself and goes inactive).
        """
        if not self.active:
            return None
        if self.cursor >= len(self.program):
            self.stop()
            return None
        return self.program[self.cursor]

    def advance(self) -> bool:
        """Move to the next step. Returns True when that completed the program."""
        if not self.active:
            return False
        self.cursor += 1
        if self.cursor >= len(self.program):
            self.stop()
            return True
        return False

    def progress(self) -> str:
        return f"Step [{self.cursor + 1}/{len(self.program)}]"
