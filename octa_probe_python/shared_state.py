#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
shared_state.py

The mirrored console state: one CommandSnapshot coming in on labview_data,
one StatusSnapshot going out on robot_data, and the lock that serializes every
read and write of both halves.

Wire format (std_msgs/String JSON) keeps the console's field names, including
the four one-hot mode booleans. Inside the package the mode is a single Mode.
"""

from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Optional, Tuple

from .types import Mode

_MODE_KEYS = (
    (Mode.ROBOT, "robot_mode"),
    (Mode.OCT, "oct_mode"),
    (Mode.OCTA, "octa_mode"),
    (Mode.OCE, "oce_mode"),
)


def _safe_json_dict(s: Optional[str]) -> Dict[str, Any]:
    """Parse JSON and always return a dict (empty on error)."""
    try:
        data = json.loads(s or "{}")
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _coerce(value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    return type(default)(value)


@dataclass(frozen=True)
class CommandSnapshot:
    """Operator / automation commands (subscribed half)."""
    robot_vel: float = 0.5
    robot_acc: float = 0.5
    z_tolerance: float = 0.0
    angle_tolerance: float = 0.0
    radius: float = 0.0
    angle_limit: float = 0.0
    num_pt: int = 1
    dz: float = 0.0
    drot: float = 0.0
    autofocus: bool = False
    freedrive: bool = False
    previous: bool = False
    next: bool = False
    home: bool = False
    reset: bool = False
    scan_trigger: bool = False
    scan_3d: bool = False
    z_height: float = 0.0
    full_scan: bool = False
    robot_mode: bool = True
    oct_mode: bool = False
    octa_mode: bool = False
    oce_mode: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandSnapshot":
        """
        Build a snapshot from console JSON. Unknown keys are ignored; missing or
        malformed values keep their defaults.
        """
        values = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            try:
                values[f.name] = _coerce(data[f.name], f.default)
            except (TypeError, ValueError):
                continue
        return cls(**values)

    @classmethod
    def from_json(cls, text: Optional[str]) -> "CommandSnapshot":
        return cls.from_dict(_safe_json_dict(text))

    @property
    def mode(self) -> Mode:
        for mode, key in _MODE_KEYS:
            if getattr(self, key):
                return mode
        return Mode.ROBOT

    def describe(self) -> str:
        return ", ".join(f"{k}: {v}" for k, v in asdict(self).items())


@dataclass(frozen=True)
class StatusSnapshot:
    """Published half, mirrored to the console every publish period."""
    msg: str = "idle"
    angle: float = 0.0
    circle_state: int = 1
    scan_trigger: bool = False
    apply_config: bool = False
    end_state: bool = False
    scan_3d: bool = False
    full_scan: bool = False
    mode: Mode = Mode.ROBOT

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d.pop("mode")
        for mode, key in _MODE_KEYS:
            d[key] = self.mode is mode
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def describe(self) -> str:
        d = self.to_dict()
        d.pop("msg")
        return ", ".join(f"{k}: {v}" for k, v in d.items())


class SharedControlState:
    """
    Single source of truth shared by the sync callbacks, the arbiter tick and the
    service handlers. All access goes through `lock`.
    """

    def __init__(self, command: Optional[CommandSnapshot] = None):
        self.lock = threading.RLock()
        self.command = command or CommandSnapshot()
        self.status = StatusSnapshot()
        self.cancel_requested = False
        self._last_published: Optional[StatusSnapshot] = None

    def apply_command(self, command: CommandSnapshot) -> bool:
        """Store the latest console snapshot. Returns True when it changed."""
        with self.lock:
            changed = command != self.command
            self.command = command
            return changed

    def request_cancel(self, flag: bool = True) -> None:
        with self.lock:
            self.cancel_requested = bool(flag)
            if flag:
                self.command = replace(self.command, autofocus=False)

    def update_status(self, **changes) -> StatusSnapshot:
        with self.lock:
            self.status = replace(self.status, **changes)
            return self.status

    def set_message(self, text: str) -> None:
        self.update_status(msg=text)

    def append_message(self, text: str) -> None:
        with self.lock:
            self.status = replace(self.status, msg=self.status.msg + text)

    def publish_snapshot(self) -> Tuple[StatusSnapshot, bool]:
        """Return the status to publish and whether it differs from the last one."""
        with self.lock:
            snap = self.status
            changed = snap != self._last_published
            self._last_published = snap
            return snap, changed
