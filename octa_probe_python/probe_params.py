#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary
"""
probe_params.py

Loads config/probe_params.yaml and turns its sections into typed configs.

Used by:
- coordinator_node.py          -> ArbiterConfig  ("coordinator" section)
- focus_action_server.py       -> FocusConfig    ("focus" section)
- move_z_angle_action_server.py,
  freedrive_reset_action_server.py,
  focus_action_server.py       -> MotionConfig   ("motion" section)

The nodes use these values as *defaults* for their declared ROS parameters, so
a launch-file override still wins.
"""

import math
import pathlib
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError

try:
    from ament_index_python.packages import get_package_share_directory
    AMENT_AVAILABLE = True
except ImportError:
    AMENT_AVAILABLE = False

PACKAGE_NAME = "octa_probe_python"


def _default_params_path() -> pathlib.Path:
    """
    Locate probe_params.yaml:

    1) installed package share:  <install>/share/octa_probe_python/config/probe_params.yaml
    2) source tree fallback:     <pkg>/config/probe_params.yaml
    """
    if AMENT_AVAILABLE:
        try:
            share_dir = pathlib.Path(get_package_share_directory(PACKAGE_NAME))
            p = share_dir / "config" / "probe_params.yaml"
            if p.exists():
                return p
        except LookupError:
            pass

    here = pathlib.Path(__file__).resolve()
    return here.parents[1] / "config" / "probe_params.yaml"


def load_probe_params(path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load probe_params.yaml into a dict keyed by section name.

    An explicit path that does not exist is an error; a missing default file
    just means "use the dataclass defaults".
    """
    p = pathlib.Path(path) if path else _default_params_path()
    if not p.exists():
        if path:
            raise FileNotFoundError(f"probe_params.yaml not found at: {str(p)}")
        return {}

    data = yaml.safe_load(p.read_text()) or {}
    if not isinstance(data, dict):
        raise ConfigError("probe_params.yaml must be a YAML mapping at top-level")
    return data


def _section(registry: Dict[str, Any], name: str) -> Dict[str, Any]:
    sec = registry.get(name, {})
    return sec if isinstance(sec, dict) else {}


def _from_mapping(cls, data: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ArbiterConfig:
    tick_period_s: float = 0.005
    publish_period_s: float = 0.005
    pulse_width_s: float = 0.02
    mode_settle_s: float = 0.1
    angle_epsilon: float = 1e-6
    action_server_wait_s: float = 0.2
    background_capture_timeout_s: float = 1.0
    scan_3d_settle_s: float = 0.05

    def validate(self) -> "ArbiterConfig":
        if self.pulse_width_s <= 0.0:
            raise ConfigError(f"pulse_width_s must be > 0 (got {self.pulse_width_s})")
        if self.tick_period_s <= 0.0 or self.publish_period_s <= 0.0:
            raise ConfigError("tick_period_s and publish_period_s must be > 0")
        return self


@dataclass
class FocusConfig:
    interval_count: int = 6
    capture_timeout_s: float = 5.0
    frame_timeout_s: float = 5.0
    retry_period_s: float = 0.05
    px_per_mm: float = 55.0
    gating_interval_s: float = 0.05
    frame_width: int = 500
    frame_height: int = 512
    surface_threshold: float = 50.0
    frame_spacing_px: float = 10.0
    skip_angle_tolerance: bool = True
    early_terminate: bool = False
    max_iterations: int = 25
    max_duration_s: float = 300.0

    @property
    def scale_factor(self) -> float:
        """Pixels per metre: converts reconstructed z (px) into metres."""
        return self.px_per_mm * 1000.0

    def validate(self) -> "FocusConfig":
        if not math.isfinite(self.px_per_mm) or self.px_per_mm <= 0.0:
            raise ConfigError(f"px_per_mm must be finite and > 0 (got {self.px_per_mm})")
        if int(self.interval_count) < 1:
            raise ConfigError(f"interval_count must be >= 1 (got {self.interval_count})")
        if int(self.max_iterations) < 1:
            raise ConfigError(f"max_iterations must be >= 1 (got {self.max_iterations})")
        return self


@dataclass
class MotionConfig:
    base_frame: str = "base_link"
    tcp_link: str = "tcp"
    group_name: str = "ur_manipulator"
    joint_names: List[str] = field(default_factory=lambda: [
        "shoulder_pan_joint",
        "shoulder_lift_joint",
        "elbow_joint",
        "wrist_1_joint",
        "wrist_2_joint",
        "wrist_3_joint",
    ])
    planners: List[str] = field(default_factory=lambda: [
        "pilz_industrial_motion_planner/PTP",
        "pilz_industrial_motion_planner/LIN",
    ])
    envelope_radius_m: float = 0.05
    envelope_angular_tolerance_rad: float = math.pi
    home_joint_positions: List[float] = field(default_factory=lambda: [
        0.0, -1.5708, 1.5708, -1.5708, -1.5708, 0.0,
    ])
    freedrive_service: str = "freedrive_mode"

    def validate(self) -> "MotionConfig":
        if not self.planners:
            raise ConfigError("motion.planners must list at least one planner")
        if len(self.home_joint_positions) != len(self.joint_names):
            raise ConfigError("home_joint_positions and joint_names must have the same length")
        return self


def arbiter_config(registry: Dict[str, Any]) -> ArbiterConfig:
    return _from_mapping(ArbiterConfig, _section(registry, "coordinator")).validate()


def focus_config(registry: Dict[str, Any]) -> FocusConfig:
    return _from_mapping(FocusConfig, _section(registry, "focus")).validate()


def motion_config(registry: Dict[str, Any]) -> MotionConfig:
    return _from_mapping(MotionConfig, _section(registry, "motion")).validate()


def declare_from_config(node, config) -> None:
    """
    Declare one ROS parameter per config field (defaults from YAML) and write
    the resolved values back into the config object.
    """
    for f in fields(config):
        default = getattr(config, f.name)
        node.declare_parameter(f.name, default)
        setattr(config, f.name, node.get_parameter(f.name).value)
    config.validate()
