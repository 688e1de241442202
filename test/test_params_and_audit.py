#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary
"""
test_params_and_audit.py

Validates:
- probe_params.yaml loads into typed, validated configs
- Bad values raise ConfigError; a missing explicit path is an error
- ROS parameter declaration writes overrides back into the config
- Audit events reach the JSON-lines file
"""

import json
import pathlib

import pytest

from octa_probe_python.audit_logger import AuditLogger, default_audit_path
from octa_probe_python.errors import ConfigError
from octa_probe_python.probe_params import (
    ArbiterConfig,
    FocusConfig,
    MotionConfig,
    arbiter_config,
    declare_from_config,
    focus_config,
    load_probe_params,
    motion_config,
)

CONFIG = pathlib.Path(__file__).resolve().parents[1] / "config" / "probe_params.yaml"


def test_shipped_config_loads():
    registry = load_probe_params(str(CONFIG))
    arbiter = arbiter_config(registry)
    focus = focus_config(registry)
    motion = motion_config(registry)
    assert arbiter.pulse_width_s == 0.02
    assert focus.interval_count == 6
    assert focus.scale_factor == pytest.approx(55000.0)
    assert len(motion.planners) == 2
    assert len(motion.home_joint_positions) == len(motion.joint_names)


def test_missing_explicit_path(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_probe_params(str(tmp_path / "nope.yaml"))


def test_non_mapping_yaml(tmp_path):
    p = tmp_path / "bad.yaml"
    p.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_probe_params(str(p))


def test_unknown_keys_ignored_and_sections_optional(tmp_path):
    p = tmp_path / "p.yaml"
    p.write_text("focus:\n  px_per_mm: 10.0\n  not_a_field: 1\n")
    registry = load_probe_params(str(p))
    assert focus_config(registry).scale_factor == pytest.approx(10000.0)
    assert arbiter_config(registry) == ArbiterConfig()


@pytest.mark.parametrize("config", [
    FocusConfig(px_per_mm=0.0),
    FocusConfig(px_per_mm=float("nan")),
    FocusConfig(interval_count=0),
    FocusConfig(max_iterations=0),
    ArbiterConfig(pulse_width_s=0.0),
    MotionConfig(planners=[]),
    MotionConfig(home_joint_positions=[0.0]),
])
def test_validation(config):
    with pytest.raises(ConfigError):
        config.validate()


class _Param:
    def __init__(self, value):
        self.value = value


class _FakeNode:
    def __init__(self, overrides):
        self.overrides = overrides
        self.declared = {}

    def declare_parameter(self, name, default):
        self.declared[name] = default

    def get_parameter(self, name):
        return _Param(self.overrides.get(name, self.declared[name]))


def test_declare_from_config_applies_overrides():
    node = _FakeNode({"px_per_mm": 20.0})
    cfg = FocusConfig()
    declare_from_config(node, cfg)
    assert node.declared["interval_count"] == 6
    assert cfg.px_per_mm == 20.0


def test_declare_from_config_validates():
    node = _FakeNode({"pulse_width_s": -1.0})
    with pytest.raises(ConfigError):
        declare_from_config(node, ArbiterConfig())


def test_audit_jsonl(tmp_path):
    path = tmp_path / "audit.jsonl"
    audit = AuditLogger(component_name="coordinator", log_file_path=str(path))
    event = audit.log_goal(action="focus", status="dispatched", goal_id=3, source="console",
                           parameters={"z_height": 120.0})
    audit.close()

    line = json.loads(path.read_text().strip())
    assert line["component"] == "coordinator"
    assert line["action"] == "focus"
    assert line["goal_id"] == 3
    assert line["parameters"] == {"z_height": 120.0}
    assert line["status"] == event.status == "dispatched"
    assert line["source"] == "console"


def test_audit_unwritable_path_does_not_raise(tmp_path):
    audit = AuditLogger(component_name="x", log_file_path=str(tmp_path / "missing" / "a.jsonl"))
    audit.log_goal(action="reset", status="accepted")
    assert audit.log_file is None


def test_default_audit_path(monkeypatch):
    monkeypatch.delenv("OCTA_AUDIT_LOG_PATH", raising=False)
    assert default_audit_path("coordinator") == "/tmp/octa_coordinator_audit.jsonl"
    monkeypatch.setenv("OCTA_AUDIT_LOG_PATH", "/var/log/octa.jsonl")
    assert default_audit_path("coordinator") == "/var/log/octa.jsonl"
