#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
audit_logger.py

Structured audit trail for action goals.

Every goal the coordinator dispatches, and every lifecycle transition an action
server applies to it, produces one AuditEvent:
  - which action kind (focus, move_z_angle, freedrive, reset, scan)
  - which goal (goal_id assigned at dispatch)
  - who asked for it (operator console, full-scan recipe, action server)
  - what happened (proposed, rejected, accepted, preempted, cancel_requested,
    succeeded, aborted, canceled)

Usage:
  from octa_probe_python.audit_logger import AuditLogger

  audit = AuditLogger(node, "focus_action_server", "/tmp/octa_focus_audit.jsonl")
  audit.log_goal(action="focus", goal_id=7, status="accepted",
                 parameters={"angle_tolerance": 0.1})

Events go to the ROS logger (or the std logging module when there is no node)
and, optionally, to a JSON-lines file.
"""

import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

try:
    from rclpy.node import Node
except ImportError:
    Node = None


@dataclass
class AuditEvent:
    timestamp: float  # Unix timestamp
    component: str  # coordinator, focus_action_server, ...
    action: str  # UserAction value
    goal_id: Optional[int]
    source: str  # console, recipe, server
    parameters: Dict[str, Any]
    status: str
    details: Optional[str] = None
    duration_s: Optional[float] = None


def default_audit_path(component_name: str) -> str:
    return os.environ.get("OCTA_AUDIT_LOG_PATH") or f"/tmp/octa_{component_name}_audit.jsonl"


class AuditLogger:
    """
    Goal lifecycle audit sink.

    logger may be a ROS node logger or anything with info()/warning(); when both
    node and logger are None the std logging module is used.
    """

    def __init__(
        self,
        node: Optional["Node"] = None,
        component_name: str = "component",
        log_file_path: Optional[str] = None,
        logger=None,
    ):
        self.node = node
        self.component_name = component_name
        self.log_file_path = log_file_path
        if logger is not None:
            self.logger = logger
        elif node is not None:
            self.logger = node.get_logger()
        else:
            self.logger = logging.getLogger(f"octa_probe.audit.{component_name}")

        self.log_file = None
        if log_file_path:
            try:
                self.log_file = open(log_file_path, "a")
            except OSError as e:
                self.logger.warning(f"Could not open audit log file {log_file_path}: {e}")

    def log_goal(
        self,
        action: str,
        status: str,
        goal_id: Optional[int] = None,
        source: str = "server",
        parameters: Optional[Dict[str, Any]] = None,
        details: Optional[str] = None,
        duration_s: Optional[float] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            timestamp=time.time(),
            component=self.component_name,
            action=action,
            goal_id=goal_id,
            source=source,
            parameters=parameters or {},
            status=status,
            details=details,
            duration_s=duration_s,
        )

        msg = f"[AUDIT] {self.component_name} | action={action} goal={goal_id} source={source} status={status}"
        if duration_s is not None:
            msg += f" duration_s={duration_s:.2f}"
        if details:
            msg += f" | {details.strip()}"
        self.logger.info(msg)

        if self.log_file:
            try:
                self.log_file.write(json.dumps(asdict(event), separators=(",", ":"), default=str) + "\n")
                self.log_file.flush()
            except (OSError, ValueError) as e:
                self.logger.warning(f"Failed to write audit log: {e}")
        return event

    def close(self):
        if self.log_file:
            self.log_file.close()
            self.log_file = None
