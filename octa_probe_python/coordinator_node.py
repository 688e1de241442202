#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
coordinator_node.py

ROLE
----
Bridge between the operator console and the four action servers.

Topics (std_msgs/String JSON, console field names):
  labview_data            console -> coordinator   CommandSnapshot
  robot_data              coordinator -> console   StatusSnapshot (every 5 ms)
  cancel_current_action   std_msgs/Bool            cancel whatever is running

Services:
  scan_3d                 std_srvs/SetBool   used by the focus server to switch 3D capture
  deactivate_focus        std_srvs/Trigger

Action clients:
  focus_action, move_z_angle_action, freedrive_action, reset_action

All decisions live in CommandArbiter; this node only moves data between ROS
and SharedControlState and runs the tick/publish timers.
"""

from __future__ import annotations

import queue
import threading
from typing import Dict

import rclpy
from rclpy.action import ActionClient
from rclpy.callback_groups import MutuallyExclusiveCallbackGroup, ReentrantCallbackGroup
from rclpy.executors import MultiThreadedExecutor
from rclpy.node import Node

from action_msgs.msg import GoalStatus as RosGoalStatus
from std_msgs.msg import Bool, String
from std_srvs.srv import SetBool, Trigger

from octa_probe_interfaces.action import Focus, Freedrive, MoveZAngle, Reset

from .arbiter import CommandArbiter
from .audit_logger import AuditLogger, default_audit_path
from .probe_params import arbiter_config, declare_from_config, load_probe_params
from .ros_service import call_service
from .shared_state import CommandSnapshot, SharedControlState
from .types import (
    ActionFeedback,
    ActionRejected,
    ActionResult,
    GoalStatus,
    UserAction,
)

ACTIONS = {
    UserAction.FOCUS: (Focus, "focus_action"),
    UserAction.MOVE_Z_ANGLE: (MoveZAngle, "move_z_angle_action"),
    UserAction.FREEDRIVE: (Freedrive, "freedrive_action"),
    UserAction.RESET: (Reset, "reset_action"),
}

_RESULT_STATUS = {
    RosGoalStatus.STATUS_SUCCEEDED: GoalStatus.SUCCEEDED,
    RosGoalStatus.STATUS_ABORTED: GoalStatus.ABORTED,
    RosGoalStatus.STATUS_CANCELED: GoalStatus.CANCELED,
}

_TERMINAL = set(_RESULT_STATUS)


def _goal_msg(kind: UserAction, goal):
    action_type = ACTIONS[kind][0]
    msg = action_type.Goal()
    for name, value in vars(goal).items():
        setattr(msg, name, value)
    return msg


class RosActionDispatcher:
    """Dispatcher surface (see arbiter.py) over rclpy action clients."""

    def __init__(self, node: Node, callback_group=None):
        self.node = node
        self.events: "queue.Queue" = queue.Queue()
        self._lock = threading.Lock()
        self._clients: Dict[UserAction, ActionClient] = {
            kind: ActionClient(node, action_type, name, callback_group=callback_group)
            for kind, (action_type, name) in ACTIONS.items()
        }
        self._handles: Dict[UserAction, object] = {}

    def wait_for_servers(self, timeout_s: float) -> None:
        for kind, client in self._clients.items():
            if not client.wait_for_server(timeout_sec=timeout_s):
                self.node.get_logger().warning(f"{ACTIONS[kind][1]} server not available yet")

    def send_goal(self, kind: UserAction, goal, goal_id: int) -> None:
        def _feedback(fb_msg):
            fb = fb_msg.feedback
            self.events.put(ActionFeedback(kind, goal_id, fb.debug_msgs, float(getattr(fb, "current_z_angle", 0.0))))

        future = self._clients[kind].send_goal_async(_goal_msg(kind, goal), feedback_callback=_feedback)
        future.add_done_callback(lambda f: self._on_goal_response(kind, goal, goal_id, f))

    def _on_goal_response(self, kind: UserAction, goal, goal_id: int, future) -> None:
        goal_handle = future.result()
        if goal_handle is None or not goal_handle.accepted:
            self.events.put(ActionRejected(kind, goal_id, "rejected by server"))
            return
        self.node.get_logger().info(f"{kind.label} goal accepted; waiting for result")
        with self._lock:
            self._handles[kind] = goal_handle
        goal_handle.get_result_async().add_done_callback(
            lambda f: self._on_result(kind, goal, goal_id, goal_handle, f)
        )

    def _on_result(self, kind: UserAction, goal, goal_id: int, goal_handle, future) -> None:
        wrapped = future.result()
        status = _RESULT_STATUS.get(wrapped.status, GoalStatus.ABORTED)
        self.events.put(ActionResult(kind, goal_id, status, wrapped.result.status, goal))
        with self._lock:
            if self._handles.get(kind) is goal_handle:
                del self._handles[kind]

    def is_active(self, kind: UserAction) -> bool:
        with self._lock:
            goal_handle = self._handles.get(kind)
        return goal_handle is not None and goal_handle.status not in _TERMINAL

    def cancel(self, kind: UserAction) -> bool:
        with self._lock:
            goal_handle = self._handles.get(kind)
        if goal_handle is None or goal_handle.status in _TERMINAL:
            return False
        goal_handle.cancel_goal_async()
        return True


class CoordinatorNode(Node):
    def __init__(self):
        super().__init__("coordinator_node")

        self.declare_parameter("params_path", "")
        params_path = str(self.get_parameter("params_path").value).strip() or None
        self.config = arbiter_config(load_probe_params(params_path))
        declare_from_config(self, self.config)

        cb = ReentrantCallbackGroup()
        self.state = SharedControlState()
        self.dispatcher = RosActionDispatcher(self, cb)
        self.capture_bg_client = self.create_client(Trigger, "capture_background", callback_group=cb)

        audit_log_path = default_audit_path("coordinator")
        self.audit = AuditLogger(self, "coordinator", audit_log_path)

        self.arbiter = CommandArbiter(
            self.state,
            self.dispatcher,
            self.config,
            capture_background=self._capture_background,
            logger=self.get_logger(),
            audit=self.audit,
        )

        self.pub = self.create_publisher(String, "robot_data", 10)
        self.create_subscription(String, "labview_data", self._on_labview, 10, callback_group=cb)
        self.create_subscription(Bool, "cancel_current_action", self._on_cancel, 10, callback_group=cb)
        self.create_service(SetBool, "scan_3d", self._on_scan_3d, callback_group=cb)
        self.create_service(Trigger, "deactivate_focus", self._on_deactivate_focus, callback_group=cb)

        self.dispatcher.wait_for_servers(self.config.action_server_wait_s)

        self.create_timer(self.config.tick_period_s, self.arbiter.tick,
                          callback_group=MutuallyExclusiveCallbackGroup())
        self.create_timer(self.config.publish_period_s, self._publish,
                          callback_group=MutuallyExclusiveCallbackGroup())

        self.get_logger().info("coordinator ready")
        self.get_logger().info(f"Audit log: {audit_log_path}")

    # ---------------- console sync ----------------
    def _on_labview(self, msg: String) -> None:
        cmd = CommandSnapshot.from_json(msg.data)
        if self.state.apply_command(cmd):
            self.get_logger().info(f"[SUBSCRIBING] {cmd.describe()}")

    def _on_cancel(self, msg: Bool) -> None:
        self.state.request_cancel(bool(msg.data))

    def _publish(self) -> None:
        snap, changed = self.arbiter.publish()
        if changed:
            self.get_logger().info(f"[PUBLISHING] {snap.describe()}")
        self.pub.publish(String(data=snap.to_json()))

    # ---------------- services ----------------
    def _on_scan_3d(self, request, response):
        response.success, response.message = self.arbiter.handle_scan_3d(bool(request.data))
        return response

    def _on_deactivate_focus(self, request, response):
        response.success, response.message = self.arbiter.handle_deactivate_focus()
        return response

    def _capture_background(self) -> bool:
        resp = call_service(
            self.capture_bg_client,
            Trigger.Request(),
            timeout_s=self.config.background_capture_timeout_s,
            wait_for_service_s=0.2,
        )
        return bool(resp is not None and resp.success)

    def destroy_node(self) -> None:
        if hasattr(self, "audit") and self.audit:
            self.audit.close()
        super().destroy_node()


def main(args=None):
    rclpy.init(args=args)
    node = CoordinatorNode()
    executor = MultiThreadedExecutor()
    executor.add_node(node)
    try:
        executor.spin()
    except KeyboardInterrupt:
        pass
    finally:
        node.destroy_node()
        rclpy.shutdown()


if __name__ == "__main__":
    main()
