#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
lifecycle_action_server.py

Binds a GoalLifecycleManager to an rclpy ActionServer.

  goal_callback        -> manager.reserve(): REJECT when the policy refuses a
                          concurrent goal; the claim holds until handle_accepted
  handle_accepted      -> manager.accepted(): preempt the previous goal, then
                          goal_handle.execute() schedules the execute callback
  cancel_callback      -> manager.cancel(): REJECT unless the goal is live
  execute_callback     -> manager.run(): one terminal transition, result message

The terminal transition is mirrored onto the rclpy goal handle by
RosActionHandle._on_terminal.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Optional

from rclpy.action import ActionServer, CancelResponse, GoalResponse

from .audit_logger import AuditLogger
from .goal_lifecycle import ActionHandle, GoalLifecycleManager, GoalPolicy
from .types import GoalStatus, UserAction


def _goal_key(goal_handle) -> bytes:
    return bytes(goal_handle.goal_id.uuid)


class RosActionHandle(ActionHandle):
    """ActionHandle whose cancel flag and terminal state follow an rclpy ServerGoalHandle."""

    CANCELING_WAIT_S = 1.0

    def __init__(self, kind: UserAction, goal: Any, goal_handle, action_type, logger):
        super().__init__(kind, goal)
        self.goal_handle = goal_handle
        self._action_type = action_type
        self._logger = logger
        self._feedback_sink = self._publish_feedback
        self._cancel_accepted = threading.Event()

    def is_cancel_requested(self) -> bool:
        return super().is_cancel_requested() or bool(self.goal_handle.is_cancel_requested)

    def mark_cancel_accepted(self) -> None:
        self._cancel_accepted.set()

    def _publish_feedback(self, fb) -> None:
        msg = self._action_type.Feedback()
        if hasattr(msg, "debug_msgs"):
            msg.debug_msgs = str(fb.text)
        if hasattr(msg, "current_z_angle"):
            msg.current_z_angle = float(fb.value)
        try:
            self.goal_handle.publish_feedback(msg)
        except Exception as e:
            self._logger.debug(f"feedback for goal {self.goal_id} dropped: {e!r}")

    def _on_terminal(self, status: GoalStatus, message: str) -> None:
        gh = self.goal_handle
        try:
            if status is GoalStatus.SUCCEEDED:
                gh.succeed()
            elif status is GoalStatus.ABORTED:
                gh.abort()
            elif status is GoalStatus.CANCELED:
                # CANCELING is only reachable once cancel_callback has accepted.
                self._cancel_accepted.wait(self.CANCELING_WAIT_S)
                if gh.is_cancel_requested:
                    gh.canceled()
                else:
                    gh.abort()
        except Exception as e:
            self._logger.warning(f"goal {self.goal_id}: could not mark {status.value}: {e!r}")


class LifecycleActionServer:
    def __init__(
        self,
        node,
        action_type,
        action_name: str,
        kind: UserAction,
        controller,
        policy: GoalPolicy,
        goal_from_msg: Callable[[Any], Any],
        audit: Optional[AuditLogger] = None,
        callback_group=None,
    ):
        self.node = node
        self.action_type = action_type
        self.kind = kind
        self._goal_from_msg = goal_from_msg
        self._handles: Dict[bytes, RosActionHandle] = {}
        self.manager = GoalLifecycleManager(
            kind,
            controller.execute,
            policy=policy,
            stop_fn=controller.stop,
            launcher=self._launch,
            logger=node.get_logger(),
            audit=audit,
        )
        self.server = ActionServer(
            node,
            action_type,
            action_name,
            execute_callback=self._execute_cb,
            goal_callback=self._goal_cb,
            cancel_callback=self._cancel_cb,
            handle_accepted_callback=self._accepted_cb,
            callback_group=callback_group,
        )

    # ---------------- action callbacks ----------------
    def _goal_cb(self, goal_request):
        if not self.manager.reserve():
            self.node.get_logger().warn(f"{self.kind.label} goal rejected: a goal is already active")
            if self.manager.audit is not None:
                self.manager.audit.log_goal(
                    action=self.kind.value,
                    status="rejected",
                    details="a goal is already active",
                )
            return GoalResponse.REJECT
        return GoalResponse.ACCEPT

    def _accepted_cb(self, goal_handle):
        handle = RosActionHandle(
            self.kind,
            self._goal_from_msg(goal_handle.request),
            goal_handle,
            self.action_type,
            self.node.get_logger(),
        )
        self._handles[_goal_key(goal_handle)] = handle
        handle.accept()
        self.manager.accepted(handle)

    def _launch(self, handle: RosActionHandle) -> None:
        handle.goal_handle.execute()

    def _cancel_cb(self, goal_handle):
        handle = self._handles.get(_goal_key(goal_handle))
        if handle is None or not self.manager.cancel(handle):
            self.node.get_logger().info(f"{self.kind.label} goal no longer active")
            return CancelResponse.REJECT
        handle.mark_cancel_accepted()
        self.node.get_logger().info(f"Cancel request received for {self.kind.label}.")
        return CancelResponse.ACCEPT

    def _execute_cb(self, goal_handle):
        key = _goal_key(goal_handle)
        handle = self._handles.get(key)
        result = self.action_type.Result()
        if handle is None:
            goal_handle.abort()
            result.status = f"{self.kind.label}: unknown goal\n"
            return result
        try:
            self.manager.run(handle)
        finally:
            self._handles.pop(key, None)
        result.status = handle.result_message
        return result

    def destroy(self) -> None:
        self.manager.shutdown()
        self.server.destroy()
