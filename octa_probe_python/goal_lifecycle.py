#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
goal_lifecycle.py

One contract for all four long-running actions (focus, move_z_angle,
freedrive, reset):

  propose(goal)   -> accept-and-execute, or reject when the policy says a
                     concurrent goal of the same kind must not run
  accepted(handle)-> abort (preempt) the previous live handle of this kind,
                     wait for its task to finish, then launch the new one
  cancel(handle)  -> only while accepted/executing; stops physical execution
                     before returning; the task confirms with CANCELED later
  run(handle)     -> the execution task body: calls the controller and maps
                     its outcome onto exactly one terminal state

Execution functions cooperate through ActionHandle.checkpoint(), which raises
GoalCanceled or GoalPreempted. Nothing is ever killed mid-call.

By default each accepted handle runs on its own supervised thread. The ROS
action servers pass goal_handle.execute as `launcher` so rclpy's executor runs
the task instead, and split propose() into reserve() (goal callback) and
accepted() (accepted callback).
"""

from __future__ import annotations

import enum
import logging
import threading
import time
import traceback
from typing import Any, Callable, Dict, Optional

from .audit_logger import AuditLogger
from .errors import GoalCanceled, GoalPreempted, ProbeError
from .types import ActionFeedback, ActionResult, GoalStatus, UserAction, next_goal_id


class GoalPolicy(enum.Enum):
    REJECT_CONCURRENT = "reject_concurrent"  # move_z_angle, reset
    PREEMPT = "preempt"                      # focus, freedrive


class ActionHandle:
    """One in-flight goal. Status transitions are guarded by a lock."""

    def __init__(
        self,
        kind: UserAction,
        goal: Any,
        goal_id: Optional[int] = None,
        feedback_sink: Optional[Callable[[ActionFeedback], None]] = None,
    ):
        self.kind = kind
        self.goal = goal
        self.goal_id = goal_id if goal_id is not None else next_goal_id()
        self.result_message = ""
        self._feedback_sink = feedback_sink
        self._status = GoalStatus.PENDING
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._finished = threading.Event()

    def __repr__(self) -> str:
        return f"<ActionHandle {self.kind.value}#{self.goal_id} {self._status.value}>"

    @property
    def status(self) -> GoalStatus:
        with self._lock:
            return self._status

    def is_active(self) -> bool:
        return self.status.is_active

    def is_cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def request_cancel(self) -> bool:
        with self._lock:
            if not self._status.is_active:
                return False
            self._cancel_event.set()
            return True

    def wait(self, timeout_s: float) -> None:
        """Sleep up to timeout_s, waking early when cancel is requested."""
        self._cancel_event.wait(max(0.0, timeout_s))

    def checkpoint(self) -> None:
        if not self.is_active():
            raise GoalPreempted(f"{self.kind.label} goal {self.goal_id} is no longer active")
        if self.is_cancel_requested():
            raise GoalCanceled(f"{self.kind.label} action canceled\n")

    def publish_feedback(self, text: str, value: float = 0.0) -> None:
        if self._feedback_sink is not None:
            self._feedback_sink(ActionFeedback(self.kind, self.goal_id, text, value))

    # ---------------- transitions ----------------
    def accept(self) -> None:
        with self._lock:
            if self._status is GoalStatus.PENDING:
                self._status = GoalStatus.ACCEPTED

    def execute(self) -> None:
        with self._lock:
            if self._status is GoalStatus.ACCEPTED:
                self._status = GoalStatus.EXECUTING

    def succeed(self, message: str = "") -> bool:
        return self._finish(GoalStatus.SUCCEEDED, message)

    def abort(self, message: str = "") -> bool:
        return self._finish(GoalStatus.ABORTED, message)

    def canceled(self, message: str = "") -> bool:
        return self._finish(GoalStatus.CANCELED, message)

    def _finish(self, status: GoalStatus, message: str) -> bool:
        with self._lock:
            if self._status.is_terminal:
                return False
            # An accepted cancel wins over a success that had not landed yet.
            if status is GoalStatus.SUCCEEDED and self._cancel_event.is_set():
                status = GoalStatus.CANCELED
                message = f"{self.kind.label} action canceled\n"
            self._status = status
            self.result_message = message
        self._on_terminal(status, message)
        return True

    def _on_terminal(self, status: GoalStatus, message: str) -> None:
        """Hook for transports that mirror terminal states (see lifecycle_action_server.RosActionHandle)."""

    def wait_finished(self, timeout_s: Optional[float] = None) -> bool:
        """Wait until the execution task for this handle has returned."""
        return self._finished.wait(timeout_s)

    def result(self) -> ActionResult:
        return ActionResult(self.kind, self.goal_id, self.status, self.result_message, self.goal)


class GoalLifecycleManager:
    def __init__(
        self,
        kind: UserAction,
        execute_fn: Callable[[ActionHandle], str],
        policy: GoalPolicy = GoalPolicy.PREEMPT,
        stop_fn: Optional[Callable[[], None]] = None,
        on_result: Optional[Callable[[ActionResult], None]] = None,
        on_feedback: Optional[Callable[[ActionFeedback], None]] = None,
        launcher: Optional[Callable[[ActionHandle], None]] = None,
        logger=None,
        audit: Optional[AuditLogger] = None,
        join_timeout_s: float = 5.0,
    ):
        self.kind = kind
        self.policy = policy
        self.logger = logger or logging.getLogger(f"octa_probe.{kind.value}")
        self.audit = audit
        self.join_timeout_s = float(join_timeout_s)
        self._execute_fn = execute_fn
        self._stop_fn = stop_fn
        self._on_result = on_result
        self._on_feedback = on_feedback
        self._launcher = launcher or self._spawn_worker
        self._lock = threading.Lock()
        self._propose_lock = threading.Lock()
        self._active: Optional[ActionHandle] = None
        self._reserved = False
        self._workers: Dict[int, threading.Thread] = {}

    @property
    def active(self) -> Optional[ActionHandle]:
        with self._lock:
            return self._active

    def has_active(self) -> bool:
        handle = self.active
        return handle is not None and handle.is_active()

    def can_accept(self) -> bool:
        with self._lock:
            return not self._busy()

    def reserve(self) -> bool:
        """
        Claim the single slot of a REJECT_CONCURRENT manager. The claim lasts
        until accepted() installs the new handle, so two goals that arrive
        together cannot both get past the policy check.
        """
        with self._lock:
            if self._busy():
                return False
            if self.policy is GoalPolicy.REJECT_CONCURRENT:
                self._reserved = True
            return True

    def _busy(self) -> bool:
        if self.policy is not GoalPolicy.REJECT_CONCURRENT:
            return False
        return self._reserved or (self._active is not None and self._active.is_active())

    # ---------------- contract ----------------
    def propose(self, goal: Any, goal_id: Optional[int] = None) -> Optional[ActionHandle]:
        """Accept-and-execute, or return None when rejected (no task is spawned)."""
        with self._propose_lock:
            handle = ActionHandle(self.kind, goal, goal_id, feedback_sink=self._on_feedback)
            self._audit(handle, "proposed")
            if not self.reserve():
                self._audit(handle, "rejected", details=f"a {self.kind.label} goal is already active")
                return None
            handle.accept()
            self.accepted(handle)
            return handle

    def accepted(self, handle: ActionHandle) -> None:
        with self._lock:
            prior = self._active
            self._active = handle
            self._reserved = False

        if prior is not None and prior is not handle and prior.is_active():
            self.logger.info(f"Preempting old {self.kind.label} goal {prior.goal_id}...")
            prior.abort("Pre-empted by new goal\n")
            self._audit(prior, "preempted", details=f"by goal {handle.goal_id}")
            self._stop()
            if not prior.wait_finished(self.join_timeout_s):
                self.logger.warning(
                    f"{self.kind.label} goal {prior.goal_id} did not return within {self.join_timeout_s:.1f}s"
                )

        handle.accept()
        self._audit(handle, "accepted")
        self._launcher(handle)

    def cancel(self, handle: Optional[ActionHandle] = None) -> bool:
        """Returns False (reject) when the handle is not accepted/executing."""
        target = handle or self.active
        if target is None or not target.request_cancel():
            return False
        self._audit(target, "cancel_requested")
        self._stop()
        return True

    def run(self, handle: ActionHandle) -> ActionHandle:
        started = time.monotonic()
        try:
            handle.execute()
            handle.checkpoint()
            message = self._execute_fn(handle)
            handle.checkpoint()
        except GoalPreempted as e:
            self.logger.info(str(e))
        except GoalCanceled as e:
            self._stop()
            handle.canceled(str(e))
            self.logger.info(f"{self.kind.label} goal {handle.goal_id} canceled")
        except ProbeError as e:
            self.logger.warning(f"{self.kind.label} goal {handle.goal_id} aborted: {str(e).strip()}")
            handle.abort(str(e) if str(e).endswith("\n") else f"{e}\n")
        except Exception as e:
            self.logger.error(f"{self.kind.label} goal {handle.goal_id} crashed: {e!r}\n{traceback.format_exc()}")
            self._stop()
            handle.abort(f"{self.kind.label} failed: {e}\n")
        else:
            handle.succeed(message)
        finally:
            with self._lock:
                if self._active is handle:
                    self._active = None
                self._workers.pop(handle.goal_id, None)
            self._audit(handle, handle.status.value, duration_s=time.monotonic() - started,
                        details=handle.result_message)
            try:
                if self._on_result is not None:
                    self._on_result(handle.result())
            finally:
                handle._finished.set()
        return handle

    def shutdown(self) -> None:
        handle = self.active
        if handle is not None:
            self.cancel(handle)
            handle.wait_finished(self.join_timeout_s)

    # ---------------- helpers ----------------
    def _spawn_worker(self, handle: ActionHandle) -> None:
        worker = threading.Thread(
            target=self.run,
            args=(handle,),
            name=f"{self.kind.value}-goal-{handle.goal_id}",
            daemon=True,
        )
        with self._lock:
            self._workers[handle.goal_id] = worker
        worker.start()

    def _stop(self) -> None:
        if self._stop_fn is None:
            return
        try:
            self._stop_fn()
        except Exception as e:
            self.logger.error(f"stop for {self.kind.label} failed: {e!r}")

    def _audit(self, handle: ActionHandle, status: str, details: Optional[str] = None,
               duration_s: Optional[float] = None) -> None:
        if self.audit is None:
            return
        params = handle.goal.__dict__ if hasattr(handle.goal, "__dict__") else {}
        self.audit.log_goal(
            action=self.kind.value,
            status=status,
            goal_id=handle.goal_id,
            parameters=dict(params),
            details=details,
            duration_s=duration_s,
        )
