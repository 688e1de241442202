#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
arbiter.py

CommandArbiter: turns the mirrored console commands into at most one current
action and drives the action servers through a dispatcher.

Dispatcher surface (coordinator_node.RosActionDispatcher over rclpy action
clients):
  send_goal(kind, goal, goal_id)   non-blocking; a rejection comes back as an
                                   ActionRejected event
  cancel(kind) -> bool             cancel the live goal of that kind, if any
  is_active(kind) -> bool
  events                           queue.Queue of ActionFeedback /
                                   ActionResult / ActionRejected / StatusNote

Per tick (under SharedControlState.lock):
  1) apply queued feedback / results / rejections / notes
  2) cancel request -> cancel every live goal, stop the recipe, go idle
  3) full_scan rising edge starts the recipe, falling edge stops it
  4) recipe active -> run the current step
     otherwise     -> resolve the manual action by priority
                      Freedrive > Reset > Focus > MoveZangle
  5) dispatcher calls queued during the tick run after the lock is released

Manual dispatch is edge-triggered: previous_action remembers what was
dispatched and is only cleared when nothing is selected, so a flag held high
dispatches once. Freedrive stays current while its flag is high and sends a
disable goal when it drops.

The recipe cursor is only moved here, from the result of the goal dispatched
for the current step or from the scan gate of a SCAN step.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import asdict
from typing import Callable, List, Optional, Sequence, Tuple

from .audit_logger import AuditLogger
from .move_z_angle import advance_lap, yaw_increment
from .probe_params import ArbiterConfig
from .pulse import Pulse, ScanGate, ScanState
from .recipe import FULL_SCAN_RECIPE, RecipePlayer, Step
from .shared_state import CommandSnapshot, SharedControlState, StatusSnapshot
from .types import (
    GOAL_KINDS,
    ActionFeedback,
    ActionRejected,
    ActionResult,
    FocusGoal,
    FreedriveGoal,
    GoalStatus,
    MoveZAngleGoal,
    ResetGoal,
    StatusNote,
    UserAction,
    next_goal_id,
)


def select_action(cmd: CommandSnapshot) -> UserAction:
    """Highest-priority asserted manual flag."""
    if cmd.freedrive:
        return UserAction.FREEDRIVE
    if cmd.reset:
        return UserAction.RESET
    if cmd.autofocus:
        return UserAction.FOCUS
    if cmd.next or cmd.previous or cmd.home:
        return UserAction.MOVE_Z_ANGLE
    return UserAction.NONE


class CommandArbiter:
    def __init__(
        self,
        state: SharedControlState,
        dispatcher,
        config: Optional[ArbiterConfig] = None,
        program: Sequence[Step] = FULL_SCAN_RECIPE,
        capture_background: Optional[Callable[[], bool]] = None,
        logger=None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = state
        self.dispatcher = dispatcher
        self.config = config or ArbiterConfig()
        self.logger = logger or logging.getLogger("octa_probe.coordinator")
        self.audit = audit
        self._clock = clock
        self._capture_background = capture_background

        self.current_action = UserAction.NONE
        self.previous_action = UserAction.NONE
        self.yaw = 0.0

        self.recipe = RecipePlayer(program)
        self.scan_gate = ScanGate(self.config.pulse_width_s, clock)
        self.apply_config = Pulse(self.config.pulse_width_s, clock)

        self._full_scan_seen = False
        self._step_entered_at: Optional[float] = None
        self._step_dispatched = False
        self._step_goal_id: Optional[int] = None
        self._service_latched = False

        self._notes: "queue.Queue" = queue.Queue()
        self._outbox: List[Callable[[], None]] = []

    # =====================================================================
    # Tick
    # =====================================================================
    def tick(self) -> None:
        with self.state.lock:
            self._drain_events()
            cmd = self.state.command
            self.scan_gate.observe(cmd.scan_trigger)

            if self.state.cancel_requested:
                self._handle_cancel(cmd)
            else:
                self._update_recipe_activation(cmd)
                if self.recipe.active:
                    self._recipe_tick(cmd)
                else:
                    self._manual_tick(cmd)
            outbox, self._outbox = self._outbox, []

        for call in outbox:
            call()

    def publish(self) -> Tuple[StatusSnapshot, bool]:
        """Refresh the pulse outputs and return (snapshot, changed)."""
        with self.state.lock:
            self.state.update_status(
                scan_trigger=self.scan_gate.trigger_high,
                apply_config=self.apply_config.high,
            )
            return self.state.publish_snapshot()

    # =====================================================================
    # Events
    # =====================================================================
    def _drain_events(self) -> None:
        for source in (getattr(self.dispatcher, "events", None), self._notes):
            if source is None:
                continue
            while True:
                try:
                    event = source.get_nowait()
                except queue.Empty:
                    break
                self._apply_event(event)

    def _apply_event(self, event) -> None:
        if isinstance(event, ActionResult):
            self._apply_result(event)
        elif isinstance(event, ActionFeedback):
            self.state.append_message(event.text)
            self.logger.debug(f"{event.kind.label} feedback => {event.text.strip()}")
        elif isinstance(event, ActionRejected):
            self._apply_rejection(event)
        elif isinstance(event, StatusNote):
            self.state.append_message(event.text)

    def _apply_result(self, res: ActionResult) -> None:
        status = self.state.status
        self.state.append_message(res.message)
        if res.status is GoalStatus.SUCCEEDED:
            self.logger.info(f"{res.kind.label} action SUCCEEDED")
        else:
            self.logger.warning(f"{res.kind.label} action {res.status.name}")

        if res.kind is UserAction.FOCUS:
            self.state.update_status(end_state=True)

        elif res.kind is UserAction.MOVE_Z_ANGLE and res.status is GoalStatus.SUCCEEDED:
            yaw = res.goal.target_angle if res.goal is not None else self.yaw
            angle, circle = advance_lap(status.angle, status.circle_state, yaw, self.config.angle_epsilon)
            self.state.update_status(angle=angle, circle_state=circle)

        elif res.kind is UserAction.RESET:
            self.apply_config.trigger()
            if res.status is GoalStatus.SUCCEEDED:
                self._start_background_capture()
            elif res.status is GoalStatus.ABORTED:
                self.state.append_message("\nReset position abort\n")
            elif res.status is GoalStatus.CANCELED:
                self.state.append_message("\nReset position canceled\n")

        if self.recipe.active and res.goal_id == self._step_goal_id:
            self._step_goal_id = None
            if res.status is GoalStatus.SUCCEEDED:
                self._advance_step()
            else:
                self._stop_recipe(f"Full Scan stopped: {res.kind.label} {res.status.value}\n")

    def _apply_rejection(self, event: ActionRejected) -> None:
        self.logger.error(f"{event.kind.label} goal was rejected by server")
        self.state.append_message(f"{event.kind.label} goal rejected\n")
        if self.recipe.active and event.goal_id == self._step_goal_id:
            self._stop_recipe(f"Full Scan stopped: {event.kind.label} rejected\n")

    # =====================================================================
    # Cancel
    # =====================================================================
    def _handle_cancel(self, cmd: CommandSnapshot) -> None:
        lines = []
        for kind in GOAL_KINDS:
            if self.dispatcher.is_active(kind):
                lines.append(f"Canceling {kind.label} action\n")
                self._outbox.append(lambda k=kind: self.dispatcher.cancel(k))
        if self.recipe.active:
            lines.append("Canceling Full Scan action\n")
            self._stop_recipe()
        self.scan_gate.reset(cmd.scan_trigger)
        self.current_action = UserAction.NONE
        self.previous_action = UserAction.NONE
        self.state.cancel_requested = False
        if lines:
            self.state.set_message("".join(lines))
            self.logger.info("".join(lines).strip())
        self._audit("cancel", "requested", "console", details="".join(lines).strip() or None)

    # =====================================================================
    # Recipe
    # =====================================================================
    def _update_recipe_activation(self, cmd: CommandSnapshot) -> None:
        rising = cmd.full_scan and not self._full_scan_seen
        falling = self._full_scan_seen and not cmd.full_scan
        self._full_scan_seen = cmd.full_scan

        if rising and not self.recipe.active:
            if self.current_action is UserAction.FREEDRIVE:
                self._send(UserAction.FREEDRIVE, FreedriveGoal(False), source="recipe")
            self.recipe.start()
            self.state.update_status(full_scan=True)
            self.logger.info("Full Scan started")
            self._enter_step()
        elif falling and self.recipe.active:
            self._stop_recipe("Full Scan stopped\n")

    def _enter_step(self) -> None:
        step = self.recipe.current()
        if step is None:
            self._stop_recipe("Full Scan complete!\n")
            return
        self.current_action = step.action
        self.previous_action = UserAction.NONE
        self.yaw = step.argument
        self._step_entered_at = self._clock()
        self._step_dispatched = False
        self._step_goal_id = None
        self.state.update_status(mode=step.mode, end_state=False)
        text = f"{self.recipe.progress()}: {step.describe()}\n"
        self.state.set_message(text)
        self.logger.info(text.strip())

    def _recipe_tick(self, cmd: CommandSnapshot) -> None:
        step = self.recipe.current()
        if step is None:
            self._stop_recipe("Full Scan complete!\n")
            return

        if self._step_dispatched:
            if step.action is UserAction.SCAN and self.scan_gate.done:
                self._advance_step()
            return

        if (self._clock() - self._step_entered_at) < self.config.mode_settle_s:
            return

        if step.action is UserAction.SCAN:
            if self.scan_gate.state is not ScanState.IDLE:
                return
            self.scan_gate.trigger(cmd.scan_trigger)
            self.state.append_message("  [Action] Scanning\n")
            self._step_goal_id = None
        else:
            self._step_goal_id = self._dispatch(step.action, cmd, yaw=step.argument, source="recipe")
        self._step_dispatched = True
        self.previous_action = step.action

    def _advance_step(self) -> None:
        completed = self.recipe.advance()
        self._step_dispatched = False
        self._step_goal_id = None
        if completed:
            self._stop_recipe("Full Scan complete!\n")
        else:
            self._enter_step()

    def _stop_recipe(self, text: Optional[str] = None) -> None:
        self.recipe.stop()
        self._step_entered_at = None
        self._step_dispatched = False
        self._step_goal_id = None
        self.current_action = UserAction.NONE
        self.previous_action = UserAction.NONE
        self.state.update_status(full_scan=False)
        if text:
            self.state.append_message(text)
            self.logger.info(text.strip())

    # =====================================================================
    # Manual
    # =====================================================================
    def _manual_tick(self, cmd: CommandSnapshot) -> None:
        status = self.state.status

        if self.current_action is UserAction.FREEDRIVE and not cmd.freedrive:
            self._send(UserAction.FREEDRIVE, FreedriveGoal(False))
            self.state.set_message("[Action] Freedrive Mode OFF\n")
            self.logger.info("[Action] Freedrive Mode OFF")
            self.current_action = UserAction.NONE
            self.previous_action = UserAction.NONE

        if self.current_action is UserAction.FOCUS and not cmd.autofocus and not status.end_state:
            self.state.update_status(end_state=True)
            self.state.set_message("Canceling Focus action\n")
            self.logger.info("Canceling Focus action")
            if self.dispatcher.is_active(UserAction.FOCUS):
                self._outbox.append(lambda: self.dispatcher.cancel(UserAction.FOCUS))

        selected = select_action(cmd)
        self.current_action = selected
        if selected is UserAction.NONE:
            self.previous_action = UserAction.NONE
            self._idle(cmd)
            return
        if selected is self.previous_action:
            return

        if selected is UserAction.FOCUS and self.state.status.end_state:
            return
        if self._dispatch(selected, cmd) is not None:
            self.previous_action = selected

    def _idle(self, cmd: CommandSnapshot) -> None:
        self.scan_gate.reset(cmd.scan_trigger)
        self._service_latched = False
        changes = {"mode": cmd.mode, "scan_3d": False}
        if self.state.status.end_state and not cmd.autofocus and not self.dispatcher.is_active(UserAction.FOCUS):
            changes["end_state"] = False
        self.state.update_status(**changes)

    # =====================================================================
    # Dispatch
    # =====================================================================
    def _dispatch(self, kind: UserAction, cmd: CommandSnapshot, yaw: Optional[float] = None,
                  source: str = "console") -> Optional[int]:
        status = self.state.status

        if kind is UserAction.FREEDRIVE:
            self.state.update_status(angle=0.0, circle_state=1)
            self.state.set_message("[Action] Freedrive Mode ON\n")
            return self._send(kind, FreedriveGoal(True), source)

        if kind is UserAction.RESET:
            self.state.update_status(angle=0.0, circle_state=1)
            self.state.set_message("[Action] Reset to default position. It may take some time please wait.\n")
            return self._send(kind, ResetGoal(True), source)

        if kind is UserAction.FOCUS:
            self.state.append_message("[Action] Focusing\n")
            return self._send(kind, FocusGoal(cmd.angle_tolerance, cmd.z_tolerance, cmd.z_height), source)

        if kind is UserAction.MOVE_Z_ANGLE:
            if yaw is None:
                increment = yaw_increment(cmd.angle_limit, cmd.num_pt)
                if cmd.next:
                    yaw, label = increment, "Next"
                elif cmd.previous:
                    yaw, label = -increment, "Previous"
                else:
                    yaw, label = -status.angle, "Home"
                self.state.set_message(f"[Action] {label}: {yaw}\n")
            self.yaw = yaw
            return self._send(kind, MoveZAngleGoal(yaw, cmd.radius, status.angle), source)

        return None

    def _send(self, kind: UserAction, goal, source: str = "console") -> int:
        goal_id = next_goal_id()
        self.logger.info(f"{kind.label} goal {goal_id} dispatched ({source})")
        self._audit(kind.value, "dispatched", source, goal_id=goal_id, parameters=asdict(goal))
        self._outbox.append(lambda: self.dispatcher.send_goal(kind, goal, goal_id))
        return goal_id

    # =====================================================================
    # Services
    # =====================================================================
    def handle_scan_3d(self, activate: bool) -> Tuple[bool, str]:
        """
        Latch the published scan_3d to the requested value, and succeed once
        the console mirror agrees.
        """
        with self.state.lock:
            if not self._service_latched:
                self.state.update_status(scan_3d=bool(activate))
                self._service_latched = True
            if self.state.command.scan_3d != bool(activate):
                return False, "waiting for console"
            self.apply_config.trigger()
            self._service_latched = False
        if activate:
            time.sleep(self.config.scan_3d_settle_s)
        return True, "3D scan on" if activate else "3D scan off"

    def handle_deactivate_focus(self) -> Tuple[bool, str]:
        with self.state.lock:
            if not self._service_latched:
                self.state.update_status(end_state=True)
                self._service_latched = True
                self.apply_config.trigger()
            if self.state.command.autofocus:
                return False, "autofocus still asserted"
            self.state.update_status(end_state=False)
            self._service_latched = False
            return True, "focus deactivated"

    # =====================================================================
    # Helpers
    # =====================================================================
    def _start_background_capture(self) -> None:
        if self._capture_background is None:
            return

        def _run():
            try:
                ok = self._capture_background()
            except Exception as e:
                self.logger.warning(f"background capture failed: {e!r}")
                return
            if ok:
                self._notes.put(StatusNote("\nBackground Captured\n", source="focus"))

        threading.Thread(target=_run, name="capture-background", daemon=True).start()

    def _audit(self, action: str, status: str, source: str, goal_id: Optional[int] = None,
               parameters=None, details: Optional[str] = None) -> None:
        if self.audit is not None:
            self.audit.log_goal(action=action, status=status, goal_id=goal_id, source=source,
                                parameters=parameters, details=details)
