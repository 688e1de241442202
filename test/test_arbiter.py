#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary
"""
test_arbiter.py

Validates the coordinator decision logic against a fake dispatcher:
- Manual priority Freedrive > Reset > Focus > MoveZangle
- Edge-triggered dispatch (one goal per press)
- Freedrive on/off, focus release, cancel
- Move Z Angle yaw selection and the angle / lap bookkeeping
- The full-scan recipe: mode settle, scan handshake, result correlation,
  completion, failure and stop
- scan_3d / deactivate_focus service handshakes and the apply_config pulse
"""

import itertools
import json
import time
from dataclasses import replace

import pytest

from octa_probe_python.arbiter import CommandArbiter, select_action
from octa_probe_python.audit_logger import AuditLogger
from octa_probe_python.probe_params import ArbiterConfig
from octa_probe_python.recipe import Step
from octa_probe_python.shared_state import CommandSnapshot, SharedControlState
from octa_probe_python.types import (
    ActionRejected,
    ActionResult,
    FocusGoal,
    FreedriveGoal,
    GoalStatus,
    Mode,
    MoveZAngleGoal,
    ResetGoal,
    UserAction,
)

THREE_STEPS = (
    Step(UserAction.FOCUS, Mode.ROBOT),
    Step(UserAction.SCAN, Mode.OCTA),
    Step(UserAction.MOVE_Z_ANGLE, Mode.OCT, 10.0),
)


def make(dispatcher, clock, program=THREE_STEPS, **kwargs):
    state = SharedControlState()
    arbiter = CommandArbiter(state, dispatcher, ArbiterConfig(scan_3d_settle_s=0.0),
                             program=program, clock=clock, **kwargs)
    return state, arbiter


def press(state, **flags):
    state.apply_command(replace(state.command, **flags))


def tick(arbiter, n=1):
    for _ in range(n):
        arbiter.tick()


# ---------------- priority ----------------
@pytest.mark.parametrize("freedrive,reset,autofocus,next_", list(itertools.product([False, True], repeat=4)))
def test_priority(freedrive, reset, autofocus, next_):
    cmd = CommandSnapshot(freedrive=freedrive, reset=reset, autofocus=autofocus, next=next_)
    if freedrive:
        expected = UserAction.FREEDRIVE
    elif reset:
        expected = UserAction.RESET
    elif autofocus:
        expected = UserAction.FOCUS
    elif next_:
        expected = UserAction.MOVE_Z_ANGLE
    else:
        expected = UserAction.NONE
    assert select_action(cmd) is expected


def test_only_highest_priority_dispatched(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, freedrive=True, autofocus=True, next=True)
    tick(arbiter, 5)
    assert [k for k, _, _ in dispatcher.sent] == [UserAction.FREEDRIVE]


# ---------------- focus ----------------
def test_held_flag_dispatches_once(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, autofocus=True, angle_tolerance=0.1, z_tolerance=0.05, z_height=120.0)
    tick(arbiter, 10)
    assert dispatcher.goals(UserAction.FOCUS) == [FocusGoal(0.1, 0.05, 120.0)]
    assert "[Action] Focusing\n" in state.status.msg


def test_focus_result_latches_end_state_until_release(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, autofocus=True)
    tick(arbiter)
    dispatcher.finish(UserAction.FOCUS)
    tick(arbiter, 3)
    assert state.status.end_state is True
    assert len(dispatcher.goals(UserAction.FOCUS)) == 1

    press(state, autofocus=False)
    tick(arbiter)
    assert state.status.end_state is False

    press(state, autofocus=True)
    tick(arbiter)
    assert len(dispatcher.goals(UserAction.FOCUS)) == 2


def test_releasing_autofocus_cancels_running_focus(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, autofocus=True)
    tick(arbiter)
    press(state, autofocus=False)
    tick(arbiter)
    assert dispatcher.cancelled == [UserAction.FOCUS]
    assert state.status.end_state is True
    assert state.status.msg == "Canceling Focus action\n"

    tick(arbiter)
    assert state.status.end_state is True  # goal still live
    dispatcher.finish(UserAction.FOCUS, GoalStatus.CANCELED, "Focus action canceled\n")
    tick(arbiter, 2)
    assert state.status.end_state is False


# ---------------- freedrive ----------------
def test_freedrive_on_and_off(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    state.update_status(angle=30.0, circle_state=4)
    press(state, freedrive=True)
    tick(arbiter, 3)
    assert dispatcher.goals(UserAction.FREEDRIVE) == [FreedriveGoal(True)]
    assert state.status.msg == "[Action] Freedrive Mode ON\n"
    assert (state.status.angle, state.status.circle_state) == (0.0, 1)
    assert arbiter.current_action is UserAction.FREEDRIVE

    press(state, freedrive=False)
    tick(arbiter, 3)
    assert dispatcher.goals(UserAction.FREEDRIVE) == [FreedriveGoal(True), FreedriveGoal(False)]
    assert state.status.msg == "[Action] Freedrive Mode OFF\n"
    assert arbiter.current_action is UserAction.NONE


# ---------------- reset ----------------
def test_reset_pulses_apply_config_and_captures_background(dispatcher, clock):
    captured = []
    state, arbiter = make(dispatcher, clock, capture_background=lambda: captured.append(1) or True)
    press(state, reset=True)
    tick(arbiter)
    assert dispatcher.goals(UserAction.RESET) == [ResetGoal(True)]
    assert state.status.msg.startswith("[Action] Reset to default position.")

    dispatcher.finish(UserAction.RESET, message="Reset to default position complete\n")
    tick(arbiter)
    snap, _ = arbiter.publish()
    assert snap.apply_config is True
    clock.advance(0.03)
    snap, _ = arbiter.publish()
    assert snap.apply_config is False

    deadline = time.monotonic() + 2.0
    while "Background Captured" not in state.status.msg and time.monotonic() < deadline:
        tick(arbiter)
        time.sleep(0.01)
    assert captured == [1]
    assert "\nBackground Captured\n" in state.status.msg


def test_reset_abort_is_reported(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, reset=True)
    tick(arbiter)
    dispatcher.finish(UserAction.RESET, GoalStatus.ABORTED, "Planning failed!\n")
    tick(arbiter)
    assert "Reset position abort" in state.status.msg


# ---------------- move z angle ----------------
def test_next_previous_home(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, next=True, angle_limit=60.0, num_pt=6, radius=0.05)
    tick(arbiter, 3)
    assert dispatcher.goals(UserAction.MOVE_Z_ANGLE) == [MoveZAngleGoal(10.0, 0.05, 0.0)]
    assert state.status.msg == "[Action] Next: 10.0\n"

    dispatcher.finish(UserAction.MOVE_Z_ANGLE)
    tick(arbiter)
    assert (state.status.angle, state.status.circle_state) == (10.0, 2)

    press(state, next=False)
    tick(arbiter)
    press(state, next=True)
    tick(arbiter)
    dispatcher.finish(UserAction.MOVE_Z_ANGLE)
    tick(arbiter)
    assert (state.status.angle, state.status.circle_state) == (20.0, 3)

    press(state, next=False)
    tick(arbiter)
    press(state, home=True)
    tick(arbiter)
    assert dispatcher.goals(UserAction.MOVE_Z_ANGLE)[-1] == MoveZAngleGoal(-20.0, 0.05, 20.0)
    assert state.status.msg == "[Action] Home: -20.0\n"
    dispatcher.finish(UserAction.MOVE_Z_ANGLE)
    tick(arbiter)
    assert (state.status.angle, state.status.circle_state) == (0.0, 1)

    press(state, home=False)
    tick(arbiter)
    press(state, previous=True)
    tick(arbiter)
    assert dispatcher.goals(UserAction.MOVE_Z_ANGLE)[-1] == MoveZAngleGoal(-10.0, 0.05, 0.0)
    assert state.status.msg == "[Action] Previous: -10.0\n"


def test_zero_points_means_zero_yaw(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, next=True, angle_limit=60.0, num_pt=0)
    tick(arbiter)
    assert dispatcher.goals(UserAction.MOVE_Z_ANGLE)[0].target_angle == 0.0


def test_failed_move_leaves_angle(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, next=True, angle_limit=60.0, num_pt=6)
    tick(arbiter)
    dispatcher.finish(UserAction.MOVE_Z_ANGLE, GoalStatus.ABORTED, "Execution failed!\n")
    tick(arbiter)
    assert (state.status.angle, state.status.circle_state) == (0.0, 1)
    assert state.status.msg.endswith("Execution failed!\n")


def test_rejection_is_reported(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    dispatcher.events.put(ActionRejected(UserAction.MOVE_Z_ANGLE, 99, "busy"))
    tick(arbiter)
    assert "MoveZangle goal rejected\n" in state.status.msg


# ---------------- cancel ----------------
def test_cancel_stops_everything(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, autofocus=True)
    tick(arbiter)
    state.request_cancel(True)
    tick(arbiter)
    assert dispatcher.cancelled == [UserAction.FOCUS]
    assert state.status.msg == "Canceling Focus action\n"
    assert state.cancel_requested is False
    assert state.command.autofocus is False
    assert arbiter.current_action is UserAction.NONE


def test_cancel_stops_recipe_without_restart(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, full_scan=True)
    tick(arbiter)
    clock.advance(0.2)
    tick(arbiter)
    assert dispatcher.goals(UserAction.FOCUS)

    state.request_cancel(True)
    tick(arbiter)
    assert not arbiter.recipe.active
    assert arbiter.recipe.cursor == 0
    assert state.status.full_scan is False
    assert "Canceling Full Scan action\n" in state.status.msg

    clock.advance(0.2)
    tick(arbiter, 3)
    assert not arbiter.recipe.active


# ---------------- recipe ----------------
def test_three_step_program(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, full_scan=True, radius=0.05)
    tick(arbiter)
    assert arbiter.recipe.active and arbiter.recipe.cursor == 0
    assert state.status.full_scan is True
    assert state.status.mode is Mode.ROBOT
    assert state.status.msg == "Step [1/3]: Focus Action, ROBOT Mode\n"
    assert dispatcher.sent == []  # console gets time to switch mode

    clock.advance(0.2)
    tick(arbiter, 3)
    assert len(dispatcher.goals(UserAction.FOCUS)) == 1

    dispatcher.finish(UserAction.FOCUS)
    tick(arbiter)
    assert arbiter.recipe.cursor == 1
    assert state.status.mode is Mode.OCTA
    assert state.status.msg == "Step [2/3]: Scanning Action, OCTA Mode\n"
    assert arbiter.publish()[0].scan_trigger is False

    clock.advance(0.2)
    tick(arbiter)
    assert arbiter.publish()[0].scan_trigger is True
    assert state.status.msg.endswith("  [Action] Scanning\n")
    tick(arbiter, 3)
    assert arbiter.recipe.cursor == 1

    press(state, scan_trigger=True)  # console toggles its mirror when done
    tick(arbiter)
    assert arbiter.recipe.cursor == 1  # pulse still high
    clock.advance(0.03)
    tick(arbiter)
    assert arbiter.recipe.cursor == 2
    assert state.status.mode is Mode.OCT
    assert state.status.msg == "Step [3/3]: MoveZangle Action, OCT Mode\n"

    clock.advance(0.2)
    tick(arbiter)
    assert dispatcher.goals(UserAction.MOVE_Z_ANGLE) == [MoveZAngleGoal(10.0, 0.05, 0.0)]

    dispatcher.finish(UserAction.MOVE_Z_ANGLE)
    tick(arbiter)
    assert not arbiter.recipe.active
    assert arbiter.recipe.cursor == 0
    assert state.status.full_scan is False
    assert "Full Scan complete!\n" in state.status.msg
    assert (state.status.angle, state.status.circle_state) == (10.0, 2)


def test_recipe_advances_once_per_result(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, full_scan=True)
    tick(arbiter)
    clock.advance(0.2)
    tick(arbiter)
    goal = dispatcher.goals(UserAction.FOCUS)[0]
    goal_id = dispatcher.last_id(UserAction.FOCUS)

    dispatcher.events.put(ActionResult(UserAction.FOCUS, goal_id + 1000, GoalStatus.SUCCEEDED, "", goal))
    tick(arbiter)
    assert arbiter.recipe.cursor == 0

    dispatcher.finish(UserAction.FOCUS)
    dispatcher.events.put(ActionResult(UserAction.FOCUS, goal_id, GoalStatus.SUCCEEDED, "", goal))
    tick(arbiter)
    assert arbiter.recipe.cursor == 1


def test_recipe_stops_on_step_failure(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, full_scan=True)
    tick(arbiter)
    clock.advance(0.2)
    tick(arbiter)
    dispatcher.finish(UserAction.FOCUS, GoalStatus.ABORTED, "timed out. cannot acquire image.\n")
    tick(arbiter)
    assert not arbiter.recipe.active
    assert state.status.full_scan is False
    assert "Full Scan stopped" in state.status.msg


def test_recipe_stops_on_rejection(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, full_scan=True)
    tick(arbiter)
    clock.advance(0.2)
    tick(arbiter)
    dispatcher.events.put(ActionRejected(UserAction.FOCUS, dispatcher.last_id(UserAction.FOCUS)))
    tick(arbiter)
    assert not arbiter.recipe.active


def test_recipe_stops_when_flag_drops(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, full_scan=True)
    tick(arbiter)
    press(state, full_scan=False)
    tick(arbiter)
    assert not arbiter.recipe.active
    assert dispatcher.cancelled == []


def test_recipe_start_turns_freedrive_off(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, freedrive=True)
    tick(arbiter)
    press(state, full_scan=True)
    tick(arbiter)
    assert dispatcher.goals(UserAction.FREEDRIVE) == [FreedriveGoal(True), FreedriveGoal(False)]
    assert arbiter.recipe.active


# ---------------- services ----------------
def test_scan_3d_service_handshake(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    ok, _ = arbiter.handle_scan_3d(True)
    assert not ok
    assert state.status.scan_3d is True

    press(state, scan_3d=True)
    ok, _ = arbiter.handle_scan_3d(True)
    assert ok
    assert arbiter.publish()[0].apply_config is True

    ok, _ = arbiter.handle_scan_3d(False)
    assert not ok
    assert state.status.scan_3d is False
    press(state, scan_3d=False)
    ok, _ = arbiter.handle_scan_3d(False)
    assert ok


def test_deactivate_focus_service(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    press(state, autofocus=True)
    ok, _ = arbiter.handle_deactivate_focus()
    assert not ok
    assert state.status.end_state is True
    assert arbiter.publish()[0].apply_config is True

    press(state, autofocus=False)
    ok, _ = arbiter.handle_deactivate_focus()
    assert ok
    assert state.status.end_state is False


def test_publish_reports_change(dispatcher, clock):
    state, arbiter = make(dispatcher, clock)
    _, changed = arbiter.publish()
    assert changed
    _, changed = arbiter.publish()
    assert not changed


# ---------------- audit ----------------
def test_audit_records_who_asked(dispatcher, clock, tmp_path):
    path = tmp_path / "coordinator_audit.jsonl"
    audit = AuditLogger(component_name="coordinator", log_file_path=str(path))
    state, arbiter = make(dispatcher, clock, audit=audit)

    press(state, reset=True)
    tick(arbiter)
    press(state, reset=False)
    tick(arbiter)
    press(state, full_scan=True)
    tick(arbiter)
    clock.advance(0.2)
    tick(arbiter)
    state.request_cancel(True)
    tick(arbiter)
    audit.close()

    events = [json.loads(line) for line in path.read_text().splitlines()]
    assert [(e["action"], e["status"], e["source"]) for e in events] == [
        ("reset", "dispatched", "console"),
        ("focus", "dispatched", "recipe"),
        ("cancel", "requested", "console"),
    ]
