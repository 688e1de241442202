#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
errors.py

Exception taxonomy for the controllers.

The goal lifecycle manager maps these onto terminal goal states:
  ServiceTimeout / PlanningFailure / ExecutionFailure /
  MeasurementError / ConvergenceFailure   -> Aborted
  GoalCanceled                            -> Canceled
  GoalPreempted                           -> (already terminal, nothing to do)
"""


class ProbeError(Exception):
    """Base class for everything raised on purpose by this package."""


class ConfigError(ProbeError):
    pass


class ServiceTimeout(ProbeError):
    pass


class PlanningFailure(ProbeError):
    pass


class ExecutionFailure(ProbeError):
    pass


class MeasurementError(ProbeError):
    pass


class ConvergenceFailure(ProbeError):
    pass


class GoalCanceled(ProbeError):
    """Cancel was requested and observed at a checkpoint."""


class GoalPreempted(ProbeError):
    """The handle went inactive underneath the task (preempted by a newer goal)."""
