#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary
"""
probe_bringup.launch.py

Everything the console needs to drive the probe:
  - coordinator_node
  - focus_action_server
  - move_z_angle_action_server
  - freedrive_reset_action_server

MoveIt 2 (move_group) and the robot driver are started by their own launch
files; these nodes only need their services and TF.
"""

from launch import LaunchDescription
from launch.actions import DeclareLaunchArgument
from launch.substitutions import LaunchConfiguration
from launch_ros.actions import Node


def generate_launch_description() -> LaunchDescription:
    params_path_arg = DeclareLaunchArgument(
        "params_path",
        default_value="",
        description="Optional path to probe_params.yaml; empty uses installed config.",
    )

    common_params = [
        {"params_path": LaunchConfiguration("params_path")},
    ]

    def _node(executable: str) -> Node:
        return Node(
            package="octa_probe_python",
            executable=executable,
            name=executable,
            output="screen",
            parameters=common_params,
        )

    return LaunchDescription(
        [
            params_path_arg,
            _node("coordinator_node"),
            _node("focus_action_server"),
            _node("move_z_angle_action_server"),
            _node("freedrive_reset_action_server"),
        ]
    )
