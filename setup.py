#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
setup.py (octa_probe_python)

colcon / ament_python install rules.

- launch/*.py        -> share/octa_probe_python/launch/
- config/*.yaml      -> share/octa_probe_python/config/  (probe_params.yaml)

The ROS client libraries (rclpy, cv_bridge, tf2_ros, pymoveit2, message
packages) come from the ROS installation and are declared in package.xml.
"""

import os
from glob import glob

from setuptools import find_packages, setup

package_name = "octa_probe_python"

setup(
    name=package_name,
    version="0.1.0",
    packages=find_packages(exclude=["test", "interfaces"]),
    data_files=[
        ("share/ament_index/resource_index/packages", ["resource/" + package_name]),
        ("share/" + package_name, ["package.xml"]),
        (os.path.join("share", package_name, "config"), glob("config/*.yaml")),
        (os.path.join("share", package_name, "launch"), glob("launch/*.launch.py")),
    ],
    install_requires=[
        "setuptools",
        "numpy",
        "scipy",
        "PyYAML",
        "opencv-python",
        "open3d",
    ],
    extras_require={
        "test": ["pytest"],
    },
    zip_safe=True,
    maintainer="Vitruvian Systems",
    maintainer_email="devnull@example.com",
    description="OCT probe coordinator, focus and motion action servers (proprietary).",
    license="LicenseRef-Proprietary",
    tests_require=["pytest"],
    entry_points={
        "console_scripts": [
            "coordinator_node = octa_probe_python.coordinator_node:main",
            "focus_action_server = octa_probe_python.focus_action_server:main",
            "move_z_angle_action_server = octa_probe_python.move_z_angle_action_server:main",
            "freedrive_reset_action_server = octa_probe_python.freedrive_reset_action_server:main",
        ],
    },
)
