#!/usr/bin/env python3
# SPDX-License-Identifier: LicenseRef-Proprietary

"""
ros_service.py

Bounded synchronous waits on rclpy futures, safe to use from an action
execution thread while a MultiThreadedExecutor spins the node.
"""

import threading
from typing import Any, Optional


def wait_for_future(future, timeout_s: float) -> bool:
    """Block until `future` is done or `timeout_s` elapses. True when done."""
    done = threading.Event()
    future.add_done_callback(lambda _f: done.set())
    return done.wait(timeout_s)


def call_service(client, request, timeout_s: float, wait_for_service_s: float = 0.0) -> Optional[Any]:
    """Return the response, or None when the service is absent or too slow."""
    if not client.wait_for_service(timeout_sec=wait_for_service_s):
        return None
    future = client.call_async(request)
    if not wait_for_future(future, timeout_s):
        future.cancel()
        return None
    return future.result()
