"""Cooperative shutdown checks shared by every blocking loop."""
from __future__ import annotations

import threading

from kline_sync.errors import OperationAborted


def sleep_or_abort(shutdown: threading.Event, seconds: float):
    """Throttling sleep that raises OperationAborted as soon as shutdown is signalled."""
    if shutdown.is_set():
        raise OperationAborted("Shutdown requested")
    if seconds <= 0:
        return
    if shutdown.wait(seconds):
        raise OperationAborted("Shutdown requested during throttling delay")


def check_shutdown(shutdown: threading.Event):
    if shutdown.is_set():
        raise OperationAborted("Shutdown requested")
