"""Cooperative cancellation for a running turn."""

import threading


class CancelToken:
    """Set once by the operator, polled by the turn loop.

    The loop checks the token before every stream event and before every
    tool execution; tools that already started are left to finish.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float = None) -> bool:
        return self._event.wait(timeout)

    def __bool__(self) -> bool:
        return self.cancelled
