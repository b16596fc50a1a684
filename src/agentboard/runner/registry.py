from __future__ import annotations

import logging
import threading
from typing import Protocol

logger = logging.getLogger(__name__)


class CancellationHandle(Protocol):
    def terminate(self) -> None: ...


class CancellationRegistry:
    """Process-local table of execution id -> live handle for running agents.

    An id may be reserved before its process exists. Cancelling a reserved id
    leaves a marker, and the later ``register`` call refuses the handle so the
    caller can stop the process it just spawned. Entries do not survive a
    restart; runs started by a previous process can no longer be signalled
    from here.
    """

    def __init__(self) -> None:
        self._handles: dict[str, CancellationHandle] = {}
        self._pending: set[str] = set()
        self._cancelled: set[str] = set()
        self._lock = threading.Lock()

    def reserve(self, execution_id: str) -> None:
        with self._lock:
            if execution_id in self._handles or execution_id in self._pending:
                raise ValueError(f"Execution already registered: {execution_id}")
            self._pending.add(execution_id)
            self._cancelled.discard(execution_id)

    def register(self, execution_id: str, handle: CancellationHandle) -> bool:
        """Attach ``handle``; returns False if the id was cancelled while reserved."""
        with self._lock:
            if execution_id in self._handles:
                raise ValueError(f"Execution already registered: {execution_id}")
            self._pending.discard(execution_id)
            if execution_id in self._cancelled:
                return False
            self._handles[execution_id] = handle
            return True

    def unregister(self, execution_id: str) -> None:
        with self._lock:
            self._handles.pop(execution_id, None)
            self._pending.discard(execution_id)
            self._cancelled.discard(execution_id)

    def is_registered(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._handles

    def was_cancelled(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._cancelled

    def cancel(self, execution_id: str) -> bool:
        """Signal the live process for ``execution_id``.

        Returns True only when a live handle was terminated. A reserved id
        without a process yet is marked cancelled and returns False.
        """
        with self._lock:
            handle = self._handles.pop(execution_id, None)
            if handle is None:
                if execution_id in self._pending:
                    self._cancelled.add(execution_id)
                    logger.info("Cancelled %s before its agent process started", execution_id)
                return False
            self._cancelled.add(execution_id)
        try:
            handle.terminate()
        except ProcessLookupError:
            logger.info("Agent process for %s already exited", execution_id)
        logger.info("Cancellation requested for %s", execution_id)
        return True
