"""
Module with utilities for coordinating a linear sequence of events across threads.

subfs runs the FUSE main loop in a background thread, while the main thread waits for
signals to shut down. The threads signal important events through a central event queue
and the main thread asserts that these happen one after another in the expected order:

def run():
    q = EventQueue()

    # This thread signals FILESYSTEM_MOUNT from the FUSE init callback and
    # FILESYSTEM_UNMOUNT when the FUSE main loop exits.
    start_thread(mount, q)

    # The signal handlers post SHUTDOWN.
    install_signal_handlers(q)

    q.expect(FILESYSTEM_MOUNT)
    q.expect(SHUTDOWN)

    unmount()

If the FUSE main loop exits before SHUTDOWN has been received, then the file system was
unmounted by someone else and expect() raises an exception that aborts the program.
"""

from __future__ import annotations

from enum import auto, Enum
import queue
from typing import Any, Optional, Tuple, Union


class Event(Enum):
    """Types of events."""

    FILESYSTEM_MOUNT = auto()
    FILESYSTEM_UNMOUNT = auto()

    SHUTDOWN = auto()

    EXCEPTION = auto()


class UnexpectedEvent(Exception):
    """Exception raised when an event occurs that is not being waited upon."""

    def __init__(
        self,
        message: str,
        expected_event: Event,
        actual_event: Event,
        actual_value: Any,
    ) -> None:
        """Instantiate the exception with a description of what happened."""
        super().__init__(message, expected_event, actual_event, actual_value)

        self.message = message

        self.expected_event = expected_event
        self.actual_event = actual_event
        self.actual_value = actual_value


class EventQueue:
    """Thread-safe queue of events that can be notified of and waited upon."""

    def __init__(self) -> None:
        """Instantiate a new EventQueue."""
        self._queue: queue.Queue[Tuple[Event, Any]] = queue.Queue()

    def notify(self, event: Event, value: Any = None) -> None:
        """Post an event and any associated value to the queue."""
        self._queue.put((event, value))

    def exception(self, exception: Union[Exception, str]) -> None:
        """Post an exception event to the queue."""
        if isinstance(exception, Exception):
            self.notify(Event.EXCEPTION, exception)
        else:
            self.notify(Event.EXCEPTION, RuntimeError(exception))

    def expect(self, expected_event: Event, timeout: Optional[float] = None) -> Any:
        """
        Wait for the next event on the queue and check if it matches.

        Raises TimeoutError if no event was posted within the timeout in seconds.
        """
        try:
            event, value = self._queue.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError(f"timed out waiting for {expected_event}")

        if event == expected_event:
            return value
        elif event == Event.EXCEPTION:
            raise value
        else:
            raise UnexpectedEvent(
                f"expected {expected_event}, but got {event}",
                expected_event,
                event,
                value,
            )
