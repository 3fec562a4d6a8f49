"""Progress events for long-running report operations.

Operations such as building a workstream tree report what they are doing
through a ``ProgressSink``. The events form a closed set: ``Processing``
while work is underway, then exactly one of ``Complete`` or ``Error``.
"""

import json
import queue
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterator, Optional

PROCESSING = "processing"
COMPLETE = "complete"
ERROR = "error"


@dataclass(frozen=True)
class Processing:
    step: str
    message: str
    progress: Optional[dict] = None

    status = PROCESSING
    terminal = False

    def to_dict(self) -> dict:
        data = {"status": self.status, "step": self.step, "message": self.message}
        if self.progress is not None:
            data["progress"] = self.progress
        return data


@dataclass(frozen=True)
class Complete:
    message: str
    data: Optional[str] = None
    step: str = "complete"

    status = COMPLETE
    terminal = True

    def to_dict(self) -> dict:
        result = {"status": self.status, "step": self.step, "message": self.message}
        if self.data is not None:
            result["data"] = self.data
        return result


@dataclass(frozen=True)
class Error:
    message: str
    step: str = "error"

    status = ERROR
    terminal = True

    def to_dict(self) -> dict:
        return {"status": self.status, "step": self.step, "message": self.message}


class ProgressSink(ABC):
    """Receives progress events one at a time."""

    @abstractmethod
    def emit(self, event) -> None:
        """Deliver a single event."""

    def processing(self, step: str, message: str, **progress) -> None:
        self.emit(Processing(step=step, message=message, progress=progress or None))


class NullProgressSink(ProgressSink):
    """Discards every event."""

    def emit(self, event) -> None:
        pass


class CollectingProgressSink(ProgressSink):
    """Keeps events in a list, in arrival order."""

    def __init__(self):
        self.events = []

    def emit(self, event) -> None:
        self.events.append(event)


class QueueProgressSink(ProgressSink):
    """Hands events from a worker thread to a streaming response.

    The worker calls ``emit``; the response iterates ``events()`` until a
    terminal event arrives.
    """

    def __init__(self, heartbeat_seconds: float = 15.0):
        self._queue = queue.Queue()
        self.heartbeat_seconds = heartbeat_seconds

    def emit(self, event) -> None:
        self._queue.put(event)

    def events(self) -> Iterator:
        """Yield events until ``Complete`` or ``Error``.

        ``None`` is yielded when nothing arrived within the heartbeat window
        so the caller can keep the connection alive.
        """
        while True:
            try:
                event = self._queue.get(timeout=self.heartbeat_seconds)
            except queue.Empty:
                yield None
                continue
            yield event
            if event.terminal:
                return


def complete_with(message: str, payload) -> Complete:
    """Build a ``Complete`` event carrying a JSON-serialised payload."""
    return Complete(message=message, data=json.dumps(payload))


def format_sse(event) -> str:
    """Render an event as a server-sent-events frame."""
    if event is None:
        return ": keep-alive\n\n"
    return f"data: {json.dumps(event.to_dict())}\n\n"
