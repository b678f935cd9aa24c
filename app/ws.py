from __future__ import annotations

"""Fan-out of run log and status messages to WebSocket subscribers."""

import asyncio
from collections import defaultdict
from typing import Any, DefaultDict, Dict, List

from engine.orchestrator import ExecutionLog

LogMessage = Dict[str, Any]


def log_message(entry: ExecutionLog, index: int) -> LogMessage:
    return {"type": "log", "index": index, "log": entry.model_dump(mode="json")}


class LogStreamManager:
    """Tracks subscribers interested in run log updates."""

    def __init__(self) -> None:
        self._subscribers: DefaultDict[str, List[asyncio.Queue[LogMessage]]] = defaultdict(list)
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind the loop that owns the subscriber queues."""

        self._loop = loop

    def register(self, run_id: str) -> asyncio.Queue[LogMessage]:
        queue: asyncio.Queue[LogMessage] = asyncio.Queue()
        self._subscribers[run_id].append(queue)
        return queue

    def unregister(self, run_id: str, queue: asyncio.Queue[LogMessage]) -> None:
        subscribers = self._subscribers.get(run_id)
        if not subscribers:
            return
        if queue in subscribers:
            subscribers.remove(queue)
        if not subscribers:
            self._subscribers.pop(run_id, None)

    def publish(self, run_id: str, message: LogMessage) -> None:
        """Queue a message for every subscriber of ``run_id``.

        Safe to call from the bound loop or from another thread.
        """

        queues = list(self._subscribers.get(run_id, []))
        if not queues or self._loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        for queue in queues:
            if running is self._loop:
                queue.put_nowait(message)
            else:
                self._loop.call_soon_threadsafe(queue.put_nowait, message)

    def publish_log(self, run_id: str, entry: ExecutionLog, *, index: int) -> None:
        """Publish a step log; ``index`` is its position in the run's log list."""

        self.publish(run_id, log_message(entry, index))

    def publish_status(self, run_id: str, status: str, **extra: Any) -> None:
        self.publish(run_id, {"type": "status", "status": status, **extra})


__all__ = ["LogMessage", "LogStreamManager", "log_message"]
