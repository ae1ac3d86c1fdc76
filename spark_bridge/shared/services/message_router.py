"""Delivers job-scoped messages to the client that submitted the job.

Each job id maps to one sender of record. Delivery is at-most-once:
a frame for a job whose sender has closed is dropped, never queued
for a later reconnect.
"""
from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class Sender(Protocol):
    @property
    def closed(self) -> bool: ...
    def send(self, message: dict[str, Any]) -> bool: ...


class MessageRouter:
    """Job id -> sender of record."""

    def __init__(self) -> None:
        self._senders: dict[str, Sender] = {}

    def __len__(self) -> int:
        return len(self._senders)

    def set_sender(self, job_id: str, sender: Sender) -> None:
        self._senders[job_id] = sender

    def sender_of(self, job_id: str) -> Sender | None:
        return self._senders.get(job_id)

    def forget(self, job_id: str) -> None:
        self._senders.pop(job_id, None)

    def remove_socket(self, sender: Sender) -> None:
        """Drop every job entry pointing at *sender*."""
        stale = [job_id for job_id, s in self._senders.items() if s is sender]
        for job_id in stale:
            del self._senders[job_id]
        if stale:
            logger.debug("Router dropped %d job(s) for closed sender", len(stale))

    def send_to_sender(self, job_id: str, message: dict[str, Any]) -> bool:
        """Deliver to the job's sender if it is still open."""
        sender = self._senders.get(job_id)
        if sender is None or sender.closed:
            logger.debug(
                "Dropping %s for %s: sender gone", message.get("type"), job_id,
            )
            return False
        return sender.send(message)

    @staticmethod
    def send(sender: Sender, message: dict[str, Any]) -> bool:
        if sender.closed:
            return False
        return sender.send(message)

    def clear(self) -> None:
        self._senders.clear()
