"""One pending approval decision per job.

The server asks the browser to approve a command and awaits the
answer here. A second request for the same job auto-denies the first
so a stale prompt can never be answered on behalf of a newer one.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class ApprovalCoordinator:
    """Correlates approval requests and responses by job id."""

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[bool]] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def has_pending(self, job_id: str) -> bool:
        return job_id in self._pending

    def request(
        self,
        job_id: str,
        emit_request: Callable[[], None],
    ) -> asyncio.Future[bool]:
        """Emit the approval prompt and return a future for the decision."""
        emit_request()
        existing = self._pending.pop(job_id, None)
        if existing is not None and not existing.done():
            logger.info("Approval superseded for %s, auto-denying previous", job_id)
            existing.set_result(False)

        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[job_id] = future
        return future

    def resolve(self, job_id: str, approved: bool) -> bool:
        """Deliver a decision. Returns False if nothing was pending."""
        future = self._pending.pop(job_id, None)
        if future is None:
            return False
        if not future.done():
            future.set_result(bool(approved))
        return True

    def clear(self, job_id: str) -> None:
        """Forget a job's entry without resolving it."""
        self._pending.pop(job_id, None)

    def clear_all(self, default: bool = False) -> None:
        """Resolve every outstanding request with *default* and empty the table."""
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_result(default)
        if pending:
            logger.info("Resolved %d pending approval(s) with %s", len(pending), default)
