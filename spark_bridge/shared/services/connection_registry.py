"""Live client sockets and their declared project roots.

Each browser tab is wrapped in a ``ClientConnection`` that owns an
outbound queue drained by one writer task, so frames reach the socket
in the order they were sent even when produced from sync callbacks.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Iterator

logger = logging.getLogger(__name__)

MAX_OUTBOX = 1000


class ClientConnection:
    """One browser WebSocket plus its outbound frame queue."""

    def __init__(self, ws: Any, client_id: str | None = None) -> None:
        self.ws = ws
        self.id = client_id or uuid.uuid4().hex[:8]
        self._outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=MAX_OUTBOX)
        self._writer_task: asyncio.Task | None = None
        self._closed = False

    def __repr__(self) -> str:
        return f"<ClientConnection {self.id}{' closed' if self.closed else ''}>"

    @property
    def closed(self) -> bool:
        return self._closed or bool(getattr(self.ws, "closed", False))

    def start(self) -> None:
        if self._writer_task is None:
            self._writer_task = asyncio.get_running_loop().create_task(self._drain())

    def send(self, message: dict[str, Any]) -> bool:
        """Queue a frame. Returns False if the socket is closed or backed up."""
        if self.closed:
            return False
        try:
            self._outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Outbox full for client %s, dropping %s", self.id, message.get("type"))
            return False
        return True

    async def flush(self) -> None:
        """Wait until every queued frame has been written."""
        await self._outbox.join()

    async def _drain(self) -> None:
        while True:
            message = await self._outbox.get()
            try:
                if not self.closed:
                    await self.ws.send_json(message)
            except (ConnectionError, RuntimeError) as exc:
                logger.info("Client %s send failed: %s", self.id, exc)
                self._closed = True
            finally:
                self._outbox.task_done()

    async def close(self) -> None:
        self._closed = True
        if self._writer_task is not None:
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
            self._writer_task = None
        try:
            await self.ws.close()
        except (ConnectionError, RuntimeError):
            logger.debug("Error closing client %s", self.id, exc_info=True)


class ConnectionRegistry:
    """Tracks connected clients and the project root each one declared."""

    def __init__(self, default_project_root: str) -> None:
        self.default_project_root = default_project_root
        self._clients: dict[ClientConnection, None] = {}
        self._project_roots: dict[ClientConnection, str] = {}
        # Clients that sent an explicit `register`.
        self._registered: set[ClientConnection] = set()

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client: object) -> bool:
        return client in self._clients

    def add(self, client: ClientConnection) -> None:
        self._clients[client] = None

    def remove(self, client: ClientConnection) -> None:
        self._clients.pop(client, None)
        self._project_roots.pop(client, None)
        self._registered.discard(client)

    def set_project_root(
        self,
        client: ClientConnection,
        project_root: str,
        *,
        registered: bool = True,
    ) -> None:
        """Bind *client* to *project_root*.

        ``registered=False`` records a guessed root (origin detection)
        that an explicit register may later replace.
        """
        self._project_roots[client] = project_root
        if registered:
            self._registered.add(client)

    def has_registered(self, client: ClientConnection) -> bool:
        return client in self._registered

    def project_root_of(self, client: ClientConnection) -> str:
        return self._project_roots.get(client) or self.default_project_root

    def all_clients(self) -> Iterator[ClientConnection]:
        return iter(list(self._clients))

    def clear(self) -> None:
        self._clients.clear()
        self._project_roots.clear()
        self._registered.clear()
