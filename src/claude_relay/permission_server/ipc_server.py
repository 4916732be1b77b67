"""Loopback HTTP server receiving permission requests from the approver.

This server runs in the relay process and:
1. Receives ``POST /permission`` requests from the approver subprocess
2. Notifies registered listeners with the request and a resolve callback
3. Writes the decision passed to that callback back as the HTTP response

The listener is notified without blocking the server; the HTTP handler simply
awaits the decision. Every path that cannot obtain an explicit decision
answers with a deny.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from ..models.permissions import (
    DUPLICATE_REQUEST_MESSAGE,
    NO_HANDLER_MESSAGE,
    SHUTTING_DOWN_MESSAGE,
    PermissionDecision,
    PermissionRequest,
)

logger = logging.getLogger(__name__)

PERMISSION_PATH = "/permission"

ResolveCallback = Callable[[PermissionDecision], None]
PermissionListener = Callable[[PermissionRequest, ResolveCallback], Awaitable[None] | None]


class IpcServer:
    """Receives permission requests over loopback HTTP and awaits decisions.

    Attributes:
        host: Interface to bind (loopback only)
        port: Port to bind; after ``start()`` the actual listening port
    """

    def __init__(self, port: int, host: str = "127.0.0.1") -> None:
        """Initialize server.

        Args:
            port: Port to listen on (0 picks a free port)
            host: Loopback interface to bind
        """
        self.host = host
        self.port = port
        self._listeners: list[PermissionListener] = []
        self._pending: dict[str, asyncio.Future[PermissionDecision]] = {}
        self._listener_tasks: set[asyncio.Task[Any]] = set()
        self._runner: web.AppRunner | None = None

        self._app = web.Application()
        self._app.router.add_route("*", "/{tail:.*}", self._handle_request)

    # ── Listener registration ──────────────────────────────────────────────

    def on_permission_request(self, listener: PermissionListener) -> None:
        """Register a listener called with ``(request, resolve)`` for each request.

        The listener, or whatever it hands the callback to, must eventually
        call ``resolve`` exactly once. Extra calls are ignored.
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: PermissionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    # ── Lifecycle ──────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start listening. Returns once the socket is bound.

        Raises:
            OSError: If the port is unavailable
        """
        runner = web.AppRunner(self._app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise

        self._runner = runner
        addresses = runner.addresses
        if addresses:
            self.port = addresses[0][1]
        logger.info(f"[IpcServer] Listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Deny every pending request, then stop accepting connections."""
        pending = list(self._pending.items())
        self._pending.clear()
        for request_id, future in pending:
            if not future.done():
                future.set_result(PermissionDecision.deny(SHUTTING_DOWN_MESSAGE))
                logger.info(f"[IpcServer] Denied pending request {request_id} on shutdown")

        if self._runner is not None:
            runner = self._runner
            self._runner = None
            # Lets the handlers above write their deny responses before closing
            await runner.cleanup()

        for task in list(self._listener_tasks):
            task.cancel()

        logger.info("[IpcServer] Stopped")

    # ── Request handling ───────────────────────────────────────────────────

    async def _handle_request(self, request: web.Request) -> web.Response:
        if request.method != "POST" or request.path != PERMISSION_PATH:
            return web.json_response({"error": "Not found"}, status=404)

        try:
            body = await request.json()
            permission_request = PermissionRequest.model_validate(body)
        except (ValueError, ValidationError) as e:
            logger.warning(f"[IpcServer] Invalid request body: {e}")
            return web.json_response({"error": "Invalid request body"}, status=400)

        decision = await self.request_decision(permission_request)
        return web.json_response(decision.to_wire())

    async def request_decision(self, permission_request: PermissionRequest) -> PermissionDecision:
        """Notify listeners and wait for the decision on one request.

        Args:
            permission_request: Parsed request

        Returns:
            The decision passed to the resolve callback
        """
        request_id = permission_request.request_id
        logger.info(f"[IpcServer] Permission request {request_id} for {permission_request.tool_name}")

        if not self._listeners:
            logger.warning(f"[IpcServer] No permission handler registered, denying {request_id}")
            return PermissionDecision.deny(NO_HANDLER_MESSAGE)

        if request_id in self._pending:
            # The first request keeps its entry so stop() can still answer it
            logger.warning(f"[IpcServer] Request {request_id} is already pending, denying duplicate")
            return PermissionDecision.deny(DUPLICATE_REQUEST_MESSAGE)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[PermissionDecision] = loop.create_future()
        self._pending[request_id] = future

        def resolve(decision: PermissionDecision) -> None:
            # Only drop the entry if it still belongs to this request
            if self._pending.get(request_id) is future:
                del self._pending[request_id]
            if future.done():
                logger.debug(f"[IpcServer] Ignoring late decision for {request_id}")
                return
            future.set_result(decision)

        for listener in list(self._listeners):
            self._notify(listener, permission_request, resolve)

        try:
            decision = await future
        finally:
            # Peer disconnected or server stopping: forget the request
            if self._pending.get(request_id) is future:
                del self._pending[request_id]

        logger.info(f"[IpcServer] Decision for {request_id}: {decision.behavior.value}")
        return decision

    def _notify(
        self,
        listener: PermissionListener,
        permission_request: PermissionRequest,
        resolve: ResolveCallback,
    ) -> None:
        try:
            result = listener(permission_request, resolve)
        except Exception:
            logger.exception("[IpcServer] Permission listener failed")
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._listener_tasks.add(task)
            task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Future[Any]) -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[IpcServer] Permission listener failed: {exc!r}")
