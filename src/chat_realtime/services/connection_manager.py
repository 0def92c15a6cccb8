"""Owns the single duplex session for the current identity."""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, TypeVar

from chat_realtime.application.exceptions import (
    AuthenticationError,
    NotConnectedError,
    TransportError,
)
from chat_realtime.application.policies.retry import RetryPolicy
from chat_realtime.application.ports.transport import Transport, TransportSession
from chat_realtime.application.store import Store
from chat_realtime.domain.value_objects.enums import ConnectionStatus
from chat_realtime.domain.value_objects.ids import Identity
from chat_realtime.infrastructure.ws.protocol import (
    Event,
    InboundEvent,
    Join,
    OutboundEvent,
    ServerError,
)

logger = logging.getLogger(__name__)

IDENTITY_REJECTED = "forbidden"

E = TypeVar("E", bound=Event)
Handler = Callable[[E], "Awaitable[None] | None"]


@dataclass(frozen=True, slots=True)
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    identity: Identity | None = None
    session_id: str | None = None
    attempt: int = 0
    error: str | None = None


class ConnectionManager:
    """Connect/disconnect, bounded reconnection and in-order event dispatch.

    Higher components never hold a connection of their own: they call
    ``send``/``emit`` and register handlers with ``on``.
    """

    def __init__(self, transport: Transport, policy: RetryPolicy) -> None:
        self._transport = transport
        self._policy = policy
        self._store: Store[ConnectionState] = Store(ConnectionState())
        self._handlers: dict[str, list[Callable[[Any], Any]]] = {}
        self._session: TransportSession | None = None
        self._token: str | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._auth_failed = False

    # -- observation -------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._store.state

    @property
    def status(self) -> ConnectionStatus:
        return self._store.state.status

    @property
    def identity(self) -> Identity | None:
        return self._store.state.identity

    @property
    def session_id(self) -> str | None:
        return self._store.state.session_id

    @property
    def is_connected(self) -> bool:
        return self._session is not None and self.status == ConnectionStatus.CONNECTED

    def subscribe(self, listener: Callable[[ConnectionState], None]) -> Callable[[], None]:
        return self._store.subscribe(listener)

    def on(self, event_type: type[E], handler: Handler[E]) -> Callable[[], None]:
        handlers = self._handlers.setdefault(event_type.event, [])
        handlers.append(handler)

        def _off() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return _off

    # -- lifecycle ---------------------------------------------------------

    async def connect(self, identity: str, token: str | None = None) -> ConnectionState:
        current = self.state
        if current.identity == identity and self._supervisor is not None and not self._supervisor.done():
            logger.debug("Reusing session for %s", identity)
            return current

        if current.identity is not None:
            logger.info("Identity changed from %s to %s, tearing down", current.identity, identity)
            await self.disconnect()

        self._token = token
        self._auth_failed = False
        self._store.update(lambda _: ConnectionState(
            status=ConnectionStatus.CONNECTING, identity=Identity(identity),
        ))
        self._start_supervisor(identity)
        return self.state

    async def disconnect(self) -> None:
        task, self._supervisor = self._supervisor, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_session()
        self._token = None
        self._store.update(lambda _: ConnectionState())
        logger.info("Disconnected")

    def reconnect(self) -> None:
        """Skip the pending backoff delay, or restart after exhaustion."""
        identity = self.identity
        if identity is None or self._auth_failed:
            return
        if self._supervisor is not None and not self._supervisor.done():
            self._wake.set()
            return
        logger.info("Restarting connection supervisor for %s", identity)
        self._start_supervisor(identity)

    def _start_supervisor(self, identity: str) -> None:
        self._wake = asyncio.Event()
        self._supervisor = asyncio.create_task(
            self._supervise(identity), name=f"connection-{identity}",
        )

    async def _supervise(self, identity: str) -> None:
        attempt = 0
        while True:
            self._set(status=ConnectionStatus.CONNECTING, attempt=attempt, error=None)
            try:
                session = await self._transport.open(identity, self._token)
            except AuthenticationError as exc:
                self._fail_auth(exc)
                return
            except TransportError as exc:
                logger.warning("Connect attempt %d for %s failed: %s", attempt, identity, exc.detail)
            else:
                attempt = 0
                self._session = session
                session.send(Join(user_id=identity))
                self._set(status=ConnectionStatus.CONNECTED, session_id=session.session_id, attempt=0)
                logger.info("Connected as %s (session %s)", identity, session.session_id)
                try:
                    await self._pump(session)
                except AuthenticationError as exc:
                    await self._close_session()
                    self._fail_auth(exc)
                    return
                except TransportError as exc:
                    logger.warning("Session %s dropped: %s", session.session_id, exc.detail)
                await self._close_session()
                self._set(status=ConnectionStatus.DISCONNECTED, session_id=None)
                logger.info("Session for %s closed", identity)

            attempt += 1
            if not self._policy.allows(attempt):
                logger.error("Reconnection attempts exhausted for %s", identity)
                self._set(
                    status=ConnectionStatus.ERROR,
                    attempt=attempt,
                    error="Reconnection attempts exhausted",
                )
                return
            delay = self._policy.delay(attempt)
            logger.info("Reconnecting %s in %.1fs (attempt %d)", identity, delay, attempt)
            self._wake.clear()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def _pump(self, session: TransportSession) -> None:
        async for event in session.events():
            if isinstance(event, ServerError) and event.code == IDENTITY_REJECTED:
                raise AuthenticationError(f"Identity rejected by server ({event.detail or event.code})")
            await self.dispatch(event)

    async def dispatch(self, event: InboundEvent) -> None:
        """Deliver one inbound event to its handlers, in registration order."""
        for handler in list(self._handlers.get(event.event, ())):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %s failed", event.event)

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            try:
                await session.close()
            except Exception:
                logger.warning("Error closing session %s", session.session_id, exc_info=True)

    def _fail_auth(self, exc: AuthenticationError) -> None:
        self._auth_failed = True
        logger.error("Authentication rejected: %s", exc.detail)
        self._set(status=ConnectionStatus.ERROR, session_id=None, error=exc.detail or "Authentication failed")

    def _set(self, **changes: Any) -> None:
        self._store.update(lambda s: replace(s, **changes))

    # -- outbound ----------------------------------------------------------

    def send(self, event: OutboundEvent) -> None:
        """Queue an event on the live session; raises NotConnectedError otherwise."""
        if not self.is_connected or self._session is None:
            raise NotConnectedError(f"Cannot send {event.event}: not connected")
        self._session.send(event)

    def emit(self, event: OutboundEvent) -> bool:
        """Fire-and-forget ``send``."""
        try:
            self.send(event)
        except NotConnectedError:
            logger.debug("Dropped %s while disconnected", event.event)
            return False
        return True
