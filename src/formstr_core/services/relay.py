"""A single relay connection with owned frame dispatch and challenge handling.

The connection reads raw frames from a :class:`RelayTransport` itself, so an
``AUTH`` challenge is observed directly rather than by intercepting another
component's socket callbacks.

Relays often send one challenge per pending request in quick succession, and
answering a superseded challenge gets rejected. Each ``AUTH`` frame therefore
replaces the stored challenge and restarts a short debounce timer; only the
challenge current when the timer fires is answered, after which every open
subscription is re-fired so requests sent before authentication are served.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from formstr_core.core.errors import (
    AuthenticationRequiredError,
    FormstrError,
    RelayRejectedError,
    TransportFailureError,
)
from formstr_core.core.security import now_seconds, verify_event
from formstr_core.core.settings import settings
from formstr_core.schemas.event import KIND_CLIENT_AUTH, EventTemplate, Filter, NostrEvent
from formstr_core.services.signer import NostrSigner, ReadAuthenticator

logger = logging.getLogger(__name__)

AUTH_REQUIRED_PREFIX = "auth-required:"
_SUB_COUNTER = itertools.count(1)
_ID_FRAMES = frozenset({"EVENT", "EOSE", "OK", "CLOSED"})


class RelayTransportClosed(ConnectionError):
    """Raised by a transport once the underlying connection is gone."""


class RelayTransport(Protocol):
    """Raw text-frame channel to one relay."""

    async def send(self, message: str) -> None: ...

    async def recv(self) -> str: ...

    async def close(self) -> None: ...


RelayConnector = Callable[[str], Awaitable[RelayTransport]]


class WebSocketTransport:
    """RelayTransport over a ``websockets`` client connection."""

    def __init__(self, connection: ClientConnection) -> None:
        self._ws = connection

    async def send(self, message: str) -> None:
        try:
            await self._ws.send(message)
        except ConnectionClosed as exc:
            raise RelayTransportClosed(str(exc)) from exc

    async def recv(self) -> str:
        try:
            message = await self._ws.recv()
        except ConnectionClosed as exc:
            raise RelayTransportClosed(str(exc)) from exc
        if isinstance(message, bytes):
            return message.decode("utf-8", errors="replace")
        return message

    async def close(self) -> None:
        await self._ws.close()


async def websocket_connector(url: str) -> RelayTransport:
    """Open a websocket to ``url``."""
    try:
        connection = await connect(url, max_size=None)
    except (OSError, WebSocketException) as exc:
        raise TransportFailureError(f"Unable to connect to {url}: {exc}", url=url) from exc
    return WebSocketTransport(connection)


@dataclass(frozen=True)
class RelayConfig:
    """Immutable timing configuration for relay connections."""

    connect_timeout_seconds: float
    publish_timeout_seconds: float
    auth_debounce_seconds: float
    auth_retry_delay_seconds: float
    auth_response_timeout_seconds: float
    query_max_wait_seconds: float


def load_relay_config() -> RelayConfig:
    """Build configuration object from global settings."""

    return RelayConfig(
        connect_timeout_seconds=settings.relay_connect_timeout_seconds,
        publish_timeout_seconds=settings.relay_publish_timeout_seconds,
        auth_debounce_seconds=settings.auth_debounce_seconds,
        auth_retry_delay_seconds=settings.auth_retry_delay_seconds,
        auth_response_timeout_seconds=settings.auth_response_timeout_seconds,
        query_max_wait_seconds=settings.relay_query_max_wait_seconds,
    )


def is_auth_rejection(message: str) -> bool:
    return message.startswith(AUTH_REQUIRED_PREFIX) or "unauthorized" in message


@dataclass
class RelayAuthState:
    """Per-connection challenge/response state.

    ``challenge`` always holds the latest challenge. ``timer`` is the pending
    debounce; ``task`` is the in-flight response that concurrent callers share.
    """

    challenge: str | None = None
    timer: asyncio.TimerHandle | None = None
    task: asyncio.Task[None] | None = None
    authenticated_challenge: str | None = None
    pubkey: str | None = None

    @property
    def authenticated(self) -> bool:
        return self.authenticated_challenge is not None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


EventHandler = Callable[[NostrEvent], None]
EoseHandler = Callable[[], None]
CloseHandler = Callable[[str], None]


@dataclass(eq=False)
class Subscription:
    """A standing REQ on one relay."""

    relay: RelayConnection
    id: str
    filters: list[Filter]
    on_event: EventHandler
    on_eose: EoseHandler | None = None
    on_close: CloseHandler | None = None
    eosed: bool = False
    closed: bool = False
    awaiting_auth: bool = False
    _eose_reported: bool = field(default=False, repr=False)

    async def fire(self) -> None:
        """Send (or re-send) the REQ with the original filters."""
        await self.relay.send_frame(["REQ", self.id, *self.filters])

    async def close(self, reason: str = "closed by caller") -> None:
        if self.closed:
            return
        self.relay.forget_subscription(self.id)
        if self.relay.connected:
            try:
                await self.relay.send_frame(["CLOSE", self.id])
            except TransportFailureError as exc:
                logger.debug("Could not send CLOSE for %s: %s", self.id, exc)
        self._receive_closed(reason)

    def _receive_event(self, event: NostrEvent) -> None:
        if not self.closed:
            self.on_event(event)

    def _receive_eose(self) -> None:
        self.eosed = True
        self._report_eose()

    def _report_eose(self) -> None:
        if not self._eose_reported and self.on_eose is not None:
            self._eose_reported = True
            self.on_eose()

    def _receive_closed(self, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        if self.on_close is not None:
            self.on_close(reason)


class RelayConnection:
    """Persistent connection to one relay endpoint."""

    def __init__(
        self,
        url: str,
        config: RelayConfig | None = None,
        *,
        connector: RelayConnector | None = None,
        read_authenticator: ReadAuthenticator | None = None,
    ) -> None:
        self.url = url
        self.config = config or load_relay_config()
        self._connector = connector or websocket_connector
        self._read_authenticator = read_authenticator
        self._transport: RelayTransport | None = None
        self._reader: asyncio.Task[None] | None = None
        self._subs: dict[str, Subscription] = {}
        self._ok_waiters: dict[str, asyncio.Future[tuple[bool, str]]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self.auth = RelayAuthState()
        self.connected = False

    @property
    def open_subscriptions(self) -> list[Subscription]:
        return list(self._subs.values())

    async def connect(self) -> None:
        if self.connected:
            return
        try:
            self._transport = await asyncio.wait_for(
                self._connector(self.url), self.config.connect_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise TransportFailureError(f"Timed out connecting to {self.url}", url=self.url) from exc
        except OSError as exc:
            raise TransportFailureError(f"Unable to connect to {self.url}: {exc}", url=self.url) from exc
        self.connected = True
        self._reader = asyncio.create_task(self._read_loop(self._transport))
        logger.debug("Connected to %s", self.url)

    async def close(self) -> None:
        """Tear down the connection, closing every subscription."""
        self._handle_disconnect("relay connection closed by client")
        for task in list(self._background):
            task.cancel()
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Reader for %s ended with an error", self.url)
            self._reader = None
        if self._transport is not None:
            try:
                await self._transport.close()
            except (RelayTransportClosed, OSError) as exc:
                logger.debug("Error closing transport for %s: %s", self.url, exc)
            self._transport = None

    async def send_frame(self, frame: list[Any]) -> None:
        if self._transport is None or not self.connected:
            raise TransportFailureError(f"Not connected to {self.url}", url=self.url)
        try:
            await self._transport.send(json.dumps(frame, separators=(",", ":")))
        except RelayTransportClosed as exc:
            self._handle_disconnect(str(exc) or "relay connection closed")
            raise TransportFailureError(f"Connection to {self.url} lost", url=self.url) from exc

    def forget_subscription(self, sub_id: str) -> None:
        self._subs.pop(sub_id, None)

    async def subscribe(
        self,
        filters: list[Filter],
        *,
        on_event: EventHandler,
        on_eose: EoseHandler | None = None,
        on_close: CloseHandler | None = None,
        sub_id: str | None = None,
    ) -> Subscription:
        sub = Subscription(
            relay=self,
            id=sub_id or f"sub:{next(_SUB_COUNTER)}",
            filters=list(filters),
            on_event=on_event,
            on_eose=on_eose,
            on_close=on_close,
        )
        self._subs[sub.id] = sub
        try:
            await sub.fire()
        except TransportFailureError:
            self._subs.pop(sub.id, None)
            raise
        return sub

    async def _await_ok(self, event_id: str, frame: list[Any], timeout: float) -> tuple[bool, str]:
        waiter: asyncio.Future[tuple[bool, str]] = asyncio.get_running_loop().create_future()
        self._ok_waiters[event_id] = waiter
        try:
            await self.send_frame(frame)
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError as exc:
            raise TransportFailureError(
                f"{self.url} did not acknowledge {frame[0]} {event_id[:12]}", url=self.url
            ) from exc
        finally:
            self._ok_waiters.pop(event_id, None)

    async def publish(self, event: NostrEvent) -> str:
        """Send an event and wait for the relay's OK.

        Returns:
            The relay's acceptance message (often empty)

        Raises:
            AuthenticationRequiredError: If the relay wants AUTH first
            RelayRejectedError: If the relay refused the event for another reason
            TransportFailureError: If the connection failed or timed out
        """
        ok, message = await self._await_ok(
            event.id, ["EVENT", event.to_wire()], self.config.publish_timeout_seconds
        )
        if ok:
            return message
        if is_auth_rejection(message):
            raise AuthenticationRequiredError(message)
        raise RelayRejectedError(f"{self.url} rejected event: {message}", reason=message)

    async def authenticate(self, signer: NostrSigner) -> None:
        """Answer the latest challenge with ``signer``.

        Callers arriving while a response is in flight share it. A connection
        already authenticated against the current challenge returns at once.
        """
        state = self.auth
        if state.task is not None and not state.task.done():
            await asyncio.shield(state.task)
            return
        challenge = state.challenge
        if challenge is None:
            raise AuthenticationRequiredError(f"{self.url} has not issued an auth challenge")
        if state.authenticated_challenge == challenge:
            return
        state.task = asyncio.create_task(self._respond_to_challenge(signer, challenge))
        await asyncio.shield(state.task)

    async def _respond_to_challenge(self, signer: NostrSigner, challenge: str) -> None:
        template = EventTemplate(
            kind=KIND_CLIENT_AUTH,
            created_at=now_seconds(),
            tags=[["relay", self.url], ["challenge", challenge]],
            content="",
        )
        event = await signer.sign_event(template)
        ok, message = await self._await_ok(
            event.id, ["AUTH", event.to_wire()], self.config.auth_response_timeout_seconds
        )
        if not ok:
            raise RelayRejectedError(f"{self.url} rejected authentication: {message}", reason=message)
        if challenge != self.auth.challenge:
            logger.debug("Ignoring accepted response to superseded challenge on %s", self.url)
            return
        self.auth.authenticated_challenge = challenge
        self.auth.pubkey = event.pubkey
        logger.info("Authenticated to %s as %s", self.url, event.pubkey[:12])

    async def refire_subscriptions(self) -> None:
        for sub in self.open_subscriptions:
            sub.awaiting_auth = False
            try:
                await sub.fire()
            except TransportFailureError as exc:
                logger.warning("Could not re-fire %s on %s: %s", sub.id, self.url, exc)
                return

    def _on_auth_challenge(self, challenge: str) -> None:
        state = self.auth
        state.challenge = challenge
        state.cancel_timer()
        state.timer = asyncio.get_running_loop().call_later(
            self.config.auth_debounce_seconds, self._fire_auth
        )
        logger.debug("AUTH challenge from %s; debouncing", self.url)

    def _fire_auth(self) -> None:
        self.auth.timer = None
        # Drop any cached response so the latest challenge is the one answered.
        self.auth.task = None
        self._spawn(self._auto_authenticate())

    async def _auto_authenticate(self) -> None:
        signer = self._read_authenticator.signer_if_available() if self._read_authenticator else None
        if signer is None:
            logger.debug("No passive signer for %s; leaving challenge unanswered", self.url)
            self._release_auth_blocked()
            return
        try:
            await self.authenticate(signer)
        except FormstrError as exc:
            logger.warning("Read-path authentication to %s failed: %s", self.url, exc)
            self._release_auth_blocked()
            return
        await self.refire_subscriptions()

    def _release_auth_blocked(self) -> None:
        # Subscriptions stay registered for a later re-fire, but callers
        # waiting on EOSE should not hang on an endpoint that cannot serve them.
        for sub in self.open_subscriptions:
            if sub.awaiting_auth:
                sub._report_eose()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Background task for %s failed", self.url, exc_info=task.exception()
            )

    async def _read_loop(self, transport: RelayTransport) -> None:
        try:
            while True:
                raw = await transport.recv()
                try:
                    self._handle_frame(raw)
                except Exception:
                    logger.exception("Failed to handle frame from %s", self.url)
        except RelayTransportClosed as exc:
            logger.info("Relay %s closed the connection: %s", self.url, exc)
        finally:
            self._handle_disconnect("relay connection closed")

    def _handle_disconnect(self, reason: str) -> None:
        if not self.connected and not self._subs and not self._ok_waiters:
            return
        self.connected = False
        self.auth.cancel_timer()
        for event_id, waiter in list(self._ok_waiters.items()):
            if not waiter.done():
                waiter.set_exception(
                    TransportFailureError(f"Connection to {self.url} lost", url=self.url)
                )
            self._ok_waiters.pop(event_id, None)
        subs, self._subs = list(self._subs.values()), {}
        for sub in subs:
            sub._receive_closed(reason)

    def _handle_frame(self, raw: str) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON frame from %s", self.url)
            return
        if not isinstance(frame, list) or not frame or not isinstance(frame[0], str):
            return

        label = frame[0]
        if label in _ID_FRAMES and (len(frame) < 2 or not isinstance(frame[1], str)):
            logger.debug("Ignoring %s frame without a string id from %s", label, self.url)
            return
        if label == "EVENT" and len(frame) >= 3:
            self._handle_event(frame[1], frame[2])
        elif label == "EOSE" and len(frame) >= 2:
            sub = self._subs.get(frame[1])
            if sub is not None:
                sub._receive_eose()
        elif label == "OK" and len(frame) >= 3:
            waiter = self._ok_waiters.get(frame[1])
            if waiter is not None and not waiter.done():
                message = frame[3] if len(frame) > 3 and isinstance(frame[3], str) else ""
                waiter.set_result((bool(frame[2]), message))
        elif label == "CLOSED" and len(frame) >= 2:
            self._handle_closed(frame[1], frame[2] if len(frame) > 2 else "")
        elif label == "NOTICE" and len(frame) >= 2:
            logger.info("NOTICE from %s: %s", self.url, frame[1])
        elif label == "AUTH" and len(frame) >= 2 and isinstance(frame[1], str):
            self._on_auth_challenge(frame[1])
        else:
            logger.debug("Unhandled frame from %s: %s", self.url, label)

    def _handle_event(self, sub_id: str, payload: Any) -> None:
        sub = self._subs.get(sub_id)
        if sub is None:
            return
        try:
            event = NostrEvent.model_validate(payload)
        except ValidationError:
            logger.warning("Dropping malformed event from %s", self.url)
            return
        if not verify_event(event):
            logger.warning("Dropping event %s from %s: bad signature", event.id[:12], self.url)
            return
        sub._receive_event(event)

    def _handle_closed(self, sub_id: str, reason: Any) -> None:
        sub = self._subs.get(sub_id)
        if sub is None:
            return
        reason = reason if isinstance(reason, str) else ""
        if reason.startswith(AUTH_REQUIRED_PREFIX):
            # Kept registered: re-fired once the connection authenticates.
            sub.awaiting_auth = True
            logger.debug("%s on %s waiting for auth: %s", sub.id, self.url, reason)
            return
        self._subs.pop(sub.id, None)
        sub._receive_closed(reason)
