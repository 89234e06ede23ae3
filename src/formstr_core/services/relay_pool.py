"""Relay pool with transparent challenge/response authentication.

The pool keeps one connection per normalized relay URL and layers two
authentication paths on top of it:

- Read path: every connection answers ``AUTH`` challenges itself using the
  passive :class:`ReadAuthenticator`; nothing here waits on the user.
- Write path: a publish rejected with ``auth-required:`` or ``unauthorized``
  waits briefly, authenticates with the :class:`WriteAuthenticator` (which may
  prompt the user) and retries exactly once.

Per-relay failures never abort a multi-relay operation; ``publish`` reports an
outcome for every endpoint.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from functools import partial
from typing import Any

from formstr_core.core.errors import (
    AuthenticationRequiredError,
    FormstrError,
    SignerUnavailableError,
)
from formstr_core.schemas.event import Filter, NostrEvent
from formstr_core.services.relay import (
    EventHandler,
    RelayConfig,
    RelayConnection,
    RelayConnector,
    Subscription,
    load_relay_config,
)
from formstr_core.services.signer import (
    NostrSigner,
    ReadAuthenticator,
    WriteAuthenticator,
    get_signer_manager,
)
from formstr_core.utils.url import normalize_relay_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishOutcome:
    """Result of publishing one event to one relay."""

    relay: str
    ok: bool
    message: str = ""
    error: Exception | None = None
    authenticated: bool = False


class SubscriptionHandle:
    """One logical subscription spread over several relays.

    Events are de-duplicated by id. ``on_eose`` fires once every relay has
    reached end-of-stored-events (or failed); ``on_close`` fires once every
    relay subscription has closed, with the per-relay reasons.
    """

    def __init__(
        self,
        relays: Iterable[str],
        on_event: EventHandler,
        on_eose: Callable[[], None] | None = None,
        on_close: Callable[[dict[str, str]], None] | None = None,
    ) -> None:
        self.relays = list(relays)
        self._on_event = on_event
        self._on_eose = on_eose
        self._on_close = on_close
        self._subs: list[Subscription] = []
        self._seen: set[str] = set()
        self._pending_eose = set(self.relays)
        self._open = set(self.relays)
        self.close_reasons: dict[str, str] = {}
        self.closed = False
        self.eosed = not self._pending_eose

    def _attach(self, sub: Subscription) -> None:
        self._subs.append(sub)

    def _receive_event(self, event: NostrEvent) -> None:
        if self.closed or event.id in self._seen:
            return
        self._seen.add(event.id)
        self._on_event(event)

    def _mark_eose(self, relay: str) -> None:
        if relay not in self._pending_eose:
            return
        self._pending_eose.discard(relay)
        if not self._pending_eose and not self.eosed:
            self.eosed = True
            if self._on_eose is not None:
                self._on_eose()

    def _mark_closed(self, relay: str, reason: str) -> None:
        self.close_reasons[relay] = reason
        self._mark_eose(relay)
        if relay not in self._open:
            return
        self._open.discard(relay)
        if not self._open and self._on_close is not None:
            self._on_close(dict(self.close_reasons))

    async def close(self, reason: str = "closed by caller") -> None:
        if self.closed:
            return
        self.closed = True
        for sub in self._subs:
            await sub.close(reason)


class RelayPool:
    """Connection pool shared by all relay operations of a session."""

    def __init__(
        self,
        read_authenticator: ReadAuthenticator | None = None,
        write_authenticator: WriteAuthenticator | None = None,
        *,
        connector: RelayConnector | None = None,
        config: RelayConfig | None = None,
    ) -> None:
        self.config = config or load_relay_config()
        self._read_authenticator = read_authenticator
        self._write_authenticator = write_authenticator
        self._connector = connector
        self._relays: dict[str, RelayConnection] = {}
        self._connecting: dict[str, asyncio.Future[RelayConnection]] = {}
        self._background: set[asyncio.Task[Any]] = set()

    async def __aenter__(self) -> RelayPool:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def ensure_relay(self, url: str) -> RelayConnection:
        """Return a live connection to ``url``, connecting if needed."""
        key = normalize_relay_url(url)
        relay = self._relays.get(key)
        if relay is not None and relay.connected:
            return relay

        pending = self._connecting.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._open(key))
            self._connecting[key] = pending
            pending.add_done_callback(lambda _f, key=key: self._connecting.pop(key, None))
        return await asyncio.shield(pending)

    async def _open(self, key: str) -> RelayConnection:
        stale = self._relays.pop(key, None)
        if stale is not None:
            await stale.close()
        relay = RelayConnection(
            key,
            self.config,
            connector=self._connector,
            read_authenticator=self._read_authenticator,
        )
        await relay.connect()
        self._relays[key] = relay
        return relay

    @staticmethod
    def _normalize_all(urls: Iterable[str]) -> list[str]:
        normalized: list[str] = []
        for url in urls:
            try:
                key = normalize_relay_url(url)
            except ValueError as exc:
                logger.warning("Skipping invalid relay URL %r: %s", url, exc)
                continue
            if key not in normalized:
                normalized.append(key)
        return normalized

    async def subscribe_many(
        self,
        urls: Iterable[str],
        filters: list[Filter],
        *,
        on_event: EventHandler,
        on_eose: Callable[[], None] | None = None,
        on_close: Callable[[dict[str, str]], None] | None = None,
        sub_id: str | None = None,
    ) -> SubscriptionHandle:
        """Open the same subscription on every relay in ``urls``.

        A relay that cannot be reached counts as closed (and as having sent
        EOSE) so the handle's aggregate callbacks still fire.
        """
        relays = self._normalize_all(urls)
        handle = SubscriptionHandle(relays, on_event, on_eose, on_close)

        async def start(url: str) -> None:
            try:
                relay = await self.ensure_relay(url)
                sub = await relay.subscribe(
                    filters,
                    on_event=handle._receive_event,
                    on_eose=partial(handle._mark_eose, url),
                    on_close=partial(handle._mark_closed, url),
                    sub_id=sub_id,
                )
            except FormstrError as exc:
                logger.warning("Subscription on %s failed: %s", url, exc)
                handle._mark_closed(url, f"connection failed: {exc}")
                return
            handle._attach(sub)

        await asyncio.gather(*(start(url) for url in relays))
        if handle.eosed and not relays and on_eose is not None:
            on_eose()
        return handle

    async def subscribe_eose(
        self,
        urls: Iterable[str],
        filter: Filter,
        *,
        on_event: EventHandler,
        on_close: Callable[[dict[str, str]], None] | None = None,
    ) -> SubscriptionHandle:
        """Subscribe and close automatically once stored events are drained."""
        holder: list[SubscriptionHandle] = []

        def close_on_eose() -> None:
            if holder:
                self._spawn(holder[0].close("closed automatically on eose"))

        handle = await self.subscribe_many(
            urls, [filter], on_event=on_event, on_eose=close_on_eose, on_close=on_close
        )
        holder.append(handle)
        if handle.eosed:
            await handle.close("closed automatically on eose")
        return handle

    async def query_sync(
        self,
        urls: Iterable[str],
        filter: Filter,
        *,
        max_wait: float | None = None,
    ) -> list[NostrEvent]:
        """Collect matching events until EOSE from every relay or ``max_wait``.

        Events arriving after the wait has ended are discarded.
        """
        events: list[NostrEvent] = []
        done = asyncio.Event()
        wait = self.config.query_max_wait_seconds if max_wait is None else max_wait

        handle = await self.subscribe_many(urls, [filter], on_event=events.append, on_eose=done.set)
        try:
            await asyncio.wait_for(done.wait(), wait)
        except asyncio.TimeoutError:
            logger.debug("query_sync gave up after %.2fs with %d events", wait, len(events))
        finally:
            await handle.close("query finished")
        return list(events)

    async def get(
        self,
        urls: Iterable[str],
        filter: Filter,
        *,
        max_wait: float | None = None,
    ) -> NostrEvent | None:
        """Return the newest event matching ``filter``, if any."""
        events = await self.query_sync(urls, {**filter, "limit": 1}, max_wait=max_wait)
        if not events:
            return None
        return max(events, key=lambda event: event.created_at)

    async def publish(self, urls: Iterable[str], event: NostrEvent) -> dict[str, PublishOutcome]:
        """Publish ``event`` to every relay and report each outcome."""
        relays = self._normalize_all(urls)
        outcomes = await asyncio.gather(*(self._publish_to_relay(url, event) for url in relays))
        accepted = sum(1 for outcome in outcomes if outcome.ok)
        logger.info("Published %s to %d/%d relays", event.id[:12], accepted, len(relays))
        return {outcome.relay: outcome for outcome in outcomes}

    async def _publish_to_relay(self, url: str, event: NostrEvent) -> PublishOutcome:
        try:
            relay = await self.ensure_relay(url)
            try:
                message = await relay.publish(event)
                return PublishOutcome(relay=url, ok=True, message=message)
            except AuthenticationRequiredError as exc:
                logger.debug("%s requires auth for publish: %s", url, exc)

            await asyncio.sleep(self.config.auth_retry_delay_seconds)
            signer = await self._require_write_signer()
            await relay.authenticate(signer)
            message = await relay.publish(event)
            return PublishOutcome(relay=url, ok=True, message=message, authenticated=True)
        except FormstrError as exc:
            logger.warning("Publish to %s failed: %s", url, exc)
            return PublishOutcome(relay=url, ok=False, message=str(exc), error=exc)

    async def _require_write_signer(self) -> NostrSigner:
        if self._write_authenticator is None:
            raise SignerUnavailableError("Relay requires authentication but no signer is configured")
        return await self._write_authenticator.require_signer()

    def list_connection_status(self) -> dict[str, bool]:
        return {url: relay.connected for url, relay in self._relays.items()}

    async def close(self, urls: Iterable[str] | None = None) -> None:
        """Close the given relays, or every relay when ``urls`` is omitted."""
        keys = list(self._relays) if urls is None else self._normalize_all(urls)
        for key in keys:
            relay = self._relays.pop(key, None)
            if relay is not None:
                await relay.close()
        if urls is None:
            for task in list(self._background):
                task.cancel()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


class _RelayPoolSingleton:
    """Singleton wrapper for RelayPool."""

    _instance: RelayPool | None = None

    @classmethod
    def get_instance(cls) -> RelayPool:
        if cls._instance is None:
            manager = get_signer_manager()
            cls._instance = RelayPool(read_authenticator=manager, write_authenticator=manager)
        return cls._instance


def get_relay_pool() -> RelayPool:
    """Return the process-wide relay pool wired to the session signer manager."""
    return _RelayPoolSingleton.get_instance()
