# mypy: ignore-errors
"""Tests for a single relay connection's frame handling."""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from formstr_core.core.errors import AuthenticationRequiredError, TransportFailureError
from formstr_core.schemas.event import NostrEvent
from formstr_core.services.relay import RelayConnection, is_auth_rejection
from tests.fakes import FakeNetwork, FakeRelay, make_event

URL = "wss://relay.example"


class SilentRelay(FakeRelay):
    """Accepts frames but never answers them."""

    def handle(self, transport, frame) -> None:
        return None


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_events_with_bad_signatures_are_dropped(relay_config) -> None:
    relay = FakeRelay(URL)
    connection = RelayConnection(URL, relay_config, connector=FakeNetwork(relay))
    received: list[NostrEvent] = []
    await connection.connect()
    try:
        sub = await connection.subscribe([{"kinds": [30168]}], on_event=received.append)
        valid = make_event(content="genuine")
        tampered = make_event(content="original").to_wire()
        tampered["content"] = "forged"
        transport = relay.transports[0]
        transport.push(["EVENT", sub.id, tampered])
        transport.push(["EVENT", sub.id, valid.to_wire()])
        transport.push(["EVENT", sub.id, {"id": "not-an-event"}])
        transport.push(["EOSE", sub.id])
        await _wait_until(lambda: sub.eosed)
    finally:
        await connection.close()

    assert [event.id for event in received] == [valid.id]


@pytest.mark.asyncio
async def test_concurrent_authenticate_calls_share_one_response(relay_config, author_signer) -> None:
    relay = FakeRelay(URL, challenges=["only"])
    connection = RelayConnection(URL, relay_config, connector=FakeNetwork(relay))
    await connection.connect()
    try:
        await _wait_until(lambda: connection.auth.challenge == "only")
        await asyncio.gather(
            connection.authenticate(author_signer),
            connection.authenticate(author_signer),
        )
        await connection.authenticate(author_signer)
    finally:
        await connection.close()

    assert len(relay.auth_events) == 1
    assert connection.auth.authenticated
    assert connection.auth.pubkey == author_signer.pubkey


@pytest.mark.asyncio
async def test_authenticate_without_challenge_raises(relay_config, author_signer) -> None:
    connection = RelayConnection(URL, relay_config, connector=FakeNetwork(FakeRelay(URL)))
    await connection.connect()
    try:
        with pytest.raises(AuthenticationRequiredError):
            await connection.authenticate(author_signer)
    finally:
        await connection.close()


@pytest.mark.asyncio
async def test_auth_required_rejection_raises_for_retry(relay_config) -> None:
    relay = FakeRelay(URL, challenges=["c"], publish_requires_auth=True)
    connection = RelayConnection(URL, relay_config, connector=FakeNetwork(relay))
    await connection.connect()
    try:
        with pytest.raises(AuthenticationRequiredError):
            await connection.publish(make_event())
    finally:
        await connection.close()


@pytest.mark.asyncio
async def test_publish_times_out_without_ok(relay_config) -> None:
    config = replace(relay_config, publish_timeout_seconds=0.05)
    connection = RelayConnection(URL, config, connector=FakeNetwork(SilentRelay(URL)))
    await connection.connect()
    try:
        with pytest.raises(TransportFailureError):
            await connection.publish(make_event())
    finally:
        await connection.close()


@pytest.mark.asyncio
async def test_remote_close_closes_subscriptions(relay_config) -> None:
    relay = FakeRelay(URL)
    connection = RelayConnection(URL, relay_config, connector=FakeNetwork(relay))
    reasons: list[str] = []
    await connection.connect()
    try:
        await connection.subscribe([{"kinds": [1]}], on_event=lambda event: None, on_close=reasons.append)
        relay.transports[0].inbox.put_nowait(None)
        await _wait_until(lambda: not connection.connected)
    finally:
        await connection.close()

    assert reasons == ["relay connection closed"]
    assert connection.open_subscriptions == []


@pytest.mark.asyncio
async def test_closed_with_auth_required_keeps_subscription(relay_config) -> None:
    relay = FakeRelay(URL, read_requires_auth=True)
    connection = RelayConnection(URL, relay_config, connector=FakeNetwork(relay))
    reasons: list[str] = []
    await connection.connect()
    try:
        sub = await connection.subscribe([{"kinds": [1]}], on_event=lambda event: None, on_close=reasons.append)
        await _wait_until(lambda: sub.awaiting_auth)
        relay.transports[0].push(["CLOSED", sub.id, "error: shutting down"])
        await _wait_until(lambda: sub.closed)
    finally:
        await connection.close()

    assert reasons == ["error: shutting down"]


def test_auth_rejection_messages() -> None:
    assert is_auth_rejection("auth-required: we only serve members")
    assert is_auth_rejection("restricted: unauthorized pubkey")
    assert not is_auth_rejection("blocked: spam")


@pytest.mark.asyncio
async def test_frames_with_non_string_ids_are_ignored(relay_config) -> None:
    relay = FakeRelay(URL)
    connection = RelayConnection(URL, relay_config, connector=FakeNetwork(relay))
    received: list[NostrEvent] = []
    await connection.connect()
    try:
        sub = await connection.subscribe([{"kinds": [30168]}], on_event=received.append)
        transport = relay.transports[0]
        transport.push(["EOSE", ["x"]])
        transport.push(["OK", {}, True])
        transport.push(["CLOSED", {"id": 1}, "bogus"])
        transport.push(["EVENT", [sub.id], make_event().to_wire()])
        event = make_event(content="after garbage")
        transport.push(["EVENT", sub.id, event.to_wire()])
        await _wait_until(lambda: received)

        assert connection.connected
        assert not sub.closed
    finally:
        await connection.close()

    assert [item.id for item in received] == [event.id]


@pytest.mark.asyncio
async def test_failing_handler_does_not_close_siblings(relay_config) -> None:
    relay = FakeRelay(URL)
    connection = RelayConnection(URL, relay_config, connector=FakeNetwork(relay))
    received: list[NostrEvent] = []
    reasons: list[str] = []

    def broken(event: NostrEvent) -> None:
        raise RuntimeError("handler bug")

    await connection.connect()
    try:
        failing = await connection.subscribe([{"kinds": [30168]}], on_event=broken)
        sibling = await connection.subscribe(
            [{"kinds": [30168]}], on_event=received.append, on_close=reasons.append
        )
        event = make_event()
        transport = relay.transports[0]
        transport.push(["EVENT", failing.id, event.to_wire()])
        transport.push(["EVENT", sibling.id, event.to_wire()])
        await _wait_until(lambda: received)

        assert connection.connected
        assert not sibling.closed
    finally:
        await connection.close()

    assert reasons == ["relay connection closed by client"]


class BrokenReadRelay(FakeRelay):
    """Relay whose transport fails with an unexpected error on read."""

    def open(self):
        transport = super().open()

        async def recv() -> str:
            raise RuntimeError("socket bug")

        transport.recv = recv
        return transport


@pytest.mark.asyncio
async def test_close_logs_reader_failure(relay_config) -> None:
    connection = RelayConnection(URL, relay_config, connector=FakeNetwork(BrokenReadRelay(URL)))
    await connection.connect()
    await _wait_until(lambda: connection._reader.done())

    await connection.close()

    assert not connection.connected


@pytest.mark.asyncio
async def test_response_to_superseded_challenge_is_not_recorded(relay_config, author_signer) -> None:
    relay = FakeRelay(URL, challenges=["first"])
    connection = RelayConnection(URL, relay_config, connector=FakeNetwork(relay))

    class ChallengeRacingSigner:
        async def get_public_key(self) -> str:
            return author_signer.pubkey

        async def sign_event(self, template):
            connection.auth.challenge = "second"
            return await author_signer.sign_event(template)

    await connection.connect()
    try:
        await _wait_until(lambda: connection.auth.challenge == "first")
        connection.auth.cancel_timer()
        await connection.authenticate(ChallengeRacingSigner())
    finally:
        await connection.close()

    assert len(relay.auth_events) == 1
    assert not connection.auth.authenticated
