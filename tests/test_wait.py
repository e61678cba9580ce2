import asyncio
import dataclasses
import re

import pytest
from conftest import FakeRuntimeClient

from ephemera.client.abstract import ExecResult
from ephemera.config import EphemeraSettings
from ephemera.deployment.container import RunningContainer
from ephemera.exceptions import WaitTimeoutError
from ephemera.utils.free_port import find_free_port
from ephemera.wait import (
    UntilCommandIsCompleted,
    UntilContainerIsRunning,
    UntilHttpRequestIsSucceeded,
    UntilMessageIsLogged,
    UntilPortIsAvailable,
    WaitStrategy,
    wait_for_strategy,
    wait_until_ready,
)


@dataclasses.dataclass(frozen=True, eq=False)
class ReadyAfter(WaitStrategy):
    """Ready once ``delay`` seconds passed since the first attempt."""

    delay: float = 0.0
    attempts: list = dataclasses.field(default_factory=list)

    async def is_ready(self, container) -> bool:
        now = asyncio.get_running_loop().time()
        self.attempts.append(now)
        return now - self.attempts[0] >= self.delay


@dataclasses.dataclass(frozen=True, eq=False)
class NeverReady(WaitStrategy):
    attempts: list = dataclasses.field(default_factory=list)

    async def is_ready(self, container) -> bool:
        self.attempts.append(None)
        return False


@dataclasses.dataclass(frozen=True, eq=False)
class Raising(WaitStrategy):
    async def is_ready(self, container) -> bool:
        msg = "connection refused"
        raise ConnectionRefusedError(msg)


@dataclasses.dataclass(frozen=True, eq=False)
class Hanging(WaitStrategy):
    async def is_ready(self, container) -> bool:
        await asyncio.sleep(60)
        return True


@pytest.fixture
def container(client: FakeRuntimeClient) -> RunningContainer:
    client.running.add("c1")
    return RunningContainer(id="c1", name="test", client=client, port_bindings={})


def published(client: FakeRuntimeClient, port_bindings: dict[str, list[int]]) -> RunningContainer:
    return RunningContainer(id="c1", name="test", client=client, port_bindings=port_bindings)


async def test_strategies_run_in_order_and_first_timeout_aborts(container, settings):
    first = ReadyAfter(delay=0.05, timeout=1.0)
    second = NeverReady(timeout=0.2)
    third = ReadyAfter()
    loop = asyncio.get_running_loop()
    t0 = loop.time()
    with pytest.raises(WaitTimeoutError) as exc_info:
        await wait_until_ready([first, second, third], container, settings)
    total = loop.time() - t0

    assert exc_info.value.strategy is second
    assert exc_info.value.elapsed >= 0.2
    assert exc_info.value.last_failure == "not ready"
    assert first.attempts[-1] - first.attempts[0] >= 0.05
    assert second.attempts
    assert third.attempts == []
    assert 0.25 <= total < 1.0


async def test_empty_chain_is_ready_immediately(container, settings):
    await wait_until_ready([], container, settings)


async def test_exception_is_recorded_as_last_failure(container, settings):
    with pytest.raises(WaitTimeoutError) as exc_info:
        await wait_for_strategy(Raising(timeout=0.1), container, settings)
    assert exc_info.value.last_failure == "ConnectionRefusedError: connection refused"
    assert "connection refused" in str(exc_info.value)


async def test_hanging_attempt_is_bounded_by_the_timeout(container, settings):
    loop = asyncio.get_running_loop()
    t0 = loop.time()
    with pytest.raises(WaitTimeoutError) as exc_info:
        await wait_for_strategy(Hanging(timeout=0.1), container, settings)
    assert loop.time() - t0 < 1.0
    assert "deadline" in exc_info.value.last_failure


async def test_settings_provide_the_default_timeout(container):
    settings = EphemeraSettings(wait_timeout=0.1, wait_interval=0.01, wait_max_interval=0.02)
    with pytest.raises(WaitTimeoutError) as exc_info:
        await wait_for_strategy(NeverReady(), container, settings)
    assert 0.1 <= exc_info.value.elapsed < 1.0


async def test_delay_grows_by_the_backoff_factor(container, settings, monkeypatch):
    delays = []
    original_sleep = asyncio.sleep

    async def recording_sleep(delay, *args, **kwargs):
        delays.append(delay)
        await original_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", recording_sleep)
    strategy = NeverReady(timeout=30, interval=0.01, max_interval=0.04, backoff_factor=2)

    async def until_five_attempts():
        while len(strategy.attempts) < 5:
            await original_sleep(0)

    task = asyncio.create_task(wait_for_strategy(strategy, container, settings))
    await until_five_attempts()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert delays[:4] == pytest.approx([0.01, 0.02, 0.04, 0.04])


async def test_cancellation_propagates(container, settings):
    strategy = NeverReady(timeout=30)
    task = asyncio.create_task(wait_for_strategy(strategy, container, settings))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert strategy.attempts


def test_with_timeout_returns_a_copy():
    strategy = UntilPortIsAvailable(80)
    longer = strategy.with_timeout(120)
    assert strategy.timeout is None
    assert longer.timeout == 120
    assert longer.port == 80
    assert longer != strategy

    polled = strategy.with_interval(0.5, max_interval=5)
    assert (polled.interval, polled.max_interval) == (0.5, 5)


async def test_until_container_is_running(client, container, settings):
    await wait_for_strategy(UntilContainerIsRunning(), container, settings)

    client.running.clear()
    with pytest.raises(WaitTimeoutError):
        await wait_for_strategy(UntilContainerIsRunning(timeout=0.1), container, settings)


async def test_until_port_is_available(client, settings):
    server = await asyncio.start_server(lambda reader, writer: writer.close(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        container = published(client, {"5432/tcp": [port]})
        await wait_for_strategy(UntilPortIsAvailable(5432, timeout=1.0), container, settings)
    finally:
        server.close()
        await server.wait_closed()


async def test_until_port_is_available_times_out_without_listener(client, settings):
    container = published(client, {"5432/tcp": [find_free_port()]})
    with pytest.raises(WaitTimeoutError) as exc_info:
        await wait_for_strategy(UntilPortIsAvailable(5432, timeout=0.2), container, settings)
    assert "ConnectionRefusedError" in exc_info.value.last_failure


async def test_until_port_is_available_requires_a_published_port(container, settings):
    with pytest.raises(WaitTimeoutError) as exc_info:
        await wait_for_strategy(UntilPortIsAvailable(5432, timeout=0.1), container, settings)
    assert "not published" in exc_info.value.last_failure


async def _serve_http(statuses: list[int]):
    requests = []

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        request = await reader.readuntil(b"\r\n\r\n")
        requests.append(request.split(b"\r\n", 1)[0].decode())
        status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
        writer.write(f"HTTP/1.1 {status} X\r\nContent-Length: 0\r\nConnection: close\r\n\r\n".encode())
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1], requests


async def test_until_http_request_is_succeeded(client, settings):
    server, port, requests = await _serve_http([503, 503, 204])
    try:
        container = published(client, {"80/tcp": [port]})
        strategy = UntilHttpRequestIsSucceeded(80, path="health", status_codes=frozenset({204}), timeout=2.0)
        await wait_for_strategy(strategy, container, settings)
    finally:
        server.close()
        await server.wait_closed()
    assert requests == ["GET /health HTTP/1.1"] * 3


async def test_until_http_request_reports_unexpected_status(client, settings):
    server, port, _ = await _serve_http([500])
    try:
        container = published(client, {"80/tcp": [port]})
        with pytest.raises(WaitTimeoutError) as exc_info:
            await wait_for_strategy(UntilHttpRequestIsSucceeded(80, timeout=0.2), container, settings)
    finally:
        server.close()
        await server.wait_closed()
    assert "returned 500" in exc_info.value.last_failure


async def test_until_message_is_logged(client, container, settings):
    client.logs = ("starting\nready to accept connections\n", "")
    await wait_for_strategy(UntilMessageIsLogged(r"^ready to accept"), container, settings)

    with pytest.raises(WaitTimeoutError):
        await wait_for_strategy(UntilMessageIsLogged("ready", stream="stderr", timeout=0.1), container, settings)


def test_until_message_is_logged_rejects_invalid_patterns():
    with pytest.raises(re.error):
        UntilMessageIsLogged("ready[")


async def test_until_command_is_completed(client, container, settings):
    strategy = UntilCommandIsCompleted("pg_isready")
    assert strategy.command == ("/bin/sh", "-c", "pg_isready")
    await wait_for_strategy(strategy, container, settings)
    assert ("execute_command", "c1", ("/bin/sh", "-c", "pg_isready")) in client.calls

    client.exec_results[("false",)] = ExecResult(exit_code=1)
    with pytest.raises(WaitTimeoutError) as exc_info:
        await wait_for_strategy(UntilCommandIsCompleted(["false"], timeout=0.1), container, settings)
    assert "exited with 1" in exc_info.value.last_failure


def test_until_command_is_completed_requires_a_command():
    with pytest.raises(ValueError, match="empty"):
        UntilCommandIsCompleted([])
