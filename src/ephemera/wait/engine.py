import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING

from ephemera.config import EphemeraSettings, get_settings
from ephemera.exceptions import WaitTimeoutError
from ephemera.utils.log import get_logger
from ephemera.wait.abstract import WaitStrategy

if TYPE_CHECKING:
    from ephemera.deployment.container import RunningContainer

__all__ = ["wait_for_strategy", "wait_until_ready"]

logger = get_logger("ephemera-wait")


async def wait_until_ready(
    strategies: Sequence[WaitStrategy],
    container: "RunningContainer",
    settings: EphemeraSettings | None = None,
) -> None:
    """Run ``strategies`` one after the other.

    The first strategy that times out aborts the chain; later strategies are
    never attempted.

    Raises:
        WaitTimeoutError: If a strategy does not succeed within its timeout.
    """
    settings = settings or get_settings()
    for strategy in strategies:
        elapsed = await wait_for_strategy(strategy, container, settings)
        logger.debug(f"{strategy!r} succeeded after {elapsed:.2f}s")


async def wait_for_strategy(
    strategy: WaitStrategy,
    container: "RunningContainer",
    settings: EphemeraSettings | None = None,
) -> float:
    """Poll a single strategy until it succeeds. Returns the elapsed seconds."""
    settings = settings or get_settings()
    timeout = strategy.timeout if strategy.timeout is not None else settings.wait_timeout
    delay = strategy.interval if strategy.interval is not None else settings.wait_interval
    max_delay = strategy.max_interval if strategy.max_interval is not None else settings.wait_max_interval
    factor = strategy.backoff_factor if strategy.backoff_factor is not None else settings.wait_backoff_factor
    max_delay = max(max_delay, delay)

    loop = asyncio.get_running_loop()
    start = loop.time()
    deadline = start + timeout
    last_failure: str | None = None
    n_attempts = 0
    while True:
        n_attempts += 1
        try:
            ready = await asyncio.wait_for(strategy.is_ready(container), timeout=max(deadline - loop.time(), 0))
        except TimeoutError:
            ready = False
            last_failure = "attempt did not complete before the deadline"
        except Exception as e:
            ready = False
            last_failure = f"{type(e).__name__}: {e}"
        else:
            if not ready:
                last_failure = "not ready"
        if ready:
            return loop.time() - start
        remaining = deadline - loop.time()
        if remaining <= 0:
            elapsed = loop.time() - start
            logger.debug(f"{strategy!r} gave up after {n_attempts} attempts")
            raise WaitTimeoutError(strategy, elapsed, last_failure)
        await asyncio.sleep(min(delay, remaining))
        delay = min(delay * factor, max_delay)
