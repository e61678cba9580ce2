import dataclasses
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from typing_extensions import Self

if TYPE_CHECKING:
    from ephemera.deployment.container import RunningContainer


@dataclasses.dataclass(frozen=True, kw_only=True)
class WaitStrategy(ABC):
    """A readiness predicate polled after the container started.

    Timing fields left as ``None`` fall back to the ``wait_*`` values of
    :class:`ephemera.config.EphemeraSettings`.
    """

    timeout: float | None = None
    """Seconds to keep polling before giving up."""
    interval: float | None = None
    """Delay after the first failed attempt."""
    max_interval: float | None = None
    """Upper bound for the delay between attempts."""
    backoff_factor: float | None = None
    """Multiplier applied to the delay after each failed attempt."""

    @abstractmethod
    async def is_ready(self, container: "RunningContainer") -> bool:
        """Return ``True`` once the container satisfies this strategy.

        Raising an exception counts as a failed attempt; the engine records
        it as the last failure and tries again.
        """

    def with_timeout(self, timeout: float) -> Self:
        return dataclasses.replace(self, timeout=timeout)

    def with_interval(self, interval: float, *, max_interval: float | None = None) -> Self:
        return dataclasses.replace(self, interval=interval, max_interval=max_interval)
