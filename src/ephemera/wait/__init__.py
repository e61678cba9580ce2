from ephemera.wait.abstract import WaitStrategy
from ephemera.wait.engine import wait_for_strategy, wait_until_ready
from ephemera.wait.strategies import (
    UntilCommandIsCompleted,
    UntilContainerIsRunning,
    UntilHttpRequestIsSucceeded,
    UntilMessageIsLogged,
    UntilPortIsAvailable,
)

__all__ = [
    "UntilCommandIsCompleted",
    "UntilContainerIsRunning",
    "UntilHttpRequestIsSucceeded",
    "UntilMessageIsLogged",
    "UntilPortIsAvailable",
    "WaitStrategy",
    "wait_for_strategy",
    "wait_until_ready",
]
