"""Bounded retry policy for service convergence.

Polling is "attempts × fixed delay", never a wall-clock deadline. The
policy also carries the remediation rule: after the first budget is spent,
stop the group, pause, start it again and poll once more with a smaller
budget. Sleeping goes through an injectable callable so tests drive the
whole state machine with a fake clock.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ConvergencePolicy:
    """Retry budget for one validation pass.

    Attributes:
        max_attempts: Polls in the first pass.
        delay: Seconds slept between polls (not after the last one).
        remediation_pause: Seconds between stop and start in the one
            remediation cycle.
        remediation_attempts: Polls after remediation; must be smaller
            than ``max_attempts``.
        sleep: Clock used for every wait.
    """

    max_attempts: int = 30
    delay: float = 10.0
    remediation_pause: float = 5.0
    remediation_attempts: int = 6
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1 or self.remediation_attempts < 1:
            raise ValueError("attempt budgets must be at least 1")
        if self.delay < 0 or self.remediation_pause < 0:
            raise ValueError("delays must not be negative")
        if self.remediation_attempts >= self.max_attempts:
            raise ValueError(
                f"remediation_attempts ({self.remediation_attempts}) must be smaller than "
                f"max_attempts ({self.max_attempts})"
            )

    @property
    def worst_case_seconds(self) -> float:
        """Upper bound on time spent sleeping across both passes."""
        return (
            (self.max_attempts - 1) * self.delay
            + self.remediation_pause
            + (self.remediation_attempts - 1) * self.delay
        )

    @classmethod
    def from_settings(cls, settings, sleep: Callable[[float], None] = time.sleep) -> ConvergencePolicy:
        return cls(
            max_attempts=settings.poll_attempts,
            delay=settings.poll_delay,
            remediation_pause=settings.remediation_pause,
            remediation_attempts=settings.remediation_attempts,
            sleep=sleep,
        )


__all__ = ["ConvergencePolicy"]
