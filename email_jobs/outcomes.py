"""Result of processing one claimed job."""

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class Completed:
    """The handler finished; the job is done."""


@dataclass(frozen=True)
class Retry:
    """The attempt failed and attempts remain."""

    error: dict[str, Any] = field(default_factory=dict)
    delay_seconds: float = 0.0


@dataclass(frozen=True)
class Escalate:
    """The final attempt failed; hand the job to the dead-letter queue."""

    error: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Discard:
    """The final attempt failed on a queue with no dead-letter queue."""

    error: dict[str, Any] = field(default_factory=dict)


ProcessOutcome = Union[Completed, Retry, Escalate, Discard]
