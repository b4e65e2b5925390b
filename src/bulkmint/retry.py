"""Backoff policies and the advance-vs-retry decision.

Two behaviors are named policies: ``RETRY_FOREVER`` (fixed one-second delay, no
attempt ceiling) for confirmed flows and ``ADVANCE`` (single attempt) for
fire-and-forget flows. Exponential and capped variants are opt-in.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

import bulkmint.constants as C
from bulkmint.errors import ConfigurationError, Disposition, classify_exception

log = logging.getLogger("bulkmint.retry")


class BackoffPolicy(Protocol):
    max_attempts: int | None

    def delay(self, attempt: int) -> float: ...


def allows_retry(policy: BackoffPolicy, attempts: int) -> bool:
    """``attempts`` is the number of attempts already made."""
    return policy.max_attempts is None or attempts < policy.max_attempts


@dataclass(frozen=True, slots=True)
class FixedDelay:
    seconds: float = C.RETRY_DELAY
    max_attempts: int | None = None

    def delay(self, attempt: int) -> float:
        return self.seconds


@dataclass(frozen=True, slots=True)
class ExponentialBackoff:
    initial: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.0
    max_attempts: int | None = None

    def delay(self, attempt: int) -> float:
        base = min(self.initial * self.factor ** max(attempt - 1, 0), self.max_delay)
        return base + random.uniform(0, self.jitter) if self.jitter else base


@dataclass(frozen=True, slots=True)
class CappedAttempts:
    policy: BackoffPolicy
    max_attempts: int = 3

    def delay(self, attempt: int) -> float:
        return self.policy.delay(attempt)


@dataclass(frozen=True, slots=True)
class NoRetry:
    max_attempts: int = 1

    def delay(self, attempt: int) -> float:
        return 0.0


RETRY_FOREVER = FixedDelay(C.RETRY_DELAY)
ADVANCE = NoRetry()


def policy_from_config(conf: dict, *, strategy: str | None = None, max_attempts: int | None = None) -> BackoffPolicy:
    """Build a policy from the ``[retry]`` config section; arguments override the file."""
    strategy = strategy or conf.get("strategy", "fixed")
    attempts = max_attempts if max_attempts is not None else conf.get("max_attempts", 0)
    attempts = attempts or None  # 0 means forever
    delay = float(conf.get("delay", C.RETRY_DELAY))
    match strategy:
        case "fixed":
            policy = FixedDelay(delay)
        case "exponential":
            policy = ExponentialBackoff(
                initial=delay,
                factor=float(conf.get("factor", 2.0)),
                max_delay=float(conf.get("max_delay", 30.0)),
                jitter=float(conf.get("jitter", 0.0)),
            )
        case _:
            raise ConfigurationError(f"Unknown retry strategy {strategy!r}")
    return CappedAttempts(policy, attempts) if attempts else policy


class Action(StrEnum):
    RETRY   = "retry"
    ADVANCE = "advance"


@dataclass(frozen=True, slots=True)
class Decision:
    action: Action
    status: C.OpStatus
    delay: float = 0.0
    reason: str = ""


class RetryController:
    """Single place where an attempt's result becomes retry or advance.

    Fatal errors are re-raised. Skippable errors advance as Skipped. Retryable
    errors retry while the policy allows and then advance as Failed.
    """

    def __init__(self, policy: BackoffPolicy, *, sleep=asyncio.sleep) -> None:
        self.policy = policy
        self._sleep = sleep

    def succeeded(self) -> Decision:
        return Decision(Action.ADVANCE, C.OpStatus.COMPLETED)

    def failed(self, exc: BaseException, attempts: int, *, key: str = "") -> Decision:
        code, disposition = classify_exception(exc)
        if disposition is Disposition.FATAL:
            raise exc
        if disposition is Disposition.SKIPPABLE:
            log.warning("Skipping %s: %s", key, exc)
            return Decision(Action.ADVANCE, C.OpStatus.SKIPPED, reason=code)
        if allows_retry(self.policy, attempts):
            delay = self.policy.delay(attempts)
            log.warning("Attempt %d for %s failed (%s), retrying in %.1fs", attempts, key, exc, delay)
            return Decision(Action.RETRY, C.OpStatus.IN_FLIGHT, delay=delay, reason=code)
        log.error("Giving up on %s after %d attempt(s): %s", key, attempts, exc)
        return Decision(Action.ADVANCE, C.OpStatus.FAILED, reason=code)

    async def wait(self, decision: Decision) -> None:
        if decision.action is Action.RETRY and decision.delay > 0:
            await self._sleep(decision.delay)

    async def pause(self, seconds: float) -> None:
        await self._sleep(seconds)
