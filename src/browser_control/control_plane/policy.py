"""Ordered-fallback policies and the routine that consumes them."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class FallbackPolicy(Generic[T]):
    """Candidates tried in order; the first success wins.

    timeout_s bounds each attempt, max_attempts caps how many candidates are
    tried (None means all of them).
    """

    candidates: Sequence[T]
    timeout_s: Optional[float] = None
    max_attempts: Optional[int] = None

    def attempts(self) -> Sequence[T]:
        if self.max_attempts is None:
            return self.candidates
        return self.candidates[: self.max_attempts]


class FallbackExhausted(Exception):
    """Every candidate of a policy failed."""

    def __init__(self, label: str, errors: list[tuple[object, BaseException]]):
        super().__init__(label)
        self.label = label
        self.errors = errors

    def __str__(self) -> str:
        if not self.errors:
            return f"{self.label}: no candidates"
        last = self.errors[-1][1]
        return f"{self.label}: all {len(self.errors)} attempts failed (last: {last!r})"


async def first_success(
    policy: FallbackPolicy[T],
    attempt: Callable[[T], Awaitable[R]],
    *,
    label: str,
    accept: Optional[Callable[[R], bool]] = None,
    propagate: tuple[type[BaseException], ...] = (),
) -> tuple[T, R]:
    """Run ``attempt`` over the policy's candidates until one succeeds.

    A result rejected by ``accept`` counts as a failure. Exceptions listed in
    ``propagate`` abort the whole chain instead of falling through.

    Returns the winning candidate and its result, or raises FallbackExhausted.
    """
    errors: list[tuple[object, BaseException]] = []
    candidates = policy.attempts()

    for index, candidate in enumerate(candidates, start=1):
        try:
            if policy.timeout_s is not None:
                result = await asyncio.wait_for(attempt(candidate), policy.timeout_s)
            else:
                result = await attempt(candidate)
        except propagate:
            raise
        except Exception as e:
            logger.warning(f"{label}: attempt {index}/{len(candidates)} ({candidate}) failed: {e}")
            errors.append((candidate, e))
            continue

        if accept is not None and not accept(result):
            logger.warning(f"{label}: attempt {index}/{len(candidates)} ({candidate}) rejected: {result!r}")
            errors.append((candidate, ValueError(f"rejected result {result!r}")))
            continue

        return candidate, result

    raise FallbackExhausted(label, errors)
