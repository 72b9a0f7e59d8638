"""Drive a fresh page to the first reachable target, or to an inert placeholder."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from ..config import NAVIGATION_TIMEOUT, TARGET_URLS
from ..constants import PLACEHOLDER_HTML, PLACEHOLDER_URL
from .browser import BrowserHandle
from .errors import NavigationFailure, PageUnavailable
from .policy import FallbackExhausted, FallbackPolicy, first_success

logger = logging.getLogger(__name__)


def navigation_policy(
    candidates: Optional[Sequence[str]] = None,
    timeout_ms: int = NAVIGATION_TIMEOUT,
) -> FallbackPolicy[str]:
    urls = tuple(candidates) if candidates else tuple(TARGET_URLS)
    return FallbackPolicy(candidates=urls, timeout_s=timeout_ms / 1000)


def reached(url: Optional[str]) -> bool:
    return bool(url) and url != PLACEHOLDER_URL


async def navigate_with_fallback(handle: BrowserHandle, policy: FallbackPolicy[str]) -> str:
    """Return the page location after trying every candidate in order.

    Never raises for unreachable candidates; PageUnavailable still propagates
    because a dead page cannot show a placeholder either.
    """
    timeout_ms = int(policy.timeout_s * 1000) if policy.timeout_s else NAVIGATION_TIMEOUT

    async def attempt(url: str) -> str:
        try:
            return await handle.goto(url, timeout_ms)
        except PageUnavailable:
            raise
        except Exception as e:
            raise NavigationFailure(f"{url}: {e}") from e

    try:
        url, landed = await first_success(
            policy,
            attempt,
            label="navigate",
            accept=reached,
            propagate=(PageUnavailable,),
        )
        logger.info(f"Navigated to {landed} (candidate {url})")
        return landed
    except FallbackExhausted as e:
        logger.warning(f"No target reachable ({e}); loading placeholder page")

    try:
        await handle.set_content(PLACEHOLDER_HTML)
    except PageUnavailable:
        raise
    except Exception as e:
        logger.error(f"Could not load placeholder page: {e}")
    return PLACEHOLDER_URL
