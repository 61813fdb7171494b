from __future__ import annotations

import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Optional

from ..util.clock import Clock
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)


CHALLENGE_PRESENT_JS = """
(phrases) => {
  const body = ((document.body && document.body.innerText) || '').toLowerCase();
  const title = (document.title || '').toLowerCase();
  return phrases.some(p => title.includes(p) || body.includes(p));
}
"""


def bezier_path(
    start: tuple[float, float],
    end: tuple[float, float],
    *,
    steps: int = 20,
    rng: Optional[random.Random] = None,
) -> list[tuple[float, float]]:
    """
    Points along a cubic Bézier curve from `start` to `end` with randomized control points.

    B(t) = (1-t)^3 P0 + 3(1-t)^2 t P1 + 3(1-t) t^2 P2 + t^3 P3
    """
    r = rng or random.Random()
    steps = max(2, int(steps))
    dx = end[0] - start[0]
    dy = end[1] - start[1]

    cp1 = (start[0] + dx * r.uniform(0.2, 0.4) + r.uniform(-50, 50), start[1] + dy * r.uniform(0.2, 0.4) + r.uniform(-50, 50))
    cp2 = (start[0] + dx * r.uniform(0.6, 0.8) + r.uniform(-50, 50), start[1] + dy * r.uniform(0.6, 0.8) + r.uniform(-50, 50))

    points: list[tuple[float, float]] = []
    for i in range(steps):
        t = i / (steps - 1)
        u = 1 - t
        x = u**3 * start[0] + 3 * u**2 * t * cp1[0] + 3 * u * t**2 * cp2[0] + t**3 * end[0]
        y = u**3 * start[1] + 3 * u**2 * t * cp1[1] + 3 * u * t**2 * cp2[1] + t**3 * end[1]
        points.append((x, y))
    return points


class ChallengeResolver(ABC):
    """Waits out (or tries to dismiss) the anti-bot interstitial before page state is trusted."""

    @abstractmethod
    async def wait_for_challenge_clear(self, page: Any, max_wait_s: float) -> bool:
        """Return True once the challenge is gone, False on timeout (callers proceed optimistically)."""


class PollingChallengeResolver(ChallengeResolver):
    def __init__(
        self,
        *,
        clock: Clock,
        selectors: Optional[PortalSelectors] = None,
        poll_interval_s: float = 2.0,
    ) -> None:
        self.clock = clock
        self.selectors = selectors or PortalSelectors()
        self.poll_interval_s = poll_interval_s

    async def challenge_present(self, page: Any) -> bool:
        try:
            return bool(await page.evaluate(CHALLENGE_PRESENT_JS, list(self.selectors.challenge_phrases)))
        except Exception:
            # Mid-navigation evaluation failures mean we can't tell yet; keep waiting.
            logger.debug("Challenge probe failed; treating as still pending.", exc_info=True)
            return True

    async def wait_for_challenge_clear(self, page: Any, max_wait_s: float) -> bool:
        logger.info("Waiting up to %.0fs for the anti-bot challenge to clear...", max_wait_s)
        deadline = self.clock.monotonic() + max_wait_s
        polls = 0
        while self.clock.monotonic() < deadline:
            if not await self.challenge_present(page):
                logger.info("Challenge cleared (polls=%d)", polls)
                return True
            polls += 1
            await self._on_pending(page, polls)
            await self.clock.sleep(self.poll_interval_s)

        logger.warning("Challenge wait timed out after %.0fs; continuing anyway", max_wait_s)
        return False

    async def _on_pending(self, page: Any, polls: int) -> None:
        return None


class InteractiveChallengeResolver(PollingChallengeResolver):
    """
    Polling plus a best-effort click on the challenge checkbox, reached along a human-like pointer path.

    Used when the browser's own anti-detection does not pass the challenge unattended. Nothing here is fatal.
    """

    def __init__(
        self,
        *,
        clock: Clock,
        selectors: Optional[PortalSelectors] = None,
        poll_interval_s: float = 2.0,
        click_every: int = 3,
        rng: Optional[random.Random] = None,
    ) -> None:
        super().__init__(clock=clock, selectors=selectors, poll_interval_s=poll_interval_s)
        self.click_every = max(1, int(click_every))
        self.rng = rng or random.Random()

    async def _on_pending(self, page: Any, polls: int) -> None:
        # First pending poll, then every `click_every` polls.
        if (polls - 1) % self.click_every != 0:
            return
        try:
            await self.click_widget(page)
        except Exception:
            logger.debug("Challenge widget interaction failed.", exc_info=True)

    async def click_widget(self, page: Any) -> bool:
        frames = page.locator(self.selectors.challenge_iframe)
        if await frames.count() == 0:
            return False
        box = await frames.first.bounding_box()
        if not box:
            return False

        # The checkbox sits at the left edge of the widget, vertically centered.
        target_x = box["x"] + min(30.0, box["width"] / 2) + self.rng.uniform(-3, 3)
        target_y = box["y"] + box["height"] / 2 + self.rng.uniform(-3, 3)
        start = (self.rng.uniform(100, 500), self.rng.uniform(100, 500))

        for x, y in bezier_path(start, (target_x, target_y), steps=self.rng.randint(15, 30), rng=self.rng):
            await page.mouse.move(x, y)
            await self.clock.sleep(self.rng.uniform(0.001, 0.005))

        await self.clock.sleep(self.rng.uniform(0.1, 0.4))
        await page.mouse.click(target_x, target_y)
        logger.info("Clicked challenge widget at (%.0f, %.0f)", target_x, target_y)
        return True


def build_challenge_resolver(
    mode: str,
    *,
    clock: Clock,
    selectors: Optional[PortalSelectors] = None,
    poll_interval_s: float = 2.0,
) -> ChallengeResolver:
    if mode == "interactive":
        return InteractiveChallengeResolver(clock=clock, selectors=selectors, poll_interval_s=poll_interval_s)
    if mode == "polling":
        return PollingChallengeResolver(clock=clock, selectors=selectors, poll_interval_s=poll_interval_s)
    raise ValueError(f"Unknown challenge mode: {mode!r}")
