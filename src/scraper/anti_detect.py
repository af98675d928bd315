"""
TCG Marketplace Monitor — Anti-Detection Layer

Manages human-paced random delays, randomized scroll plans, fingerprint
rotation, proxy configuration, and the hourly page cap from
settings.SCRAPE_MAX_PAGES_PER_HOUR.
"""

from __future__ import annotations

import asyncio
import random
from datetime import datetime, timezone

import structlog

from src.config import settings

logger = structlog.get_logger(__name__)

# Hides the automation flag that Chromium exposes to page scripts
WEBDRIVER_MASK_SCRIPT = "Object.defineProperty(navigator, 'webdriver', {get: () => undefined})"


class AntiDetect:
    """
    Anti-detection pacing for Playwright sessions.

    Manages:
    - Random delays between SCRAPE_DELAY_MIN_SECONDS and SCRAPE_DELAY_MAX_SECONDS
    - Randomized scroll amplitudes and pauses
    - Hourly page rate cap (SCRAPE_MAX_PAGES_PER_HOUR)
    - User-agent rotation
    - Proxy configuration
    """

    # Realistic user agents for rotation
    USER_AGENTS = [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36",
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/125.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0",
    ]

    def __init__(
        self,
        delay_min: float | None = None,
        delay_max: float | None = None,
        max_pages_per_hour: int | None = None,
    ) -> None:
        self._pages_this_hour: int = 0
        self._hour_start: datetime = datetime.now(timezone.utc)
        self._max_pages_per_hour: int = (
            max_pages_per_hour if max_pages_per_hour is not None else settings.SCRAPE_MAX_PAGES_PER_HOUR
        )
        self._delay_min: float = delay_min if delay_min is not None else settings.SCRAPE_DELAY_MIN_SECONDS
        self._delay_max: float = delay_max if delay_max is not None else settings.SCRAPE_DELAY_MAX_SECONDS
        if self._delay_max < self._delay_min:
            raise ValueError("delay_max must be >= delay_min")

    def _reset_hour_if_needed(self) -> None:
        """Reset page counter if a new hour has started."""
        now = datetime.now(timezone.utc)
        elapsed = (now - self._hour_start).total_seconds()
        if elapsed >= 3600:
            self._pages_this_hour = 0
            self._hour_start = now

    def can_scrape(self) -> bool:
        """Check if we're under the hourly rate cap."""
        self._reset_hour_if_needed()
        return self._pages_this_hour < self._max_pages_per_hour

    def record_page(self) -> None:
        """Record a page load for rate limiting."""
        self._reset_hour_if_needed()
        self._pages_this_hour += 1

    async def random_delay(self) -> None:
        """Sleep for a random duration between min and max delay."""
        delay = random.uniform(self._delay_min, self._delay_max)
        logger.debug("anti_detect_delay", delay_seconds=round(delay, 2), source="anti_detect")
        await asyncio.sleep(delay)

    def scroll_plan(self) -> list[tuple[int, float]]:
        """
        Build a randomized scroll sequence.

        Returns:
            List of (pixels, pause_seconds) steps. Always at least two steps,
            each with its own amplitude, so the page never moves in one jump.
        """
        steps = max(2, settings.SCROLL_STEPS)
        return [
            (
                random.randint(settings.SCROLL_MIN_PIXELS, settings.SCROLL_MAX_PIXELS),
                random.uniform(settings.SCROLL_PAUSE_MIN_SECONDS, settings.SCROLL_PAUSE_MAX_SECONDS),
            )
            for _ in range(steps)
        ]

    def get_random_user_agent(self) -> str:
        """Return a random user agent string."""
        return random.choice(self.USER_AGENTS)

    def get_proxy_config(self) -> dict[str, str] | None:
        """Return proxy configuration if PROXY_URL is set."""
        if settings.PROXY_URL:
            return {"server": settings.PROXY_URL}
        return None

    @property
    def pages_remaining(self) -> int:
        """Pages remaining in current hour window."""
        self._reset_hour_if_needed()
        return max(0, self._max_pages_per_hour - self._pages_this_hour)
