"""
TCG Marketplace Monitor — Browser Session Manager

Owns the Playwright handle used by a monitoring run. Three ways to get a
browser, tried in this order:

1. Attach over CDP to a Chrome started with --remote-debugging-port
   (BROWSER_DEBUG_PORT). This is the normal setup: the profile is already
   logged in to the marketplace.
2. Launch a persistent context against BROWSER_PROFILE_DIR.
3. Launch a fresh Chromium with a rotated user agent and optional proxy.

Every acquire() must be paired with exactly one release(); release() never
raises so it is safe inside finally blocks.
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import structlog
from playwright.async_api import async_playwright

from src.config import settings
from src.pipeline.errors import NavigationError, SessionUnavailable
from src.scraper.anti_detect import WEBDRIVER_MASK_SCRIPT, AntiDetect

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Block / interstitial markers
# ---------------------------------------------------------------------------
LOGIN_URL_MARKERS = ("/login", "/checkpoint")
LOGIN_TEXT_MARKERS = ("Log in to Facebook", "Create new account")
BLOCK_TEXT_MARKERS = ("rate limit", "captcha", "please try again later", "temporarily blocked")


def detect_block(url: str, title: str, body_text: str) -> str | None:
    """
    Classify a loaded page as blocked or not.

    Returns:
        A short reason string when the page looks like a login wall,
        captcha, or rate-limit interstitial, else None.
    """
    if any(marker in (url or "") for marker in LOGIN_URL_MARKERS):
        return "login_redirect"
    if any(marker in (body_text or "") for marker in LOGIN_TEXT_MARKERS):
        return "login_wall"

    lowered = (body_text or "").lower()
    for marker in BLOCK_TEXT_MARKERS:
        if marker in lowered:
            return marker.replace(" ", "_")

    if "error" in (title or "").lower():
        return "error_title"
    return None


# ---------------------------------------------------------------------------
# Session handle + capability interface
# ---------------------------------------------------------------------------


@dataclass
class BrowserSession:
    """Live Playwright handles for one monitoring run."""
    playwright: Any
    context: Any
    page: Any
    browser: Any | None = None
    attached: bool = False  # CDP attach: the context belongs to the user's Chrome
    released: bool = False


class BrowserSessionManager(Protocol):
    """What the orchestrator needs from a browser. Fakes implement this in tests."""

    async def acquire(self) -> Any: ...

    async def navigate(self, session: Any, url: str) -> None: ...

    async def human_like_scroll(self, session: Any) -> None: ...

    async def take_screenshot(self, session: Any) -> str: ...

    async def is_blocked(self, session: Any) -> bool: ...

    async def page_content(self, session: Any) -> str: ...

    async def expand_description(self, session: Any) -> None: ...

    async def release(self, session: Any) -> None: ...


# ---------------------------------------------------------------------------
# Playwright implementation
# ---------------------------------------------------------------------------


class PlaywrightSessionManager:
    """
    BrowserSessionManager backed by Playwright Chromium.

    Usage:
        manager = PlaywrightSessionManager()
        session = await manager.acquire()
        try:
            await manager.navigate(session, url)
            html = await manager.page_content(session)
        finally:
            await manager.release(session)
    """

    def __init__(
        self,
        anti_detect: AntiDetect | None = None,
        playwright_factory: Callable[[], Any] = async_playwright,
    ) -> None:
        self._anti_detect = anti_detect or AntiDetect()
        self._playwright_factory = playwright_factory

    @property
    def anti_detect(self) -> AntiDetect:
        return self._anti_detect

    def _viewport(self) -> dict[str, int]:
        return {"width": settings.BROWSER_VIEWPORT_WIDTH, "height": settings.BROWSER_VIEWPORT_HEIGHT}

    async def acquire(self) -> BrowserSession:
        """
        Start Playwright and open a page.

        Raises:
            SessionUnavailable: Playwright could not start, the debug port
                is unreachable, or the profile is locked by another Chrome.
        """
        try:
            pw = await self._playwright_factory().start()
        except Exception as e:
            logger.error("browser_playwright_start_failed", error=str(e), source="browser_session")
            raise SessionUnavailable(f"playwright failed to start: {e}") from e

        try:
            session = await self._open(pw)
        except Exception as e:
            logger.error(
                "browser_acquire_failed",
                error=str(e),
                debug_port=settings.BROWSER_DEBUG_PORT or None,
                profile_dir=settings.BROWSER_PROFILE_DIR or None,
                source="browser_session",
            )
            try:
                await pw.stop()
            except Exception as stop_err:
                logger.debug("browser_playwright_stop_failed", error=str(stop_err), source="browser_session")
            raise SessionUnavailable(str(e)) from e

        logger.info(
            "browser_session_acquired",
            attached=session.attached,
            headless=settings.BROWSER_HEADLESS,
            source="browser_session",
        )
        return session

    async def _open(self, pw: Any) -> BrowserSession:
        if settings.BROWSER_DEBUG_PORT:
            browser = await pw.chromium.connect_over_cdp(
                f"http://127.0.0.1:{settings.BROWSER_DEBUG_PORT}", timeout=15000
            )
            if browser.contexts:
                context = browser.contexts[0]
            else:
                context = await browser.new_context(viewport=self._viewport())
            await context.add_init_script(WEBDRIVER_MASK_SCRIPT)
            page = await context.new_page()
            return BrowserSession(playwright=pw, context=context, page=page, browser=browser, attached=True)

        launch_args = ["--disable-blink-features=AutomationControlled"]

        if settings.BROWSER_PROFILE_DIR:
            context = await pw.chromium.launch_persistent_context(
                settings.BROWSER_PROFILE_DIR,
                headless=settings.BROWSER_HEADLESS,
                viewport=self._viewport(),
                proxy=self._anti_detect.get_proxy_config(),
                args=launch_args,
            )
            await context.add_init_script(WEBDRIVER_MASK_SCRIPT)
            page = context.pages[0] if context.pages else await context.new_page()
            return BrowserSession(playwright=pw, context=context, page=page)

        browser = await pw.chromium.launch(
            headless=settings.BROWSER_HEADLESS,
            proxy=self._anti_detect.get_proxy_config(),
            args=launch_args,
        )
        context = await browser.new_context(
            user_agent=self._anti_detect.get_random_user_agent(),
            viewport=self._viewport(),
        )
        await context.add_init_script(WEBDRIVER_MASK_SCRIPT)
        page = await context.new_page()
        return BrowserSession(playwright=pw, context=context, page=page, browser=browser)

    async def navigate(self, session: BrowserSession, url: str) -> None:
        """
        Load a URL and pause like a human would.

        Raises:
            NavigationError: timeout, unreachable host, or hourly page cap spent.
        """
        if not self._anti_detect.can_scrape():
            logger.warning("browser_page_cap_reached", url=url, source="browser_session")
            raise NavigationError(url, "hourly page cap reached")

        try:
            await session.page.goto(url, wait_until="domcontentloaded", timeout=settings.NAVIGATION_TIMEOUT_MS)
        except Exception as e:
            logger.warning("browser_navigation_failed", url=url, error=str(e), source="browser_session")
            raise NavigationError(url, str(e)) from e

        self._anti_detect.record_page()
        await self._anti_detect.random_delay()

    async def human_like_scroll(self, session: BrowserSession) -> None:
        """Scroll in several randomized steps with randomized pauses."""
        plan = self._anti_detect.scroll_plan()
        for pixels, pause in plan:
            try:
                await session.page.mouse.wheel(0, pixels)
            except Exception as e:
                logger.warning("browser_scroll_failed", error=str(e), source="browser_session")
                return
            await asyncio.sleep(pause)
        logger.debug("browser_scrolled", steps=len(plan), pixels=sum(p for p, _ in plan), source="browser_session")

    async def take_screenshot(self, session: BrowserSession) -> str:
        """Viewport screenshot as base64 JPEG, or "" if capture fails."""
        try:
            image = await session.page.screenshot(full_page=False, type="jpeg", quality=80)
        except Exception as e:
            logger.warning("browser_screenshot_failed", error=str(e), source="browser_session")
            return ""
        if not image:
            return ""
        return base64.standard_b64encode(image).decode("utf-8")

    async def is_blocked(self, session: BrowserSession) -> bool:
        try:
            url = session.page.url
            title = await session.page.title()
            body_text = await session.page.inner_text("body")
        except Exception as e:
            logger.debug("browser_block_check_failed", error=str(e), source="browser_session")
            return False

        reason = detect_block(url, title, body_text)
        if reason:
            logger.warning("browser_page_blocked", url=url, reason=reason, source="browser_session")
            return True
        return False

    async def page_content(self, session: BrowserSession) -> str:
        try:
            return await session.page.content()
        except Exception as e:
            logger.warning("browser_content_failed", error=str(e), source="browser_session")
            return ""

    async def expand_description(self, session: BrowserSession) -> None:
        """Click the listing's "See more" toggle if there is one."""
        try:
            toggle = session.page.get_by_text("See more", exact=True).first
            if await toggle.count():
                await toggle.click(timeout=2000)
                await asyncio.sleep(0.5)
        except Exception as e:
            logger.debug("browser_see_more_failed", error=str(e), source="browser_session")

    async def release(self, session: BrowserSession) -> None:
        """
        Close everything acquire() opened.

        Tolerates handles that are already closed. For a CDP-attached
        browser only our page is closed; the user's Chrome keeps running.
        """
        if session.released:
            logger.warning("browser_release_repeated", source="browser_session")
            return
        session.released = True

        steps: list[tuple[str, Any]] = [("page", session.page.close)]
        if not session.attached:
            if session.browser is not None:
                steps.append(("browser", session.browser.close))
            else:
                steps.append(("context", session.context.close))
        steps.append(("playwright", session.playwright.stop))

        for name, close in steps:
            try:
                await close()
            except Exception as e:
                logger.debug("browser_release_step_failed", step=name, error=str(e), source="browser_session")

        logger.info("browser_session_released", attached=session.attached, source="browser_session")
