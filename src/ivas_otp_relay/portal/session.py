from __future__ import annotations

import asyncio
import enum
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from ..config import PortalConfig
from ..errors import AuthError, SessionExpiredError
from ..models import Cookie, Session
from ..state import CookieJar
from ..util.clock import Clock
from .challenge import ChallengeResolver
from .selectors import PortalSelectors
from .serializer import PageSerializer


logger = logging.getLogger(__name__)


LOGGED_IN_JS = """
(opts) => {
  const shell = !!document.querySelector(opts.shell);
  const content = !opts.requireContent || opts.content.some(sel => !!document.querySelector(sel));
  return shell && content && window.location.href.includes(opts.path);
}
"""

HAS_SELECTOR_JS = "(sel) => !!document.querySelector(sel)"

META_CONTENT_JS = """
(sel) => {
  const meta = document.querySelector(sel);
  return meta ? meta.getAttribute('content') : null;
}
"""

TEXT_OF_JS = """
(sel) => {
  const el = document.querySelector(sel);
  return el ? (el.textContent || '').trim() : null;
}
"""

CLICK_JS = """
(sel) => {
  const el = document.querySelector(sel);
  if (el) { el.click(); return true; }
  return false;
}
"""

SET_INPUT_JS = """
([sel, value]) => {
  const el = document.querySelector(sel);
  if (!el) return false;
  el.value = value;
  el.dispatchEvent(new Event('input', { bubbles: true }));
  el.dispatchEvent(new Event('change', { bubbles: true }));
  return true;
}
"""

_SAME_SITE = {"strict": "Strict", "lax": "Lax", "none": "None", "no_restriction": "None"}


class AuthState(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    NAVIGATING = "navigating"
    CHALLENGE_PENDING = "challenge_pending"
    LOGIN_FORM_VISIBLE = "login_form_visible"
    CREDENTIALS_SUBMITTED = "credentials_submitted"
    MANUAL_LOGIN_WINDOW = "manual_login_window"
    LOGGED_IN = "logged_in"
    TOKEN_EXTRACTED = "token_extracted"
    AUTH_FAILED = "auth_failed"


class SessionContext:
    """
    Canonical holder of the current `Session` and the browser page it belongs to.

    Writers replace the whole session; readers call `snapshot()` once per operation and work from that value.
    """

    def __init__(self) -> None:
        self._session = Session.empty()
        self._page: Any = None
        self.auth_state = AuthState.UNAUTHENTICATED
        self.last_error: Optional[str] = None

    def snapshot(self) -> Session:
        return self._session

    @property
    def page(self) -> Any:
        return self._page

    @property
    def valid(self) -> bool:
        return self._session.valid

    def publish(self, session: Session, *, page: Any = None) -> None:
        self._session = session
        if page is not None:
            self._page = page

    def detach_page(self) -> None:
        self._page = None

    def invalidate(self, reason: str = "") -> None:
        if self._session.valid:
            logger.warning("Session invalidated%s", f": {reason}" if reason else "")
        self._session = self._session.invalidated()


def to_playwright_cookies(cookies: Iterable[Cookie], base_url: str) -> list[dict]:
    """
    Shape persisted/injected cookies for `BrowserContext.add_cookies`.

    Cookies without a domain are bound to the portal URL; unknown sameSite values are dropped.
    """
    out: list[dict] = []
    for c in cookies:
        item: dict[str, Any] = {"name": c.name, "value": c.value}
        if c.domain:
            item["domain"] = c.domain
            item["path"] = c.path or "/"
        else:
            item["url"] = base_url
        if c.expires is not None and c.expires > 0:
            item["expires"] = float(c.expires)
        if c.httpOnly is not None:
            item["httpOnly"] = bool(c.httpOnly)
        if c.secure is not None:
            item["secure"] = bool(c.secure)
        same_site = _SAME_SITE.get((c.sameSite or "").strip().lower())
        if same_site:
            item["sameSite"] = same_site
        out.append(item)
    return out


class BrowserLauncher(ABC):
    """Starts the automated browser and hands back a ready page."""

    @abstractmethod
    async def launch(self, *, headless: bool, executable_path: str = "") -> Any:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class PlaywrightLauncher(BrowserLauncher):
    def __init__(self) -> None:
        self._pw: Any = None
        self._browser: Any = None
        self._context: Any = None

    async def launch(self, *, headless: bool, executable_path: str = "") -> Any:
        from playwright.async_api import async_playwright

        self._pw = await async_playwright().start()
        launch_kwargs: dict[str, Any] = {
            "headless": headless,
            "args": ["--no-sandbox", "--disable-dev-shm-usage", "--disable-blink-features=AutomationControlled"],
        }
        if executable_path:
            launch_kwargs["executable_path"] = executable_path

        # Prefer Playwright's bundled Chromium, but fall back to a system-installed browser if the
        # cache doesn't have Playwright browsers available.
        try:
            self._browser = await self._pw.chromium.launch(**launch_kwargs)
        except Exception as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise
            logger.warning("Playwright Chromium executable missing; falling back to system browser channel. (%s)", msg)
            try:
                self._browser = await self._pw.chromium.launch(channel="chrome", **launch_kwargs)
            except Exception:
                self._browser = await self._pw.chromium.launch(channel="msedge", **launch_kwargs)

        self._context = await self._browser.new_context(no_viewport=True, color_scheme="light")
        page = await self._context.new_page()
        page.set_default_navigation_timeout(90_000)
        page.set_default_timeout(60_000)
        return page

    async def close(self) -> None:
        for closer in (
            getattr(self._context, "close", None),
            getattr(self._browser, "close", None),
            getattr(self._pw, "stop", None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception:
                logger.debug("Browser shutdown step failed.", exc_info=True)
        self._pw = self._browser = self._context = None


class SessionManager:
    """
    (Re)authenticates against the portal and publishes the resulting `Session`.

    Flow: fresh browser (persisted cookies restored) -> landing page -> challenge -> logged-in check ->
    automatic login (when credentials exist) or manual-login window -> anti-forgery token -> cookies persisted.
    Retry scheduling belongs to the caller.
    """

    def __init__(
        self,
        cfg: PortalConfig,
        *,
        context: SessionContext,
        cookie_jar: CookieJar,
        resolver: ChallengeResolver,
        serializer: PageSerializer,
        clock: Clock,
        launcher: Optional[BrowserLauncher] = None,
        selectors: Optional[PortalSelectors] = None,
        debug_dir: Union[str, Path] = "data/debug",
    ) -> None:
        self.cfg = cfg
        self.context = context
        self.cookie_jar = cookie_jar
        self.resolver = resolver
        self.serializer = serializer
        self.clock = clock
        self.launcher = launcher or PlaywrightLauncher()
        self.selectors = selectors or PortalSelectors()
        self.debug_dir = Path(debug_dir)
        self._auth_lock = asyncio.Lock()

    @property
    def state(self) -> AuthState:
        return self.context.auth_state

    def _set_state(self, state: AuthState) -> None:
        if self.context.auth_state != state:
            logger.info("Auth state: %s -> %s", self.context.auth_state.value, state.value)
        self.context.auth_state = state

    async def authenticate(self) -> Session:
        """
        Build a fresh authenticated session. Safe to call while a valid session exists (it is replaced).

        Raises AuthError; the session is left invalid on any failure.
        """
        async with self._auth_lock:
            async with self.serializer.exclusive("authenticate"):
                try:
                    session = await asyncio.wait_for(self._authenticate(), timeout=self.cfg.auth_timeout_s)
                except AuthError as e:
                    self._fail(str(e))
                    raise
                except asyncio.TimeoutError:
                    msg = f"Authentication did not finish within {self.cfg.auth_timeout_s:.0f}s"
                    self._fail(msg)
                    raise AuthError(msg) from None
                except Exception as e:
                    msg = f"Authentication failed: {e}"
                    self._fail(msg)
                    raise AuthError(msg) from e

        self.context.last_error = None
        return session

    def _fail(self, message: str) -> None:
        self.context.invalidate(message)
        self.context.last_error = message
        self._set_state(AuthState.AUTH_FAILED)
        logger.error("%s", message)

    async def _authenticate(self) -> Session:
        self.context.invalidate("re-authenticating")
        self._set_state(AuthState.NAVIGATING)

        await self._discard_browser()
        logger.info("Launching browser (headless=%s)...", self.cfg.headless)
        page = await self.launcher.launch(headless=self.cfg.headless, executable_path=self.cfg.browser_executable)
        self.context.publish(self.context.snapshot(), page=page)

        stored = self.cookie_jar.load()
        if stored:
            try:
                await page.context.add_cookies(to_playwright_cookies(stored, self.cfg.base_url))
                logger.info("Restored %d cookies into the browser", len(stored))
            except Exception:
                logger.warning("Could not restore persisted cookies; continuing with a fresh session.", exc_info=True)

        logger.info("Navigating to portal...")
        try:
            await page.goto(f"{self.cfg.base_url}/portal", wait_until="load", timeout=90_000)
        except Exception as e:
            # The challenge page often never reaches "load"; the resolver decides what happens next.
            logger.warning("Portal page load did not complete; continuing. (%s)", e)

        self._set_state(AuthState.CHALLENGE_PENDING)
        await self.resolver.wait_for_challenge_clear(page, self.cfg.challenge_timeout_s)
        await self.clock.sleep(2)

        logged_in = await self._looks_logged_in(page, require_content=True)
        if not logged_in:
            logger.info("Not logged in.")
            if self.cfg.has_credentials:
                logged_in = await self._login_with_credentials(page)
            else:
                logger.warning("No IVAS_EMAIL/IVAS_PASSWORD configured; skipping automatic login.")
            if not logged_in:
                logged_in = await self._wait_for_manual_login(page)

        if not logged_in:
            await self._save_debug(page, name_prefix="auth_not_logged_in")
            raise AuthError("Could not authenticate (automatic login failed and manual login window expired)")

        self._set_state(AuthState.LOGGED_IN)
        logger.info("Portal authenticated; loading SMS page for the anti-forgery token.")
        await page.goto(self.cfg.sms_page_url, wait_until="domcontentloaded", timeout=30_000)
        await self.clock.sleep(2)

        token = await self._read_token(page)
        if not token:
            await self._save_debug(page, name_prefix="auth_missing_token")
            raise AuthError("Logged in but no anti-forgery token was found on the SMS page")

        raw_cookies = await page.context.cookies()
        cookies = tuple(Cookie.model_validate(c) for c in raw_cookies)
        if not cookies:
            raise AuthError("Logged in but the browser holds no cookies")
        self.cookie_jar.save(cookies)

        session = Session(cookies=cookies, anti_forgery_token=token, valid=True, last_refreshed=self.clock.now())
        self.context.publish(session, page=page)
        self._set_state(AuthState.TOKEN_EXTRACTED)
        logger.info("Session ready (cookies=%d)", len(cookies))
        return session

    async def _login_with_credentials(self, page: Any) -> bool:
        sel = self.selectors
        timeout_ms = int(self.cfg.login_timeout_s * 1000)
        try:
            self._set_state(AuthState.NAVIGATING)
            logger.info("Navigating to login page...")
            await page.goto(f"{self.cfg.base_url}/login", wait_until="domcontentloaded", timeout=timeout_ms)
            await self.clock.sleep(2)
            self._set_state(AuthState.CHALLENGE_PENDING)
            await self.resolver.wait_for_challenge_clear(page, min(20.0, self.cfg.challenge_timeout_s))
            await self.clock.sleep(1)

            if not await page.evaluate(HAS_SELECTOR_JS, sel.email_input):
                logger.warning("Login form not visible.")
                await self._save_debug(page, name_prefix="login_form_not_visible")
                return False
            self._set_state(AuthState.LOGIN_FORM_VISIBLE)

            await page.fill(sel.email_input, self.cfg.email)
            await self.clock.sleep(0.4)
            await page.fill(sel.password_input, self.cfg.password)
            await self.clock.sleep(0.4)

            self._set_state(AuthState.CREDENTIALS_SUBMITTED)
            logger.info("Credentials entered; submitting login form.")
            try:
                await page.click(sel.submit_button, timeout=5_000)
            except Exception:
                await page.evaluate(CLICK_JS, sel.submit_button)

            try:
                await page.wait_for_url(lambda url: "/login" not in url, timeout=timeout_ms)
            except Exception:
                logger.debug("No post-login navigation observed.", exc_info=True)
            await self.clock.sleep(2)
            await self.resolver.wait_for_challenge_clear(page, min(15.0, self.cfg.challenge_timeout_s))

            url = page.url or ""
            logger.info("Post-login URL: %s", url)
            if "/login" in url:
                reason = await page.evaluate(TEXT_OF_JS, sel.login_error)
                logger.warning("Still on the login page: %s", reason or "unknown error")
                await self._save_debug(page, name_prefix="login_rejected")
                return False

            await page.goto(f"{self.cfg.base_url}/portal", wait_until="domcontentloaded", timeout=30_000)
            await self.clock.sleep(3)
            await self.resolver.wait_for_challenge_clear(page, min(10.0, self.cfg.challenge_timeout_s))
            ok = await self._looks_logged_in(page, require_content=False)
            if ok:
                logger.info("Automatic login succeeded.")
            return ok
        except Exception as e:
            logger.warning("Automatic login failed: %s", e)
            await self._save_debug(page, name_prefix="login_failure")
            return False

    async def _wait_for_manual_login(self, page: Any) -> bool:
        self._set_state(AuthState.MANUAL_LOGIN_WINDOW)
        window = self.cfg.manual_login_window_s
        logger.warning("Waiting up to %.0fs for a manual login in the browser window...", window)
        deadline = self.clock.monotonic() + window
        while self.clock.monotonic() < deadline:
            await self.clock.sleep(self.cfg.manual_login_poll_s)
            if await self._looks_logged_in(page, require_content=False):
                logger.info("Manual login detected.")
                return True
        logger.warning("Manual login window expired.")
        return False

    async def _looks_logged_in(self, page: Any, *, require_content: bool) -> bool:
        opts = {
            "shell": self.selectors.shell_marker,
            "content": list(self.selectors.shell_content_markers),
            "path": self.selectors.authenticated_path,
            "requireContent": require_content,
        }
        try:
            return bool(await page.evaluate(LOGGED_IN_JS, opts))
        except Exception:
            return False

    async def _read_token(self, page: Any) -> Optional[str]:
        try:
            token = await page.evaluate(META_CONTENT_JS, self.selectors.csrf_meta)
        except Exception:
            logger.debug("Failed to read anti-forgery token.", exc_info=True)
            return None
        token = (token or "").strip()
        return token or None

    def _require_page(self) -> Any:
        page = self.context.page
        if page is None:
            raise SessionExpiredError("No browser page; the session has not been initialized")
        return page

    async def ensure_on_data_page(self) -> None:
        """Navigate back to the SMS page if something moved the shared page elsewhere. Caller holds the page."""
        page = self._require_page()
        if "/portal/sms/received" in (page.url or ""):
            return
        logger.info("Page drifted to %s; returning to the SMS page.", page.url)
        await page.goto(self.cfg.sms_page_url, wait_until="domcontentloaded", timeout=30_000)
        await self.clock.sleep(1.5)

    async def refresh_token(self) -> Optional[str]:
        """Re-read the anti-forgery token (it can rotate per action) and publish it. Caller holds the page."""
        page = self._require_page()
        token = await self._read_token(page)
        current = self.context.snapshot()
        if token and token != current.anti_forgery_token and current.valid:
            self.context.publish(current.with_token(token))
            logger.debug("Anti-forgery token refreshed.")
        return token

    async def prepare_sms_page(self, date_from: str, date_to: str) -> None:
        """
        Put the SMS page into the state the "list groups" action expects. Caller holds the page.
        """
        page = self._require_page()
        await self.ensure_on_data_page()
        for selector, value in ((self.selectors.date_from_input, date_from), (self.selectors.date_to_input, date_to)):
            try:
                await page.evaluate(SET_INPUT_JS, [selector, value])
            except Exception:
                logger.debug("Could not set date input %s", selector, exc_info=True)
        await self.refresh_token()

    def replace_cookies(self, cookies: Iterable[Union[Cookie, dict]]) -> int:
        """
        Operator cookie injection: persist the cookies and clear the session. Call `authenticate()` next.
        """
        parsed = [c if isinstance(c, Cookie) else Cookie.model_validate(c) for c in cookies]
        self.cookie_jar.save(parsed)
        self.context.publish(Session.empty())
        self._set_state(AuthState.UNAUTHENTICATED)
        logger.info("Replaced session cookies (%d); session cleared.", len(parsed))
        return len(parsed)

    async def close(self) -> None:
        await self._discard_browser()

    async def _discard_browser(self) -> None:
        self.context.detach_page()
        try:
            await self.launcher.close()
        except Exception:
            logger.debug("Failed to close previous browser.", exc_info=True)

    async def _save_debug(self, page: Any, *, name_prefix: str) -> None:
        try:
            self.debug_dir.mkdir(parents=True, exist_ok=True)
            await page.screenshot(path=str(self.debug_dir / f"{name_prefix}.png"), full_page=True)
            (self.debug_dir / f"{name_prefix}.html").write_text(await page.content(), encoding="utf-8")
            # Also save the rendered body text so failures can be read without DOM tooling.
            try:
                (self.debug_dir / f"{name_prefix}.txt").write_text(await page.inner_text("body"), encoding="utf-8")
            except Exception:
                logger.debug("Could not capture body text for %s.", name_prefix)
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)
