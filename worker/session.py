"""
Login handling for studenten-umzugshilfe.com.

The authenticated cookie jar is persisted as a Playwright storage-state file
so that a restarted process can skip the login round-trip.
"""
from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from core.config import Settings
from worker.page_utils import dismiss_overlays

log = logging.getLogger("worker.session")

USERNAME_SELECTOR = 'input[name="username"], #username'
PASSWORD_SELECTOR = 'input[name="password"], #password'
POST_LOGIN_URL_RE = re.compile(r"/intern/meine-(daten|jobs)")
POST_LOGIN_NAV_SELECTOR = 'a[href*="intern/meine-jobs"]'
LOGIN_WAIT_MS = 8000

# requestSubmit keeps the form's CSRF token and submit button semantics
SUBMIT_LOGIN_JS = """
() => {
  const form =
    document.querySelector('form[id^="tl_login_"]') ||
    document.querySelector('form[action*="/login"]') ||
    document.querySelector("form");
  if (!form) return false;
  const btn = form.querySelector('button[type="submit"], input[type="submit"]');
  if (form.requestSubmit) form.requestSubmit(btn || undefined);
  else form.submit();
  return true;
}
"""


class LoginError(RuntimeError):
    """Login could not be confirmed; fatal for the current job."""


class SessionManager:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.state_path = Path(settings.auth_state_path)
        self.logins = 0

    def saved_state(self) -> Optional[str]:
        """Path of a previously saved session snapshot, if one exists."""
        if self.state_path.is_file():
            return str(self.state_path)
        return None

    async def is_login_page(self, page) -> bool:
        if "/login" in (page.url or ""):
            return True
        try:
            return await page.locator(USERNAME_SELECTOR).first.is_visible()
        except PlaywrightError:
            return False

    async def ensure_authenticated(self, page, force: bool = False) -> bool:
        """
        Log in only when the page shows the login form (or `force` is set).
        Returns True when a login was performed.
        """
        if not force and not await self.is_login_page(page):
            return False
        log.info("Session expired, logging in again")
        await self.login(page)
        return True

    async def login(self, page) -> None:
        log.info("Logging in", extra={"user": self.settings.login_username})
        await page.goto(self.settings.login_url, wait_until="domcontentloaded")
        await dismiss_overlays(page)

        await page.fill(USERNAME_SELECTOR, self.settings.login_username)
        await page.fill(PASSWORD_SELECTOR, self.settings.login_password)

        ok = await self._submit_and_wait(page)
        if not ok:
            # CSRF token rotation or a slow redirect; try once more
            log.warning("Login not confirmed, retrying once")
            await page.wait_for_timeout(250)
            ok = await self._submit_and_wait(page)
        if not ok:
            raise LoginError("Login failed - still on /login after submit")

        await self.save_state(page.context)
        self.logins += 1
        log.info("Logged in", extra={"url": page.url})

    async def _submit_and_wait(self, page) -> bool:
        submitted = await page.evaluate(SUBMIT_LOGIN_JS)
        if not submitted:
            raise LoginError("Login form not found")
        await self._wait_for_post_login(page)
        return not await self.is_login_page(page)

    async def _wait_for_post_login(self, page) -> bool:
        """Wait for whichever comes first: a post-login URL or the Meine Jobs nav link."""
        waits = [
            asyncio.ensure_future(page.wait_for_url(POST_LOGIN_URL_RE, timeout=LOGIN_WAIT_MS)),
            asyncio.ensure_future(page.wait_for_selector(POST_LOGIN_NAV_SELECTOR, timeout=LOGIN_WAIT_MS)),
        ]
        try:
            for next_done in asyncio.as_completed(waits):
                try:
                    await next_done
                    return True
                except PlaywrightTimeoutError:
                    continue
            return False
        finally:
            for w in waits:
                if w.done() and not w.cancelled():
                    w.exception()
                else:
                    w.cancel()

    async def save_state(self, context) -> None:
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            await context.storage_state(path=str(self.state_path))
            log.info("Saved session snapshot", extra={"path": str(self.state_path)})
        except (PlaywrightError, OSError) as e:
            log.warning("Could not save session snapshot", extra={"error": str(e)})
