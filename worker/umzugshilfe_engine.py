"""
Playwright engine for studenten-umzugshilfe.com:
- keeps one logged-in browser page open
- finds the "Meine Jobs" listing that matches a JobRecord
- submits that listing's accept form and verifies the outcome
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from typing import List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from core.config import Settings
from core.models import JobRecord
from worker.listings import (
    ACCEPT_SELECTOR,
    ENTRY_SELECTOR,
    LOCATION_SELECTOR,
    Listing,
    ListingForm,
    find_listing,
    parse_listings,
    verify_submission,
)
from worker.page_utils import block_non_essential_requests, dismiss_overlays
from worker.session import SessionManager

log = logging.getLogger("worker.engine")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--no-first-run",
    "--no-zygote",
]
JOBS_READY_SELECTOR = "span.date.location, div.entry, form button#ctrl_accept"
ENTRY_WAIT_MS = 8000
SETTLE_MS = 150

# Fetch the listing page with the page's own cookies, without navigating.
FETCH_LISTINGS_JS = """
async (url) => {
  const r = await fetch(url, { credentials: "include" });
  return { ok: r.ok, status: r.status, url: r.url, html: r.ok ? await r.text() : "" };
}
"""


class BrowserState(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"


class UmzugshilfeAutomator:
    def __init__(self, settings: Settings, session: Optional[SessionManager] = None) -> None:
        self.settings = settings
        self.session = session or SessionManager(settings)
        self.state = BrowserState.STOPPED
        self._playwright = None
        self.browser = None
        self.context = None
        self.page = None
        self._keep_alive_task: Optional[asyncio.Task] = None

    # ---------------------------------- boot ----------------------------------

    async def initialize(self) -> None:
        log.info("Initializing browser automation", extra={"headless": self.settings.headless})
        self.state = BrowserState.STARTING
        started = time.monotonic()
        try:
            self._playwright = await async_playwright().start()
            self.browser = await self._playwright.chromium.launch(
                headless=self.settings.headless, args=LAUNCH_ARGS
            )
            context_options = {
                "user_agent": USER_AGENT,
                "locale": "de-DE",
                "timezone_id": "Europe/Berlin",
                "viewport": {"width": 1280, "height": 800},
            }
            saved = self.session.saved_state()
            if saved:
                log.info("Reusing saved session snapshot", extra={"path": saved})
                context_options["storage_state"] = saved
            self.context = await self.browser.new_context(**context_options)
            self.page = await self.context.new_page()
            self.page.set_default_timeout(self.settings.browser_timeout_ms)
            await block_non_essential_requests(self.page)

            await self.page.goto(f"{self.settings.base_url}/", wait_until="domcontentloaded")
            await dismiss_overlays(self.page)
            await self.session.ensure_authenticated(self.page)

            if not await self.open_jobs_page():
                raise RuntimeError("Failed to open Meine Jobs after login")
        except BaseException:
            await self.cleanup()
            raise

        self.state = BrowserState.READY
        self._start_keep_alive()
        log.info("Browser automation ready", extra={"ms": int((time.monotonic() - started) * 1000)})

    def is_ready(self) -> bool:
        return self.state is BrowserState.READY and self.page is not None

    async def health_check(self) -> bool:
        if not self.is_ready():
            return False
        try:
            return bool(await self.page.evaluate("() => document.readyState === 'complete'"))
        except PlaywrightError:
            return False

    # ------------------------------- navigation -------------------------------

    async def open_jobs_page(self) -> bool:
        """Navigate to Meine Jobs, logging in again if the site bounces us to /login."""
        page = self.page
        await page.goto(self.settings.jobs_url, wait_until="domcontentloaded")
        await dismiss_overlays(page)
        if await self.session.ensure_authenticated(page):
            await page.goto(self.settings.jobs_url, wait_until="domcontentloaded")
            await dismiss_overlays(page)

        try:
            await page.wait_for_selector(JOBS_READY_SELECTOR, timeout=ENTRY_WAIT_MS)
        except PlaywrightTimeoutError:
            # an empty job list is a valid state
            log.info("No listing markers on Meine Jobs yet")
        return "/intern/meine-jobs" in (page.url or "") and not await self.session.is_login_page(page)

    async def fetch_listings(self) -> Optional[List[Listing]]:
        """Soft refresh: pull the listing HTML through the page's fetch(). None when that fails."""
        try:
            res = await self.page.evaluate(FETCH_LISTINGS_JS, self.settings.jobs_url)
        except PlaywrightError as e:
            log.warning("Listing fetch failed", extra={"error": str(e)})
            return None

        if not res or not res.get("ok"):
            log.warning("Listing fetch returned an error", extra={"status": (res or {}).get("status")})
            return None
        if "/login" in (res.get("url") or ""):
            log.info("Listing fetch was redirected to /login")
            return None
        return parse_listings(res.get("html") or "", self.settings.jobs_url)

    async def reload_listings(self) -> Optional[List[Listing]]:
        """Full reload of Meine Jobs; used when the soft refresh gives nothing."""
        page = self.page
        try:
            if "/intern/meine-jobs" in (page.url or ""):
                await page.reload(wait_until="domcontentloaded")
                await dismiss_overlays(page)
                if await self.session.ensure_authenticated(page):
                    await self.open_jobs_page()
            else:
                await self.open_jobs_page()
            try:
                await page.locator(ENTRY_SELECTOR).first.wait_for(timeout=ENTRY_WAIT_MS)
            except PlaywrightTimeoutError:
                pass
            html = await page.content()
        except PlaywrightTimeoutError as e:
            log.warning("Meine Jobs reload timed out", extra={"error": str(e)})
            return None
        return parse_listings(html, self.settings.jobs_url)

    async def load_listings(self) -> List[Listing]:
        listings = await self.fetch_listings()
        if listings:
            return listings
        log.info("Soft refresh found no listings, reloading Meine Jobs")
        return await self.reload_listings() or []

    # --------------------------------- apply ----------------------------------

    async def apply_to_job_by_details(self, job: JobRecord) -> bool:
        """
        Accept the listing that matches `job`.

        Returns False when nothing matches or the outcome cannot be verified.
        Raises LoginError when the session cannot be restored and
        RuntimeError when the browser was never started.
        """
        if self.page is None:
            raise RuntimeError("Browser automation is not initialized")

        started = time.monotonic()
        await self.session.ensure_authenticated(self.page)

        listings = await self.load_listings()
        hit = find_listing(listings, job)
        if hit is None:
            log.info(
                "No listing matches",
                extra={"job": job.describe(), "listings": len(listings)},
            )
            return False

        strategy, listing = hit
        log.info(
            "Listing matched",
            extra={"job": job.describe(), "strategy": strategy, "entry_id": listing.entry_id},
        )
        if listing.is_accepted or listing.has_cancel_control:
            log.info(
                "Listing already accepted",
                extra={"status": listing.status, "cancel_control": listing.has_cancel_control},
            )
            return True

        if not await self.submit_listing(listing):
            return False

        verified = await self.verify(listing)
        log.info(
            "Apply finished",
            extra={"job_key": job.key, "verified": verified, "ms": int((time.monotonic() - started) * 1000)},
        )
        return verified

    async def submit_listing(self, listing: Listing) -> bool:
        if listing.form is not None and listing.form.has_accept_control:
            return await self._submit_form(listing.form)
        log.info("No accept form in fetched HTML, clicking in the live page")
        return await self._click_accept(listing)

    async def _submit_form(self, form: ListingForm) -> bool:
        """Post the listing's form (hidden fields and token included) with the browser's cookies."""
        timeout = self.settings.browser_timeout_ms
        try:
            if form.method == "GET":
                response = await self.context.request.get(form.action, params=form.as_dict(), timeout=timeout)
            else:
                response = await self.context.request.post(form.action, form=form.as_dict(), timeout=timeout)
        except PlaywrightError as e:
            log.warning("Accept request failed", extra={"error": str(e), "action": form.action})
            return False

        if not response.ok:
            log.warning("Accept request rejected", extra={"status": response.status, "action": form.action})
            return False
        if "/login" in (response.url or ""):
            log.warning("Accept request bounced to /login")
            return False
        return True

    async def _click_accept(self, listing: Listing) -> bool:
        page = self.page
        if "/intern/meine-jobs" not in (page.url or ""):
            await self.open_jobs_page()

        entry = await self._live_entry(listing)
        if entry is None:
            log.info("Matched listing is not in the live page")
            return False

        button = entry.first.locator(ACCEPT_SELECTOR)
        if await button.count() == 0:
            log.info("Matched listing has no accept control")
            return False
        try:
            await button.first.click()
        except PlaywrightTimeoutError as e:
            log.warning("Accept click timed out", extra={"error": str(e)})
            return False
        return True

    async def _live_entry(self, listing: Listing):
        """Locate the listing's `div.entry` in the live page, or None."""
        page = self.page
        candidates = []
        if listing.entry_id:
            # the id comes either from data-job-id or from "#12345" in the text
            candidates.append(page.locator(f'{ENTRY_SELECTOR}[data-job-id="{listing.entry_id}"]'))
            candidates.append(page.locator(ENTRY_SELECTOR).filter(has_text=f"#{listing.entry_id}"))
        if listing.location_text:
            candidates.append(
                page.locator(ENTRY_SELECTOR).filter(has=page.locator(LOCATION_SELECTOR, has_text=listing.location_text))
            )
        elif listing.location_phrase:
            candidates.append(page.locator(ENTRY_SELECTOR).filter(has_text=listing.location_phrase))
        for entry in candidates:
            if await entry.count() > 0:
                return entry
        return None

    async def verify(self, listing: Listing) -> bool:
        await self.page.wait_for_timeout(SETTLE_MS)
        for source, loader in (("fetch", self.fetch_listings), ("reload", self.reload_listings)):
            after = await loader()
            if after is None:
                continue
            outcome = verify_submission(listing, after)
            if outcome:
                log.info("Accept verified", extra={"check": outcome, "source": source})
                return True
        log.warning("Accept could not be verified", extra={"entry_id": listing.entry_id})
        return False

    # ------------------------------- keep-alive -------------------------------

    def _start_keep_alive(self) -> None:
        if self._keep_alive_task is not None:
            self._keep_alive_task.cancel()
        self._keep_alive_task = asyncio.create_task(self._keep_alive())

    async def _keep_alive(self) -> None:
        every = max(2, self.settings.keep_alive_minutes) * 60
        while True:
            await asyncio.sleep(every)
            if self.context is None:
                continue
            try:
                await self.context.request.head(self.settings.profile_url)
            except PlaywrightError as e:
                log.debug("Keep-alive ping failed", extra={"error": str(e)})

    # -------------------------------- shutdown --------------------------------

    async def cleanup(self) -> None:
        if self._keep_alive_task is not None:
            self._keep_alive_task.cancel()
            self._keep_alive_task = None
        for resource in (self.page, self.context, self.browser):
            if resource is None:
                continue
            try:
                await resource.close()
            except PlaywrightError as e:
                log.debug("Close failed", extra={"error": str(e)})
        if self._playwright is not None:
            await self._playwright.stop()
        self.page = self.context = self.browser = self._playwright = None
        self.state = BrowserState.STOPPED
        log.info("Browser cleanup completed")
