"""
Small Playwright helpers shared by the session manager and the engine.
"""
from __future__ import annotations

import logging

from playwright.async_api import Error as PlaywrightError

log = logging.getLogger("worker.page")

BLOCKED_RESOURCE_TYPES = ("image", "font", "media")

# Cookie / consent overlays intercept clicks; tried in order.
OVERLAY_BUTTONS = [
    'cms-accept-tags button:has-text("Akzeptieren")',
    'cms-accept-tags button:has-text("Verstanden")',
    'cms-accept-tags button:has-text("Zustimmen")',
    'cms-accept-tags button:has-text("OK")',
    '.cookiebar button:has-text("OK")',
    '#cookiebar button:has-text("OK")',
    'button:has-text("Alle akzeptieren")',
    'button[aria-label="Akzeptieren"]',
    'cms-accept-tags [aria-label="Schließen"]',
    "cms-accept-tags .close",
    ".cookiebar .close",
]

REMOVE_OVERLAYS_JS = """
() => {
  document.querySelectorAll(
    "cms-accept-tags, .mod_cms_accept_tags, #cookiebar, .cookiebar, #cookie-bar, .cookie-bar"
  ).forEach((el) => el.remove());
  if (document.body) document.body.classList.remove("cookie-bar-visible");
}
"""


async def dismiss_overlays(page) -> None:
    """Click away consent banners, then strip whatever is left from the DOM."""
    for selector in OVERLAY_BUTTONS:
        try:
            button = page.locator(selector)
            if await button.count():
                await button.first.click(timeout=800)
                await page.wait_for_timeout(120)
        except PlaywrightError:
            continue

    try:
        await page.evaluate(REMOVE_OVERLAYS_JS)
    except PlaywrightError as e:
        log.debug("Overlay removal failed", extra={"error": str(e)})


async def block_non_essential_requests(page) -> None:
    """Abort images, fonts and media; the bot only needs markup and scripts."""

    async def _route(route):
        if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
        else:
            await route.continue_()

    await page.route("**/*", _route)
