import logging
from playwright.async_api import async_playwright, Browser, BrowserContext, Page, Playwright

logger = logging.getLogger(__name__)

DEFAULT_VIEWPORT = {"width": 1280, "height": 800}


async def initialize_browser(headless: bool = True, viewport: dict = None) -> tuple[Playwright, Browser, BrowserContext, Page]:
    """Launch an isolated Chromium context with a single page"""
    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.launch(
            headless=headless,
            args=["--no-sandbox"]
        )
        context = await browser.new_context(viewport=viewport or DEFAULT_VIEWPORT)
        page = await context.new_page()
    except Exception:
        await playwright.stop()
        raise
    logger.info(f"Browser launched (headless={headless})")
    return playwright, browser, context, page


async def close_browser(playwright: Playwright = None, browser: Browser = None):
    """Close the browser and stop the Playwright driver, tolerating a partial launch"""
    try:
        if browser:
            await browser.close()
    finally:
        if playwright:
            await playwright.stop()
    logger.info("Browser closed.")
