import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from playwright.async_api import Browser, BrowserContext, Page, Playwright, Request, Response, Route
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from capture_utils import browser_utils
from capture_utils.cookie_store import CookieStore
from capture_utils.cookie_utils import (
    MalformedCookie,
    ObservationSource,
    normalize,
    split_set_cookie_headers,
)
from capture_utils.report_utils import CaptureReport, build_report, print_summary, save_report

logger = logging.getLogger(__name__)

DEFAULT_URL = "https://netfree2.cc/mobile/home?app=1"
DEFAULT_OUTPUT_FILE = "captured-cookies.json"
TRIGGER_SELECTOR = "button.open-support.checker"


@dataclass
class CaptureConfig:
    """Configuration for one capture run. Durations are in milliseconds."""
    output_path: Path = field(default_factory=lambda: Path.cwd() / DEFAULT_OUTPUT_FILE)
    wait_time: int = 45000
    additional_wait: int = 5000
    settle_wait: int = 5000
    trigger_selector: str = TRIGGER_SELECTOR
    trigger_timeout: int = 2000
    headless: bool = True

    @classmethod
    def from_env(cls) -> "CaptureConfig":
        """Build a config from COOKIE_CAPTURE_* variables, loading .env first"""
        load_dotenv()
        config = cls()
        if os.getenv("COOKIE_CAPTURE_OUTPUT"):
            config.output_path = Path(os.getenv("COOKIE_CAPTURE_OUTPUT"))
        if os.getenv("COOKIE_CAPTURE_WAIT_TIME"):
            config.wait_time = int(os.getenv("COOKIE_CAPTURE_WAIT_TIME"))
        if os.getenv("COOKIE_CAPTURE_ADDITIONAL_WAIT"):
            config.additional_wait = int(os.getenv("COOKIE_CAPTURE_ADDITIONAL_WAIT"))
        if os.getenv("COOKIE_CAPTURE_SETTLE_WAIT"):
            config.settle_wait = int(os.getenv("COOKIE_CAPTURE_SETTLE_WAIT"))
        if os.getenv("COOKIE_CAPTURE_SELECTOR"):
            config.trigger_selector = os.getenv("COOKIE_CAPTURE_SELECTOR")
        if os.getenv("COOKIE_CAPTURE_HEADLESS"):
            config.headless = os.getenv("COOKIE_CAPTURE_HEADLESS").lower() not in ("0", "false", "no")
        return config


class CookieCapture:
    """Captures every cookie seen while loading a page: request headers, Set-Cookie headers and cookie store snapshots."""

    def __init__(self, url: str, config: CaptureConfig = None):
        self.url = url
        self.config = config or CaptureConfig()
        self.store = CookieStore()
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    async def __aenter__(self):
        """Async context manager entry"""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.cleanup()

    async def initialize(self):
        """Launch the browser, context and page"""
        self._playwright, self._browser, self._context, self._page = await browser_utils.initialize_browser(
            headless=self.config.headless
        )

    async def cleanup(self):
        """Release the browser regardless of how the run ended"""
        await browser_utils.close_browser(self._playwright, self._browser)
        self._playwright = self._browser = self._context = self._page = None

    # --- Observation sources ---
    async def _on_route(self, route: Route, request: Request):
        """Record cookies sent with an outgoing request, then let it through unmodified."""
        try:
            headers = await request.all_headers()
            cookie_header = headers.get("cookie")
            if cookie_header:
                self.store.merge_many(normalize(ObservationSource.REQUEST, cookie_header, url=request.url))
        except MalformedCookie as e:
            logger.warning(f"Skipping request cookies for {request.url}: {e}")
        except PlaywrightError as e:
            logger.warning(f"Could not read request headers for {request.url}: {e}")
        finally:
            await route.continue_()

    async def _on_response(self, response: Response):
        """Record every Set-Cookie header of a completed response."""
        try:
            headers = await response.headers_array()
        except PlaywrightError as e:
            logger.warning(f"Could not read response headers for {response.url}: {e}")
            return
        for set_cookie in split_set_cookie_headers(headers):
            try:
                self.store.merge_many(normalize(ObservationSource.RESPONSE, set_cookie, url=response.url))
            except MalformedCookie as e:
                logger.warning(f"Error parsing Set-Cookie header from {response.url}: {e}")

    async def capture_store_cookies(self, checkpoint: int) -> int:
        """Merge a snapshot of the context's cookie jar. Returns the number of cookies merged."""
        try:
            cookies = await self._context.cookies()
        except PlaywrightError as e:
            logger.warning(f"Error capturing page cookies at checkpoint {checkpoint}: {e}")
            return 0

        merged = new = 0
        for entry in cookies:
            try:
                observations = normalize(ObservationSource.SNAPSHOT, entry)
            except MalformedCookie as e:
                logger.warning(f"Error processing cookie {entry.get('name')}: {e}")
                continue
            for observation in observations:
                new += observation.key not in self.store
                self.store.merge(observation)
                merged += 1
        logger.info(f"Checkpoint {checkpoint}: {merged} cookies in store snapshot, {new} new, "
                    f"{len(self.store)} unique so far")
        return merged

    # --- Orchestration ---
    async def start_observing(self):
        """Hook request interception and response listening before navigation"""
        await self._page.route("**/*", self._on_route)
        self._page.on("response", self._on_response)

    async def click_trigger(self) -> bool:
        """Click the optional trigger element. A missing element is not an error."""
        logger.info("Looking for trigger element...")
        try:
            await self._page.wait_for_selector(self.config.trigger_selector, timeout=self.config.trigger_timeout)
            logger.info("Found the trigger element, clicking it...")
            await self._page.click(self.config.trigger_selector, timeout=self.config.trigger_timeout)
        except PlaywrightTimeoutError:
            logger.warning(f"⚠️ Trigger element '{self.config.trigger_selector}' not found within "
                           f"{self.config.trigger_timeout}ms. Continuing with cookie capture...")
            return False
        except PlaywrightError as e:
            logger.warning(f"⚠️ Trigger element could not be clicked: {e}. Continuing with cookie capture...")
            return False
        logger.info("Clicked the trigger element!")
        return True

    async def run(self) -> CaptureReport:
        """Main method to perform the capture and build the report"""
        try:
            await self.start_observing()

            logger.info(f"Navigating to: {self.url}")
            await self._page.goto(self.url, wait_until="networkidle")
            await self._page.wait_for_timeout(self.config.settle_wait)
            await self.capture_store_cookies(checkpoint=1)

            if await self.click_trigger():
                logger.info(f"Waiting on the next page for {self.config.wait_time / 1000} seconds...")
                await self._page.wait_for_timeout(self.config.wait_time)
                await self.capture_store_cookies(checkpoint=2)

            logger.info(f"Waiting additional {self.config.additional_wait}ms to capture more requests...")
            await self._page.wait_for_timeout(self.config.additional_wait)
            await self.capture_store_cookies(checkpoint=3)
        except Exception as e:
            logger.error(f"An error occurred during cookie capture: {e}")
            raise

        return build_report(self.url, self.store)


async def capture_cookies(url: str, config: CaptureConfig = None) -> CaptureReport:
    """Run a full capture against url and save the report to config.output_path"""
    config = config or CaptureConfig()
    logger.info(f"Starting cookie capture for: {url}")
    async with CookieCapture(url, config) as capture:
        report = await capture.run()
    try:
        save_report(report, config.output_path)
    except OSError as e:
        logger.error(f"Could not write report to {config.output_path}: {e}")
        raise
    logger.info(f"Cookie capture complete! Total cookies captured: {report.total_count}")
    return report


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Capture every cookie set while loading a page")
    parser.add_argument("url", nargs="?", default=None,
                        help=f"Page to capture (default: {DEFAULT_URL})")
    parser.add_argument("-o", "--output", help=f"Report path (default: ./{DEFAULT_OUTPUT_FILE})")
    parser.add_argument("--wait-time", type=int, help="Milliseconds to wait after clicking the trigger")
    parser.add_argument("--additional-wait", type=int, help="Milliseconds for the final settle pause")
    parser.add_argument("--settle-wait", type=int, help="Milliseconds to wait after the page loads")
    parser.add_argument("--selector", help="CSS selector of the optional trigger element")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    parser.add_argument("--summary", action="store_true", help="Print a per-domain table when done")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> CaptureConfig:
    """Environment defaults overridden by command line flags"""
    config = CaptureConfig.from_env()
    if args.output:
        config.output_path = Path(args.output)
    if args.wait_time is not None:
        config.wait_time = args.wait_time
    if args.additional_wait is not None:
        config.additional_wait = args.additional_wait
    if args.settle_wait is not None:
        config.settle_wait = args.settle_wait
    if args.selector:
        config.trigger_selector = args.selector
    if args.headed:
        config.headless = False
    return config


def main(argv=None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    args = parse_args(argv)
    config = build_config(args)
    url = args.url or os.getenv("COOKIE_CAPTURE_URL") or DEFAULT_URL

    try:
        report = asyncio.run(capture_cookies(url, config))
    except Exception as e:
        logger.error(f"Cookie capture failed: {e}")
        return 1

    if args.summary:
        print_summary(report)
    logger.info("Cookie capture completed successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
