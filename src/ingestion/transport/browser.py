"""
src.ingestion.transport.browser

Playwright-based renderer for JS-heavy pages.

Notes:
- The Playwright sync API is bound to the thread that started it, so every
  browser call runs on one dedicated worker thread. Callers on any thread may
  call ``render``; pages are opened and closed one at a time.
- If playwright isn't installed, a clear ImportError is raised at runtime.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class BrowserOptions:
    browser_name: str = "chromium"  # chromium | firefox | webkit
    headless: bool = True
    nav_timeout_s: float = 45.0
    wait_until: str = "networkidle"
    user_agent: str | None = None
    extra_http_headers: dict[str, str] | None = None
    http_credentials: dict[str, str] | None = None  # basic auth: username, password
    viewport: dict[str, int] | None = field(
        default_factory=lambda: {"width": 1280, "height": 720}
    )


@dataclass
class RenderedPage:
    url: str
    final_url: str
    status_code: int | None
    html: str
    title: str = ""
    text: str = ""
    fields: dict[str, str] = field(default_factory=dict)


# Removed before falling back to whole-body text
BOILERPLATE_SELECTORS = ("script", "style", "noscript", "nav", "header", "footer")


class BrowserRenderer:
    """Headless browser owned by a single handler."""

    def __init__(self, *, options: BrowserOptions | None = None) -> None:
        self.options = options or BrowserOptions()
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()
        self._pw = None
        self._browser = None
        self._context = None

    # -------------------------
    # Lifecycle
    # -------------------------

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="browser"
                )
            return self._executor

    def _ensure_started(self) -> None:
        if self._context is not None:
            return

        try:
            from playwright.sync_api import sync_playwright  # type: ignore
        except ImportError as e:
            raise ImportError(
                "Playwright is missing. Install it with: pip install playwright && playwright install chromium"
            ) from e

        try:
            self._pw = sync_playwright().start()
            launcher = getattr(self._pw, self.options.browser_name)
            try:
                self._browser = launcher.launch(headless=self.options.headless)
            except Exception as e:
                if "executable doesn't exist" in str(e) or "not installed" in str(e).lower():
                    raise RuntimeError(
                        f"Browser binaries for {self.options.browser_name} are missing. "
                        "Run: playwright install"
                    ) from e
                raise

            context_kwargs: dict[str, Any] = {"viewport": self.options.viewport}
            if self.options.user_agent:
                context_kwargs["user_agent"] = self.options.user_agent
            if self.options.extra_http_headers:
                context_kwargs["extra_http_headers"] = dict(self.options.extra_http_headers)
            if self.options.http_credentials:
                context_kwargs["http_credentials"] = dict(self.options.http_credentials)
            self._context = self._browser.new_context(**context_kwargs)
        except Exception:
            self._close_sync()
            raise

    def close(self) -> None:
        """Release the browser. Best effort; never raises."""
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is None:
            return
        try:
            executor.submit(self._close_sync).result()
        except Exception as e:
            logger.warning(f"Error closing browser: {e}")
        finally:
            executor.shutdown(wait=True)

    def _close_sync(self) -> None:
        for name in ("_context", "_browser"):
            resource = getattr(self, name)
            if resource is None:
                continue
            try:
                resource.close()
            except Exception as e:
                logger.warning(f"Error closing browser {name.strip('_')}: {e}")
            finally:
                setattr(self, name, None)

        if self._pw is not None:
            try:
                self._pw.stop()
            except Exception as e:
                logger.warning(f"Error stopping playwright: {e}")
            finally:
                self._pw = None

    # -------------------------
    # Rendering
    # -------------------------

    def render(
        self,
        url: str,
        *,
        selectors: dict[str, str] | None = None,
        wait_for_selector: str | None = None,
    ) -> RenderedPage:
        """
        Load ``url`` in a fresh page and return its HTML, text and selected fields.

        ``selectors`` maps field names (content, title, author, date) to CSS
        selectors; matched elements' inner text is joined per field.
        """
        future = self._get_executor().submit(
            self._render_sync, url, dict(selectors or {}), wait_for_selector
        )
        return future.result()

    def _render_sync(
        self, url: str, selectors: dict[str, str], wait_for_selector: str | None
    ) -> RenderedPage:
        self._ensure_started()
        page = self._context.new_page()
        try:
            page.set_default_timeout(self.options.nav_timeout_s * 1000)
            response = page.goto(url, wait_until=self.options.wait_until)
            if wait_for_selector:
                page.wait_for_selector(wait_for_selector)

            fields: dict[str, str] = {}
            for name, selector in selectors.items():
                locator = page.locator(selector)
                if locator.count() == 0:
                    continue
                texts = [t.strip() for t in locator.all_inner_texts() if t and t.strip()]
                if texts:
                    fields[name] = "\n\n".join(texts)

            html = page.content()
            title = page.title() or ""

            text = ""
            if "content" not in fields:
                page.evaluate(
                    "(sels) => sels.forEach(s => document.querySelectorAll(s).forEach(e => e.remove()))",
                    list(BOILERPLATE_SELECTORS),
                )
                text = page.inner_text("body")

            return RenderedPage(
                url=url,
                final_url=page.url,
                status_code=response.status if response is not None else None,
                html=html,
                title=title,
                text=text,
                fields=fields,
            )
        finally:
            try:
                page.close()
            except Exception as e:
                logger.warning(f"Error closing page for {url}: {e}")
