"""Heuristic health checks against a running preview endpoint."""

from __future__ import annotations

import logging
import re
from html.parser import HTMLParser

import httpx

logger = logging.getLogger(__name__)

ROOT_IDS = {"root", "app", "__next", "svelte", "main"}
CONTROL_TAGS = {"button", "input", "select", "textarea"}
VOID_TAGS = {
    "area",
    "base",
    "br",
    "col",
    "embed",
    "hr",
    "img",
    "input",
    "link",
    "meta",
    "source",
    "track",
    "wbr",
}
OVERLAY_MARKERS = (
    "vite-error-overlay",
    "webpack-dev-server-client-overlay",
    "react-error-overlay",
    "nextjs__container_errors",
    "data-nextjs-dialog",
    "Failed to compile",
)
CONSOLE_ERROR_MARKERS = (
    "Uncaught ",
    "Unhandled Runtime Error",
    "Hydration failed",
    "ChunkLoadError",
)
LOADING_PATTERN = re.compile(r"^(loading|please wait)(\s*(\.{3}|…))?$", re.IGNORECASE)


class _PageScanner(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.scripts = 0
        self.controls = 0
        self.disabled_controls = 0
        self.text_parts: list[str] = []
        self.root_found = False
        self.root_children = 0
        self.root_text: list[str] = []
        self._root_depth = 0
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        attributes = dict(attrs)
        if tag == "script":
            self.scripts += 1
        if tag in {"script", "style", "noscript", "template"}:
            self._skip_depth += 1
        if tag in CONTROL_TAGS and attributes.get("type") != "hidden":
            self.controls += 1
            if "disabled" in attributes:
                self.disabled_controls += 1

        if self._root_depth:
            self.root_children += 1
            if tag not in VOID_TAGS:
                self._root_depth += 1
        elif not self.root_found and attributes.get("id") in ROOT_IDS and tag not in VOID_TAGS:
            self.root_found = True
            self._root_depth = 1

    def handle_endtag(self, tag: str) -> None:
        if tag in {"script", "style", "noscript", "template"} and self._skip_depth:
            self._skip_depth -= 1
        if self._root_depth and tag not in VOID_TAGS:
            self._root_depth -= 1

    def handle_data(self, data: str) -> None:
        if self._skip_depth:
            return
        text = data.strip()
        if not text:
            return
        self.text_parts.append(text)
        if self._root_depth:
            self.root_text.append(text)

    @property
    def visible_text(self) -> str:
        return " ".join(self.text_parts)


def inspect_page(html: str, *, status_code: int = 200) -> list[str]:
    """Return one issue string per failing heuristic."""
    issues: list[str] = []
    if status_code >= 400:
        issues.append(f"Preview responded with HTTP {status_code}.")

    overlay = next((marker for marker in OVERLAY_MARKERS if marker in html), None)
    if overlay is not None:
        issues.append(f"Preview shows a build/runtime error overlay ({overlay}).")

    scanner = _PageScanner()
    scanner.feed(html)
    scanner.close()

    root_empty = scanner.root_found and not scanner.root_children and not scanner.root_text
    if root_empty and not scanner.scripts:
        issues.append("Preview content root is empty and the page loads no scripts.")
    if scanner.controls and scanner.disabled_controls == scanner.controls:
        issues.append(
            f"All {scanner.controls} interactive controls on the preview page are disabled."
        )
    visible = scanner.visible_text.strip()
    if visible and LOADING_PATTERN.match(visible):
        issues.append("Preview is stuck on a loading indicator with no other content.")

    console = [marker.strip() for marker in CONSOLE_ERROR_MARKERS if marker in html]
    if console:
        issues.append("Preview page reports errors: " + ", ".join(console) + ".")
    return issues


class PreviewProbe:
    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client

    def check(self) -> list[str]:
        """Fetch the preview and run heuristics. Unreachable endpoints yield no issues."""
        client = self._client or httpx.Client(
            timeout=httpx.Timeout(self.timeout_seconds), follow_redirects=True
        )
        try:
            response = client.get(self.url)
        except httpx.HTTPError as exc:
            logger.info("Preview probe skipped, %s is unreachable: %s", self.url, exc)
            return []
        finally:
            if self._client is None:
                client.close()

        try:
            issues = inspect_page(response.text, status_code=response.status_code)
        except Exception:
            logger.exception("Preview probe heuristics failed for %s", self.url)
            return []
        for issue in issues:
            logger.warning("Preview probe: %s", issue)
        return issues
