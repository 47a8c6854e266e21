from collections.abc import Callable

import httpx

from foreman.probe import PreviewProbe, inspect_page

HEALTHY = """\
<html><body>
<div id="root"><main><h1>Invoices</h1><button>Export</button></main></div>
<script src="/assets/app.js"></script>
</body></html>
"""


def _probe(handler: Callable[[httpx.Request], httpx.Response]) -> PreviewProbe:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return PreviewProbe("http://preview.local/", client=client)


def test_healthy_page_has_no_issues() -> None:
    assert inspect_page(HEALTHY) == []


def test_error_overlay_is_reported() -> None:
    html = HEALTHY.replace("</body>", "<vite-error-overlay></vite-error-overlay></body>")

    issues = inspect_page(html)

    assert issues == ["Preview shows a build/runtime error overlay (vite-error-overlay)."]


def test_empty_root_without_scripts_is_reported() -> None:
    issues = inspect_page('<html><body><div id="app"></div></body></html>')

    assert issues == ["Preview content root is empty and the page loads no scripts."]


def test_empty_root_with_scripts_is_a_client_rendered_shell() -> None:
    html = '<html><body><div id="root"></div><script src="/main.js"></script></body></html>'

    assert inspect_page(html) == []


def test_all_controls_disabled_and_loading_indicator() -> None:
    disabled = (
        '<div id="root"><button disabled>Save</button>'
        '<input type="text" disabled><input type="hidden" name="csrf"></div>'
        "<script></script>"
    )
    loading = '<div id="root"><p>Loading...</p></div><script src="/a.js"></script>'

    assert inspect_page(disabled) == [
        "All 2 interactive controls on the preview page are disabled."
    ]
    assert inspect_page(loading) == [
        "Preview is stuck on a loading indicator with no other content."
    ]


def test_each_failing_heuristic_is_a_separate_issue() -> None:
    html = '<div id="root"></div><p>Unhandled Runtime Error</p>'

    issues = inspect_page(html, status_code=500)

    assert issues == [
        "Preview responded with HTTP 500.",
        "Preview content root is empty and the page loads no scripts.",
        "Preview page reports errors: Unhandled Runtime Error.",
    ]


def test_probe_fetches_and_inspects_the_page() -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, text='<div id="main"></div>')

    issues = _probe(handler).check()

    assert requested == ["http://preview.local/"]
    assert issues == ["Preview content root is empty and the page loads no scripts."]


def test_unreachable_preview_is_skipped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert _probe(handler).check() == []
