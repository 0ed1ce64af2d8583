"""
tests/conftest.py
"""
from __future__ import annotations

import json
import os
from typing import Any, Callable, Generator

import pytest
import requests
from flask.testing import FlaskClient

os.environ.setdefault("INKWELL_SECRET_KEY", "test-secret-key")

# The app module lives here:
from inkwell import resolvers  # noqa: E402
from inkwell.blog import app  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _configure_app() -> None:
    """
    Configure the Flask app *once* before the first test runs.
    """
    app.config.update(TESTING=True, LINK_PREVIEWS=True, ALLOW_PRIVATE_HOSTS=False)


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True)
def _fresh_caches():
    """Metadata and DID caches are process-wide; start every test empty."""
    resolvers.metadata_cache.clear()
    resolvers.did_cache.clear()
    yield
    resolvers.metadata_cache.clear()
    resolvers.did_cache.clear()


@pytest.fixture(autouse=True)
def _no_dns(monkeypatch):
    """Tests never hit DNS; the guard itself is covered in test_metadata."""
    monkeypatch.setattr(resolvers, "is_private_host", lambda host, timeout=None: False)


# ───────────────────────── fake HTTP ───────────────────────────────
class FakeResp:
    """
    Minimal Response stub: context-manager protocol plus the handful of
    attributes / methods the resolvers touch.
    """

    def __init__(
        self,
        body: bytes | str | dict | list = b"",
        *,
        status: int = 200,
        ctype: str | None = None,
        headers: dict[str, str] | None = None,
    ):
        if isinstance(body, (dict, list)):
            body = json.dumps(body)
            ctype = ctype or "application/json"
        if isinstance(body, str):
            body = body.encode()
        self._body = body
        self.status_code = status
        self.headers = {"Content-Type": ctype or "text/html; charset=utf-8"}
        self.headers.update(headers or {})
        self.encoding = "utf-8"
        self.closed = False

    # --- context-manager --------------------------------------------------
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False  # don’t swallow exceptions

    # --- tiny requests.Response API surface ------------------------------
    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} Error")

    def iter_content(self, chunk_size: int = 8192):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i : i + chunk_size]

    def json(self) -> Any:
        return json.loads(self._body)

    def close(self):
        self.closed = True


class FakeHTTP:
    """
    Stand-in for ``requests.get``. Routes map a URL to a FakeResp, an
    exception to raise, or a callable ``(url, params) -> FakeResp``.
    Anything unrouted fails like an unreachable host.
    """

    def __init__(self):
        self.routes: dict[str, FakeResp | Exception | Callable] = {}
        self.calls: list[dict[str, Any]] = []

    def add(self, url: str, target) -> None:
        self.routes[url] = target

    def urls(self) -> list[str]:
        return [c["url"] for c in self.calls]

    def __call__(self, url, *args, params=None, **kwargs):
        self.calls.append({"url": url, "params": params or {}, **kwargs})
        target = self.routes.get(url)
        if target is None:
            raise requests.ConnectionError(f"no route to {url}")
        if isinstance(target, Exception):
            raise target
        if callable(target) and not isinstance(target, FakeResp):
            return target(url, params or {})
        return target


@pytest.fixture
def fake_http(monkeypatch) -> FakeHTTP:
    http = FakeHTTP()
    monkeypatch.setattr(resolvers.requests, "get", http)
    return http


@pytest.fixture
def page_html() -> Callable[..., str]:
    """Build a small HTML page with the given Open Graph properties."""

    def _page(title: str = "", **og: str) -> str:
        metas = "".join(
            f'<meta property="og:{k}" content="{v}">' for k, v in og.items()
        )
        head_title = f"<title>{title}</title>" if title else ""
        return f"<html><head>{head_title}{metas}</head><body>hi</body></html>"

    return _page
