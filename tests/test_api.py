"""
tests/test_api.py
"""
from __future__ import annotations

from flask import render_template_string

from conftest import FakeResp
from inkwell import blog, resolvers
from inkwell.blog import app
from inkwell.config import BLUESKY_OEMBED_ENDPOINT
from inkwell.resolvers import is_private_host, iter_image

ARTICLE = "https://example.com/article"
IMAGE = "https://cdn.example.com/cat.png"
POST = "https://bsky.app/profile/alice.test/post/xyz"


# ───────────────────────── /api/metadata ───────────────────────────
def test_metadata_requires_url(client):
    rv = client.get("/api/metadata")
    assert rv.status_code == 400
    assert rv.get_json() == {"error": "URL parameter is required"}


def test_metadata_rejects_malformed_url(client, fake_http):
    for bad in ("ftp://example.com/x", "javascript:alert(1)", "example.com"):
        rv = client.get("/api/metadata", query_string={"url": bad})
        assert rv.status_code == 400
    assert fake_http.calls == []


def test_metadata_success(client, fake_http, page_html):
    fake_http.add(ARTICLE, FakeResp(page_html(title="Hello", site_name="Ex", image="/i.png")))

    rv = client.get("/api/metadata", query_string={"url": ARTICLE})
    assert rv.status_code == 200
    assert rv.headers["Cache-Control"] == "public, max-age=3600"
    data = rv.get_json()
    assert data["title"] == "Hello"
    assert data["siteName"] == "Ex"
    assert data["image"] == "https://example.com/i.png"
    assert data["domain"] == "example.com"
    assert data["error"] is False


def test_metadata_upstream_failure_is_fallback(client, fake_http):
    rv = client.get("/api/metadata", query_string={"url": ARTICLE})
    assert rv.status_code == 200
    data = rv.get_json()
    assert data["error"] is True
    assert data["title"] == "example.com"
    assert data["description"] == "Visit example.com"
    assert "max-age" not in rv.headers.get("Cache-Control", "")


# ───────────────────────── /api/bluesky-oembed ─────────────────────
def test_oembed_requires_url(client):
    assert client.get("/api/bluesky-oembed").status_code == 400


def test_oembed_success(client, fake_http):
    fake_http.add(BLUESKY_OEMBED_ENDPOINT, FakeResp({"html": "<blockquote>x</blockquote>"}))
    rv = client.get("/api/bluesky-oembed", query_string={"url": POST})
    assert rv.status_code == 200
    assert rv.get_json()["html"] == "<blockquote>x</blockquote>"


def test_oembed_failure_is_502(client, fake_http):
    rv = client.get("/api/bluesky-oembed", query_string={"url": POST})
    assert rv.status_code == 502
    assert "error" in rv.get_json()


# ───────────────────────── /api/image-proxy ────────────────────────
def test_image_proxy_streams_image(client, fake_http):
    upstream = FakeResp(b"\x89PNG\r\n\x1a\nfake", ctype="image/png")
    fake_http.add(IMAGE, upstream)

    rv = client.get("/api/image-proxy", query_string={"url": IMAGE})
    assert rv.status_code == 200
    assert rv.data == b"\x89PNG\r\n\x1a\nfake"
    assert rv.headers["Content-Type"] == "image/png"
    assert rv.headers["Cache-Control"] == "public, max-age=86400"
    assert fake_http.calls[0]["headers"]["Accept"] == "image/*"
    rv.close()
    assert upstream.closed


def test_image_proxy_rejects_non_images(client, fake_http):
    upstream = FakeResp("<html>", ctype="text/html")
    fake_http.add(IMAGE, upstream)
    rv = client.get("/api/image-proxy", query_string={"url": IMAGE})
    assert rv.status_code == 502
    assert upstream.closed


def test_image_proxy_upstream_error(client, fake_http):
    fake_http.add(IMAGE, FakeResp(b"", status=404, ctype="image/png"))
    assert client.get("/api/image-proxy", query_string={"url": IMAGE}).status_code == 502


def test_image_proxy_oversized(client, fake_http):
    huge = str(100 * 1024 * 1024)
    fake_http.add(IMAGE, FakeResp(b"x", ctype="image/png", headers={"Content-Length": huge}))
    assert client.get("/api/image-proxy", query_string={"url": IMAGE}).status_code == 502


def test_image_proxy_requires_url(client):
    assert client.get("/api/image-proxy").status_code == 400
    assert client.get("/api/image-proxy", query_string={"url": "data:image/png;base64,AA"}).status_code == 400


def test_image_proxy_refuses_redirect_to_private_host(client, fake_http, monkeypatch):
    monkeypatch.setattr(resolvers, "is_private_host", is_private_host)
    public = "http://93.184.216.34/cat.png"
    fake_http.add(public, FakeResp(status=307, headers={"Location": "http://169.254.169.254/latest"}))
    fake_http.add("http://169.254.169.254/latest", FakeResp(b"creds", ctype="image/png"))

    rv = client.get("/api/image-proxy", query_string={"url": public})
    assert rv.status_code == 502
    assert fake_http.urls() == [public]


def test_image_proxy_follows_redirect(client, fake_http):
    fake_http.add(IMAGE, FakeResp(status=302, headers={"Location": "https://cdn2.example.com/cat.png"}))
    fake_http.add("https://cdn2.example.com/cat.png", FakeResp(b"GIF89a", ctype="image/gif"))

    rv = client.get("/api/image-proxy", query_string={"url": IMAGE})
    assert rv.status_code == 200
    assert rv.data == b"GIF89a"
    rv.close()


def test_image_stream_stops_past_deadline():
    upstream = FakeResp(b"x" * 20000, ctype="image/png")
    assert list(iter_image(upstream, 10**6, deadline=-1)) == []
    assert upstream.closed


# ───────────────────────── /preview ────────────────────────────────
def test_preview_resolves_embeds(client, fake_http, page_html):
    fake_http.add(ARTICLE, FakeResp(page_html(title="Resolved title")))

    rv = client.post(
        "/preview",
        json={"content": f"# Draft\n[card]{ARTICLE}[/card]", "format": "markdown", "session": "ed-1"},
    )
    assert rv.status_code == 200
    data = rv.get_json()
    assert "<h1>Draft</h1>" in data["html"]
    assert "Resolved title" in data["html"]
    assert 'data-embed-state="loading"' not in data["html"]
    assert blog.render_sessions.is_valid(data["token"])
    assert data["session"] == "ed-1"


def test_preview_plain_and_html(client):
    rv = client.post("/preview", json={"content": "<b>x</b>", "format": "plain"})
    assert rv.get_json()["html"] == '<pre class="plain">&lt;b&gt;x&lt;/b&gt;</pre>'
    rv = client.post("/preview", json={"content": "<b>x</b>", "format": "html"})
    assert rv.get_json()["html"] == '<div class="prose"><b>x</b></div>'


def test_preview_bad_format(client):
    rv = client.post("/preview", json={"content": "x", "format": "docx"})
    assert rv.status_code == 400


def test_preview_bad_token(client):
    rv = client.post("/preview", json={"content": "x", "token": "forged.token"})
    assert rv.status_code == 400


def test_preview_rejects_non_object_body(client):
    for body in ([1, 2], "text", 5):
        rv = client.post("/preview", json=body)
        assert rv.status_code == 400
        assert rv.get_json() == {"error": "Expected a JSON object"}


def test_preview_rejects_non_string_content(client):
    for content in (5, ["a"], {"b": 1}):
        rv = client.post("/preview", json={"content": content})
        assert rv.status_code == 400


def test_preview_empty_body_renders_nothing(client):
    rv = client.post("/preview", data="", content_type="application/json")
    assert rv.status_code == 200
    assert rv.get_json()["html"] == '<div class="prose">\n\n</div>'


def test_preview_echoed_token_accepted(client):
    first = client.post("/preview", json={"content": "x", "session": "ed-2"}).get_json()
    rv = client.post("/preview", json={"content": "y", "session": "ed-2", "token": first["token"]})
    assert rv.status_code == 200
    assert rv.get_json()["token"] != first["token"]


def test_preview_superseded_is_409(client, fake_http, page_html):
    def _slow_page(url, params):
        blog.render_sessions.begin("ed-3")  # a newer preview started meanwhile
        return FakeResp(page_html(title="stale"))

    fake_http.add(ARTICLE, _slow_page)
    rv = client.post(
        "/preview",
        json={"content": f"[card]{ARTICLE}[/card]", "session": "ed-3"},
    )
    assert rv.status_code == 409
    assert rv.get_json() == {"stale": True}


# ───────────────────────── template filter & CLI ───────────────────
def test_content_filter():
    with app.test_request_context("/"):
        html = render_template_string(
            "{{ body|content }}|{{ raw|content('plain') }}", body="**hi**", raw="<i>"
        )
    assert '<div class="prose">\n<p><strong>hi</strong></p>\n</div>' in html
    assert '<pre class="plain">&lt;i&gt;</pre>' in html


def test_cli_render(tmp_path):
    src = tmp_path / "post.md"
    src.write_text("# From disk\n{twitter:https://x.com/a/status/7}", encoding="utf-8")

    result = app.test_cli_runner().invoke(args=["render", str(src)])
    assert result.exit_code == 0
    assert "<h1>From disk</h1>" in result.output
    assert "Tweet ID: 7" in result.output


def test_cli_render_resolve(tmp_path, fake_http, page_html):
    fake_http.add(ARTICLE, FakeResp(page_html(title="Fetched")))
    src = tmp_path / "post.md"
    src.write_text(f"[card]{ARTICLE}[/card]", encoding="utf-8")

    result = app.test_cli_runner().invoke(args=["render", str(src), "--resolve"])
    assert result.exit_code == 0
    assert "Fetched" in result.output

    result = app.test_cli_runner().invoke(args=["render", str(src), "--format", "plain"])
    assert result.output.startswith('<pre class="plain">[card]')


# ───────────────────────── errors & headers ────────────────────────
def test_security_headers(client):
    rv = client.get("/api/metadata")
    assert rv.headers["X-Frame-Options"] == "DENY"
    assert rv.headers["X-Content-Type-Options"] == "nosniff"


def test_404_json_for_api(client):
    rv = client.get("/api/nope")
    assert rv.status_code == 404
    assert rv.get_json() == {"error": "Not found"}


def test_404_page(client):
    rv = client.get("/does/not/exist")
    assert rv.status_code == 404
    assert b"Page not found" in rv.data
    assert app.config["SITE_NAME"].encode() in rv.data


def test_500_handler(client, monkeypatch):
    def _boom():
        raise RuntimeError("kaboom!")

    monkeypatch.setitem(app.view_functions, "api_metadata", _boom)
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    rv = client.get("/api/metadata")
    assert rv.status_code == 500
    assert rv.get_json() == {"error": "Internal server error"}


# ───────────────────────── secret key & rate limit ─────────────────
def test_secret_key_persisted_in_instance_folder(tmp_path, monkeypatch):
    monkeypatch.delenv("INKWELL_SECRET_KEY", raising=False)
    instance = tmp_path / "instance"

    key = blog.load_secret_key(instance)
    assert len(key) == 64
    assert (instance / ".secret_key").read_text() == key
    assert blog.load_secret_key(instance) == key


def test_secret_key_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("INKWELL_SECRET_KEY", "from-env")
    assert blog.load_secret_key(tmp_path) == "from-env"
    assert not (tmp_path / ".secret_key").exists()


def test_secret_key_unwritable_folder(tmp_path, monkeypatch):
    monkeypatch.delenv("INKWELL_SECRET_KEY", raising=False)
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")

    key = blog.load_secret_key(blocker / "instance")
    assert len(key) == 64


def test_rate_limit_blocks_burst(monkeypatch):
    monkeypatch.setattr(blog, "time", lambda: 500.0)
    view = blog.rate_limit(max_requests=2, window=60)(lambda: "ok")

    with app.test_request_context("/", environ_base={"REMOTE_ADDR": "10.0.0.1"}):
        assert view() == "ok"
        assert view() == "ok"
        body, status, headers = view()
    assert status == 429
    assert headers["Retry-After"] == "60"


def test_rate_limit_forgets_idle_clients(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(blog, "time", lambda: now[0])
    limiter = blog.rate_limit(max_requests=5, window=60, max_clients=2)
    view = limiter(lambda: "ok")

    for i in range(3):
        with app.test_request_context("/", environ_base={"REMOTE_ADDR": f"10.0.0.{i}"}):
            assert view() == "ok"
    assert len(limiter.hits) == 3

    now[0] += 61
    with app.test_request_context("/", environ_base={"REMOTE_ADDR": "10.0.0.9"}):
        assert view() == "ok"
    assert set(limiter.hits) == {"10.0.0.9"}
