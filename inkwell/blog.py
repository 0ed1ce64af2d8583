#!/usr/bin/env python3
"""
Web surface of the content pipeline: metadata / oEmbed / image proxies,
live preview, the ``content`` template filter and a ``render`` CLI command.
"""

import logging
import os
import secrets
import threading
from collections import defaultdict, deque
from functools import wraps
from pathlib import Path
from time import monotonic, time
from typing import DefaultDict
from uuid import uuid4

import click
from flask import Flask, Response, g, render_template_string, request
from flask.logging import default_handler
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix

from inkwell import config as cfg
from inkwell.config import RenderSettings
from inkwell.content import Format, markdown_blocks, render
from inkwell.embeds import parse_url
from inkwell.resolvers import (
    RenderSessions,
    StaleRender,
    fetch_bluesky_oembed,
    fetch_metadata,
    iter_image,
    open_image,
    resolve_snapshot,
)

################################################################################
# Imports & constants
################################################################################

SITE_NAME = os.environ.get("INKWELL_SITE_NAME", "inkwell")
LOG_LEVEL = os.environ.get("INKWELL_LOG_LEVEL", "INFO").upper()
PREVIEW_TOKEN_MAX_AGE = 3600
METADATA_MAX_AGE = 3600
IMAGE_MAX_AGE = 86400

# one handler for the whole package; app.logger ("inkwell.blog") inherits it
_pkg_log = logging.getLogger("inkwell")
_pkg_log.setLevel(LOG_LEVEL)
if not _pkg_log.handlers:
    _pkg_log.addHandler(default_handler)


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)


def load_secret_key(instance_path: Path) -> str:
    """
    ``INKWELL_SECRET_KEY`` when set, else a key kept in the instance folder.

    If that folder cannot be written the key lives only as long as the
    process, so preview tokens do not survive a restart.
    """
    key = os.environ.get("INKWELL_SECRET_KEY", "").strip()
    if key:
        return key
    secret_file = instance_path / ".secret_key"
    try:
        if secret_file.exists():
            key = secret_file.read_text().strip()
        if not key:
            key = secrets.token_hex(32)
            instance_path.mkdir(parents=True, exist_ok=True)
            secret_file.write_text(key)
    except OSError as exc:
        app.logger.warning("Cannot persist secret key in %s: %s", instance_path, exc)
        return key or secrets.token_hex(32)
    return key


SECRET_KEY = load_secret_key(Path(app.instance_path))
render_sessions = RenderSessions(SECRET_KEY, max_age=PREVIEW_TOKEN_MAX_AGE)

app.url_map.strict_slashes = False
app.config.update(SECRET_KEY=SECRET_KEY, SITE_NAME=SITE_NAME)
app.config.update(
    FETCH_TIMEOUT=cfg.FETCH_TIMEOUT,
    FETCH_DEADLINE=cfg.FETCH_DEADLINE,
    METADATA_TTL=cfg.METADATA_TTL,
    LINK_PREVIEWS=cfg.LINK_PREVIEWS,
    ALLOW_PRIVATE_HOSTS=cfg.ALLOW_PRIVATE_HOSTS,
    MAX_HTML_BYTES=cfg.MAX_HTML_BYTES,
    MAX_IMAGE_BYTES=cfg.MAX_IMAGE_BYTES,
    RESOLVE_WORKERS=4,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)


def current_settings() -> RenderSettings:
    """Per-request settings; outside a request they come straight from config."""
    settings = g.get("render_settings")
    if settings is None:
        settings = RenderSettings.from_config(app.config)
    return settings


@app.before_request
def load_render_settings():
    g.render_settings = RenderSettings.from_config(app.config)


@app.template_filter("content")
def content_filter(text: str | None, fmt: str = "markdown") -> Markup:
    """
    Render stored content in its declared format. Network-backed embeds come
    out as loading placeholders; the page script fills them in.
    """
    return render(text, fmt, settings=current_settings())


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


def rate_limit(max_requests: int, window: int = 60, max_clients: int = 4096):
    hits: DefaultDict[str, deque] = defaultdict(deque)
    lock = threading.Lock()

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            with lock:
                if len(hits) > max_clients:
                    idle = [k for k, q in hits.items() if not q or now - q[-1] > window]
                    for key in idle:
                        del hits[key]

                dq = hits[ip]
                while dq and now - dq[0] > window:
                    dq.popleft()

                if len(dq) >= max_requests:
                    retry_after = int(window - (now - dq[0]))
                    return (
                        {"error": "Too many requests – try again later."},
                        429,
                        {"Retry-After": str(retry_after)},
                    )

                dq.append(now)
            return view(*args, **kwargs)

        return wrapped

    decorator.hits = hits
    return decorator


def _url_arg() -> tuple[str | None, tuple | None]:
    """(url, None) or (None, error response) for the ``?url=`` parameter."""
    url = (request.args.get("url") or "").strip()
    if not url:
        return None, ({"error": "URL parameter is required"}, 400)
    if parse_url(url) is None:
        return None, ({"error": "Invalid URL"}, 400)
    return url, None


################################################################################
# API: metadata, oEmbed, image proxy
################################################################################
@app.route("/api/metadata")
@rate_limit(max_requests=120, window=60)
def api_metadata():
    url, err = _url_arg()
    if err:
        return err
    meta = fetch_metadata(url, current_settings())
    if meta.error:
        return meta.to_dict()
    return meta.to_dict(), 200, {"Cache-Control": f"public, max-age={METADATA_MAX_AGE}"}


@app.route("/api/bluesky-oembed")
@rate_limit(max_requests=120, window=60)
def api_bluesky_oembed():
    url = (request.args.get("url") or "").strip()
    if not url:
        return {"error": "URL parameter is required"}, 400
    try:
        data = fetch_bluesky_oembed(url, current_settings())
    except ValueError as exc:
        app.logger.warning("Bluesky oEmbed failed for %s: %s", url, exc)
        return {"error": "Failed to fetch Bluesky embed"}, 502
    return data


@app.route("/api/image-proxy")
@rate_limit(max_requests=240, window=60)
def api_image_proxy():
    url, err = _url_arg()
    if err:
        return err
    settings = current_settings()
    deadline = monotonic() + settings.fetch_deadline
    try:
        upstream = open_image(url, settings)
    except ValueError as exc:
        app.logger.warning("image proxy failed for %s: %s", url, exc)
        return {"error": "Failed to fetch image"}, 502
    return Response(
        iter_image(upstream, settings.max_image_bytes, deadline),
        content_type=upstream.headers.get("Content-Type"),
        headers={"Cache-Control": f"public, max-age={IMAGE_MAX_AGE}"},
        direct_passthrough=True,
    )


################################################################################
# Live preview
################################################################################
@app.route("/preview", methods=["POST"])
@rate_limit(max_requests=120, window=60)
def preview():
    """
    Render the editor buffer with every embed resolved.

    The client sends a stable ``session`` id per editor and, optionally, the
    ``token`` of its previous preview. Each request starts a new render; an
    older render of the same session still resolving answers 409.
    """
    data = request.get_json(force=True, silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return {"error": "Expected a JSON object"}, 400
    content = data.get("content") or ""
    if not isinstance(content, str):
        return {"error": "content must be a string"}, 400
    try:
        fmt = Format.coerce(data.get("format") or "markdown")
    except ValueError:
        return {"error": "Unknown format"}, 400

    prev = data.get("token")
    if prev and not render_sessions.is_valid(str(prev)):
        return {"error": "Invalid or expired render token"}, 400

    session_key = str(data.get("session") or uuid4().hex)
    token = render_sessions.begin(session_key)
    settings = current_settings()

    snapshot = None
    if fmt is Format.MARKDOWN:
        try:
            snapshot = resolve_snapshot(
                markdown_blocks(content),
                settings,
                sessions=render_sessions,
                session_key=session_key,
                token=token,
            )
        except StaleRender:
            return {"stale": True}, 409
    html = render(content, fmt, settings=settings, snapshot=snapshot)
    render_sessions.finish(session_key, token)
    return {"html": str(html), "token": token, "session": session_key}


################################################################################
# CLI
################################################################################
@app.cli.command("render")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--format",
    "fmt",
    type=click.Choice([f.value for f in Format]),
    default=Format.MARKDOWN.value,
    show_default=True,
    help="Declared format of FILE.",
)
@click.option("--resolve", is_flag=True, help="Fetch remote embeds before rendering.")
def cli_render(file: Path, fmt: str, resolve: bool):
    """Render FILE to HTML on stdout."""
    text = file.read_text(encoding="utf-8")
    settings = RenderSettings.from_config(app.config)
    snapshot = None
    if resolve and fmt == Format.MARKDOWN.value:
        snapshot = resolve_snapshot(markdown_blocks(text), settings)
    click.echo(render(text, fmt, settings=settings, snapshot=snapshot))


################################################################################
# Errors
################################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,sans-serif;max-width:38em;margin:auto;padding:13px;color:#c9c9c9;background:#222}a{color:#fff}
</style>
<body>
<h1>{{ title }}</h1>
"""

TEMPL_EPILOG = """
</body>
</html>
"""

TEMPL_404 = wrap("""
  <hr>
  <h2>Page not found</h2>
  <p>The URL you asked for doesn’t exist.</p>
""")

TEMPL_500 = wrap("""
  <hr>
  <h2>Internal Server Error</h2>
  <p>Our fault, not yours. Please try again in a minute.</p>
""")


def _wants_json() -> bool:
    return request.path.startswith("/api/") or request.path == "/preview"


@app.errorhandler(404)
def not_found(exc):
    """Site-wide “Not Found” page."""
    if _wants_json():
        return {"error": "Not found"}, 404
    return render_template_string(TEMPL_404, title=app.config["SITE_NAME"]), 404


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 page for production.
    • In debug mode Flask bypasses this handler and shows the traceback.
    """
    app.logger.error("unhandled error on %s: %s", request.path, exc)
    if _wants_json():
        return {"error": "Internal server error"}, 500
    return render_template_string(TEMPL_500, title=app.config["SITE_NAME"]), 500


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)
