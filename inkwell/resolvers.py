"""
Remote lookups behind the embeds: Open Graph metadata, Bluesky handle → DID,
the Bluesky oEmbed proxy and the image proxy upstream fetch.

Every outbound request carries a timeout. Failures degrade to fallback data
and are logged, never raised into the renderer.
"""

import ipaddress
import logging
import socket
import threading
import uuid
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as LookupTimeout
from enum import Enum
from time import monotonic
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup
from itsdangerous import BadSignature, TimestampSigner

from inkwell.config import DID_CACHE_SIZE, METADATA_CACHE_SIZE, RenderSettings
from inkwell.content import Aside, CardDirective, EmbedDirective, LinkCandidate
from inkwell.embeds import (
    BlueskyPostRef,
    EmbedType,
    Metadata,
    Snapshot,
    extract_clean_url,
    parse_bluesky_url,
    parse_url,
    resolve_embed_type,
)

log = logging.getLogger(__name__)


################################################################################
# Caches
################################################################################
class TTLCache:
    """
    Small LRU cache with optional per-entry expiry.

    Shared across request threads; writes are idempotent so last writer wins.
    """

    def __init__(self, maxsize: int, ttl: float | None = None, clock=monotonic):
        self.maxsize = maxsize
        self.ttl = ttl
        self._clock = clock
        self._data: OrderedDict = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key, default=None):
        with self._lock:
            hit = self._data.get(key)
            if hit is None:
                return default
            value, expires = hit
            if expires is not None and expires <= self._clock():
                del self._data[key]
                return default
            self._data.move_to_end(key)
            return value

    def set(self, key, value, ttl: float | None = None) -> None:
        ttl = self.ttl if ttl is None else ttl
        expires = self._clock() + ttl if ttl else None
        with self._lock:
            self._data[key] = (value, expires)
            self._data.move_to_end(key)
            while len(self._data) > self.maxsize:
                self._data.popitem(last=False)

    def pop(self, key, default=None):
        with self._lock:
            hit = self._data.pop(key, None)
        return default if hit is None else hit[0]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key) -> bool:
        return self.get(key) is not None


metadata_cache = TTLCache(maxsize=METADATA_CACHE_SIZE)
did_cache = TTLCache(maxsize=DID_CACHE_SIZE)  # handles rarely change DID


def normalize_url(url: str) -> str:
    """Cache key: lower-case scheme/host, no default port, sorted query, no fragment."""
    parsed = urlsplit(url.strip())
    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    if scheme == "http" and netloc.endswith(":80"):
        netloc = netloc[:-3]
    elif scheme == "https" and netloc.endswith(":443"):
        netloc = netloc[:-4]
    path = parsed.path
    if path and path != "/" and path.endswith("/"):
        path = path.rstrip("/")
    query = urlencode(sorted(parse_qsl(parsed.query, keep_blank_values=True)))
    return urlunsplit((scheme, netloc, path, query, ""))


################################################################################
# Network guards
################################################################################
_BAD_NETS = [
    ipaddress.ip_network(n)
    for n in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.0.0.0/24",
        "192.168.0.0/16",
        "198.18.0.0/15",
        "224.0.0.0/4",
        "240.0.0.0/4",
        "::/128",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
        "ff00::/8",
    )
]


# getaddrinfo has no timeout of its own
_dns_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="inkwell-dns")
MAX_REDIRECTS = 5
_REDIRECT_CODES = {301, 302, 303, 307, 308}


def is_private_host(host: str, timeout: float | None = None) -> bool:
    """
    True ⇢ *host* resolves **only** to private / reserved addresses.

    Raises ValueError when the lookup takes longer than *timeout* seconds.
    """
    try:
        ip_obj = ipaddress.ip_address(host)
    except ValueError:
        ip_obj = None
    else:
        return any(ip_obj in net for net in _BAD_NETS)

    lookup = _dns_pool.submit(
        socket.getaddrinfo, host, None, proto=socket.IPPROTO_TCP
    )
    try:
        infos = lookup.result(timeout=timeout)
    except socket.gaierror:
        return False  # unable to resolve ⇒ let the fetch itself fail
    except LookupTimeout:
        raise ValueError(f"DNS lookup for {host} timed out") from None

    for _fam, *_rest, sockaddr in infos:
        try:
            ip_obj = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if not any(ip_obj in net for net in _BAD_NETS):
            return False
    return True


def _guard_host(host: str, settings: RenderSettings) -> None:
    if settings.allow_private_hosts:
        return
    if is_private_host(host, timeout=settings.fetch_timeout):
        raise ValueError("Refusing to fetch from a private/reserved address")


def _headers(settings: RenderSettings, accept: str) -> dict[str, str]:
    return {"User-Agent": settings.user_agent, "Accept": accept}


def _check_deadline(deadline: float | None) -> None:
    if deadline is not None and monotonic() > deadline:
        raise ValueError("Fetch took too long")


def _open_guarded(
    url: str, settings: RenderSettings, accept: str, deadline: float | None = None
):
    """
    Streamed GET that follows redirects itself, so every hop passes the host
    guard. The caller owns (and must close) the returned response.
    """
    for _ in range(MAX_REDIRECTS + 1):
        parsed = parse_url(url)
        if parsed is None:
            raise ValueError(f"Invalid redirect target {url!r}")
        _guard_host(parsed.hostname, settings)
        _check_deadline(deadline)
        resp = requests.get(
            url,
            timeout=settings.fetch_timeout,
            stream=True,
            allow_redirects=False,
            headers=_headers(settings, accept),
        )
        location = resp.headers.get("Location")
        if resp.status_code not in _REDIRECT_CODES or not location:
            return resp
        resp.close()
        url = urljoin(url, location)
    raise ValueError(f"More than {MAX_REDIRECTS} redirects")


def _read_capped(resp, limit: int, deadline: float | None = None) -> bytes:
    """Read at most *limit* bytes of a streamed response before *deadline*."""
    raw = b""
    for chunk in resp.iter_content(8192):
        _check_deadline(deadline)
        raw += chunk
        if len(raw) >= limit:
            return raw[:limit]
    return raw


################################################################################
# Open Graph metadata
################################################################################
def _absolute(src: str | None, base) -> str | None:
    src = (src or "").strip()
    if not src:
        return None
    if src.startswith(("http://", "https://")):
        return src
    if src.startswith("//"):
        return f"{base.scheme}:{src}"
    if src.startswith("/"):
        return f"{base.scheme}://{base.netloc}{src}"
    return f"{base.scheme}://{base.netloc}/{src}"


def _meta_content(soup: BeautifulSoup, key: str) -> str | None:
    """Value of ``<meta property|name=key content=…>``, case-insensitive key."""
    for attr in ("property", "name"):
        tag = soup.find(
            "meta", attrs={attr: lambda v: bool(v) and v.strip().lower() == key}
        )
        if tag is not None:
            content = (tag.get("content") or "").strip()
            if content:
                return content
    return None


def _favicon(soup: BeautifulSoup, base) -> str:
    for link in soup.find_all("link", href=True):
        rels = [r.lower() for r in (link.get("rel") or [])]
        if rels in (["icon"], ["shortcut", "icon"]):
            href = _absolute(link["href"], base)
            if href:
                return href
    return f"{base.scheme}://{base.netloc}/favicon.ico"


def extract_metadata(html: str | bytes, url: str) -> Metadata:
    """Best-effort scrape of an already fetched page."""
    base = urlsplit(url)
    soup = BeautifulSoup(html, "html.parser")
    title = _meta_content(soup, "og:title")
    if not title and soup.title and soup.title.string:
        title = soup.title.string.strip() or None
    return Metadata(
        url=_meta_content(soup, "og:url") or url,
        domain=base.hostname or "",
        title=title,
        description=_meta_content(soup, "og:description")
        or _meta_content(soup, "description"),
        image=_absolute(_meta_content(soup, "og:image"), base),
        site_name=_meta_content(soup, "og:site_name"),
        favicon=_favicon(soup, base),
    )


def fetch_metadata(url: str, settings: RenderSettings | None = None) -> Metadata:
    """
    Open Graph summary of *url*. Never raises: any failure yields
    ``Metadata.fallback`` (which is not cached).
    """
    settings = settings or RenderSettings()
    parsed = parse_url(url)
    if parsed is None:
        log.warning("metadata: malformed URL %r", url)
        return Metadata.fallback(url)

    key = normalize_url(url)
    cached = metadata_cache.get(key)
    if cached is not None:
        return cached

    try:
        deadline = monotonic() + settings.fetch_deadline
        with _open_guarded(
            url, settings, "text/html,application/xhtml+xml", deadline
        ) as resp:
            resp.raise_for_status()
            raw = _read_capped(resp, settings.max_html_bytes, deadline)
        meta = extract_metadata(raw, url)
    except (requests.RequestException, ValueError) as exc:
        log.warning("metadata fetch failed for %s: %s", url, exc)
        return Metadata.fallback(url)

    metadata_cache.set(key, meta, ttl=settings.metadata_ttl)
    return meta


################################################################################
# Image proxy upstream
################################################################################
def open_image(url: str, settings: RenderSettings | None = None):
    """
    Start streaming an upstream image. Raises ValueError unless the upstream
    answers 2xx with an ``image/*`` content type within the size cap; the
    caller owns (and must close) the returned response.
    """
    settings = settings or RenderSettings()
    if parse_url(url) is None:
        raise ValueError("Invalid URL")

    try:
        resp = _open_guarded(url, settings, "image/*")
    except requests.RequestException as exc:
        raise ValueError(f"Cannot fetch image: {exc}") from None

    try:
        resp.raise_for_status()
        ctype = resp.headers.get("Content-Type", "")
        if not ctype.lower().startswith("image/"):
            raise ValueError(f"Not an image: {ctype or 'no content type'}")
        length = resp.headers.get("Content-Length", "")
        if length.isdigit() and int(length) > settings.max_image_bytes:
            raise ValueError("Image too large")
    except requests.RequestException as exc:
        resp.close()
        raise ValueError(f"Cannot fetch image: {exc}") from None
    except ValueError:
        resp.close()
        raise
    return resp


def iter_image(resp, limit: int, deadline: float | None = None):
    """Yield the image body, stopping at *limit* bytes or *deadline*; closes *resp*."""
    sent = 0
    try:
        for chunk in resp.iter_content(8192):
            sent += len(chunk)
            if sent > limit:
                log.warning("image proxy: body over %d bytes truncated", limit)
                break
            if deadline is not None and monotonic() > deadline:
                log.warning("image proxy: upstream too slow, body truncated")
                break
            yield chunk
    finally:
        resp.close()


################################################################################
# Bluesky
################################################################################
def resolve_handle_to_did(handle: str, settings: RenderSettings | None = None) -> str | None:
    """Primary then fallback identity endpoint; successful lookups are cached."""
    settings = settings or RenderSettings()
    clean = (handle or "").strip().removeprefix("@")
    if not clean:
        return None

    cached = did_cache.get(clean)
    if cached:
        return cached

    for endpoint in settings.bluesky_resolve_endpoints:
        try:
            resp = requests.get(
                endpoint,
                params={"handle": clean},
                timeout=settings.fetch_timeout,
                headers=_headers(settings, "application/json"),
            )
            if not resp.ok:
                log.warning("resolveHandle via %s: HTTP %s", endpoint, resp.status_code)
                continue
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            log.warning("resolveHandle via %s failed: %s", endpoint, exc)
            continue
        did = data.get("did") if isinstance(data, dict) else None
        if did:
            did_cache.set(clean, did)
            return did

    log.error("could not resolve Bluesky handle %s via any endpoint", clean)
    return None


def parse_bluesky_url_to_params(
    url: str, settings: RenderSettings | None = None
) -> BlueskyPostRef | None:
    """None means: cannot embed, fall back to a link."""
    parts = parse_bluesky_url(url)
    if parts is None:
        return None
    did = resolve_handle_to_did(parts.handle, settings)
    if not did:
        return None
    return BlueskyPostRef(did=did, rkey=parts.rkey)


def fetch_bluesky_oembed(url: str, settings: RenderSettings | None = None) -> dict:
    settings = settings or RenderSettings()
    try:
        resp = requests.get(
            settings.bluesky_oembed_endpoint,
            params={"url": url, "format": "json"},
            timeout=settings.fetch_timeout,
            headers=_headers(settings, "application/json"),
        )
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        raise ValueError(f"Cannot fetch Bluesky oEmbed: {exc}") from None
    if not isinstance(data, dict):
        raise ValueError("Unexpected oEmbed payload")
    return data


################################################################################
# Resolving a render
################################################################################
class SlotState(str, Enum):
    LOADING = "loading"
    RESOLVED = "resolved"
    ERROR = "error"


class EmbedSlot:
    """One network-backed embed: loading → resolved | error, never back."""

    def __init__(self, kind: str, url: str):
        self.kind = kind
        self.url = url
        self.state = SlotState.LOADING
        self.value = None
        self.reason: str | None = None

    def _leave_loading(self, state: SlotState) -> None:
        if self.state is not SlotState.LOADING:
            raise RuntimeError(f"embed for {self.url} already {self.state.value}")
        self.state = state

    def resolve(self, value) -> None:
        self._leave_loading(SlotState.RESOLVED)
        self.value = value

    def fail(self, reason: str, value=None) -> None:
        self._leave_loading(SlotState.ERROR)
        self.reason = reason
        self.value = value


class StaleRender(Exception):
    """A newer render of the same session superseded this one."""


class RenderSessions:
    """
    Latest render token per editing session. Tokens are signed and expire;
    results computed for an older token are discarded.
    """

    def __init__(self, secret_key: str, *, max_age: int = 3600, maxsize: int = 1024):
        self.max_age = max_age
        self._signer = TimestampSigner(secret_key, salt="render-token")
        self._latest = TTLCache(maxsize=maxsize, ttl=max_age)

    def begin(self, session_key: str) -> str:
        token = self._signer.sign(uuid.uuid4().hex).decode()
        self._latest.set(session_key, token)
        return token

    def is_valid(self, token: str) -> bool:
        try:
            self._signer.unsign(token, max_age=self.max_age)
        except BadSignature:
            return False
        return True

    def is_current(self, session_key: str, token: str) -> bool:
        return self._latest.get(session_key) == token

    def finish(self, session_key: str, token: str) -> None:
        if self.is_current(session_key, token):
            self._latest.pop(session_key)


def collect_remote_urls(blocks, settings: RenderSettings | None = None) -> list[tuple[str, str]]:
    """(kind, url) pairs a render needs from the network, first-seen order."""
    settings = settings or RenderSettings()
    seen: dict[tuple[str, str], None] = {}
    for blk in blocks:
        if isinstance(blk, Aside):
            for pair in collect_remote_urls(blk.children, settings):
                seen.setdefault(pair, None)
            continue
        if isinstance(blk, EmbedDirective):
            url = extract_clean_url(blk.url)
            if (
                parse_url(url)
                and resolve_embed_type(url, blk.provider_hint) is EmbedType.BLUESKY
                and parse_bluesky_url(url)
            ):
                seen.setdefault(("bluesky", url), None)
        elif isinstance(blk, CardDirective) or (
            isinstance(blk, LinkCandidate) and settings.link_previews
        ):
            url = extract_clean_url(blk.url)
            if parse_url(url):
                seen.setdefault(("card", url), None)
    return list(seen)


_LOOKUPS = {
    "card": fetch_metadata,
    "bluesky": parse_bluesky_url_to_params,
}


def _settle(slot: EmbedSlot, value) -> None:
    if slot.kind == "card":
        if value.error:
            slot.fail("metadata unavailable", value)
        else:
            slot.resolve(value)
    elif value is None:
        slot.fail("handle could not be resolved")
    else:
        slot.resolve(value)


def resolve_snapshot(
    blocks,
    settings: RenderSettings | None = None,
    *,
    sessions: RenderSessions | None = None,
    session_key: str | None = None,
    token: str | None = None,
) -> Snapshot:
    """
    Resolve every network-backed embed of *blocks* concurrently.

    With *sessions*, results are only applied while *token* is still the
    session's latest; otherwise ``StaleRender`` is raised and nothing is kept.
    """
    settings = settings or RenderSettings()
    slots = [EmbedSlot(kind, url) for kind, url in collect_remote_urls(blocks, settings)]

    def _ensure_current() -> None:
        if sessions is not None and not sessions.is_current(session_key, token):
            raise StaleRender(token)

    if slots:
        workers = max(1, min(settings.max_workers, len(slots)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_to_slot = {
                executor.submit(_LOOKUPS[slot.kind], slot.url, settings): slot
                for slot in slots
            }
            try:
                for future in as_completed(future_to_slot):
                    _ensure_current()
                    _settle(future_to_slot[future], future.result())
            except StaleRender:
                for future in future_to_slot:
                    future.cancel()
                log.info("discarding superseded render %s", session_key)
                raise
    _ensure_current()

    snapshot = Snapshot()
    for slot in slots:
        if slot.kind == "card":
            snapshot.metadata[slot.url] = slot.value
        else:
            snapshot.bluesky[slot.url] = slot.value
    return snapshot
