"""
Embed routing: classify a URL into a provider, then render the matching card.

Renderers are plain functions looked up in ``EMBED_RENDERERS``; anything that
needs remote data (Bluesky DIDs, Open Graph metadata) reads it from a
``Snapshot`` and falls back to a loading placeholder when it is missing.
"""

import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from html import escape
from typing import Callable
from urllib.parse import SplitResult, quote, urlsplit

from markupsafe import Markup

from inkwell.config import RenderSettings

################################################################################
# Types
################################################################################


class EmbedType(str, Enum):
    YOUTUBE = "youtube"
    TWITTER = "twitter"
    BLUESKY = "bluesky"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class BlueskyUrlParts:
    handle: str
    rkey: str


@dataclass(frozen=True)
class BlueskyPostRef:
    did: str
    rkey: str

    @property
    def at_uri(self) -> str:
        return f"at://{self.did}/app.bsky.feed.post/{self.rkey}"


@dataclass(frozen=True)
class Metadata:
    """Open Graph summary of an external page."""

    url: str
    domain: str
    title: str | None = None
    description: str | None = None
    image: str | None = None
    site_name: str | None = None
    favicon: str | None = None
    error: bool = False

    @classmethod
    def fallback(cls, url: str) -> "Metadata":
        """Shape served when the page could not be fetched."""
        parsed = parse_url(url)
        host = (parsed.hostname or "") if parsed else ""
        return cls(
            url=url,
            domain=host,
            title=host,
            description=f"Visit {host}",
            site_name=host,
            error=True,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["siteName"] = data.pop("site_name")
        return data


@dataclass
class Snapshot:
    """Remote data available to one render, keyed by the embed URL."""

    metadata: dict[str, Metadata] = field(default_factory=dict)
    bluesky: dict[str, BlueskyPostRef | None] = field(default_factory=dict)


################################################################################
# URL helpers
################################################################################
_YOUTUBE_MARKERS = ("youtube.com/watch", "youtu.be/", "youtube.com/embed/", "youtube.com/v/")
YOUTUBE_ID_RE = re.compile(
    r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/|youtube\.com/v/)([^&\n?#]+)",
    re.I,
)
# ?feature=share&v=… style watch links
_YOUTUBE_QUERY_ID_RE = re.compile(r"youtube\.com/watch\?.*?\bv=([^&\n?#]+)", re.I)
TWEET_ID_RE = re.compile(r"(?:twitter\.com|x\.com)/[^/]+/status(?:es)?/(\d+)", re.I)
BLUESKY_POST_RE = re.compile(r"bsky\.app/profile/([^/]+)/post/([^/?#]+)", re.I)
_MD_LINK_RE = re.compile(r"\[.*?\]\((.*?)\)")
_ANGLE_RE = re.compile(r"<(.*)>")
CARD_URL_MAX = 60


def parse_url(url: str | None) -> SplitResult | None:
    """Return the split URL, or None for anything a browser would refuse to embed."""
    url = (url or "").strip()
    if not url or any(c.isspace() for c in url):
        return None
    try:
        parsed = urlsplit(url)
        parsed.port  # raises ValueError on a bad port
    except ValueError:
        return None
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.hostname:
        return None
    return parsed


def detect_embed_type(url: str) -> EmbedType:
    clean = (url or "").strip().lower()
    if any(marker in clean for marker in _YOUTUBE_MARKERS):
        return EmbedType.YOUTUBE
    if ("twitter.com/" in clean or "x.com/" in clean) and "/status/" in clean:
        return EmbedType.TWITTER
    if "bsky.app/profile/" in clean and "/post/" in clean:
        return EmbedType.BLUESKY
    return EmbedType.UNKNOWN


def extract_clean_url(raw: str) -> str:
    """Strip ``[text](url)`` and ``<url>`` wrapping."""
    raw = raw or ""
    m = _MD_LINK_RE.search(raw)
    if m:
        return m.group(1).strip()
    m = _ANGLE_RE.search(raw)
    if m:
        return m.group(1).strip()
    return raw.strip()


def extract_youtube_id(url: str) -> str | None:
    m = YOUTUBE_ID_RE.search(url or "") or _YOUTUBE_QUERY_ID_RE.search(url or "")
    return m.group(1) if m else None


def extract_tweet_id(url: str) -> str | None:
    m = TWEET_ID_RE.search(url or "")
    return m.group(1) if m else None


def parse_bluesky_url(url: str) -> BlueskyUrlParts | None:
    m = BLUESKY_POST_RE.search((url or "").replace("<", "").replace(">", ""))
    if not m:
        return None
    return BlueskyUrlParts(handle=m.group(1), rkey=m.group(2))


def endpoint_url(endpoint: str, url: str) -> str:
    return f"{endpoint}?url={quote(url, safe='')}"


def truncate_url(url: str, limit: int = CARD_URL_MAX) -> str:
    return f"{url[:limit]}..." if len(url) > limit else url


################################################################################
# Card fragments
################################################################################
def _external_link(url: str, label: str, cls: str = "embed__link") -> str:
    return (
        f'<a class="{cls}" href="{escape(url)}" target="_blank" '
        f'rel="noopener noreferrer">{escape(label)}</a>'
    )


def embed_error(msg: str, *, url: str | None = None, link_label: str = "View original") -> Markup:
    """Inline error card; the rest of the document keeps rendering."""
    extra = (
        _external_link(url, link_label)
        if url
        else '<p class="embed__hint">Please provide a valid URL.</p>'
    )
    return Markup(
        '<div class="embed embed--error" data-embed-state="error">'
        f"<strong>{escape(msg)}</strong>{extra}</div>"
    )


def _placeholder(kind: str, label: str, src: str) -> Markup:
    return Markup(
        f'<div class="embed embed--{kind} embed--loading" data-embed-state="loading" '
        f'data-embed-src="{escape(src)}"><span>{escape(label)}</span></div>'
    )


################################################################################
# Provider renderers
################################################################################
def render_youtube(url: str, snapshot: Snapshot, settings: RenderSettings) -> Markup:
    video_id = extract_youtube_id(url)
    if not video_id:
        return embed_error("Invalid YouTube URL", url=url, link_label="View original video")
    src = f"https://www.youtube.com/embed/{quote(video_id, safe='')}?rel=0&modestbranding=1"
    return Markup(
        '<div class="embed embed--youtube">'
        f'<iframe src="{escape(src)}" title="YouTube video player" frameborder="0" '
        'allow="accelerometer; autoplay; clipboard-write; encrypted-media; '
        'gyroscope; picture-in-picture; web-share" allowfullscreen loading="lazy">'
        "</iframe></div>"
    )


def render_twitter(url: str, snapshot: Snapshot, settings: RenderSettings) -> Markup:
    tweet_id = extract_tweet_id(url)
    if not tweet_id:
        return embed_error("Invalid Twitter/X URL", url=url, link_label="View original tweet")
    return Markup(
        f'<div class="embed embed--twitter" data-tweet-id="{escape(tweet_id)}">'
        '<h3 class="embed__title">X (Twitter) Post</h3>'
        f'<p class="embed__meta">Tweet ID: {escape(tweet_id)}</p>'
        "<p>View this post on X to see the full content and engage with the conversation.</p>"
        f"{_external_link(url, 'Open on X', 'embed__button')}"
        "</div>"
    )


def render_bluesky(url: str, snapshot: Snapshot, settings: RenderSettings) -> Markup:
    if parse_bluesky_url(url) is None:
        return embed_error("Invalid Bluesky URL", url=url, link_label="View original post")
    if url not in snapshot.bluesky:
        return _placeholder(
            "bluesky",
            "Loading Bluesky post…",
            endpoint_url(settings.bluesky_proxy_endpoint, url),
        )
    ref = snapshot.bluesky[url]
    if ref is None:
        return embed_error(
            "Could not resolve Bluesky handle", url=url, link_label="View original post"
        )
    return Markup(
        '<div class="embed embed--bluesky">'
        f'<blockquote class="bluesky-embed" data-bluesky-uri="{escape(ref.at_uri)}" '
        'data-bluesky-embed-color-mode="system">'
        f'<p lang="en">{_external_link(url, "View this post on Bluesky", "")}</p>'
        "</blockquote></div>"
    )


def render_external(url: str, snapshot: Snapshot, settings: RenderSettings) -> Markup:
    return Markup(
        '<div class="embed embed--external">'
        '<h3 class="embed__title">External Link</h3>'
        '<p class="embed__meta">Click to view content</p>'
        f'<p class="embed__url">{escape(truncate_url(url))}</p>'
        f"{_external_link(url, 'Open Link', 'embed__button')}"
        "</div>"
    )


EMBED_RENDERERS: dict[EmbedType, Callable[[str, Snapshot, RenderSettings], Markup]] = {
    EmbedType.YOUTUBE: render_youtube,
    EmbedType.TWITTER: render_twitter,
    EmbedType.BLUESKY: render_bluesky,
    EmbedType.UNKNOWN: render_external,
}


def resolve_embed_type(url: str, hint: str | None = None) -> EmbedType:
    """Honour an explicit provider hint, auto-detect for anything else."""
    try:
        return EmbedType((hint or "").strip().lower())
    except ValueError:
        return detect_embed_type(url)


def render_embed(
    url: str,
    hint: str | None = None,
    snapshot: Snapshot | None = None,
    settings: RenderSettings | None = None,
) -> Markup:
    clean = extract_clean_url(url)
    if parse_url(clean) is None:
        return embed_error("Invalid URL format")
    renderer = EMBED_RENDERERS[resolve_embed_type(clean, hint)]
    return renderer(clean, snapshot or Snapshot(), settings or RenderSettings())


def proxied_image(src: str, settings: RenderSettings) -> str:
    return endpoint_url(settings.image_proxy_endpoint, src)


def render_card(
    url: str,
    snapshot: Snapshot | None = None,
    settings: RenderSettings | None = None,
) -> Markup:
    """Open Graph preview card for an arbitrary page."""
    snapshot = snapshot or Snapshot()
    settings = settings or RenderSettings()
    clean = extract_clean_url(url)
    if parse_url(clean) is None:
        return embed_error("Invalid URL format")

    meta = snapshot.metadata.get(clean)
    if meta is None:
        return _placeholder(
            "card", "Loading preview…", endpoint_url(settings.metadata_endpoint, clean)
        )

    domain = meta.domain or clean
    desc_html = (
        f'<p class="embed__description">{escape(meta.description)}</p>'
        if meta.description
        else ""
    )
    if meta.favicon and not meta.error:
        icon_html = (
            f'<img class="embed__favicon" src="{escape(proxied_image(meta.favicon, settings))}" '
            'alt="" width="16" height="16">'
        )
    else:
        icon_html = '<span class="embed__favicon" aria-hidden="true">🔗</span>'
    image_html = ""
    if meta.image and not meta.error:
        image_html = (
            '<div class="embed__image">'
            f'<img src="{escape(proxied_image(meta.image, settings))}" alt="" loading="lazy">'
            "</div>"
        )
    state = "error" if meta.error else "resolved"
    return Markup(
        f'<a class="embed embed--card" data-embed-state="{state}" href="{escape(clean)}" '
        'target="_blank" rel="noopener noreferrer">'
        '<div class="embed__body">'
        f'<h3 class="embed__title">{escape(meta.title or domain)}</h3>'
        f"{desc_html}"
        f'<div class="embed__site">{icon_html}<span>{escape(domain)}</span></div>'
        "</div>"
        f"{image_html}"
        "</a>"
    )
