"""
Render settings, sourced once per request and passed down explicitly.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Mapping


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() not in {"0", "false", "no", "off", ""}


FETCH_TIMEOUT = float(os.environ.get("INKWELL_FETCH_TIMEOUT", "5"))
FETCH_DEADLINE = float(os.environ.get("INKWELL_FETCH_DEADLINE", "15"))
METADATA_TTL = int(os.environ.get("INKWELL_METADATA_TTL", "3600"))
METADATA_CACHE_SIZE = int(os.environ.get("INKWELL_METADATA_CACHE_SIZE", "512"))
DID_CACHE_SIZE = int(os.environ.get("INKWELL_DID_CACHE_SIZE", "1024"))
LINK_PREVIEWS = _env_flag("INKWELL_LINK_PREVIEWS", "1")
ALLOW_PRIVATE_HOSTS = _env_flag("INKWELL_ALLOW_PRIVATE_HOSTS", "0")

USER_AGENT = "Mozilla/5.0 (compatible; Blog-Card-Bot/1.0)"
MAX_HTML_BYTES = 1 * 1024 * 1024
MAX_IMAGE_BYTES = 10 * 1024 * 1024
BLUESKY_RESOLVE_ENDPOINTS = (
    "https://public.api.bsky.app/xrpc/com.atproto.identity.resolveHandle",
    "https://bsky.social/xrpc/com.atproto.identity.resolveHandle",
)
BLUESKY_OEMBED_ENDPOINT = "https://embed.bsky.app/oembed"


@dataclass(frozen=True)
class RenderSettings:
    """
    Per-request knobs for the content pipeline and its resolvers.

    Cache sizes are process-wide and live in the module constants above.
    """

    fetch_timeout: float = FETCH_TIMEOUT
    fetch_deadline: float = FETCH_DEADLINE
    user_agent: str = USER_AGENT
    metadata_ttl: int = METADATA_TTL
    max_html_bytes: int = MAX_HTML_BYTES
    max_image_bytes: int = MAX_IMAGE_BYTES
    link_previews: bool = LINK_PREVIEWS
    allow_private_hosts: bool = ALLOW_PRIVATE_HOSTS
    max_workers: int = 4
    bluesky_resolve_endpoints: tuple[str, ...] = field(
        default=BLUESKY_RESOLVE_ENDPOINTS
    )
    bluesky_oembed_endpoint: str = BLUESKY_OEMBED_ENDPOINT
    metadata_endpoint: str = "/api/metadata"
    bluesky_proxy_endpoint: str = "/api/bluesky-oembed"
    image_proxy_endpoint: str = "/api/image-proxy"

    @classmethod
    def from_config(cls, config: Mapping) -> "RenderSettings":
        """Build settings from a Flask ``app.config``-like mapping."""
        base = cls()
        return replace(
            base,
            fetch_timeout=float(config.get("FETCH_TIMEOUT", base.fetch_timeout)),
            fetch_deadline=float(config.get("FETCH_DEADLINE", base.fetch_deadline)),
            user_agent=config.get("USER_AGENT", base.user_agent),
            metadata_ttl=int(config.get("METADATA_TTL", base.metadata_ttl)),
            max_html_bytes=int(config.get("MAX_HTML_BYTES", base.max_html_bytes)),
            max_image_bytes=int(config.get("MAX_IMAGE_BYTES", base.max_image_bytes)),
            link_previews=bool(config.get("LINK_PREVIEWS", base.link_previews)),
            allow_private_hosts=bool(
                config.get("ALLOW_PRIVATE_HOSTS", base.allow_private_hosts)
            ),
            max_workers=int(config.get("RESOLVE_WORKERS", base.max_workers)),
            bluesky_resolve_endpoints=tuple(
                config.get("BLUESKY_RESOLVE_ENDPOINTS", base.bluesky_resolve_endpoints)
            ),
            bluesky_oembed_endpoint=config.get(
                "BLUESKY_OEMBED_ENDPOINT", base.bluesky_oembed_endpoint
            ),
        )
