"""
Post content pipeline: normalize embed syntax, split markdown into blocks,
format inline text and render the result to HTML.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from markupsafe import Markup, escape

from inkwell.config import RenderSettings
from inkwell.embeds import (
    EmbedType,
    Snapshot,
    detect_embed_type,
    render_card,
    render_embed,
)

################################################################################
# Blocks
################################################################################


class Format(str, Enum):
    MARKDOWN = "markdown"
    HTML = "html"
    PLAIN = "plain"

    @classmethod
    def coerce(cls, value: "Format | str") -> "Format":
        if isinstance(value, cls):
            return value
        return cls(str(value or "").strip().lower())


@dataclass(frozen=True)
class Heading:
    level: int
    text: str


@dataclass(frozen=True)
class Paragraph:
    text: str


@dataclass(frozen=True)
class ListItem:
    ordered: bool
    text: str


@dataclass(frozen=True)
class Blockquote:
    text: str


@dataclass(frozen=True)
class CodeBlock:
    language: str | None
    text: str


@dataclass(frozen=True)
class HorizontalRule:
    pass


@dataclass(frozen=True)
class Spacer:
    pass


@dataclass(frozen=True)
class Aside:
    children: tuple = ()


@dataclass(frozen=True)
class EmbedDirective:
    provider_hint: str
    url: str


@dataclass(frozen=True)
class CardDirective:
    url: str


@dataclass(frozen=True)
class LinkCandidate:
    url: str


Block = (
    Heading
    | Paragraph
    | ListItem
    | Blockquote
    | CodeBlock
    | HorizontalRule
    | Spacer
    | Aside
    | EmbedDirective
    | CardDirective
    | LinkCandidate
)

_CODE_FENCE_RE = re.compile(r"^\s*(```|~~~)(.*)$")
_HEADING_RE = re.compile(r"^(#{1,4}) (.*)$")
_ORDERED_RE = re.compile(r"^\d+\. ")
_BARE_URL_RE = re.compile(r"^https?://\S+$", re.I)
_CARD_ALT_RE = re.compile(r"\{\{card:\s*(https?://[^}\s]+)\s*\}\}", re.I)
_EMBED_ALT_RE = re.compile(r"\{([A-Za-z][A-Za-z0-9_-]*):(https?://[^}\s]+)\}")
_EMBED_TAG_RE = re.compile(r"\[([A-Za-z][A-Za-z0-9_-]*)\]\s*(.+?)\s*\[/\1\]", re.I)
_CODE_SPAN_RE = re.compile(r"`([^`]+)`")
_ASIDE_OPEN = "<aside>"
_ASIDE_CLOSE = "</aside>"


################################################################################
# Embed-syntax normalizer
################################################################################
def _scan_fences(lines):
    """Yield (line, fenced); fence delimiters count as fenced."""
    in_code, fence = False, ""
    for ln in lines:
        m_f = _CODE_FENCE_RE.match(ln)
        if m_f:
            tok = m_f.group(1)
            if not in_code:
                in_code, fence = True, tok
            elif tok == fence:
                in_code, fence = False, ""
            yield ln, True
            continue
        yield ln, in_code


def _outside_code_spans(line: str, fn) -> str:
    """Apply *fn* to the parts of *line* that are not inline code."""
    out, pos = [], 0
    for m in _CODE_SPAN_RE.finditer(line):
        out.append(fn(line[pos : m.start()]))
        out.append(m.group(0))
        pos = m.end()
    out.append(fn(line[pos:]))
    return "".join(out)


def _rewrite_alt_syntax(text: str) -> str:
    text = _CARD_ALT_RE.sub(lambda m: f"[card]{m.group(1)}[/card]", text)
    return _EMBED_ALT_RE.sub(
        lambda m: f"[{m.group(1)}]{m.group(2)}[/{m.group(1)}]", text
    )


def normalize(raw: str | None) -> str:
    """
    Rewrite ``{{card:url}}``, ``{type:url}`` and embeddable bare URLs into the
    canonical ``[type]url[/type]`` syntax. Code fences are left alone.
    """
    out = []
    for ln, fenced in _scan_fences((raw or "").split("\n")):
        if fenced:
            out.append(ln)
            continue
        ln = _outside_code_spans(ln, _rewrite_alt_syntax)
        stripped = ln.strip()
        if (
            _BARE_URL_RE.match(stripped)
            and detect_embed_type(stripped) is not EmbedType.UNKNOWN
        ):
            indent = ln[: len(ln) - len(ln.lstrip())]
            ln = f"{indent}[embed]{stripped}[/embed]"
        out.append(ln)
    return "\n".join(out)


################################################################################
# Block classifier
################################################################################
def _split_aside(lines: list[str], start: int) -> tuple[str, str, int] | None:
    """
    Cut ``<aside>`` … ``</aside>`` starting on *lines[start]*.

    Returns (inner text, text after the closing tag, index of the closing
    line), or None when the aside is never closed. A closing tag inside a
    fenced block does not count.
    """
    first = lines[start]
    segment = first[first.lower().find(_ASIDE_OPEN) + len(_ASIDE_OPEN) :]
    pieces: list[str] = []
    in_code, fence = False, ""
    idx = start
    while True:
        m_f = _CODE_FENCE_RE.match(segment) if idx > start else None
        if m_f:
            tok = m_f.group(1)
            if not in_code:
                in_code, fence = True, tok
            elif tok == fence:
                in_code, fence = False, ""
        elif not in_code:
            pos = segment.lower().find(_ASIDE_CLOSE)
            if pos >= 0:
                pieces.append(segment[:pos])
                inner = "\n".join(pieces).strip("\n")
                return inner, segment[pos + len(_ASIDE_CLOSE) :], idx
        pieces.append(segment)
        idx += 1
        if idx >= len(lines):
            return None
        segment = lines[idx]


def _split_directives(line: str) -> list:
    """Paragraph fragments and embed directives of one line, in order."""
    out: list = []
    pos = 0
    code = [m.span() for m in _CODE_SPAN_RE.finditer(line)]
    for m in _EMBED_TAG_RE.finditer(line):
        if any(start < m.end() and m.start() < end for start, end in code):
            continue
        before = line[pos : m.start()].strip()
        if before:
            out.append(Paragraph(before))
        tag, url = m.group(1).lower(), m.group(2).strip()
        out.append(CardDirective(url) if tag == "card" else EmbedDirective(tag, url))
        pos = m.end()
    if out:
        after = line[pos:].strip()
        if after:
            out.append(Paragraph(after))
    return out


def _classify_line(ln: str) -> list:
    stripped = ln.strip()
    h = _HEADING_RE.match(ln)
    if h:
        return [Heading(len(h.group(1)), h.group(2).strip())]
    if ln.startswith("> "):
        return [Blockquote(ln[2:].strip())]
    if stripped in ("---", "***"):
        return [HorizontalRule()]
    if ln.startswith(("- ", "* ")):
        return [ListItem(False, ln[2:].strip())]
    m = _ORDERED_RE.match(ln)
    if m:
        return [ListItem(True, ln[m.end() :].strip())]
    if not stripped:
        return [Spacer()]
    directives = _split_directives(ln)
    if directives:
        return directives
    if _BARE_URL_RE.match(stripped):
        return [LinkCandidate(stripped)]
    return [Paragraph(stripped)]


def parse_blocks(markdown: str | None) -> list:
    """Split markdown into blocks, one pass, source order preserved."""
    lines = (markdown or "").splitlines()
    blocks: list = []
    in_code, fence, lang, buf = False, "", None, []
    i = 0
    while i < len(lines):
        ln = lines[i]
        m_f = _CODE_FENCE_RE.match(ln)

        if in_code:
            if m_f and m_f.group(1) == fence:
                blocks.append(CodeBlock(lang, "\n".join(buf)))
                in_code, fence, lang, buf = False, "", None, []
            else:
                buf.append(ln)
            i += 1
            continue

        if m_f:
            in_code, fence = True, m_f.group(1)
            lang = m_f.group(2).strip() or None
            buf = []
            i += 1
            continue

        if ln.strip().lower().startswith(_ASIDE_OPEN):
            cut = _split_aside(lines, i)
            if cut is not None:
                inner, trailing, close_idx = cut
                blocks.append(Aside(tuple(parse_blocks(inner))))
                if trailing.strip():
                    lines = [*lines[:close_idx], trailing, *lines[close_idx + 1 :]]
                    i = close_idx
                else:
                    i = close_idx + 1
                continue

        blocks.extend(_classify_line(ln))
        i += 1

    if in_code:  # unclosed fence: keep what we have
        blocks.append(CodeBlock(lang, "\n".join(buf)))
    return blocks


def markdown_blocks(content: str | None) -> list:
    return parse_blocks(normalize(content))


################################################################################
# Inline formatter
################################################################################
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_ITALIC_RE = re.compile(r"\*([^*]+)\*")
# targets never contain markup this formatter inserted
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\(([^)\s<>\"]+)\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)\s<>\"]+)\)")
_TAG_RE = re.compile(r"<[^>]*>")
_MASK_RE = re.compile(r"\x00(\d+)\x00")
_SAFE_SCHEMES = {"http", "https", "mailto"}
_SCHEME_RE = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*):")


def _safe_target(escaped_url: str) -> bool:
    """Only web, mail and relative targets may become attributes."""
    m = _SCHEME_RE.match(Markup(escaped_url).unescape())
    return not m or m.group(1).lower() in _SAFE_SCHEMES


def _link(m: re.Match) -> str:
    label, href = m.group(1), m.group(2)
    if not _safe_target(href):
        return label
    return f'<a href="{href}">{label}</a>'


def format_inline(text: str | None) -> Markup:
    """
    Escape first, then add markup: code spans, bold, italic, images, links.

    Code spans and finished images are masked while the later rules run, so
    code stays literal and no rule can reach inside an attribute.
    """
    html = str(escape((text or "").replace("\x00", "")))
    masked: list[str] = []
    literal: list[str] = []

    def _mask(rendered: str, plain: str) -> str:
        masked.append(rendered)
        literal.append(plain)
        return f"\x00{len(masked) - 1}\x00"

    def _plain(s: str) -> str:
        s = _MASK_RE.sub(lambda k: literal[int(k.group(1))], s)
        return _TAG_RE.sub("", s)

    def _image(m: re.Match) -> str:
        alt, src = _plain(m.group(1)), m.group(2)
        if not _safe_target(src):
            return alt
        return _mask(f'<img src="{src}" alt="{alt}" loading="lazy">', alt)

    html = _CODE_SPAN_RE.sub(
        lambda m: _mask(f"<code>{m.group(1)}</code>", m.group(1)), html
    )
    html = _BOLD_RE.sub(r"<strong>\1</strong>", html)
    html = _ITALIC_RE.sub(r"<em>\1</em>", html)
    html = _IMAGE_RE.sub(_image, html)
    html = _LINK_RE.sub(_link, html)
    html = _MASK_RE.sub(lambda k: masked[int(k.group(1))], html)
    return Markup(html)


################################################################################
# Rendering
################################################################################
def _render_heading(blk: Heading, snapshot, settings) -> str:
    return f"<h{blk.level}>{format_inline(blk.text)}</h{blk.level}>"


def _render_paragraph(blk: Paragraph, snapshot, settings) -> str:
    return f"<p>{format_inline(blk.text)}</p>"


def _render_list_item(blk: ListItem, snapshot, settings) -> str:
    return f"<li>{format_inline(blk.text)}</li>"


def _render_blockquote(blk: Blockquote, snapshot, settings) -> str:
    return f"<blockquote>{format_inline(blk.text)}</blockquote>"


def _render_code(blk: CodeBlock, snapshot, settings) -> str:
    cls = f' class="language-{escape(blk.language)}"' if blk.language else ""
    return f"<pre><code{cls}>{escape(blk.text)}</code></pre>"


def _render_aside(blk: Aside, snapshot, settings) -> str:
    return f"<aside>{render_blocks(blk.children, snapshot, settings)}</aside>"


def _render_link_candidate(blk: LinkCandidate, snapshot, settings) -> str:
    if settings.link_previews:
        return render_card(blk.url, snapshot, settings)
    return f'<p><a href="{escape(blk.url)}">{escape(blk.url)}</a></p>'


_BLOCK_RENDERERS: dict[type, Callable] = {
    Heading: _render_heading,
    Paragraph: _render_paragraph,
    ListItem: _render_list_item,
    Blockquote: _render_blockquote,
    CodeBlock: _render_code,
    HorizontalRule: lambda blk, snapshot, settings: "<hr>",
    Spacer: lambda blk, snapshot, settings: "<br>",
    Aside: _render_aside,
    EmbedDirective: lambda blk, snapshot, settings: render_embed(
        blk.url, blk.provider_hint, snapshot, settings
    ),
    CardDirective: lambda blk, snapshot, settings: render_card(
        blk.url, snapshot, settings
    ),
    LinkCandidate: _render_link_candidate,
}


def render_blocks(
    blocks,
    snapshot: Snapshot | None = None,
    settings: RenderSettings | None = None,
) -> Markup:
    """Render blocks; consecutive list items share one list container."""
    snapshot = snapshot or Snapshot()
    settings = settings or RenderSettings()
    parts: list[str] = []
    open_list = None
    for blk in blocks:
        kind = None
        if isinstance(blk, ListItem):
            kind = "ol" if blk.ordered else "ul"
        if open_list and kind != open_list:
            parts.append(f"</{open_list}>")
            open_list = None
        if kind and not open_list:
            parts.append(f"<{kind}>")
            open_list = kind
        parts.append(str(_BLOCK_RENDERERS[type(blk)](blk, snapshot, settings)))
    if open_list:
        parts.append(f"</{open_list}>")
    return Markup("\n".join(parts))


def render(
    content: str | None,
    fmt: Format | str,
    *,
    settings: RenderSettings | None = None,
    snapshot: Snapshot | None = None,
) -> Markup:
    """
    Render stored content in its declared format.

    html is trusted admin-authored markup and passes through untouched;
    plain is escaped verbatim; markdown runs the full pipeline. Network-backed
    embeds missing from *snapshot* render as loading placeholders.
    """
    fmt = Format.coerce(fmt)
    content = content or ""
    if fmt is Format.HTML:
        return Markup(f'<div class="prose">{content}</div>')
    if fmt is Format.PLAIN:
        return Markup(f'<pre class="plain">{escape(content)}</pre>')
    body = render_blocks(markdown_blocks(content), snapshot, settings)
    return Markup(f'<div class="prose">\n{body}\n</div>')
