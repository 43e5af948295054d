"""
Markdown-to-HTML rendering for streamed message buffers.

Buffers are re-rendered whole after every delta. The input is HTML-escaped
before any markup is recognised, so anything the renderer does not
understand (including half-streamed markup) comes out as literal text.
"""
import html
import re
from typing import Optional

_FENCE = re.compile(r"^```")
_HEADING = re.compile(r"^(#{1,4})\s+(.+)$")
_RULE = re.compile(r"^([-*_])(?:[ \t]*\1){2,}[ \t]*$")
_BULLET = re.compile(r"^[-*+]\s+(.+)$")
_NUMBERED = re.compile(r"^\d+\.\s+(.+)$")
_QUOTE_PREFIX = "&gt; "

_CODE_SPAN = re.compile(r"`([^`]+)`")
# Emphasis rules; never applied inside code spans.
_INLINE_RULES = (
    (re.compile(r"\*\*(.+?)\*\*"), r"<strong>\1</strong>"),
    (re.compile(r"__(.+?)__"), r"<strong>\1</strong>"),
    (re.compile(r"\*(.+?)\*"), r"<em>\1</em>"),
    (re.compile(r"(?<!\w)_(.+?)_(?!\w)"), r"<em>\1</em>"),
)


def _emphasis(text: str) -> str:
    for pattern, replacement in _INLINE_RULES:
        text = pattern.sub(replacement, text)
    return text


def _inline(text: str) -> str:
    # split() with one group alternates plain text and code span contents.
    parts = _CODE_SPAN.split(text)
    return "".join(
        f"<code>{part}</code>" if i % 2 else _emphasis(part)
        for i, part in enumerate(parts)
    )


def render(text: str) -> str:
    """Render a (possibly partial) markdown buffer to HTML."""
    if not text:
        return ""

    out: list[str] = []
    code: Optional[list[str]] = None
    open_list: Optional[str] = None

    def close_list() -> None:
        nonlocal open_list
        if open_list:
            out.append(f"</{open_list}>")
            open_list = None

    def list_item(tag: str, body: str) -> None:
        nonlocal open_list
        if open_list != tag:
            close_list()
            out.append(f"<{tag}>")
            open_list = tag
        out.append(f"<li>{_inline(body)}</li>")

    for line in html.escape(text).split("\n"):
        stripped = line.strip()

        if _FENCE.match(stripped):
            if code is None:
                close_list()
                code = []
            else:
                out.append(f"<pre><code>{'&#10;'.join(code)}</code></pre>")
                code = None
            continue
        if code is not None:
            code.append(line)
            continue

        if not stripped:
            close_list()
            out.append("")
            continue

        # "* * *" is a rule, not a bullet.
        if _RULE.match(stripped):
            close_list()
            out.append("<hr>")
            continue

        heading = _HEADING.match(stripped)
        bullet = _BULLET.match(stripped)
        numbered = _NUMBERED.match(stripped)

        if bullet:
            list_item("ul", bullet.group(1))
            continue
        if numbered:
            list_item("ol", numbered.group(1))
            continue

        close_list()
        if heading:
            level = len(heading.group(1))
            out.append(f"<h{level}>{_inline(heading.group(2))}</h{level}>")
        elif stripped.startswith(_QUOTE_PREFIX):
            out.append(f"<blockquote>{_inline(stripped[len(_QUOTE_PREFIX):])}</blockquote>")
        else:
            out.append(f"<p>{_inline(stripped)}</p>")

    # An unterminated fence is still streaming; show what arrived so far.
    if code is not None:
        out.append(f"<pre><code>{'&#10;'.join(code)}</code></pre>")
    close_list()

    return "\n".join(out)


class IncrementalRenderer:
    """Renders a growing buffer, reusing the last result when nothing changed."""

    def __init__(self):
        self._source: Optional[str] = None
        self._html = ""

    def __call__(self, text: str) -> str:
        if text != self._source:
            self._html = render(text)
            self._source = text
        return self._html

    def reset(self) -> None:
        self._source = None
        self._html = ""
