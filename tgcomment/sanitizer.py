"""
Reduce rich text to the HTML subset the bot API accepts in HTML parse mode.

Three passes:
1. Regex conversion of block-level markup into plain-text structure
   (bullets, blank lines, a horizontal rule, a table notice) and removal of
   script-like elements together with their content.
2. A tree walk that unwraps every element outside the allow-list, splicing
   its children into its parent, and strips attributes that are not allowed.
3. Whitespace normalization.

sanitize_html(sanitize_html(x)) == sanitize_html(x).
"""

import re
from html import escape
from html.parser import HTMLParser
from typing import Optional, Union

ALLOWED_TAGS = {
    "b": (),
    "strong": (),
    "i": (),
    "em": (),
    "u": (),
    "ins": (),
    "s": (),
    "strike": (),
    "del": (),
    "span": ("class",),
    "tg-spoiler": (),
    "a": ("href",),
    "code": (),
    "pre": (),
    "blockquote": ("expandable",),
    "tg-emoji": ("emoji-id",),
}

SPOILER_CLASS = "tg-spoiler"

# Elements dropped together with everything inside them
DROPPED_TAGS = {
    "script", "style", "iframe", "object", "embed", "form", "input",
    "textarea", "select", "button", "noscript", "template", "head", "title",
}

VOID_TAGS = {
    "area", "base", "br", "col", "embed", "hr", "img", "input", "link",
    "meta", "param", "source", "track", "wbr",
}

HORIZONTAL_RULE = "━" * 20
TABLE_NOTICE = "[Table not supported]"

_CONVERSIONS = [
    # Lists become bullet lines
    (re.compile(r"<(?:ol|ul)\b[^>]*>", re.I), "\n"),
    (re.compile(r"</(?:ol|ul)\s*>", re.I), "\n"),
    (re.compile(r"<li\b[^>]*>", re.I), "• "),
    (re.compile(r"</li\s*>", re.I), "\n"),
    # Headings become bold paragraphs
    (re.compile(r"<h[1-6]\b[^>]*>", re.I), "<b>"),
    (re.compile(r"</h[1-6]\s*>", re.I), "</b>\n\n"),
    # Block elements
    (re.compile(r"<div\b[^>]*>", re.I), ""),
    (re.compile(r"</div\s*>", re.I), "\n"),
    (re.compile(r"<p\b[^>]*>", re.I), ""),
    (re.compile(r"</p\s*>", re.I), "\n\n"),
    (re.compile(r"<br\s*/?>", re.I), "\n"),
    (re.compile(r"<hr\b[^>]*>", re.I), "\n" + HORIZONTAL_RULE + "\n"),
    (re.compile(r"</?q\b[^>]*>", re.I), '"'),
    (re.compile(r"<table\b[^>]*>.*?</table\s*>", re.I | re.S), "\n" + TABLE_NOTICE + "\n"),
    # Dangerous elements go with their content
    (re.compile(r"<(script|style|iframe|object|form|textarea|select|button)\b[^>]*>.*?</\1\s*>", re.I | re.S), ""),
    (re.compile(r"<(?:embed|input)\b[^>]*>", re.I), ""),
]


class _Element:
    __slots__ = ("tag", "attrs", "children")

    def __init__(self, tag: str, attrs: list[tuple[str, Optional[str]]]):
        self.tag = tag
        self.attrs = attrs
        self.children: list[Union["_Element", str]] = []


class _TreeBuilder(HTMLParser):
    """Builds a lenient element tree; unmatched end tags are ignored."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.root = _Element("#root", [])
        self._stack = [self.root]

    def handle_starttag(self, tag, attrs):
        element = _Element(tag.lower(), attrs)
        self._stack[-1].children.append(element)
        if element.tag not in VOID_TAGS:
            self._stack.append(element)

    def handle_startendtag(self, tag, attrs):
        self._stack[-1].children.append(_Element(tag.lower(), attrs))

    def handle_endtag(self, tag):
        tag = tag.lower()
        for depth in range(len(self._stack) - 1, 0, -1):
            if self._stack[depth].tag == tag:
                del self._stack[depth:]
                return

    def handle_data(self, data):
        self._stack[-1].children.append(data)


def _allowed_attrs(element: _Element) -> Optional[list[tuple[str, Optional[str]]]]:
    """
    Attributes to keep on an allow-listed element, or None when the element
    itself must be unwrapped.
    """
    allowed = ALLOWED_TAGS[element.tag]
    kept = []
    for name, value in element.attrs:
        name = name.lower()
        if name in allowed:
            kept.append((name, value))

    if element.tag == "span":
        # A span only survives as a spoiler marker
        classes = [value for name, value in kept if name == "class"]
        if len(classes) != 1 or (classes[0] or "").strip() != SPOILER_CLASS:
            return None
        return [("class", SPOILER_CLASS)]
    if element.tag == "a":
        hrefs = [(name, value) for name, value in kept if value]
        return hrefs or None
    return kept


def _clean(nodes: list[Union[_Element, str]]) -> list[Union[_Element, str]]:
    cleaned: list[Union[_Element, str]] = []
    for node in nodes:
        if isinstance(node, str):
            cleaned.append(node)
            continue
        if node.tag in DROPPED_TAGS:
            continue
        attrs = _allowed_attrs(node) if node.tag in ALLOWED_TAGS else None
        if attrs is None:
            cleaned.extend(_clean(node.children))
            continue
        node.attrs = attrs
        node.children = _clean(node.children)
        cleaned.append(node)
    return cleaned


def _render(nodes: list[Union[_Element, str]]) -> str:
    parts = []
    for node in nodes:
        if isinstance(node, str):
            parts.append(escape(node, quote=False))
            continue
        attrs = "".join(
            f" {name}" if value is None else f' {name}="{escape(value, quote=True)}"'
            for name, value in node.attrs
        )
        parts.append(f"<{node.tag}{attrs}>{_render(node.children)}</{node.tag}>")
    return "".join(parts)


def _normalize_whitespace(content: str) -> str:
    lines = [line.strip() for line in content.split("\n")]
    content = "\n".join(lines)
    content = re.sub(r"\n{3,}", "\n\n", content)
    content = re.sub(r"\n+• ", "\n• ", content)
    return content.strip()


def sanitize_html(content: Optional[str]) -> str:
    """
    Sanitize arbitrary HTML-ish text for the bot API's HTML parse mode.

    Args:
        content: Rich text, possibly with arbitrary markup

    Returns:
        Text using only allow-listed inline tags, with entities escaped
    """
    if not content:
        return ""

    content = content.replace("\r\n", "\n").replace("\r", "\n")
    for pattern, replacement in _CONVERSIONS:
        content = pattern.sub(replacement, content)

    builder = _TreeBuilder()
    builder.feed(content)
    builder.close()

    return _normalize_whitespace(_render(_clean(builder.root.children)))


def _text_of(nodes: list[Union[_Element, str]]) -> str:
    parts = []
    for node in nodes:
        if isinstance(node, str):
            parts.append(node)
        elif node.tag not in DROPPED_TAGS:
            parts.append(_text_of(node.children))
    return "".join(parts)


def strip_tags(content: Optional[str]) -> str:
    """Plain-text rendition used when the platform rejects the markup."""
    if not content:
        return ""
    for pattern, replacement in _CONVERSIONS:
        content = pattern.sub(replacement, content)
    builder = _TreeBuilder()
    builder.feed(content)
    builder.close()
    return _normalize_whitespace(_text_of(builder.root.children))
