"""
Tests for the HTML sanitizer.

Tests cover:
- Allow-listed inline tags and attribute stripping
- Block markup converted to plain-text structure
- Dangerous elements removed with their content
- Idempotence
- Plain-text rendition
"""

import pytest

from tgcomment.sanitizer import HORIZONTAL_RULE, TABLE_NOTICE, sanitize_html, strip_tags


SAMPLES = [
    '<p>Hello <b class="x">world</b></p>',
    "<div><section><article><span>deep</span></article></section></div>",
    '<ul><li>One</li><li><i>Two</i></li></ul><p>After</p>',
    '<h2>Title</h2><p>Body with <a href="https://example.com/?a=1&amp;b=2" onclick="x()">link</a></p>',
    '<span class="tg-spoiler">secret</span> and <span class="other">plain</span>',
    "5 < 6 & 7 > 3",
    "<table><tr><td>1</td></tr></table>text<hr>more",
    "<blockquote expandable>quoted</blockquote><br/>line",
    "before<script>alert(1)</script>after<style>p{}</style>",
    "<p>\n\n\n   spaced   \n\n\n\nout</p>",
    "",
]


class TestAllowedMarkup:
    """Allow-listed tags survive with allowed attributes only."""

    def test_inline_tags_kept(self):
        """Bold, italic, underline, strike and code pass through."""
        html = "<b>b</b><i>i</i><u>u</u><s>s</s><code>c</code><pre>p</pre>"
        assert sanitize_html(html) == html

    def test_disallowed_attributes_stripped(self):
        """Attributes outside the allow-list are removed."""
        assert sanitize_html('<b class="x" style="color:red">bold</b>') == "<b>bold</b>"

    def test_link_keeps_href_only(self):
        """Links keep href and lose everything else."""
        result = sanitize_html('<a href="https://example.com" onclick="evil()" target="_blank">link</a>')
        assert result == '<a href="https://example.com">link</a>'

    def test_link_without_href_unwrapped(self):
        """A link with no href is reduced to its text."""
        assert sanitize_html("<a name='x'>anchor</a>") == "anchor"

    def test_spoiler_span_kept(self):
        """A span survives only as a spoiler marker."""
        assert sanitize_html('<span class="tg-spoiler" style="x">s</span>') == '<span class="tg-spoiler">s</span>'
        assert sanitize_html('<span class="highlight">s</span>') == "s"

    def test_expandable_blockquote(self):
        """The expandable flag on blockquotes is preserved."""
        assert sanitize_html("<blockquote expandable>q</blockquote>") == "<blockquote expandable>q</blockquote>"

    def test_text_is_escaped(self):
        """Bare angle brackets and ampersands are escaped."""
        assert sanitize_html("5 < 6 & 7") == "5 &lt; 6 &amp; 7"


class TestBlockConversion:
    """Block-level markup becomes plain-text structure."""

    def test_list_items_become_bullets(self):
        """List items are bullet lines."""
        assert sanitize_html("<ul><li>One</li><li>Two</li></ul>") == "• One\n• Two"

    def test_heading_becomes_bold(self):
        """Headings become bold paragraphs."""
        assert sanitize_html("<h2>Title</h2>text") == "<b>Title</b>\n\ntext"

    def test_paragraphs_separated_by_blank_line(self):
        """Paragraphs are separated by one blank line."""
        assert sanitize_html("<p>One</p><p>Two</p>") == "One\n\nTwo"

    def test_line_break(self):
        """<br> becomes a newline."""
        assert sanitize_html("a<br>b<br/>c") == "a\nb\nc"

    def test_horizontal_rule(self):
        """<hr> becomes a literal rule."""
        assert sanitize_html("a<hr>b") == f"a\n{HORIZONTAL_RULE}\nb"

    def test_table_replaced_with_notice(self):
        """Tables are replaced by a notice."""
        assert sanitize_html("<table><tr><td>1</td></tr></table>") == TABLE_NOTICE

    def test_blank_lines_collapsed(self):
        """Three or more newlines collapse to two and lines are trimmed."""
        assert sanitize_html("a\n\n\n\n   b   ") == "a\n\nb"


class TestDangerousContent:
    """Script-like elements are removed with their content."""

    @pytest.mark.parametrize("tag", ["script", "style", "iframe", "form", "textarea", "select", "button"])
    def test_removed_with_content(self, tag):
        """The element and everything inside it disappear."""
        assert sanitize_html(f"before<{tag}>inside</{tag}>after") == "beforeafter"

    def test_nested_disallowed_tags_unwrapped(self):
        """Disallowed tags three levels deep never reach the output."""
        result = sanitize_html("<div><font><section><b>bold</b></section></font></div>")
        assert result == "<b>bold</b>"
        for tag in ("div", "font", "section"):
            assert f"<{tag}" not in result


class TestIdempotence:
    """Sanitizing sanitized output changes nothing."""

    @pytest.mark.parametrize("html", SAMPLES)
    def test_sanitize_twice(self, html):
        """sanitize(sanitize(x)) == sanitize(x)"""
        once = sanitize_html(html)
        assert sanitize_html(once) == once


class TestStripTags:
    """Plain-text rendition used by the parse-error fallback."""

    def test_tags_removed(self):
        """All markup is removed, text kept."""
        assert strip_tags('<b>Hello</b> <a href="x">world</a>') == "Hello world"

    def test_structure_kept(self):
        """List structure survives as text."""
        assert strip_tags("<ul><li>One</li><li>Two</li></ul>") == "• One\n• Two"

    def test_entities_unescaped(self):
        """Entities become characters."""
        assert strip_tags("a &amp; b") == "a & b"
