"""
HTML Sanitizer

Allow-list sanitizer for exercise content returned by the recognition service.
Everything the service sends is untrusted; this is the last step on every
content path.
"""

import logging
import re

from bs4 import BeautifulSoup
from bs4.element import PreformattedString

logger = logging.getLogger(__name__)

ALLOWED_TAGS = frozenset({"p", "br", "ol", "ul", "li", "strong", "b", "em", "i", "code"})

# Removed along with everything inside them
DROP_WITH_CONTENT = [
    "script", "style", "iframe", "frame", "frameset", "object", "embed",
    "noscript", "template", "svg", "math", "link", "meta", "base", "head",
    "title", "textarea", "select",
]

# Inline math stays on one line; display math may span several
_MATH_SPAN = re.compile(r"\\\([^\n]*?\\\)|\\\[.*?\\\]", re.DOTALL)

_OL_TYPES = {"1", "a", "A", "i", "I"}
_DIGITS = re.compile(r"^\d{1,4}$")

ALLOWED_ATTRIBUTES = {
    "ol": {
        "type": lambda v: v in _OL_TYPES,
        "start": lambda v: bool(_DIGITS.match(v)),
    },
}


def _filter_attributes(tag) -> None:
    rules = ALLOWED_ATTRIBUTES.get(tag.name, {})
    kept = {}
    for name, value in tag.attrs.items():
        check = rules.get(name.lower())
        if check is None:
            continue
        # Multi-valued attributes come back as lists
        if isinstance(value, list):
            value = " ".join(value)
        value = value.strip()
        if check(value):
            kept[name.lower()] = value
    tag.attrs = kept


def escape_math(markup: str) -> str:
    """Escape angle brackets inside LaTeX spans so \\(a<b\\) is not read as a tag."""

    def _escape(match: re.Match) -> str:
        return match.group(0).replace("<", "&lt;").replace(">", "&gt;")

    return _MATH_SPAN.sub(_escape, markup)


def sanitize_html(markup: str) -> str:
    """
    Strip every tag and attribute not on the allow-list.

    Dangerous containers (script, style, iframe, ...) are removed with their
    content. Other unknown tags are unwrapped so their text survives.

    Args:
        markup: Untrusted HTML fragment

    Returns:
        Sanitized HTML fragment
    """
    if not markup:
        return ""

    soup = BeautifulSoup(escape_math(markup), "html.parser")

    # One at a time: decomposing a container also destroys nested matches
    tag = soup.find(DROP_WITH_CONTENT)
    while tag is not None:
        tag.decompose()
        tag = soup.find(DROP_WITH_CONTENT)

    # Comments, doctypes, CDATA, processing instructions
    for node in list(soup.descendants):
        if isinstance(node, PreformattedString):
            node.extract()

    removed = 0
    for tag in soup.find_all(True):
        if tag.name in ALLOWED_TAGS:
            _filter_attributes(tag)
        else:
            tag.unwrap()
            removed += 1

    if removed:
        logger.debug(f"Sanitizer unwrapped {removed} disallowed tags")

    return soup.decode(formatter="minimal")
