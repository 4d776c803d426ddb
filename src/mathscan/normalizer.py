"""
Content Normalizer

Turns recognition output that carries enumeration markers as plain lines
("1)", "a.", "iv-") into nested ordered lists, then sanitizes it.

Pipeline:
1. Sanitize, then clean up: collapse duplicated math delimiters, strip code fences
2. Pass-through when list markup already exists
3. Tokenize each line into (level, label, text)
4. Abort when fewer than two lines are enumerated
5. Stack machine builds the list tree, which is rendered and sanitized
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Union

from .sanitizer import sanitize_html

logger = logging.getLogger(__name__)

MIN_ENUMERATED_LINES = 2

_LIST_OPEN = re.compile(r"<(?:ol|ul)\b", re.IGNORECASE)
_LIST_ITEM = re.compile(r"<li\b", re.IGNORECASE)

# Two or more consecutive delimiters (one or two backslashes each) collapse to one
_DUPLICATE_DELIMITERS = (
    (re.compile(r"\\{1,2}\((?:\s*\\{1,2}\()+"), "\\("),
    (re.compile(r"\\{1,2}\)(?:\s*\\{1,2}\))+"), "\\)"),
    (re.compile(r"\\{1,2}\[(?:\s*\\{1,2}\[)+"), "\\["),
    (re.compile(r"\\{1,2}\](?:\s*\\{1,2}\])+"), "\\]"),
)

_LEADING_FENCE = re.compile(r"^\s*```(?:html|json)?[ \t]*\n?", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"\n?```\s*$")

_LINE_BREAKS = re.compile(r"<br\s*/?>|</?p(?:\s[^>]*)?>", re.IGNORECASE)

_DELIMITER = r"[).:\-]"
_ROMAN = r"(viii|vii|iii|ix|iv|vi|ii|i|v|x)"

# Tried in order, first match wins
LEVEL_PATTERNS = (
    (1, re.compile(r"^\(?(\d{1,2})" + _DELIMITER)),
    (2, re.compile(r"^\(?([a-z])" + _DELIMITER)),
    (3, re.compile(r"^\(?" + _ROMAN + _DELIMITER)),
)

LIST_TYPES = {1: "", 2: ' type="a"', 3: ' type="i"'}


@dataclass(frozen=True)
class LineToken:
    """A classified line. Level 0 is a plain paragraph."""

    level: int
    label: str
    text: str

    @property
    def enumerated(self) -> bool:
        return self.level > 0


@dataclass
class ListItem:
    text: str
    children: List["OrderedList"] = field(default_factory=list)


@dataclass
class OrderedList:
    level: int
    items: List[ListItem] = field(default_factory=list)


@dataclass
class Paragraph:
    text: str


Block = Union[Paragraph, OrderedList]


def has_list_markup(text: str) -> bool:
    """True when the text already carries list structure."""
    return bool(_LIST_OPEN.search(text) and _LIST_ITEM.search(text))


def collapse_duplicate_delimiters(text: str) -> str:
    """Collapse repeated math delimiters such as '\\( \\(' into one."""
    for pattern, replacement in _DUPLICATE_DELIMITERS:
        text = pattern.sub(lambda _m, r=replacement: r, text)
    return text


def clean_content(text: str) -> str:
    """
    Remove known formatting glitches from recognition output.

    Args:
        text: Raw content

    Returns:
        Content with collapsed delimiters and no surrounding code fence
    """
    cleaned = collapse_duplicate_delimiters(text)
    cleaned = _LEADING_FENCE.sub("", cleaned, count=1)
    cleaned = _TRAILING_FENCE.sub("", cleaned, count=1)
    return cleaned.strip()


def split_lines(markup: str) -> List[str]:
    """Split on line breaks and paragraph boundaries, dropping blank lines."""
    work = _LINE_BREAKS.sub("\n", markup)
    return [line.strip() for line in work.split("\n") if line.strip()]


def classify_line(line: str) -> LineToken:
    """
    Classify a single line by its enumeration marker.

    Args:
        line: Trimmed line of text

    Returns:
        LineToken with level 1-3 and the marker removed, or level 0
    """
    for level, pattern in LEVEL_PATTERNS:
        match = pattern.match(line)
        if match:
            return LineToken(level=level, label=match.group(1), text=line[match.end():].strip())
    return LineToken(level=0, label="", text=line)


def tokenize(markup: str) -> List[LineToken]:
    return [classify_line(line) for line in split_lines(markup)]


def build_blocks(tokens: List[LineToken]) -> List[Block]:
    """
    Nest enumerated tokens into ordered lists.

    Keeps a stack of open lists. Deeper levels open new lists inside the last
    item of their parent (creating an empty host item when the parent has
    none), shallower levels close lists, paragraphs close everything.
    """
    blocks: List[Block] = []
    stack: List[OrderedList] = []

    for token in tokens:
        if token.level == 0:
            stack.clear()
            blocks.append(Paragraph(token.text))
            continue

        while stack and stack[-1].level > token.level:
            stack.pop()

        top = stack[-1].level if stack else 0
        for level in range(top + 1, token.level + 1):
            new_list = OrderedList(level=level)
            if stack:
                parent = stack[-1]
                if not parent.items:
                    parent.items.append(ListItem(text=""))
                parent.items[-1].children.append(new_list)
            else:
                blocks.append(new_list)
            stack.append(new_list)

        stack[-1].items.append(ListItem(text=token.text))

    return blocks


def _render_list(ordered: OrderedList) -> str:
    items = "".join(_render_item(item) for item in ordered.items)
    return f"<ol{LIST_TYPES[ordered.level]}>{items}</ol>"


def _render_item(item: ListItem) -> str:
    children = "".join(_render_list(child) for child in item.children)
    return f"<li>{item.text}{children}</li>"


def render_blocks(blocks: List[Block]) -> str:
    parts = []
    for block in blocks:
        if isinstance(block, Paragraph):
            parts.append(f"<p>{block.text}</p>")
        else:
            parts.append(_render_list(block))
    return "".join(parts)


def normalize_enumerations(markup: str) -> Optional[str]:
    """
    Rebuild enumerated lines as nested lists.

    Returns:
        List markup, or None when too few lines are enumerated to justify it
    """
    tokens = tokenize(markup)
    enumerated = sum(1 for token in tokens if token.enumerated)
    if enumerated < MIN_ENUMERATED_LINES:
        logger.debug(f"Skipping list normalization: {enumerated} enumerated lines")
        return None
    return render_blocks(build_blocks(tokens))


def normalize_content(text: Optional[str]) -> str:
    """
    Normalize recognition output into sanitized, list-structured markup.

    Idempotent: the output of one pass is a fixed point of the next.

    Args:
        text: Raw content from the recognition service

    Returns:
        Sanitized markup safe to store as exercise content
    """
    if not text:
        return ""

    # Cleanup runs on sanitized markup so unwrapped tags cannot leave new duplicates behind
    cleaned = clean_content(sanitize_html(text))

    # List tags hidden in dropped containers do not count
    if has_list_markup(cleaned):
        return cleaned

    structured = normalize_enumerations(cleaned)
    if structured is None:
        return cleaned
    return sanitize_html(structured)
