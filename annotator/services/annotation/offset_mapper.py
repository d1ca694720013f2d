"""
Offset Mapper

Maps positions inside structured page content to offsets in its flattened
text: the in-order concatenation of every text leaf, ignoring markup.

Content is held as a BeautifulSoup tree. Plain text becomes a tree with a
single text leaf, so plain and HTML content share one coordinate space.
A position ``(leaf_index, offset)`` maps to::

    sum(len(leaf) for leaf in leaves[:leaf_index]) + offset

Text that is not part of the readable page never counts as a leaf:
comments/doctypes, ``<script>``/``<style>`` bodies, and the note glyphs the
compositor adds. Mapping a selection made on composited output therefore
gives the same offsets as mapping it on the original content.
"""

import logging
from dataclasses import dataclass
from typing import Iterator

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import PreformattedString

from ...errors import ValidationError

logger = logging.getLogger(__name__)

NOTE_GLYPH_CLASS = "annotation-note"
NON_TEXT_TAGS = frozenset({"script", "style", "template"})


@dataclass(frozen=True)
class LeafPosition:
    """A point inside the content: leaf index in document order + offset in it"""

    leaf_index: int
    offset: int


@dataclass(frozen=True)
class TextRange:
    """A half-open range in flattened-text offsets and the text it covers"""

    start: int
    end: int
    text: str

    def __len__(self) -> int:
        return self.end - self.start


def parse_content(content: str, is_html: bool = False) -> BeautifulSoup:
    """
    Parse page content into a tree.

    Args:
        content: Raw page content
        is_html: Parse as an HTML fragment; otherwise the whole string is one
                 text leaf (markup characters stay literal text)

    Returns:
        BeautifulSoup: A new tree
    """
    if is_html:
        return BeautifulSoup(content or "", "html.parser")

    soup = BeautifulSoup("", "html.parser")
    if content:
        soup.append(NavigableString(content))
    return soup


def is_note_glyph(node) -> bool:
    return isinstance(node, Tag) and NOTE_GLYPH_CLASS in node.get_attribute_list(
        "class"
    )


def _is_text_leaf(node) -> bool:
    return isinstance(node, NavigableString) and not isinstance(
        node, PreformattedString
    )


def iter_leaves(node: Tag) -> Iterator[NavigableString]:
    """Yield the text leaves under ``node`` in document order."""
    for child in node.children:
        if isinstance(child, Tag):
            if child.name in NON_TEXT_TAGS or is_note_glyph(child):
                continue
            yield from iter_leaves(child)
        elif _is_text_leaf(child):
            yield child


def leaf_spans(root: Tag) -> list[tuple[NavigableString, int, int]]:
    """
    Leaves with their ``[start, end)`` interval in flattened text.

    The list is materialised so callers may splice the tree while walking it.
    """
    spans = []
    position = 0
    for leaf in iter_leaves(root):
        length = len(leaf)
        spans.append((leaf, position, position + length))
        position += length
    return spans


def flatten_text(root: Tag) -> str:
    """The in-order concatenation of all leaf text."""
    return "".join(str(leaf) for leaf in iter_leaves(root))


def text_length(root: Tag) -> int:
    return sum(len(leaf) for leaf in iter_leaves(root))


def map_position(root: Tag, position: LeafPosition) -> int:
    """
    Flattened-text offset of a leaf position.

    The intra-leaf offset is clamped into the leaf, so a position can never
    fall outside ``[0, text_length(root)]``.

    Raises:
        ValidationError: If the leaf index does not name a leaf
    """
    spans = leaf_spans(root)
    if not 0 <= position.leaf_index < len(spans):
        raise ValidationError(
            f"Leaf index {position.leaf_index} out of range "
            f"(content has {len(spans)} leaves)"
        )
    _, leaf_start, leaf_end = spans[position.leaf_index]
    return leaf_start + min(max(position.offset, 0), leaf_end - leaf_start)


def map_selection(root: Tag, start: LeafPosition, end: LeafPosition) -> TextRange:
    """
    Map a leaf-addressed selection to flattened-text offsets.

    Backwards selections (end before start) are normalised.

    Raises:
        ValidationError: If the selection is empty or names a missing leaf
    """
    start_offset = map_position(root, start)
    end_offset = map_position(root, end)
    if end_offset < start_offset:
        start_offset, end_offset = end_offset, start_offset

    if start_offset == end_offset:
        raise ValidationError("Selection is empty")

    text = flatten_text(root)[start_offset:end_offset]
    logger.debug(f"Mapped selection to [{start_offset}, {end_offset})")
    return TextRange(start=start_offset, end=end_offset, text=text)


def map_offsets(text: str, start: int, end: int) -> TextRange:
    """
    Validate a raw offset pair against flattened text.

    Raises:
        ValidationError: If the range is empty, negative or past the end
    """
    if start < 0 or end > len(text):
        raise ValidationError(
            f"Range [{start}, {end}) outside content of length {len(text)}"
        )
    if end <= start:
        raise ValidationError("Selection is empty")
    return TextRange(start=start, end=end, text=text[start:end])
