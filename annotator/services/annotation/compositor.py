"""
Annotation Compositor

Re-composites page content with a set of annotations applied. Each
annotation's range is wrapped in a marker element::

    <span class="annotation" data-annotation-id="7" data-category="note"
          style="background-color: #ffff00; cursor: pointer;">quick<span
          class="annotation-note" title="check this">📝</span></span>

Annotations are applied highest start first. Every splice only changes the
tree at or after the range being wrapped, and marker elements and glyphs add
no flattened text, so the offsets of the annotations still waiting (lower
starts) stay valid against the untouched prefix. Overlapping ranges are not
merged: a later (lower-start) annotation splits the leaves inside an earlier
marker and wraps them again, giving nested markers.

Compositing never mutates its input; ``composite_tree`` returns a new tree.
"""

import copy
import logging
from typing import Iterable, Optional

from bs4 import BeautifulSoup, NavigableString, Tag

from ...errors import StaleRangeError
from ...models.annotations import Annotation
from .offset_mapper import NOTE_GLYPH_CLASS, leaf_spans, parse_content

logger = logging.getLogger(__name__)

MARKER_TAG = "span"
MARKER_CLASS = "annotation"
MARKER_ID_ATTR = "data-annotation-id"
NOTE_GLYPH = "\U0001f4dd"


def processing_order(annotations: Iterable[Annotation]) -> list[Annotation]:
    """
    Annotations in the order they are applied: start descending, then end
    descending (so equal-start ranges nest the shorter one inside), then id.
    """
    return sorted(annotations, key=lambda a: (-a.start, -a.end, a.id))


def is_marker(node) -> bool:
    return isinstance(node, Tag) and node.has_attr(MARKER_ID_ATTR)


def _clamp_range(annotation: Annotation, length: int) -> tuple[int, int]:
    start = min(max(annotation.start, 0), length)
    end = min(max(annotation.end, 0), length)
    if start >= end:
        raise StaleRangeError(annotation.id, annotation.start, annotation.end, length)
    return start, end


def _new_marker(soup: BeautifulSoup, annotation: Annotation) -> Tag:
    return soup.new_tag(
        MARKER_TAG,
        attrs={
            "class": MARKER_CLASS,
            MARKER_ID_ATTR: str(annotation.id),
            "data-category": annotation.category.value,
            "style": f"background-color: {annotation.color}; cursor: pointer;",
        },
    )


def _new_note_glyph(soup: BeautifulSoup, annotation: Annotation) -> Tag:
    glyph = soup.new_tag(
        "span", attrs={"class": NOTE_GLYPH_CLASS, "title": annotation.note}
    )
    glyph.string = NOTE_GLYPH
    return glyph


def _apply_annotation(soup: BeautifulSoup, annotation: Annotation) -> None:
    """Wrap one annotation's range in place on the working tree."""
    spans = leaf_spans(soup)
    length = spans[-1][2] if spans else 0
    start, end = _clamp_range(annotation, length)

    last_marker = None
    for leaf, leaf_start, leaf_end in spans:
        if leaf_end <= start or leaf_start >= end or leaf_start == leaf_end:
            continue

        text = str(leaf)
        lo = max(start, leaf_start) - leaf_start
        hi = min(end, leaf_end) - leaf_start

        marker = _new_marker(soup, annotation)
        marker.append(NavigableString(text[lo:hi]))

        parts = []
        if lo > 0:
            parts.append(NavigableString(text[:lo]))
        parts.append(marker)
        if hi < len(text):
            parts.append(NavigableString(text[hi:]))
        leaf.replace_with(*parts)
        last_marker = marker

    if last_marker is not None and annotation.has_note:
        last_marker.append(_new_note_glyph(soup, annotation))


def composite_tree(tree: BeautifulSoup, annotations: Iterable[Annotation]) -> BeautifulSoup:
    """
    Return a copy of ``tree`` with every annotation wrapped in a marker.

    Annotations whose range falls entirely outside the content (after
    clamping to ``[0, len]``) are skipped silently.
    """
    working = copy.copy(tree)
    for annotation in processing_order(annotations):
        try:
            _apply_annotation(working, annotation)
        except StaleRangeError as e:
            logger.debug(f"Skipping stale annotation: {e}")
    return working


def composite(
    content: str, annotations: Iterable[Annotation], is_html: bool = False
) -> str:
    """
    Composite raw page content with annotations and render it as markup.

    Plain text is escaped on output, so the result is always safe to insert
    as HTML.
    """
    return str(composite_tree(parse_content(content, is_html), annotations))


def marker_ids_at(tree: Tag, offset: int) -> list[int]:
    """
    Ids of the markers covering a flattened-text offset, innermost first.
    """
    for leaf, leaf_start, leaf_end in leaf_spans(tree):
        if leaf_start <= offset < leaf_end:
            return [
                int(parent[MARKER_ID_ATTR])
                for parent in leaf.parents
                if is_marker(parent)
            ]
    return []


def annotation_id_at(tree: Tag, offset: int) -> Optional[int]:
    """The innermost marker at ``offset``; under nesting the most specific wins."""
    ids = marker_ids_at(tree, offset)
    return ids[0] if ids else None


class AnnotationCompositor:
    """
    Composites pages and caches the rendered output per (novel_id, page).

    The annotation store invalidates a page after every successful mutation.
    A cached entry is only reused when both the content and the annotation
    set match what it was rendered from.
    """

    def __init__(self):
        self._cache: dict[tuple[str, int], tuple[tuple, BeautifulSoup, str]] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _signature(content: str, is_html: bool, annotations: list[Annotation]) -> tuple:
        return (
            content,
            is_html,
            tuple(
                (a.id, a.start, a.end, a.color, a.category.value, a.note)
                for a in sorted(annotations, key=lambda a: a.id)
            ),
        )

    def render_tree(
        self,
        novel_id: str,
        page: int,
        content: str,
        annotations: Iterable[Annotation],
        is_html: bool = False,
    ) -> BeautifulSoup:
        """Composited tree for a page (shared with the cache, do not mutate)."""
        annotations = list(annotations)
        key = (novel_id, page)
        signature = self._signature(content, is_html, annotations)

        cached = self._cache.get(key)
        if cached is not None and cached[0] == signature:
            self.hits += 1
            return cached[1]

        self.misses += 1
        tree = composite_tree(parse_content(content, is_html), annotations)
        self._cache[key] = (signature, tree, str(tree))
        logger.debug(
            f"Composited novel={novel_id} page={page} with {len(annotations)} annotations"
        )
        return tree

    def render(
        self,
        novel_id: str,
        page: int,
        content: str,
        annotations: Iterable[Annotation],
        is_html: bool = False,
    ) -> str:
        """Composited markup for a page."""
        self.render_tree(novel_id, page, content, annotations, is_html)
        return self._cache[(novel_id, page)][2]

    def invalidate(self, novel_id: str, page: Optional[int] = None) -> None:
        """Drop cached output for one page, or for every page of a novel."""
        if page is not None:
            self._cache.pop((novel_id, page), None)
            return
        for key in [k for k in self._cache if k[0] == novel_id]:
            del self._cache[key]

    def is_cached(self, novel_id: str, page: int) -> bool:
        return (novel_id, page) in self._cache

    def cached_tree(self, novel_id: str, page: int) -> Optional[BeautifulSoup]:
        """The last composited tree for a page, without counting a cache lookup."""
        cached = self._cache.get((novel_id, page))
        return cached[1] if cached is not None else None

    def clear(self) -> None:
        self._cache.clear()

    def get_cache_info(self) -> dict:
        return {
            "cached_pages": sorted(self._cache),
            "hits": self.hits,
            "misses": self.misses,
        }
