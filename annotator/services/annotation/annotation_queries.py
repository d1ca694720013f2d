"""Filtering, search and grouping over annotation lists (the annotations panel)."""

from collections import defaultdict
from typing import Iterable, Optional

from ...models.annotations import (
    CATEGORY_LABELS,
    HIGHLIGHT_COLORS,
    Annotation,
    AnnotationCategory,
)


def filter_annotations(
    annotations: Iterable[Annotation],
    category: Optional[AnnotationCategory | str] = None,
    search: Optional[str] = None,
) -> list[Annotation]:
    """
    Keep annotations matching a category and a case-insensitive search term.

    The search term matches the selected text or the note. ``None``, ``""``
    and ``"all"`` disable the respective filter.
    """
    if category in (None, "", "all"):
        wanted = None
    else:
        wanted = AnnotationCategory(category)
    term = (search or "").strip().lower()

    result = []
    for annotation in annotations:
        if wanted is not None and annotation.category != wanted:
            continue
        if term and not (
            term in annotation.selected_text.lower()
            or (annotation.note and term in annotation.note.lower())
        ):
            continue
        result.append(annotation)
    return result


def group_by_page(annotations: Iterable[Annotation]) -> dict[int, list[Annotation]]:
    """Annotations grouped by page, pages ascending, each page ordered by start."""
    grouped = defaultdict(list)
    for annotation in annotations:
        grouped[annotation.page].append(annotation)
    return {
        page: sorted(grouped[page], key=lambda a: (a.start, a.id))
        for page in sorted(grouped)
    }


def color_name(color: str) -> str:
    return HIGHLIGHT_COLORS.get(color.lower(), "Custom")


def category_label(category: AnnotationCategory | str) -> str:
    try:
        return CATEGORY_LABELS[AnnotationCategory(category)]
    except ValueError:
        return CATEGORY_LABELS[AnnotationCategory.HIGHLIGHT]
