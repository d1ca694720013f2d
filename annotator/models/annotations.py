"""
Annotation Type Models

Pydantic models for text annotations. Ranges are character offsets into the
flattened text of the original, unannotated page content.

Attributes are snake_case in Python and camelCase on the wire, matching the
reader frontend's payloads (``textSelection.startOffset`` etc.).
"""

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_COLOR = "#ffff00"

# Toolbar palette, in display order
HIGHLIGHT_COLORS: dict[str, str] = {
    "#ffff00": "Yellow",
    "#90ee90": "Green",
    "#add8e6": "Blue",
    "#ffb6c1": "Pink",
    "#ffa500": "Orange",
}

_COLOR_PATTERN = re.compile(r"^#(?:[0-9a-fA-F]{3}){1,2}$")


class AnnotationCategory(str, Enum):
    HIGHLIGHT = "highlight"
    NOTE = "note"
    QUESTION = "question"
    IMPORTANT = "important"
    VOCABULARY = "vocabulary"
    CUSTOM = "custom"


CATEGORY_LABELS: dict[AnnotationCategory, str] = {
    AnnotationCategory.HIGHLIGHT: "Highlight",
    AnnotationCategory.NOTE: "Note",
    AnnotationCategory.QUESTION: "Question",
    AnnotationCategory.IMPORTANT: "Important",
    AnnotationCategory.VOCABULARY: "Vocabulary",
    AnnotationCategory.CUSTOM: "Custom",
}


def check_color(value: str | None) -> str | None:
    if value is not None and not _COLOR_PATTERN.match(value):
        raise ValueError(f"Invalid color {value!r}, expected #rgb or #rrggbb")
    return value


class CamelModel(BaseModel):
    """Base model serialising to camelCase"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TextSelection(CamelModel):
    """A range in flattened-text offsets plus the text it covered"""

    start_offset: int = Field(ge=0)
    end_offset: int
    selected_text: str

    @model_validator(mode="after")
    def check_order(self) -> "TextSelection":
        if self.end_offset <= self.start_offset:
            raise ValueError(
                f"endOffset ({self.end_offset}) must be greater than "
                f"startOffset ({self.start_offset})"
            )
        return self


class AnnotationCreate(CamelModel):
    """Request model for creating an annotation"""

    page: int = Field(ge=1)
    text_selection: TextSelection
    color: str = DEFAULT_COLOR
    category: AnnotationCategory = AnnotationCategory.HIGHLIGHT
    note: str | None = None

    @field_validator("color")
    @classmethod
    def validate_color(cls, value: str | None) -> str | None:
        return check_color(value)

    @model_validator(mode="after")
    def check_selected_text(self) -> "AnnotationCreate":
        selection = self.text_selection
        expected = selection.end_offset - selection.start_offset
        if len(selection.selected_text) != expected:
            raise ValueError(
                f"selectedText has length {len(selection.selected_text)}, "
                f"range covers {expected} characters"
            )
        return self


class AnnotationUpdate(CamelModel):
    """
    Partial update. Only fields explicitly set are applied, so
    ``{"note": null}`` clears a note while ``{}`` changes nothing.
    Color and category may be omitted but never set to null.
    """

    note: str | None = None
    color: str | None = None
    category: AnnotationCategory | None = None

    @field_validator("color", "category")
    @classmethod
    def reject_null(cls, value, info):
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        return value

    @field_validator("color")
    @classmethod
    def validate_color(cls, value: str | None) -> str | None:
        return check_color(value)

    def changes(self) -> dict:
        """Fields set by the caller, with enum values unwrapped"""
        data = self.model_dump(exclude_unset=True)
        if data.get("category") is not None:
            data["category"] = AnnotationCategory(data["category"]).value
        return data


class Annotation(CamelModel):
    """A persisted annotation record"""

    id: int
    novel_id: str
    page: int
    text_selection: TextSelection
    color: str = DEFAULT_COLOR
    category: AnnotationCategory = AnnotationCategory.HIGHLIGHT
    note: str | None = None
    created_at: str
    updated_at: str | None = None

    @property
    def start(self) -> int:
        return self.text_selection.start_offset

    @property
    def end(self) -> int:
        return self.text_selection.end_offset

    @property
    def selected_text(self) -> str:
        return self.text_selection.selected_text

    @property
    def has_note(self) -> bool:
        return bool(self.note and self.note.strip())


class AnnotationResponse(CamelModel):
    annotation: Annotation


class AnnotationListResponse(CamelModel):
    annotations: list[Annotation]


class DeleteAnnotationResponse(CamelModel):
    message: str
    annotation_id: int


class AnnotationPanelItem(CamelModel):
    """An annotation with the display labels shown in the annotations panel"""

    annotation: Annotation
    color_name: str
    category_label: str


class AnnotationPageGroup(CamelModel):
    page: int
    annotations_count: int
    annotations: list[AnnotationPanelItem]


class AnnotationPanelResponse(CamelModel):
    """Filtered annotations of a novel grouped by page, pages ascending"""

    total: int
    pages: list[AnnotationPageGroup]


class NovelAnnotationSummary(CamelModel):
    """Annotation counts for one novel"""

    novel_id: str
    annotations_count: int
    by_category: dict[str, int]


class RenderRequest(CamelModel):
    content: str
    is_html: bool = False


class RenderResponse(CamelModel):
    content: str


class LeafPointer(CamelModel):
    leaf: int = Field(ge=0)
    offset: int = Field(ge=0)


class OffsetsRequest(CamelModel):
    content: str
    is_html: bool = False
    start: LeafPointer
    end: LeafPointer


class OffsetsResponse(CamelModel):
    start_offset: int
    end_offset: int
    selected_text: str
