"""
Selection/Toolbar Controller

State machine driving selection capture, toolbar placement, and dispatch to
the annotation store and compositor. It is independent of any UI toolkit:
the interaction surface supplies a ``SelectionCapture`` adapter and routes
marker clicks back in by annotation id.

States:
    IDLE          nothing selected, toolbar hidden
    SELECTING     a selection (or a clicked marker) is active, toolbar shown
    HIGHLIGHTING  a highlight create request is in flight
    NOTE_EDITING  the note field is open

Transitions:
    IDLE -> SELECTING          non-empty selection, or click on a marker
    SELECTING -> HIGHLIGHTING  highlight(); back to IDLE on success
    SELECTING -> NOTE_EDITING  open_note_editor(); save_note() ends in IDLE
    IDLE -> NOTE_EDITING       click on a marker that carries a note, or
                               open_note_editor() right after highlighting
    any -> IDLE                cancel() / outside_click()

Nothing is persisted until a highlight or a note save succeeds, and a
cancel discards the unsaved note text.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from bs4 import BeautifulSoup

from ...config import Settings, get_settings
from ...errors import PersistenceError, ValidationError
from ...models.annotations import (
    DEFAULT_COLOR,
    Annotation,
    AnnotationCategory,
    check_color,
)
from .annotation_store import AnnotationStore
from .compositor import AnnotationCompositor, annotation_id_at
from .offset_mapper import LeafPosition, map_selection

logger = logging.getLogger(__name__)


class ControllerState(Enum):
    """Selection controller states"""

    IDLE = "idle"
    SELECTING = "selecting"
    HIGHLIGHTING = "highlighting"
    NOTE_EDITING = "note_editing"


@dataclass(frozen=True)
class Rect:
    """Bounding box in viewport coordinates"""

    left: float
    top: float
    width: float
    height: float

    @property
    def bottom(self) -> float:
        return self.top + self.height


@dataclass(frozen=True)
class Viewport:
    width: float
    height: float


@dataclass(frozen=True)
class ToolbarPosition:
    top: float
    left: float


@dataclass(frozen=True)
class CapturedSelection:
    """A selection in flattened-text offsets, with its on-screen bounding box"""

    start: int
    end: int
    text: str
    rect: Optional[Rect] = None

    @property
    def is_empty(self) -> bool:
        return self.end <= self.start or not self.text


class SelectionCapture(Protocol):
    """Adapter between an interaction surface and the controller."""

    def capture(self) -> Optional[CapturedSelection]: ...

    def clear(self) -> None: ...


class TreeSelectionCapture:
    """
    Selection capture over a content tree, addressed by leaf positions.

    The tree must be the page content (original or composited; both map to
    the same offsets).
    """

    def __init__(self, tree: BeautifulSoup):
        self.tree = tree
        self._selection: Optional[CapturedSelection] = None

    def select(
        self, start: LeafPosition, end: LeafPosition, rect: Optional[Rect] = None
    ) -> CapturedSelection:
        text_range = map_selection(self.tree, start, end)
        self._selection = CapturedSelection(
            start=text_range.start, end=text_range.end, text=text_range.text, rect=rect
        )
        return self._selection

    def capture(self) -> Optional[CapturedSelection]:
        return self._selection

    def clear(self) -> None:
        self._selection = None


def place_toolbar(
    rect: Rect,
    viewport: Viewport,
    width: float = 200,
    height: float = 44,
    gap: float = 50,
) -> ToolbarPosition:
    """
    Position the toolbar centered over ``rect``, ``gap`` pixels above its top.

    If it does not fit above, it flips below with the same spacing. The
    result is then clamped so the toolbar stays inside the viewport.
    """
    left = rect.left + rect.width / 2 - width / 2
    top = rect.top - gap
    if top < 0:
        top = rect.bottom + gap - height

    left = min(max(left, 0), max(viewport.width - width, 0))
    top = min(max(top, 0), max(viewport.height - height, 0))
    return ToolbarPosition(top=top, left=left)


class SelectionController:
    """Drives highlight/note interactions for one page of a novel."""

    def __init__(
        self,
        store: AnnotationStore,
        compositor: AnnotationCompositor,
        capture: SelectionCapture,
        novel_id: str,
        page: int,
        viewport: Viewport,
        settings: Optional[Settings] = None,
        notify: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.compositor = compositor
        self.capture = capture
        self.novel_id = novel_id
        self.page = page
        self.viewport = viewport
        self.settings = settings or get_settings()
        self.notify = notify

        self.state = ControllerState.IDLE
        self.selection: Optional[CapturedSelection] = None
        self.toolbar_position: Optional[ToolbarPosition] = None
        self.color = DEFAULT_COLOR
        self.category = AnnotationCategory.HIGHLIGHT
        self.note_text = ""
        self.message: Optional[str] = None

        self._rendered_tree: Optional[BeautifulSoup] = None
        self._clear_handle: Optional[asyncio.TimerHandle] = None
        # Bumped by cancel(); actions resolving under an older value were cancelled
        self._generation = 0

        self.store.set_active_page(novel_id, page)

    # ------------------------------------------------------------------
    # Toolbar
    # ------------------------------------------------------------------

    @property
    def toolbar_visible(self) -> bool:
        return self.state is not ControllerState.IDLE

    @property
    def toolbar_actions(self) -> list[str]:
        """Actions offered by the toolbar for the current target."""
        current = self.store.current
        if current is None:
            return ["highlight", "add_note"]
        return ["edit_note" if current.has_note else "add_note", "delete"]

    def _place_toolbar(self, rect: Optional[Rect]) -> None:
        if rect is None:
            self.toolbar_position = None
            return
        self.toolbar_position = place_toolbar(
            rect,
            self.viewport,
            width=self.settings.toolbar_width,
            height=self.settings.toolbar_height,
            gap=self.settings.toolbar_gap,
        )

    def choose_color(self, color: str) -> None:
        try:
            self.color = check_color(color)
        except ValueError as e:
            raise ValidationError(str(e)) from e

    def choose_category(self, category: AnnotationCategory | str) -> None:
        try:
            self.category = AnnotationCategory(category)
        except ValueError as e:
            raise ValidationError(f"Unknown category {category!r}") from e

    # ------------------------------------------------------------------
    # Rendering and navigation
    # ------------------------------------------------------------------

    def render(self, content: str, is_html: bool = False) -> str:
        """Composite the page with its cached annotations."""
        annotations = self.store.list_for_page(self.novel_id, self.page)
        html = self.compositor.render(
            self.novel_id, self.page, content, annotations, is_html
        )
        self._rendered_tree = self.compositor.cached_tree(self.novel_id, self.page)
        return html

    async def navigate(self, page: int) -> list[Annotation]:
        """Switch to another page and load its annotations."""
        self.cancel()
        self.page = page
        self._rendered_tree = None
        self.store.set_active_page(self.novel_id, page)
        try:
            return await self.store.fetch_page(self.novel_id, page)
        except PersistenceError as e:
            self._report(e.message)
            return []

    # ------------------------------------------------------------------
    # Selection events
    # ------------------------------------------------------------------

    def on_selection_change(self) -> Optional[CapturedSelection]:
        """
        Handle the end of a selection gesture (e.g. mouseup).

        A non-empty selection moves to SELECTING with the toolbar next to
        it. An empty selection while merely selecting counts as an outside
        click. While a request is in flight or a note is being edited,
        selection changes are ignored.
        """
        if self.state in (ControllerState.HIGHLIGHTING, ControllerState.NOTE_EDITING):
            return None

        selection = self.capture.capture()
        if selection is None or selection.is_empty:
            if self.state is ControllerState.SELECTING:
                self.cancel()
            return None

        self._cancel_scheduled_clear()
        self.store.clear_current()
        self.selection = selection
        self.note_text = ""
        self._place_toolbar(selection.rect)
        self.state = ControllerState.SELECTING
        logger.debug(f"Selection [{selection.start}, {selection.end}) captured")
        return selection

    def click_marker(
        self, annotation_id: int, rect: Optional[Rect] = None
    ) -> Optional[Annotation]:
        """
        Load a clicked marker's annotation as current and offer edit/delete.

        Annotations with a note open straight into the note editor.
        """
        if self.state is ControllerState.HIGHLIGHTING:
            return None

        annotation = self.store.get(annotation_id)
        if annotation is None:
            logger.warning(f"Click on unknown annotation marker {annotation_id}")
            return None

        self._cancel_scheduled_clear()
        self.selection = None
        self.store.set_current(annotation)
        self._place_toolbar(rect)
        if annotation.has_note:
            self.note_text = annotation.note
            self.state = ControllerState.NOTE_EDITING
        else:
            self.note_text = ""
            self.state = ControllerState.SELECTING
        return annotation

    def click_at(self, offset: int, rect: Optional[Rect] = None) -> Optional[int]:
        """
        Resolve a click at a flattened-text offset of the rendered page.

        Under nested markers the innermost one wins. A click outside any
        marker is an outside click.
        """
        annotation_id = None
        if self._rendered_tree is not None:
            annotation_id = annotation_id_at(self._rendered_tree, offset)

        if annotation_id is None:
            self.outside_click()
            return None
        self.click_marker(annotation_id, rect)
        return annotation_id

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _create_payload(self, category: AnnotationCategory, note: Optional[str]) -> dict:
        selection = self.selection
        return {
            "page": self.page,
            "textSelection": {
                "startOffset": selection.start,
                "endOffset": selection.end,
                "selectedText": selection.text,
            },
            "color": self.color,
            "category": category.value,
            "note": note,
        }

    async def highlight(self) -> Optional[Annotation]:
        """
        Create a highlight from the active selection.

        Returns the new annotation, or None if persistence failed (the
        failure is reported and the selection kept so the user can retry).
        """
        if self.state is not ControllerState.SELECTING or self.selection is None:
            raise ValidationError("Nothing selected to highlight")

        payload = self._create_payload(self.category, None)
        generation = self._generation
        self.state = ControllerState.HIGHLIGHTING
        try:
            annotation = await self.store.create(self.novel_id, payload)
        except PersistenceError as e:
            if generation == self._generation:
                self.state = ControllerState.SELECTING
            self._report(e.message)
            return None
        except ValidationError:
            if generation == self._generation:
                self.state = ControllerState.SELECTING
            raise

        logger.info(f"Highlighted [{annotation.start}, {annotation.end}) as {annotation.id}")
        if self._cancelled_since(generation):
            return annotation
        self._finish(keep_selection=True)
        return annotation

    def open_note_editor(self) -> None:
        """Open the note field for the selection or the current annotation."""
        current = self.store.current
        if self.state is ControllerState.IDLE and current is None:
            raise ValidationError("Nothing to attach a note to")
        if self.state is ControllerState.HIGHLIGHTING:
            raise ValidationError("A highlight is still being saved")

        self._cancel_scheduled_clear()
        self.note_text = (current.note or "") if current is not None else ""
        self.state = ControllerState.NOTE_EDITING

    def set_note_text(self, text: str) -> None:
        self.note_text = text

    async def save_note(self) -> Optional[Annotation]:
        """
        Save the note field.

        Edits the current annotation's note (keeping its category), or
        creates a note annotation from the selection. Returns None if
        persistence failed; the editor stays open with the text intact.
        """
        if self.state is not ControllerState.NOTE_EDITING:
            raise ValidationError("The note editor is not open")

        current = self.store.current
        text = self.note_text.strip()
        generation = self._generation
        try:
            if current is not None:
                annotation = await self.store.update(current.id, {"note": text or None})
                self.store.clear_current()
            else:
                if self.selection is None:
                    raise ValidationError("Nothing selected to attach a note to")
                if not text:
                    raise ValidationError("Note text is required")
                annotation = await self.store.create(
                    self.novel_id,
                    self._create_payload(AnnotationCategory.NOTE, text),
                )
        except PersistenceError as e:
            self._report(e.message)
            return None

        if self._cancelled_since(generation):
            return annotation
        self._finish(keep_selection=current is None)
        return annotation

    async def delete_current(self) -> bool:
        """Delete the current annotation. Returns False if the delete failed."""
        current = self.store.current
        if current is None:
            raise ValidationError("No annotation selected")

        generation = self._generation
        try:
            await self.store.delete(current.id)
        except PersistenceError as e:
            self._report(e.message)
            return False

        if not self._cancelled_since(generation):
            self._finish(keep_selection=False)
        return True

    def cancel(self) -> None:
        """
        Return to IDLE, discarding unsaved note text and the selection.

        An action still in flight completes at the store, but the controller
        stays IDLE and no annotation is left current once it resolves.
        """
        self._generation += 1
        self._cancel_scheduled_clear()
        self.state = ControllerState.IDLE
        self.selection = None
        self.toolbar_position = None
        self.note_text = ""
        self.capture.clear()
        self.store.clear_current()

    def outside_click(self) -> None:
        self.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cancelled_since(self, generation: int) -> bool:
        """Whether cancel() ran while an action was awaiting the store."""
        if generation == self._generation:
            return False
        self.store.clear_current()
        logger.debug("Action resolved after cancel; controller left idle")
        return True

    def _finish(self, keep_selection: bool) -> None:
        """Back to IDLE after a successful action."""
        self.state = ControllerState.IDLE
        self.selection = None
        self.toolbar_position = None
        self.note_text = ""
        self.message = None
        if keep_selection:
            self._schedule_clear()
        else:
            self.capture.clear()

    def _schedule_clear(self) -> None:
        """Clear the visual selection once the grace period has passed."""
        self._cancel_scheduled_clear()
        delay = self.settings.selection_clear_delay
        if delay <= 0:
            self.capture.clear()
            return
        loop = asyncio.get_running_loop()
        self._clear_handle = loop.call_later(delay, self._clear_selection)

    def _clear_selection(self) -> None:
        self._clear_handle = None
        self.capture.clear()

    def _cancel_scheduled_clear(self) -> None:
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None

    def _report(self, message: str) -> None:
        self.message = message
        if self.notify is not None:
            self.notify(message)
