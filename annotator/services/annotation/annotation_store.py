"""
Annotation Store

Client-side cache of annotation records for the reading session.

One authoritative map (id -> Annotation) holds every record; the
novel-scoped and page-scoped views are derived from it on demand, so there
is no duplicated state to keep in sync. The store also tracks the "current"
annotation (the record most recently acted on), per-action loading flags and
the last user-facing error.

Cache mutations happen only here, only after a backend call succeeded, and in
the order responses arrive. A failed call leaves the cache exactly as it was.
Two rapid updates to the same id race; the last response to arrive wins.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import pydantic

from ...errors import DuplicateSubmissionError, PersistenceError, ValidationError
from ...models.annotations import Annotation, AnnotationCreate, AnnotationUpdate
from .compositor import AnnotationCompositor
from .persistence_backends import AnnotationBackend

logger = logging.getLogger(__name__)


def _validation_message(error: pydantic.ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in e['loc']) or 'data'}: {e['msg']}"
        for e in error.errors()
    )


class AnnotationStore:
    """
    Async CRUD cache over an AnnotationBackend.

    Usage:
        store = AnnotationStore(LocalAnnotationBackend(service), compositor)
        store.set_active_page("novel-1", 4)
        await store.fetch_page("novel-1", 4)
        annotation = await store.create("novel-1", {...})
    """

    def __init__(
        self,
        backend: AnnotationBackend,
        compositor: Optional[AnnotationCompositor] = None,
    ):
        self.backend = backend
        self.compositor = compositor

        self._records: dict[int, Annotation] = {}
        self._in_flight: set[str] = set()
        self._active_page: Optional[tuple[str, int]] = None

        self.current: Optional[Annotation] = None
        self.error: Optional[str] = None

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    def list(self, novel_id: str) -> list[Annotation]:
        """All cached annotations for a novel, ordered by page then start."""
        return sorted(
            (a for a in self._records.values() if a.novel_id == novel_id),
            key=lambda a: (a.page, a.start, a.id),
        )

    def list_for_page(self, novel_id: str, page: int) -> list[Annotation]:
        """Cached annotations for one page, ordered by start."""
        return [a for a in self.list(novel_id) if a.page == page]

    def get(self, annotation_id: int) -> Optional[Annotation]:
        return self._records.get(annotation_id)

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    @property
    def active_page(self) -> Optional[tuple[str, int]]:
        return self._active_page

    def set_active_page(self, novel_id: str, page: int) -> None:
        """Record the page in view; page fetches for other pages are discarded."""
        self._active_page = (novel_id, page)

    def set_current(self, annotation: Optional[Annotation]) -> None:
        self.current = annotation

    def clear_current(self) -> None:
        self.current = None

    def clear_error(self) -> None:
        self.error = None

    def clear(self) -> None:
        """Forget everything (e.g. when leaving the reader)."""
        self._records.clear()
        self._active_page = None
        self.current = None
        self.error = None
        if self.compositor is not None:
            self.compositor.clear()

    def is_loading(self, action: Optional[str] = None) -> bool:
        """Whether ``action`` (or any action, if omitted) is in flight."""
        if action is None:
            return bool(self._in_flight)
        return action in self._in_flight

    # ------------------------------------------------------------------
    # Backend calls
    # ------------------------------------------------------------------

    async def _run(self, action: str, func, *args):
        """
        Await a backend call under a loading flag.

        Duplicate submissions are rejected before the call is made. On
        failure the message is recorded for display and the error re-raised.
        """
        if action in self._in_flight:
            raise DuplicateSubmissionError(action)

        self._in_flight.add(action)
        self.error = None
        try:
            return await func(*args)
        except PersistenceError as e:
            self.error = e.message
            logger.error(f"Annotation action {action} failed: {e.message}")
            raise
        finally:
            self._in_flight.discard(action)

    def _invalidate(self, annotation: Annotation) -> None:
        if self.compositor is not None:
            self.compositor.invalidate(annotation.novel_id, annotation.page)

    async def fetch_novel(self, novel_id: str) -> list[Annotation]:
        """Load every annotation of a novel, replacing its cached records."""
        annotations = await self._run(
            f"fetch:{novel_id}", self.backend.fetch_novel, novel_id
        )
        for annotation_id in [
            a.id for a in self._records.values() if a.novel_id == novel_id
        ]:
            del self._records[annotation_id]
        for annotation in annotations:
            self._records[annotation.id] = annotation
        if self.compositor is not None:
            self.compositor.invalidate(novel_id)
        return self.list(novel_id)

    async def fetch_page(self, novel_id: str, page: int) -> list[Annotation]:
        """
        Load one page's annotations.

        The response is committed only if the page is still the active page
        when it arrives (or no page was marked active). A stale response is
        returned to the caller but leaves the cache alone.
        """
        annotations = await self._run(
            f"fetch:{novel_id}:{page}", self.backend.fetch_page, novel_id, page
        )
        if self._active_page is not None and self._active_page != (novel_id, page):
            logger.info(
                f"Discarding annotations for novel={novel_id} page={page}; "
                f"active page is now {self._active_page}"
            )
            return annotations

        for annotation_id in [
            a.id
            for a in self._records.values()
            if a.novel_id == novel_id and a.page == page
        ]:
            del self._records[annotation_id]
        for annotation in annotations:
            self._records[annotation.id] = annotation
        if self.compositor is not None:
            self.compositor.invalidate(novel_id, page)
        return self.list_for_page(novel_id, page)

    async def create(
        self, novel_id: str, data: AnnotationCreate | dict[str, Any]
    ) -> Annotation:
        """
        Persist a new annotation and make it current.

        Raises:
            ValidationError: Missing or malformed data (no backend call made)
            PersistenceError: The backend rejected or failed the request
        """
        if not novel_id:
            raise ValidationError("novel_id is required")
        if not isinstance(data, AnnotationCreate):
            try:
                data = AnnotationCreate.model_validate(data)
            except pydantic.ValidationError as e:
                raise ValidationError(_validation_message(e)) from e

        selection = data.text_selection
        action = (
            f"create:{novel_id}:{data.page}:"
            f"{selection.start_offset}:{selection.end_offset}"
        )
        annotation = await self._run(action, self.backend.create, novel_id, data)

        self._records[annotation.id] = annotation
        self.current = annotation
        self._invalidate(annotation)
        return annotation

    async def update(
        self, annotation_id: int, patch: AnnotationUpdate | dict[str, Any]
    ) -> Annotation:
        """
        Merge fields (typically ``note``) into an annotation.

        Raises:
            ValidationError: Malformed patch (no backend call made)
            PersistenceError: The backend rejected or failed the request
        """
        if not isinstance(patch, AnnotationUpdate):
            try:
                patch = AnnotationUpdate.model_validate(patch)
            except pydantic.ValidationError as e:
                raise ValidationError(_validation_message(e)) from e

        # Identical patches are duplicates; different patches to one id race
        action = f"update:{annotation_id}:{sorted(patch.changes().items())}"
        annotation = await self._run(action, self.backend.update, annotation_id, patch)

        previous = self._records.get(annotation_id)
        if previous is not None:
            self._records[annotation_id] = annotation
            self._invalidate(previous)
        if self.current is not None and self.current.id == annotation_id:
            self.current = annotation
        self._invalidate(annotation)
        return annotation

    async def delete(self, annotation_id: int) -> None:
        """
        Delete an annotation; clears "current" if it was that annotation.

        Raises:
            PersistenceError: The backend rejected or failed the request
        """
        await self._run(f"delete:{annotation_id}", self.backend.delete, annotation_id)

        removed = self._records.pop(annotation_id, None)
        if self.current is not None and self.current.id == annotation_id:
            removed = removed or self.current
            self.current = None
        if removed is not None:
            self._invalidate(removed)
