"""
Tests for AnnotationStore.

Tests cover:
- Derived novel/page views over one record map
- Create / update / delete and "current" tracking
- Validation before any backend call
- Duplicate-submission rejection while an action is in flight
- Discarding page fetches that resolve after navigation
- Arrival-order resolution of racing updates
- Cache left untouched on failure
- Render cache invalidation and end-to-end compositing scenarios
"""

import asyncio
import os
import tempfile

import pytest
from bs4 import BeautifulSoup

from annotator.errors import DuplicateSubmissionError, PersistenceError, ValidationError
from annotator.models.annotations import Annotation, AnnotationCategory, TextSelection
from annotator.services.annotation.annotation_store import AnnotationStore
from annotator.services.annotation.compositor import (
    MARKER_ID_ATTR,
    NOTE_GLYPH,
    AnnotationCompositor,
)
from annotator.services.annotation.persistence_backends import LocalAnnotationBackend
from annotator.services.annotations_service import AnnotationsService

CONTENT = "The quick brown fox"


def make_annotation(annotation_id, page=1, start=4, end=9, note=None, novel_id="novel-1"):
    return Annotation(
        id=annotation_id,
        novel_id=novel_id,
        page=page,
        text_selection=TextSelection(
            start_offset=start, end_offset=end, selected_text=CONTENT[start:end]
        ),
        note=note,
        created_at="2025-01-01T00:00:00Z",
    )


def create_payload(start=4, end=9, page=1, **extra) -> dict:
    payload = {
        "page": page,
        "textSelection": {
            "startOffset": start,
            "endOffset": end,
            "selectedText": CONTENT[start:end],
        },
    }
    payload.update(extra)
    return payload


class FakeBackend:
    """
    In-memory backend whose calls can be held open.

    ``hold(key)`` returns an event; a call with that key blocks until the
    event is set. Keys are "fetch_page:<page>", "create", "update:<note>" and
    "delete".
    """

    def __init__(self, records=None):
        self.records = {a.id: a for a in records or []}
        self.next_id = max(self.records, default=0) + 1
        self.calls = []
        self.gates = {}
        self.error = None

    def hold(self, key):
        self.gates[key] = asyncio.Event()
        return self.gates[key]

    async def _enter(self, key):
        self.calls.append(key)
        gate = self.gates.get(key)
        if gate is not None:
            await gate.wait()
        if self.error:
            raise PersistenceError(self.error)

    async def fetch_novel(self, novel_id):
        await self._enter("fetch_novel")
        return [a for a in self.records.values() if a.novel_id == novel_id]

    async def fetch_page(self, novel_id, page):
        await self._enter(f"fetch_page:{page}")
        return [
            a for a in self.records.values() if a.novel_id == novel_id and a.page == page
        ]

    async def create(self, novel_id, data):
        await self._enter("create")
        annotation = Annotation(
            id=self.next_id,
            novel_id=novel_id,
            page=data.page,
            text_selection=data.text_selection,
            color=data.color,
            category=data.category,
            note=data.note,
            created_at="2025-01-01T00:00:00Z",
        )
        self.next_id += 1
        self.records[annotation.id] = annotation
        return annotation

    async def update(self, annotation_id, patch):
        await self._enter(f"update:{patch.note}")
        annotation = self.records[annotation_id].model_copy(update=patch.changes())
        self.records[annotation_id] = annotation
        return annotation

    async def delete(self, annotation_id):
        await self._enter("delete")
        self.records.pop(annotation_id)


@pytest.fixture
def compositor():
    return AnnotationCompositor()


class TestViews:
    """Test the derived views"""

    @pytest.mark.asyncio
    async def test_fetch_novel_and_views(self):
        backend = FakeBackend(
            [
                make_annotation(1, page=2, start=0, end=3),
                make_annotation(2, page=1, start=10, end=15),
                make_annotation(3, page=1, start=4, end=9),
                make_annotation(4, novel_id="novel-2"),
            ]
        )
        store = AnnotationStore(backend)

        annotations = await store.fetch_novel("novel-1")

        assert [a.id for a in annotations] == [3, 2, 1]
        assert [a.id for a in store.list_for_page("novel-1", 1)] == [3, 2]
        assert store.list("novel-2") == []
        assert store.get(1).page == 2

    @pytest.mark.asyncio
    async def test_fetch_novel_replaces_stale_records(self):
        backend = FakeBackend([make_annotation(1), make_annotation(2, start=10, end=15)])
        store = AnnotationStore(backend)
        await store.fetch_novel("novel-1")

        del backend.records[2]
        await store.fetch_novel("novel-1")

        assert [a.id for a in store.list("novel-1")] == [1]

    @pytest.mark.asyncio
    async def test_fetch_page_replaces_only_that_page(self):
        backend = FakeBackend([make_annotation(1, page=1), make_annotation(2, page=2)])
        store = AnnotationStore(backend)
        await store.fetch_novel("novel-1")

        backend.records.pop(1)
        await store.fetch_page("novel-1", 1)

        assert store.list_for_page("novel-1", 1) == []
        assert [a.id for a in store.list_for_page("novel-1", 2)] == [2]

    def test_clear(self, compositor):
        store = AnnotationStore(FakeBackend(), compositor)
        store.set_active_page("novel-1", 1)
        store.set_current(make_annotation(1))
        compositor.render("novel-1", 1, CONTENT, [])

        store.clear()

        assert store.current is None
        assert store.active_page is None
        assert not compositor.is_cached("novel-1", 1)


class TestMutations:
    """Test create / update / delete"""

    @pytest.mark.asyncio
    async def test_create_sets_current_and_caches(self):
        store = AnnotationStore(FakeBackend())

        annotation = await store.create("novel-1", create_payload())

        assert annotation.id == 1
        assert annotation.selected_text == "quick"
        assert store.current == annotation
        assert store.list_for_page("novel-1", 1) == [annotation]
        assert not store.is_loading()

    @pytest.mark.asyncio
    async def test_create_rejects_missing_novel(self):
        backend = FakeBackend()
        store = AnnotationStore(backend)

        with pytest.raises(ValidationError):
            await store.create("", create_payload())
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_create_rejects_malformed_data(self):
        backend = FakeBackend()
        store = AnnotationStore(backend)

        with pytest.raises(ValidationError):
            await store.create("novel-1", create_payload(start=5, end=5))
        with pytest.raises(ValidationError):
            await store.create("novel-1", create_payload(color="not-a-color"))
        with pytest.raises(ValidationError):
            await store.create("novel-1", {"page": 1})
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_update_merges_note(self):
        backend = FakeBackend([make_annotation(1)])
        store = AnnotationStore(backend)
        await store.fetch_novel("novel-1")
        store.set_current(store.get(1))

        updated = await store.update(1, {"note": "check this"})

        assert updated.note == "check this"
        assert store.get(1).note == "check this"
        assert store.current.note == "check this"

    @pytest.mark.asyncio
    async def test_update_rejects_bad_patch(self):
        backend = FakeBackend([make_annotation(1)])
        store = AnnotationStore(backend)

        with pytest.raises(ValidationError):
            await store.update(1, {"color": "blue"})
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_update_rejects_null_color_and_category(self):
        backend = FakeBackend([make_annotation(1)])
        store = AnnotationStore(backend)
        await store.fetch_novel("novel-1")

        with pytest.raises(ValidationError):
            await store.update(1, {"color": None})
        with pytest.raises(ValidationError):
            await store.update(1, {"category": None})

        assert backend.calls == ["fetch_novel"]
        assert store.get(1).color == "#ffff00"
        assert store.get(1).category is AnnotationCategory.HIGHLIGHT

    @pytest.mark.asyncio
    async def test_null_note_clears_note(self):
        backend = FakeBackend([make_annotation(1, note="old")])
        store = AnnotationStore(backend)
        await store.fetch_novel("novel-1")

        updated = await store.update(1, {"note": None})

        assert updated.note is None

    @pytest.mark.asyncio
    async def test_delete_clears_current(self):
        backend = FakeBackend([make_annotation(1)])
        store = AnnotationStore(backend)
        await store.fetch_novel("novel-1")
        store.set_current(store.get(1))

        await store.delete(1)

        assert store.get(1) is None
        assert store.current is None

    @pytest.mark.asyncio
    async def test_delete_keeps_unrelated_current(self):
        backend = FakeBackend([make_annotation(1), make_annotation(2, start=10, end=15)])
        store = AnnotationStore(backend)
        await store.fetch_novel("novel-1")
        store.set_current(store.get(2))

        await store.delete(1)

        assert store.current.id == 2


class TestFailures:
    """Test that failures leave the cache untouched"""

    @pytest.mark.asyncio
    async def test_failed_create(self):
        backend = FakeBackend()
        backend.error = "Failed to create annotation"
        store = AnnotationStore(backend)

        with pytest.raises(PersistenceError):
            await store.create("novel-1", create_payload())

        assert store.list("novel-1") == []
        assert store.current is None
        assert store.error == "Failed to create annotation"
        assert not store.is_loading()

    @pytest.mark.asyncio
    async def test_failed_update_and_delete(self):
        backend = FakeBackend([make_annotation(1, note="original")])
        store = AnnotationStore(backend)
        await store.fetch_novel("novel-1")
        backend.error = "Server unavailable"

        with pytest.raises(PersistenceError):
            await store.update(1, {"note": "changed"})
        with pytest.raises(PersistenceError):
            await store.delete(1)

        assert store.get(1).note == "original"
        assert store.error == "Server unavailable"

    @pytest.mark.asyncio
    async def test_error_cleared_by_next_action(self):
        backend = FakeBackend()
        backend.error = "boom"
        store = AnnotationStore(backend)
        with pytest.raises(PersistenceError):
            await store.fetch_novel("novel-1")

        backend.error = None
        await store.fetch_novel("novel-1")

        assert store.error is None


class TestConcurrency:
    """Test in-flight tracking and response ordering"""

    @pytest.mark.asyncio
    async def test_duplicate_create_rejected(self):
        backend = FakeBackend()
        gate = backend.hold("create")
        store = AnnotationStore(backend)

        first = asyncio.create_task(store.create("novel-1", create_payload()))
        await asyncio.sleep(0)
        assert store.is_loading("create:novel-1:1:4:9")

        with pytest.raises(DuplicateSubmissionError):
            await store.create("novel-1", create_payload())

        gate.set()
        await first
        assert backend.calls == ["create"]
        assert len(store.list("novel-1")) == 1

    @pytest.mark.asyncio
    async def test_different_ranges_may_run_together(self):
        backend = FakeBackend()
        gate = backend.hold("create")
        store = AnnotationStore(backend)

        first = asyncio.create_task(store.create("novel-1", create_payload()))
        second = asyncio.create_task(store.create("novel-1", create_payload(10, 15)))
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(first, second)

        assert len(store.list("novel-1")) == 2

    @pytest.mark.asyncio
    async def test_duplicate_delete_rejected(self):
        backend = FakeBackend([make_annotation(1)])
        gate = backend.hold("delete")
        store = AnnotationStore(backend)
        await store.fetch_novel("novel-1")

        first = asyncio.create_task(store.delete(1))
        await asyncio.sleep(0)
        with pytest.raises(DuplicateSubmissionError):
            await store.delete(1)

        gate.set()
        await first
        assert backend.calls == ["fetch_novel", "delete"]

    @pytest.mark.asyncio
    async def test_page_fetch_after_navigation_is_discarded(self):
        backend = FakeBackend([make_annotation(1, page=1), make_annotation(2, page=2)])
        gate = backend.hold("fetch_page:1")
        store = AnnotationStore(backend)
        store.set_active_page("novel-1", 1)

        stale = asyncio.create_task(store.fetch_page("novel-1", 1))
        await asyncio.sleep(0)

        store.set_active_page("novel-1", 2)
        await store.fetch_page("novel-1", 2)

        gate.set()
        returned = await stale

        assert [a.id for a in returned] == [1]
        assert store.list_for_page("novel-1", 1) == []
        assert [a.id for a in store.list_for_page("novel-1", 2)] == [2]

    @pytest.mark.asyncio
    async def test_racing_updates_resolve_in_arrival_order(self):
        backend = FakeBackend([make_annotation(1)])
        store = AnnotationStore(backend)
        await store.fetch_novel("novel-1")
        first_gate = backend.hold("update:first")
        second_gate = backend.hold("update:second")

        first = asyncio.create_task(store.update(1, {"note": "first"}))
        second = asyncio.create_task(store.update(1, {"note": "second"}))
        await asyncio.sleep(0)

        second_gate.set()
        await second
        assert store.get(1).note == "second"

        first_gate.set()
        await first
        assert store.get(1).note == "first"


class TestCompositorIntegration:
    """Test invalidation and the end-to-end highlight / note / delete flows"""

    @pytest.fixture
    def temp_db_path(self):
        with tempfile.NamedTemporaryFile(mode="w", delete=False, suffix=".db") as f:
            db_path = f.name
        yield db_path
        if os.path.exists(db_path):
            os.unlink(db_path)

    @pytest.fixture
    def store(self, temp_db_path, compositor):
        backend = LocalAnnotationBackend(AnnotationsService(db_path=temp_db_path))
        return AnnotationStore(backend, compositor)

    def render(self, store, compositor):
        return compositor.render(
            "novel-1", 1, CONTENT, store.list_for_page("novel-1", 1)
        )

    @pytest.mark.asyncio
    async def test_mutations_invalidate_page(self, store, compositor):
        self.render(store, compositor)
        assert compositor.is_cached("novel-1", 1)

        annotation = await store.create("novel-1", create_payload())
        assert not compositor.is_cached("novel-1", 1)

        self.render(store, compositor)
        await store.update(annotation.id, {"note": "n"})
        assert not compositor.is_cached("novel-1", 1)

        self.render(store, compositor)
        await store.delete(annotation.id)
        assert not compositor.is_cached("novel-1", 1)

    @pytest.mark.asyncio
    async def test_highlight_word(self, store, compositor):
        annotation = await store.create("novel-1", create_payload())

        soup = BeautifulSoup(self.render(store, compositor), "html.parser")
        marker = soup.find(attrs={MARKER_ID_ATTR: str(annotation.id)})

        assert marker.get_text() == "quick"
        assert "background-color: #ffff00" in marker["style"]
        assert soup.get_text() == CONTENT

    @pytest.mark.asyncio
    async def test_note_on_word(self, store, compositor):
        annotation = await store.create(
            "novel-1", create_payload(category="note", note="check this")
        )
        assert annotation.category == AnnotationCategory.NOTE

        soup = BeautifulSoup(self.render(store, compositor), "html.parser")
        marker = soup.find(attrs={MARKER_ID_ATTR: str(annotation.id)})

        assert marker.contents[0] == "quick"
        assert marker.get_text() == "quick" + NOTE_GLYPH
        assert marker.find(title="check this") is not None

    @pytest.mark.asyncio
    async def test_delete_renders_as_if_never_created(self, store, compositor):
        before = self.render(store, compositor)
        annotation = await store.create("novel-1", create_payload())

        await store.delete(annotation.id)

        assert self.render(store, compositor) == before
        assert before == CONTENT
