"""
Annotation Persistence Backends

The annotation store talks to persistence through ``AnnotationBackend``.
Two implementations are provided:

- ``HttpAnnotationBackend``: the ``/annotations`` REST API over httpx
- ``LocalAnnotationBackend``: an in-process ``AnnotationsService``; the
  blocking SQLite calls run in worker threads so the event loop stays free

Both raise ``PersistenceError`` for every failure; the store relies on that
to leave its cache untouched.
"""

import asyncio
import logging
from typing import Any, Optional, Protocol

import httpx
import pydantic

from ...errors import PersistenceError
from ...models.annotations import (
    Annotation,
    AnnotationCreate,
    AnnotationUpdate,
)
from ..annotations_service import AnnotationsService

logger = logging.getLogger(__name__)


class AnnotationBackend(Protocol):
    async def fetch_novel(self, novel_id: str) -> list[Annotation]: ...

    async def fetch_page(self, novel_id: str, page: int) -> list[Annotation]: ...

    async def create(self, novel_id: str, data: AnnotationCreate) -> Annotation: ...

    async def update(self, annotation_id: int, patch: AnnotationUpdate) -> Annotation: ...

    async def delete(self, annotation_id: int) -> None: ...


class HttpAnnotationBackend:
    """
    Client for the annotation REST API.

    Usage:
        async with httpx.AsyncClient(base_url=settings.api_base_url) as client:
            backend = HttpAnnotationBackend(client)
            annotations = await backend.fetch_page("novel-1", 3)
    """

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    @classmethod
    def from_url(cls, base_url: str, timeout: float = 10.0) -> "HttpAnnotationBackend":
        return cls(httpx.AsyncClient(base_url=base_url, timeout=timeout))

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Annotation request failed: {method} {url} - {e}")
            raise PersistenceError(f"Could not reach annotation service: {e}") from e

        if response.is_error:
            raise PersistenceError(
                self._error_message(response), status_code=response.status_code
            )

        try:
            return response.json()
        except ValueError as e:
            raise PersistenceError("Annotation service returned invalid JSON") from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = None
        if isinstance(detail, str) and detail:
            return detail
        return f"Annotation service error ({response.status_code})"

    @staticmethod
    def _parse(payload: Any, key: str) -> Any:
        try:
            if key == "annotations":
                return [Annotation.model_validate(item) for item in payload[key]]
            return Annotation.model_validate(payload[key])
        except (KeyError, TypeError, pydantic.ValidationError) as e:
            raise PersistenceError(f"Malformed annotation response: {e}") from e

    async def fetch_novel(self, novel_id: str) -> list[Annotation]:
        payload = await self._request("GET", f"/annotations/novels/{novel_id}")
        return self._parse(payload, "annotations")

    async def fetch_page(self, novel_id: str, page: int) -> list[Annotation]:
        payload = await self._request(
            "GET", f"/annotations/novels/{novel_id}/pages/{page}"
        )
        return self._parse(payload, "annotations")

    async def create(self, novel_id: str, data: AnnotationCreate) -> Annotation:
        payload = await self._request(
            "POST",
            f"/annotations/novels/{novel_id}",
            json=data.model_dump(by_alias=True, exclude_none=True, mode="json"),
        )
        return self._parse(payload, "annotation")

    async def update(self, annotation_id: int, patch: AnnotationUpdate) -> Annotation:
        payload = await self._request(
            "PATCH",
            f"/annotations/{annotation_id}",
            json=patch.model_dump(by_alias=True, exclude_unset=True, mode="json"),
        )
        return self._parse(payload, "annotation")

    async def delete(self, annotation_id: int) -> None:
        await self._request("DELETE", f"/annotations/{annotation_id}")


class LocalAnnotationBackend:
    """Backend calling an in-process AnnotationsService."""

    def __init__(self, service: AnnotationsService):
        self.service = service

    async def fetch_novel(self, novel_id: str) -> list[Annotation]:
        rows = await asyncio.to_thread(self.service.get_annotations, novel_id)
        if rows is None:
            raise PersistenceError("Failed to get annotations")
        return [self.service.row_to_annotation(row) for row in rows]

    async def fetch_page(self, novel_id: str, page: int) -> list[Annotation]:
        rows = await asyncio.to_thread(self.service.get_annotations, novel_id, page)
        if rows is None:
            raise PersistenceError("Failed to get page annotations")
        return [self.service.row_to_annotation(row) for row in rows]

    async def _get(self, annotation_id: int) -> Optional[Annotation]:
        row = await asyncio.to_thread(self.service.get_annotation_by_id, annotation_id)
        return self.service.row_to_annotation(row) if row else None

    async def create(self, novel_id: str, data: AnnotationCreate) -> Annotation:
        annotation_id = await asyncio.to_thread(
            self.service.save_annotation, novel_id, data
        )
        annotation = await self._get(annotation_id) if annotation_id else None
        if annotation is None:
            raise PersistenceError("Failed to create annotation")
        return annotation

    async def update(self, annotation_id: int, patch: AnnotationUpdate) -> Annotation:
        updated = await asyncio.to_thread(
            self.service.update_annotation, annotation_id, patch.changes()
        )
        if not updated:
            raise PersistenceError("Annotation not found or update failed", 404)
        annotation = await self._get(annotation_id)
        if annotation is None:
            raise PersistenceError("Annotation not found", 404)
        return annotation

    async def delete(self, annotation_id: int) -> None:
        deleted = await asyncio.to_thread(self.service.delete_annotation, annotation_id)
        if not deleted:
            raise PersistenceError("Annotation not found", 404)
