"""
Annotation API Routes

CRUD for text annotations on novel pages, plus server-side compositing of a
page's content with its annotations and offset mapping for clients that
cannot compute flattened-text offsets themselves.
"""

import logging
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..config import get_settings
from ..errors import ValidationError
from ..models.annotations import (
    Annotation,
    AnnotationCategory,
    AnnotationCreate,
    AnnotationListResponse,
    AnnotationPageGroup,
    AnnotationPanelItem,
    AnnotationPanelResponse,
    AnnotationResponse,
    AnnotationUpdate,
    DeleteAnnotationResponse,
    NovelAnnotationSummary,
    OffsetsRequest,
    OffsetsResponse,
    RenderRequest,
    RenderResponse,
)
from ..services.annotation.annotation_queries import (
    category_label,
    color_name,
    filter_annotations,
    group_by_page,
)
from ..services.annotation.compositor import AnnotationCompositor
from ..services.annotation.offset_mapper import (
    LeafPosition,
    map_selection,
    parse_content,
)
from ..services.annotations_service import AnnotationsService

# Configure logger for this module
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/annotations", tags=["annotations"])


@lru_cache
def get_annotations_service() -> AnnotationsService:
    return AnnotationsService(get_settings().db_path)


@lru_cache
def get_compositor() -> AnnotationCompositor:
    return AnnotationCompositor()


def _load_annotations(
    service: AnnotationsService, novel_id: str, page: Optional[int] = None
) -> List[Annotation]:
    rows = service.get_annotations(novel_id, page)
    if rows is None:
        detail = "Failed to get page annotations" if page else "Failed to get annotations"
        raise HTTPException(status_code=500, detail=detail)
    return [service.row_to_annotation(row) for row in rows]


def _get_annotation_or_404(service: AnnotationsService, annotation_id: int) -> Annotation:
    row = service.get_annotation_by_id(annotation_id)
    if not row:
        raise HTTPException(status_code=404, detail="Annotation not found")
    return service.row_to_annotation(row)


@router.get("/summary", response_model=List[NovelAnnotationSummary])
async def get_annotation_summary(
    service: AnnotationsService = Depends(get_annotations_service),
) -> List[NovelAnnotationSummary]:
    """Annotation counts per novel, broken down by category."""
    counts = service.get_annotation_counts()
    return [
        NovelAnnotationSummary(novel_id=novel_id, **info)
        for novel_id, info in sorted(counts.items())
    ]


@router.get("/novels/{novel_id}", response_model=AnnotationListResponse)
async def get_annotations(
    novel_id: str,
    category: Optional[AnnotationCategory] = Query(default=None),
    search: Optional[str] = Query(default=None),
    service: AnnotationsService = Depends(get_annotations_service),
) -> AnnotationListResponse:
    """All annotations of a novel, optionally filtered by category/search."""
    annotations = _load_annotations(service, novel_id)
    if category is not None or search:
        annotations = filter_annotations(annotations, category, search)
    return AnnotationListResponse(annotations=annotations)


@router.get("/novels/{novel_id}/panel", response_model=AnnotationPanelResponse)
async def get_annotation_panel(
    novel_id: str,
    category: Optional[AnnotationCategory] = Query(default=None),
    search: Optional[str] = Query(default=None),
    service: AnnotationsService = Depends(get_annotations_service),
) -> AnnotationPanelResponse:
    """Filtered annotations grouped by page, each labelled for display."""
    annotations = filter_annotations(_load_annotations(service, novel_id), category, search)
    pages = [
        AnnotationPageGroup(
            page=page,
            annotations_count=len(group),
            annotations=[
                AnnotationPanelItem(
                    annotation=annotation,
                    color_name=color_name(annotation.color),
                    category_label=category_label(annotation.category),
                )
                for annotation in group
            ],
        )
        for page, group in group_by_page(annotations).items()
    ]
    return AnnotationPanelResponse(total=len(annotations), pages=pages)


@router.get("/novels/{novel_id}/pages/{page}", response_model=AnnotationListResponse)
async def get_page_annotations(
    novel_id: str,
    page: int,
    service: AnnotationsService = Depends(get_annotations_service),
) -> AnnotationListResponse:
    """Annotations of one page."""
    return AnnotationListResponse(annotations=_load_annotations(service, novel_id, page))


@router.post(
    "/novels/{novel_id}", response_model=AnnotationResponse, status_code=201
)
async def create_annotation(
    novel_id: str,
    payload: AnnotationCreate,
    service: AnnotationsService = Depends(get_annotations_service),
    compositor: AnnotationCompositor = Depends(get_compositor),
) -> AnnotationResponse:
    """Create an annotation on a page of a novel."""
    annotation_id = service.save_annotation(novel_id, payload)
    if annotation_id is None:
        raise HTTPException(status_code=500, detail="Failed to create annotation")

    row = service.get_annotation_by_id(annotation_id)
    if not row:
        raise HTTPException(status_code=500, detail="Failed to fetch created annotation")

    compositor.invalidate(novel_id, payload.page)
    return AnnotationResponse(annotation=service.row_to_annotation(row))


@router.patch("/{annotation_id}", response_model=AnnotationResponse)
async def update_annotation(
    annotation_id: int,
    patch: AnnotationUpdate,
    service: AnnotationsService = Depends(get_annotations_service),
    compositor: AnnotationCompositor = Depends(get_compositor),
) -> AnnotationResponse:
    """Merge a partial update (typically the note) into an annotation."""
    existing = _get_annotation_or_404(service, annotation_id)

    if not service.update_annotation(annotation_id, patch.changes()):
        raise HTTPException(status_code=500, detail="Failed to update annotation")

    compositor.invalidate(existing.novel_id, existing.page)
    return AnnotationResponse(annotation=_get_annotation_or_404(service, annotation_id))


@router.delete("/{annotation_id}", response_model=DeleteAnnotationResponse)
async def delete_annotation(
    annotation_id: int,
    service: AnnotationsService = Depends(get_annotations_service),
    compositor: AnnotationCompositor = Depends(get_compositor),
) -> DeleteAnnotationResponse:
    existing = _get_annotation_or_404(service, annotation_id)

    if not service.delete_annotation(annotation_id):
        raise HTTPException(status_code=500, detail="Failed to delete annotation")

    compositor.invalidate(existing.novel_id, existing.page)
    return DeleteAnnotationResponse(
        message="Annotation deleted successfully", annotation_id=annotation_id
    )


@router.post(
    "/novels/{novel_id}/pages/{page}/render", response_model=RenderResponse
)
async def render_page(
    novel_id: str,
    page: int,
    payload: RenderRequest,
    service: AnnotationsService = Depends(get_annotations_service),
    compositor: AnnotationCompositor = Depends(get_compositor),
) -> RenderResponse:
    """Composite page content (supplied by the caller) with the page's annotations."""
    annotations = _load_annotations(service, novel_id, page)
    content = compositor.render(
        novel_id, page, payload.content, annotations, payload.is_html
    )
    return RenderResponse(content=content)


@router.post("/offsets", response_model=OffsetsResponse)
async def map_offsets(payload: OffsetsRequest) -> OffsetsResponse:
    """Map a leaf-addressed selection to flattened-text offsets."""
    tree = parse_content(payload.content, payload.is_html)
    try:
        text_range = map_selection(
            tree,
            LeafPosition(payload.start.leaf, payload.start.offset),
            LeafPosition(payload.end.leaf, payload.end.offset),
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return OffsetsResponse(
        start_offset=text_range.start,
        end_offset=text_range.end,
        selected_text=text_range.text,
    )
