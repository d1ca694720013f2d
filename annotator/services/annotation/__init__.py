# Annotation engine components
from .annotation_store import AnnotationStore
from .compositor import AnnotationCompositor, annotation_id_at, composite, composite_tree
from .offset_mapper import LeafPosition, TextRange, flatten_text, map_selection, parse_content
from .persistence_backends import HttpAnnotationBackend, LocalAnnotationBackend
from .selection_controller import ControllerState, SelectionController

__all__ = [
    "AnnotationCompositor",
    "AnnotationStore",
    "ControllerState",
    "HttpAnnotationBackend",
    "LeafPosition",
    "LocalAnnotationBackend",
    "SelectionController",
    "TextRange",
    "annotation_id_at",
    "composite",
    "composite_tree",
    "flatten_text",
    "map_selection",
    "parse_content",
]
