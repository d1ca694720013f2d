"""
Services Package

This package contains the SQLite persistence service for annotations and,
under ``annotation``, the client-side annotation engine (offset mapping,
compositing, caching store and selection controller).
"""

from .annotations_service import AnnotationsService
from .base_database_service import BaseDatabaseService

__all__ = [
    "AnnotationsService",
    "BaseDatabaseService",
]
