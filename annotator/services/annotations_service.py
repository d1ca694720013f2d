"""
Annotations Service Module

SQLite persistence for text annotations on novel pages. Annotations are
addressed by character offsets into the flattened text of a page, so the
table stores a plain (start_offset, end_offset) pair rather than any DOM
path.

Schema:
    annotations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        novel_id TEXT NOT NULL,
        page INTEGER NOT NULL,
        start_offset INTEGER NOT NULL,
        end_offset INTEGER NOT NULL,
        selected_text TEXT NOT NULL,
        color TEXT DEFAULT '#ffff00',
        category TEXT DEFAULT 'highlight',
        note TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from ..models.annotations import (
    Annotation,
    AnnotationCreate,
    TextSelection,
)
from .base_database_service import DEFAULT_DB_PATH, BaseDatabaseService

logger = logging.getLogger(__name__)

# Columns a PATCH may touch
UPDATABLE_COLUMNS = ("note", "color", "category")


class AnnotationsService(BaseDatabaseService):
    """SQLite helper for novel page annotations."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        super().__init__(db_path)
        self._init_table()

    def _init_table(self) -> None:
        """Ensure the annotations table & indexes exist."""
        with self.get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS annotations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    novel_id TEXT NOT NULL,
                    page INTEGER NOT NULL,
                    start_offset INTEGER NOT NULL,
                    end_offset INTEGER NOT NULL,
                    selected_text TEXT NOT NULL,
                    color TEXT DEFAULT '#ffff00',
                    category TEXT DEFAULT 'highlight',
                    note TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_annotations_novel_page
                ON annotations(novel_id, page)
                """
            )
            conn.commit()

    # ---------------------------------------------------------------------
    # CRUD helpers
    # ---------------------------------------------------------------------

    def save_annotation(self, novel_id: str, data: AnnotationCreate) -> Optional[int]:
        """Persist a new annotation and return its auto-generated ID."""
        try:
            timestamp = self.get_current_timestamp()
            selection = data.text_selection
            query = """
                INSERT INTO annotations (
                    novel_id, page, start_offset, end_offset, selected_text,
                    color, category, note, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """
            params = (
                novel_id,
                data.page,
                selection.start_offset,
                selection.end_offset,
                selection.selected_text,
                data.color,
                data.category.value,
                data.note,
                timestamp,
                timestamp,
            )
            annotation_id = self.execute_insert(query, params)
            if annotation_id:
                logger.info(
                    "Saved annotation %s novel=%s page=%s range=[%s, %s) category=%s",
                    annotation_id,
                    novel_id,
                    data.page,
                    selection.start_offset,
                    selection.end_offset,
                    data.category.value,
                )
            return annotation_id
        except Exception as exc:
            logger.exception("Error saving annotation: %s", exc)
            return None

    def get_annotations(
        self, novel_id: str, page: Optional[int] = None
    ) -> Optional[List[Dict[str, Any]]]:
        """
        Return annotations for a novel, optionally limited to one page.

        Returns None (not an empty list) when the query itself failed, so
        callers can tell "no annotations" from "could not load".
        """
        if page is None:
            query = """
                SELECT * FROM annotations
                WHERE novel_id = ?
                ORDER BY page ASC, start_offset ASC, id ASC
            """
            params: tuple = (novel_id,)
        else:
            query = """
                SELECT * FROM annotations
                WHERE novel_id = ? AND page = ?
                ORDER BY start_offset ASC, id ASC
            """
            params = (novel_id, page)

        rows = self.execute_query(query, params, fetch_all=True)
        if rows is None:
            logger.error(
                "Error fetching annotations for novel=%s page=%s", novel_id, page
            )
            return None
        return [dict(row) for row in rows]

    def get_annotation_by_id(self, annotation_id: int) -> Optional[Dict[str, Any]]:
        """Retrieve a single annotation by primary key."""
        row = self.execute_query(
            "SELECT * FROM annotations WHERE id = ?", (annotation_id,), fetch_one=True
        )
        return dict(row) if row else None

    def update_annotation(self, annotation_id: int, changes: Dict[str, Any]) -> bool:
        """
        Apply a partial update. Unknown columns are ignored; an empty change
        set only bumps ``updated_at``.
        """
        fields = {k: v for k, v in changes.items() if k in UPDATABLE_COLUMNS}
        assignments = [f"{column} = ?" for column in fields]
        assignments.append("updated_at = ?")
        params = (*fields.values(), self.get_current_timestamp(), annotation_id)

        query = f"UPDATE annotations SET {', '.join(assignments)} WHERE id = ?"
        updated = self.execute_update_delete(query, params)
        if updated:
            logger.info(
                "Updated annotation %s fields=%s", annotation_id, sorted(fields)
            )
        return updated

    def delete_annotation(self, annotation_id: int) -> bool:
        """Remove an annotation permanently."""
        deleted = self.execute_update_delete(
            "DELETE FROM annotations WHERE id = ?", (annotation_id,)
        )
        if deleted:
            logger.info("Deleted annotation %s", annotation_id)
        return deleted

    def get_annotation_counts(self) -> Dict[str, Dict[str, Any]]:
        """
        Summary counts of annotations per novel.

        Returns:
            Dict mapping novel_id to {"annotations_count": int,
            "by_category": {category: count}}
        """
        try:
            rows = self.execute_query(
                """
                SELECT novel_id, category, COUNT(*) AS category_count
                FROM annotations
                GROUP BY novel_id, category
                """,
                fetch_all=True,
            )
            summary: Dict[str, Dict[str, Any]] = {}
            for row in rows or []:
                entry = summary.setdefault(
                    row["novel_id"], {"annotations_count": 0, "by_category": {}}
                )
                entry["by_category"][row["category"]] = row["category_count"]
                entry["annotations_count"] += row["category_count"]
            return summary
        except Exception as exc:
            logger.exception("Error getting annotation counts: %s", exc)
            return {}

    # ---------------------------------------------------------------------
    # Row conversion
    # ---------------------------------------------------------------------

    def row_to_annotation(self, row: Dict[str, Any] | sqlite3.Row) -> Annotation:
        """Convert a database row into an Annotation model."""
        return Annotation(
            id=row["id"],
            novel_id=row["novel_id"],
            page=row["page"],
            text_selection=TextSelection(
                start_offset=row["start_offset"],
                end_offset=row["end_offset"],
                selected_text=row["selected_text"],
            ),
            color=row["color"],
            category=row["category"],
            note=row["note"],
            created_at=self.format_timestamp_iso(row["created_at"]),
            updated_at=self.format_timestamp_iso(row["updated_at"]),
        )
