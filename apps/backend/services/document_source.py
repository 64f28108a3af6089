"""Structured document source (read-only input of the embedding pipeline)."""
from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from apps.backend.models.document import SourceDocument
from apps.backend.services.errors import NotFoundError, ValidationError


def get_structured_document(db: Session, document_id: int) -> list[dict[str, Any]]:
    doc = db.get(SourceDocument, document_id)
    if not doc:
        raise NotFoundError("document_not_found")
    sections = doc.sections
    if not isinstance(sections, list):
        raise ValidationError("document_has_no_sections")
    return [dict(s) for s in sections if isinstance(s, dict)]


def save_structured_document(db: Session, user_id: str, sections: list[dict[str, Any]], title: str | None = None) -> SourceDocument:
    if not isinstance(sections, list) or not sections:
        raise ValidationError("sections_required")
    doc = SourceDocument(user_id=str(user_id), title=title, sections=sections)
    db.add(doc)
    db.commit()
    db.refresh(doc)
    return doc
