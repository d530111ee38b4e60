"""Shared base for models persisted as remote documents."""

from __future__ import annotations

from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from chatsync.adapters.store.base import Document

M = TypeVar("M", bound="DocumentModel")


class DocumentModel(BaseModel):
    """Pydantic model whose stored field names are camelCase; `id` lives outside the fields."""

    id: Optional[str] = None

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
    }

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"id"})

    @classmethod
    def from_document(cls: Type[M], doc: Document) -> M:
        return cls.model_validate({**doc.data, "id": doc.id})
