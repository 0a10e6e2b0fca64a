"""Authors and books stored in the document store."""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from .database import Database, Document
from .errors import NotFound, ValidationError

logger = logging.getLogger("library.catalog")

_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class AuthorPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    biography: Optional[str] = Field(default=None, max_length=1000)
    birthDate: Optional[date] = None
    nationality: Optional[str] = Field(default=None, max_length=50)

    @field_validator("biography", "birthDate", "nationality", mode="before")
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        return _blank_to_none(value)


class BookPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=200)
    authorId: str = Field(..., min_length=1)
    isbn: str = Field(..., pattern=r"^[0-9X-]+$")
    publishedYear: Optional[int] = Field(default=None, ge=1000)
    genre: Optional[str] = Field(default=None, max_length=50)
    pages: Optional[int] = Field(default=None, ge=1)
    publisher: Optional[str] = Field(default=None, max_length=100)
    language: Optional[str] = Field(default=None, max_length=30)
    description: Optional[str] = Field(default=None, max_length=2000)
    price: Optional[float] = Field(default=None, ge=0)
    inStock: Optional[bool] = None

    @field_validator(
        "publishedYear",
        "genre",
        "pages",
        "publisher",
        "language",
        "description",
        "price",
        "inStock",
        mode="before",
    )
    @classmethod
    def _blank_is_unset(cls, value: Any) -> Any:
        return _blank_to_none(value)

    @field_validator("publishedYear")
    @classmethod
    def _not_in_future(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value > date.today().year:
            raise ValueError("publishedYear cannot be in the future")
        return value


def _payload_to_document(payload: BaseModel) -> Dict[str, Any]:
    return payload.model_dump(mode="json", exclude_unset=True)


class EntityCollection:
    """List/get/create/update/delete for one catalog collection."""

    def __init__(self, database: Database, collection: str, label: str) -> None:
        self._database = database
        self._collection = collection
        self._label = label

    def list(self) -> List[Document]:
        return self._database.find(self._collection)

    def get(self, entity_id: str) -> Document:
        document = self._database.find_one(self._collection, {"id": self._check_id(entity_id)})
        if document is None:
            raise NotFound(f"{self._label} not found")
        return document

    def exists(self, entity_id: str) -> bool:
        if not _ID_PATTERN.match(entity_id or ""):
            return False
        return self._database.find_one(self._collection, {"id": entity_id}) is not None

    def create(self, payload: BaseModel) -> Document:
        fields = {key: value for key, value in _payload_to_document(payload).items() if value is not None}
        document = self._database.insert_one(self._collection, fields)
        logger.info("Created %s %s", self._label.lower(), document["id"])
        return document

    def update(self, entity_id: str, payload: BaseModel) -> Document:
        entity_id = self._check_id(entity_id)
        fields = _payload_to_document(payload)
        if fields:
            matched = self._database.update_one(self._collection, {"id": entity_id}, fields)
            if matched == 0:
                raise NotFound(f"{self._label} not found")
        return self.get(entity_id)

    def delete(self, entity_id: str) -> None:
        deleted = self._database.delete_one(self._collection, {"id": self._check_id(entity_id)})
        if deleted == 0:
            raise NotFound(f"{self._label} not found")
        logger.info("Deleted %s %s", self._label.lower(), entity_id)

    def _check_id(self, entity_id: str) -> str:
        if not _ID_PATTERN.match(entity_id or ""):
            raise ValidationError(f"Invalid {self._label.lower()} ID")
        return entity_id


class Catalog:
    """Catalog operations; books must reference an existing author."""

    def __init__(self, database: Database) -> None:
        self.authors = EntityCollection(database, "authors", "Author")
        self.books = EntityCollection(database, "books", "Book")

    def create_book(self, payload: BookPayload) -> Document:
        self._require_author(payload.authorId)
        return self.books.create(payload)

    def update_book(self, book_id: str, payload: BookPayload) -> Document:
        self._require_author(payload.authorId)
        return self.books.update(book_id, payload)

    def _require_author(self, author_id: str) -> None:
        if not self.authors.exists(author_id):
            raise ValidationError("Author not found")


__all__ = ["AuthorPayload", "BookPayload", "Catalog", "EntityCollection"]
