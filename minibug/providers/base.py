"""Abstract base class for remote document stores."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel, ConfigDict


class Document(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str  # store-assigned
    fields: dict[str, Any]


class OrderedQuery(BaseModel):
    model_config = ConfigDict(frozen=True)

    collection: str
    order_by: str = "createdAt"
    descending: bool = True


class DocumentStore(ABC):
    """Per-document CRUD plus a push subscription of full ordered result sets.

    ``createdAt``/``updatedAt`` are assigned by the store at write time.
    Failures surface as ``TransportError``; updating a missing document raises
    ``NotFoundError``; deleting a missing document succeeds.
    """

    @abstractmethod
    def subscribe(self, query: OrderedQuery) -> AsyncIterator[list[Document]]: ...

    @abstractmethod
    async def create_document(self, collection: str, fields: dict[str, Any]) -> str: ...

    @abstractmethod
    async def update_document(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None: ...

    @abstractmethod
    async def delete_document(self, collection: str, doc_id: str) -> None: ...

    async def close(self) -> None:  # noqa: B027
        """Release transport resources. Stores without any need not override."""
