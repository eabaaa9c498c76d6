"""Cloud Firestore REST v1 document store."""

import asyncio
import re
import secrets
import string
from collections.abc import AsyncIterator, Mapping
from datetime import datetime
from typing import Any

import httpx
import structlog

from minibug.errors import NotFoundError, TransportError
from minibug.providers.base import Document, DocumentStore, OrderedQuery

logger = structlog.get_logger()

BASE_URL = "https://firestore.googleapis.com/v1"

_AUTO_ID_ALPHABET = string.ascii_letters + string.digits
_FRACTION = re.compile(r"\.(\d+)")


# ---------------------------------------------------------------------------
# Typed-value codec
# ---------------------------------------------------------------------------


def encode_value(value: Any) -> dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": str(value)}
    if isinstance(value, datetime):
        return {"timestampValue": value.isoformat()}
    if isinstance(value, Mapping):
        return {"mapValue": {"fields": encode_fields(value)}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    raise TypeError(f"Cannot encode {type(value).__name__} as a Firestore value")


def encode_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {k: encode_value(v) for k, v in fields.items()}


def _parse_timestamp(raw: str) -> datetime:
    # Firestore returns nanoseconds; datetime holds microseconds
    trimmed = _FRACTION.sub(lambda m: "." + m.group(1)[:6], raw, count=1)
    return datetime.fromisoformat(trimmed.replace("Z", "+00:00"))


def decode_value(value: Mapping[str, Any]) -> Any:
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return value["booleanValue"]
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        return _parse_timestamp(value["timestampValue"])
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    # referenceValue, bytesValue, geoPointValue: passed through untouched
    return next(iter(value.values()), None)


def decode_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {k: decode_value(v) for k, v in fields.items()}


def _auto_id() -> str:
    return "".join(secrets.choice(_AUTO_ID_ALPHABET) for _ in range(20))


def _server_time(field_path: str) -> dict[str, str]:
    return {"fieldPath": field_path, "setToServerValue": "REQUEST_TIME"}


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return response.text


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class FirestoreStore(DocumentStore):
    """Firestore over plain REST.

    The REST surface has no listen stream, so ``subscribe`` polls ``runQuery``
    every ``poll_interval`` seconds and yields only when the result set changed.
    """

    def __init__(
        self,
        project_id: str,
        token: str | None = None,
        poll_interval: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not project_id:
            raise ValueError("project_id is required")
        self._root = f"projects/{project_id}/databases/(default)/documents"
        self._poll_interval = poll_interval
        self._owns_client = client is None
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = client or httpx.AsyncClient(headers=headers, timeout=30)

    def _name(self, collection: str, doc_id: str) -> str:
        return f"{self._root}/{collection}/{doc_id}"

    async def _request(self, method: str, url: str, doc_id: str | None = None, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"Firestore request failed: {exc}") from exc
        if response.status_code == 404 and doc_id is not None:
            raise NotFoundError(doc_id)
        if response.is_error:
            raise TransportError(f"Firestore API error {response.status_code}: {_error_message(response)}")
        return response

    async def _commit(self, write: dict[str, Any], doc_id: str) -> None:
        await self._request("POST", f"{BASE_URL}/{self._root}:commit", doc_id=doc_id, json={"writes": [write]})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch(self, query: OrderedQuery) -> list[Document]:
        body = {
            "structuredQuery": {
                "from": [{"collectionId": query.collection}],
                "orderBy": [
                    {
                        "field": {"fieldPath": query.order_by},
                        "direction": "DESCENDING" if query.descending else "ASCENDING",
                    }
                ],
            }
        }
        response = await self._request("POST", f"{BASE_URL}/{self._root}:runQuery", json=body)
        docs = []
        # Entries without "document" only carry a readTime
        for entry in response.json():
            node = entry.get("document")
            if node:
                docs.append(Document(id=node["name"].rsplit("/", 1)[-1], fields=decode_fields(node.get("fields", {}))))
        return docs

    async def subscribe(self, query: OrderedQuery) -> AsyncIterator[list[Document]]:
        last: list[Document] | None = None
        while True:
            docs = await self.fetch(query)
            if docs != last:
                last = docs
                yield docs
            await asyncio.sleep(self._poll_interval)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_document(self, collection: str, fields: dict[str, Any]) -> str:
        # Firestore auto ids are client-generated; the precondition guards collisions.
        doc_id = _auto_id()
        write = {
            "update": {"name": self._name(collection, doc_id), "fields": encode_fields(fields)},
            "currentDocument": {"exists": False},
            "updateTransforms": [_server_time("createdAt"), _server_time("updatedAt")],
        }
        await self._commit(write, doc_id)
        logger.debug("firestore_document_created", collection=collection, doc_id=doc_id)
        return doc_id

    async def update_document(self, collection: str, doc_id: str, patch: dict[str, Any]) -> None:
        write = {
            "update": {"name": self._name(collection, doc_id), "fields": encode_fields(patch)},
            "updateMask": {"fieldPaths": list(patch)},
            "currentDocument": {"exists": True},
            "updateTransforms": [_server_time("updatedAt")],
        }
        await self._commit(write, doc_id)

    async def delete_document(self, collection: str, doc_id: str) -> None:
        # Firestore deletes are idempotent; a missing document is not an error
        await self._request("DELETE", f"{BASE_URL}/{self._name(collection, doc_id)}")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
