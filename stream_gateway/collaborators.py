"""Narrow interfaces to the collaborators around the gateway core.

The gateway itself touches neither; sibling features (search caching,
artifact storage, authenticated endpoints) depend on these protocols.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Protocol

from stream_gateway.gateway.errors import GatewayError


class UnauthorizedError(GatewayError):
    """Bearer credential missing or rejected by the identity verifier."""

    status_code = 401


@dataclass(frozen=True)
class Principal:
    uid: str
    email: str = ""
    claims: dict[str, Any] = field(default_factory=dict)


class IdentityVerifier(Protocol):
    async def verify(self, token: str) -> Principal:
        """Return the principal for a bearer token or raise UnauthorizedError."""
        ...


class DocumentStore(Protocol):
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None: ...

    async def update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> None: ...

    async def delete(self, collection: str, doc_id: str) -> None: ...

    async def query(self, collection: str, field_name: str, value: Any) -> list[dict[str, Any]]: ...


async def verify_bearer(verifier: IdentityVerifier, authorization: str | None) -> Principal:
    """Resolve an ``Authorization: Bearer <token>`` header to a principal."""
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthorizedError("Invalid authorization header")
    token = authorization[7:].strip()
    if not token:
        raise UnauthorizedError("Invalid authorization header")
    return await verifier.verify(token)


class InMemoryDocumentStore:
    """Dict-backed DocumentStore for local runs and tests."""

    def __init__(self):
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(data)

    async def update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> None:
        docs = self._collections.get(collection, {})
        if doc_id not in docs:
            raise KeyError(f"{collection}/{doc_id} does not exist")
        docs[doc_id].update(copy.deepcopy(changes))

    async def delete(self, collection: str, doc_id: str) -> None:
        self._collections.get(collection, {}).pop(doc_id, None)

    async def query(self, collection: str, field_name: str, value: Any) -> list[dict[str, Any]]:
        docs = self._collections.get(collection, {}).values()
        return [copy.deepcopy(d) for d in docs if d.get(field_name) == value]
