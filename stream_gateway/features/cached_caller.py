"""Caller-side response cache keyed by normalized query text.

Sits in front of GatewayClient; the client itself never caches.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from stream_gateway.collaborators import DocumentStore
from stream_gateway.gateway.client import GatewayClient
from stream_gateway.gateway.types import GatewayResult

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "searchCache"


def normalize_query(text: str) -> str:
    """Lowercase, trim and collapse whitespace."""
    return " ".join(text.lower().split())


def cache_key(text: str) -> str:
    return hashlib.sha256(normalize_query(text).encode("utf-8")).hexdigest()


class CachedGatewayCaller:
    """Answers plain-text queries, reusing stored results for equal queries."""

    def __init__(self, client: GatewayClient, store: DocumentStore, collection: str = DEFAULT_COLLECTION):
        self.client = client
        self.store = store
        self.collection = collection

    async def ask(self, query: str, **generate_kwargs: Any) -> GatewayResult:
        key = cache_key(query)
        cached = await self.store.get(self.collection, key)
        if cached is not None:
            logger.debug("Cache hit for %r", normalize_query(query))
            return GatewayResult.from_dict(cached)

        result = await self.client.generate(query, **generate_kwargs)
        if result.complete:
            await self.store.set(
                self.collection,
                key,
                {**result.to_dict(), "query": normalize_query(query)},
            )
        return result
