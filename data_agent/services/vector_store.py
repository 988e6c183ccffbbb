"""
Vector retrieval collaborator.

The workflow only needs ranked documents for a scope, a query, a document
type and a limit. ``HttpVectorStoreService`` fetches them from a retrieval
API::

    POST {RETRIEVAL_API_URL}/search
    {"scope_id": "1", "query": "...", "vector_type": "table", "top_k": 20,
     "filters": {"name": ["orders"]}}
    -> {"items": [{"id": "...", "text": "...", "metadata": {...}, "score": 0.8}]}
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from ..core.config import settings
from ..core.logging import get_logger
from ..schemas.documents import RetrievedDocument, VectorType
from ..workflow.errors import RetrievalError

logger = get_logger("services.vector_store")


class VectorStoreService(ABC):

    @abstractmethod
    async def search(
        self,
        scope_id: str,
        query: str,
        vector_type: VectorType,
        top_k: int,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[RetrievedDocument]:
        """
        Ranked documents of one type within a scope.

        Args:
            scope_id: Agent/tenant scope
            query: Text to match by similarity (may be empty for pure filter lookups)
            vector_type: Document type to return
            top_k: Maximum number of documents
            filters: Exact-match metadata filters, list values meaning "any of"

        Raises:
            RetrievalError: If the backend cannot be queried
        """


class HttpVectorStoreService(VectorStoreService):
    """Retrieval collaborator backed by an HTTP search API."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.retrieval_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.retrieval_timeout_seconds

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Any:
        clean_payload = {k: v for k, v in payload.items() if v is not None}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(f"{self.base_url}{endpoint}", json=clean_payload)
                response.raise_for_status()
                return response.json()
            except httpx.TimeoutException as e:
                raise RetrievalError(f"Retrieval timeout calling {endpoint}") from e
            except httpx.TransportError as e:
                raise RetrievalError(f"Retrieval connection error calling {endpoint}: {e}") from e
            except httpx.HTTPStatusError as e:
                raise RetrievalError(
                    f"Retrieval API returned {e.response.status_code} for {endpoint}"
                ) from e
            except ValueError as e:
                raise RetrievalError(f"Invalid JSON from retrieval API: {e}") from e

    async def search(self, scope_id, query, vector_type, top_k, filters=None):
        res = await self._post("/search", {
            "scope_id": scope_id,
            "query": query,
            "vector_type": VectorType(vector_type).value,
            "top_k": top_k,
            "filters": filters,
        })
        if not res or "items" not in res:
            return []
        documents = [RetrievedDocument.model_validate(item) for item in res["items"]]
        logger.debug(f"Retrieved {len(documents)} {VectorType(vector_type).value} documents")
        return documents
