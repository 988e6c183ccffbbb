"""
Documents returned by the vector retrieval collaborator.
"""
from pydantic import BaseModel, Field
from typing import Any, Dict
from enum import Enum


class VectorType(str, Enum):
    """Kinds of documents stored in the vector index."""
    TABLE = "table"
    COLUMN = "column"
    BUSINESS_TERM = "business_term"
    AGENT_KNOWLEDGE = "agent_knowledge"


class RetrievedDocument(BaseModel):
    """
    A ranked document. Read-only for the workflow: rescoring works on a
    copy (``with_score``).
    """
    id: str
    text: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    score: float = 0.0

    def with_score(self, score: float) -> "RetrievedDocument":
        return self.model_copy(update={"score": score})
