"""
Pydantic models for the database schema handed to the SQL generator.

The schema is assembled from retrieved table/column documents by
``services.schema_service``. Foreign keys are kept as flat
``"table.column=table.column"`` strings.
"""
from pydantic import BaseModel, Field
from typing import List, Optional


class ColumnDTO(BaseModel):
    """A column of a recalled table, with optional sample values."""
    name: str
    description: Optional[str] = None
    type: Optional[str] = None
    primary: bool = False
    sample_values: List[str] = Field(default_factory=list)


class TableDTO(BaseModel):
    """A recalled table with the columns selected for it."""
    name: str
    description: Optional[str] = None
    primary_keys: List[str] = Field(default_factory=list)
    columns: List[ColumnDTO] = Field(default_factory=list)


class SchemaDTO(BaseModel):
    """
    Schema of the active datasource as seen by the LLM.

    Attributes:
        name: Datasource / database name
        tables: Recalled tables (after foreign-key closure)
        foreign_keys: Deduplicated ``"a.x=b.y"`` relation strings
    """
    name: str = ""
    tables: List[TableDTO] = Field(default_factory=list)
    foreign_keys: List[str] = Field(default_factory=list)

    def table_names(self) -> List[str]:
        return [table.name for table in self.tables]

    def is_empty(self) -> bool:
        return not self.tables
