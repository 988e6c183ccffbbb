"""
Schema recall and relation building.

Turns retrieved table/column documents into the ``SchemaDTO`` given to the
SQL generator:

1. Table documents are recalled by similarity to the question.
2. Column documents are recalled for those tables only.
3. Tables referenced by a foreign key but not recalled are fetched by
   name, together with their columns (foreign-key closure).
4. Columns are re-scored by their table's score and picked round-robin
   across tables up to a global cap, so that one wide table cannot crowd
   out the others.
5. The schema is assembled with a deduplicated foreign-key list.

Document metadata conventions:

- table: ``name``, ``description``, ``primaryKey`` (list or comma separated
  string), ``foreignKey`` (``"a.x=b.y"`` relations joined by ``、``)
- column: ``name``, ``tableName``, ``description``, ``type``, ``primary``,
  ``samples`` (JSON encoded list of sample values)
"""

import json
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..core.config import Settings, settings as default_settings
from ..core.logging import get_logger
from ..schemas.documents import RetrievedDocument, VectorType
from ..schemas.schema import ColumnDTO, SchemaDTO, TableDTO
from .vector_store import VectorStoreService

logger = get_logger("services.schema")

FOREIGN_KEY_DELIMITER = "、"


def split_foreign_keys(value: Optional[str]) -> List[str]:
    """``"a.x=b.y、a.z=c.w"`` -> ``["a.x=b.y", "a.z=c.w"]``"""
    if not value:
        return []
    return [part.strip() for part in str(value).split(FOREIGN_KEY_DELIMITER) if part.strip()]


def _table_of(qualified_column: str) -> Optional[str]:
    parts = qualified_column.strip().rsplit(".", 1)
    if len(parts) != 2 or not parts[0]:
        return None
    return parts[0]


def related_table_names(table_docs: Iterable[RetrievedDocument]) -> Set[str]:
    """Every table named on either side of a foreign key of the given tables."""
    names: Set[str] = set()
    for doc in table_docs:
        for relation in split_foreign_keys(doc.metadata.get("foreignKey")):
            for side in relation.split("=", 1):
                table = _table_of(side)
                if table:
                    names.add(table)
    return names


def missing_table_names(table_docs: List[RetrievedDocument]) -> Set[str]:
    present = {doc.metadata.get("name") for doc in table_docs}
    return {name for name in related_table_names(table_docs) if name not in present}


def merge_documents(existing: List[RetrievedDocument],
                    extra: Iterable[RetrievedDocument]) -> List[RetrievedDocument]:
    """Append ``extra`` to ``existing`` skipping ids already present."""
    seen = {doc.id for doc in existing}
    merged = list(existing)
    for doc in extra:
        if doc.id not in seen:
            seen.add(doc.id)
            merged.append(doc)
    return merged


def reweight_columns(table_docs: List[RetrievedDocument],
                     column_docs: List[RetrievedDocument]) -> List[RetrievedDocument]:
    """
    Multiply each column's score by its table's score.

    Columns whose table is not among ``table_docs`` are dropped. The result
    is sorted by descending score; the source documents are not modified.
    """
    table_scores = {doc.metadata.get("name"): doc.score for doc in table_docs}
    weighted = [
        column.with_score(column.score * table_scores[column.metadata.get("tableName")])
        for column in column_docs
        if column.metadata.get("tableName") in table_scores
    ]
    return sorted(weighted, key=lambda doc: doc.score, reverse=True)


def round_robin_select(column_docs: List[RetrievedDocument], max_columns: int) -> List[RetrievedDocument]:
    """
    Pick columns table by table: in round r take the r-th best column of
    every table in turn, until ``max_columns`` columns are selected.

    Tables are visited in the order of their best column.
    """
    by_table: Dict[str, List[RetrievedDocument]] = {}
    for column in sorted(column_docs, key=lambda doc: doc.score, reverse=True):
        by_table.setdefault(column.metadata.get("tableName"), []).append(column)

    selected: List[RetrievedDocument] = []
    seen: Set[str] = set()
    rounds = max((len(columns) for columns in by_table.values()), default=0)
    for r in range(rounds):
        for columns in by_table.values():
            if len(selected) >= max_columns:
                return selected
            if r < len(columns) and columns[r].id not in seen:
                seen.add(columns[r].id)
                selected.append(columns[r])
    return selected


def _parse_samples(raw) -> List[str]:
    if not raw:
        return []
    if isinstance(raw, list):
        return [str(v) for v in raw]
    try:
        values = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [str(v) for v in values] if isinstance(values, list) else []


def _primary_keys(raw) -> List[str]:
    if not raw:
        return []
    if isinstance(raw, list):
        return [str(v) for v in raw]
    return [part.strip() for part in str(raw).split(",") if part.strip()]


def assemble_schema(name: str, table_docs: List[RetrievedDocument],
                    column_docs: List[RetrievedDocument]) -> SchemaDTO:
    """Build the schema; columns keep the order in which they were selected."""
    tables: Dict[str, TableDTO] = {}
    foreign_keys: Dict[str, None] = {}
    for doc in table_docs:
        table_name = doc.metadata.get("name")
        if not table_name or table_name in tables:
            continue
        tables[table_name] = TableDTO(
            name=table_name,
            description=doc.metadata.get("description") or doc.text or None,
            primary_keys=_primary_keys(doc.metadata.get("primaryKey")),
        )
        for relation in split_foreign_keys(doc.metadata.get("foreignKey")):
            foreign_keys.setdefault(relation, None)

    for doc in column_docs:
        table = tables.get(doc.metadata.get("tableName"))
        if table is None:
            continue
        table.columns.append(ColumnDTO(
            name=doc.metadata.get("name", ""),
            description=doc.metadata.get("description"),
            type=doc.metadata.get("type"),
            primary=bool(doc.metadata.get("primary", False)),
            sample_values=_parse_samples(doc.metadata.get("samples")),
        ))

    return SchemaDTO(name=name, tables=list(tables.values()), foreign_keys=list(foreign_keys))


class SchemaService:
    """
    Recalls table/column documents and builds the schema of a question.

    Example:
        ```python
        service = SchemaService(HttpVectorStoreService())
        tables = await service.get_table_documents("1", "上月华东区销售额")
        columns = await service.get_column_documents_by_table_names("1", query, ["orders"])
        schema = await service.build_schema("1", query, tables, columns, "sales")
        ```
    """

    def __init__(self, vector_store: VectorStoreService, settings: Optional[Settings] = None):
        self.vector_store = vector_store
        self.settings = settings or default_settings

    async def get_table_documents(self, scope_id: str, query: str) -> List[RetrievedDocument]:
        return await self.vector_store.search(
            scope_id, query, VectorType.TABLE, self.settings.table_top_k
        )

    async def get_column_documents_by_table_names(
        self, scope_id: str, query: str, table_names: List[str]
    ) -> List[RetrievedDocument]:
        if not table_names:
            return []
        top_k = len(table_names) * self.settings.max_columns_per_table
        return await self.vector_store.search(
            scope_id, query, VectorType.COLUMN, top_k, filters={"tableName": list(table_names)}
        )

    async def get_table_documents_by_names(self, scope_id: str,
                                           table_names: List[str]) -> List[RetrievedDocument]:
        if not table_names:
            return []
        return await self.vector_store.search(
            scope_id, "", VectorType.TABLE, len(table_names), filters={"name": list(table_names)}
        )

    async def expand_foreign_key_closure(
        self,
        scope_id: str,
        query: str,
        table_docs: List[RetrievedDocument],
        column_docs: List[RetrievedDocument],
    ) -> Tuple[List[RetrievedDocument], List[RetrievedDocument]]:
        """
        Fetch tables referenced by foreign keys but absent from ``table_docs``.

        A name is looked up at most once per call, and at most
        ``foreign_key_max_passes`` passes are made. Running the expansion on
        its own output adds nothing.
        """
        attempted: Set[str] = set()
        for _ in range(self.settings.foreign_key_max_passes):
            missing = sorted(missing_table_names(table_docs) - attempted)
            if not missing:
                break
            attempted.update(missing)
            logger.info(f"Expanding foreign-key closure with tables: {missing}")

            fetched = [
                doc for doc in await self.get_table_documents_by_names(scope_id, missing)
                if doc.metadata.get("name") in missing
            ]
            table_docs = merge_documents(table_docs, fetched)
            fetched_names = [doc.metadata.get("name") for doc in fetched]
            if fetched_names:
                fetched_columns = await self.get_column_documents_by_table_names(
                    scope_id, query, fetched_names
                )
                column_docs = merge_documents(column_docs, fetched_columns)
        return table_docs, column_docs

    async def build_schema(
        self,
        scope_id: str,
        query: str,
        table_docs: List[RetrievedDocument],
        column_docs: List[RetrievedDocument],
        datasource_name: str = "",
    ) -> SchemaDTO:
        """Closure expansion, column selection and assembly in one call."""
        table_docs, column_docs = await self.expand_foreign_key_closure(
            scope_id, query, table_docs, column_docs
        )
        weighted = reweight_columns(table_docs, column_docs)
        selected = round_robin_select(weighted, self.settings.max_columns)
        schema = assemble_schema(datasource_name, table_docs, selected)
        logger.info(
            f"Schema built: {len(schema.tables)} tables, "
            f"{sum(len(t.columns) for t in schema.tables)} columns, "
            f"{len(schema.foreign_keys)} foreign keys"
        )
        return schema
