"""
Schema nodes: recall of table/column documents and relation building.
"""

from typing import Dict

from ...schemas.schema import SchemaDTO
from ..context import NodeContext
from ..errors import CollaboratorError, ErrorKind, classify_error
from ..json_utils import parse_json_response
from .. import prompts
from ..state import (
    COLUMN_DOCUMENTS_BY_KEYWORDS_OUTPUT, EVIDENCES, KEYWORD_EXTRACT_NODE_OUTPUT, SCOPE_ID,
    TABLE_DOCUMENTS_FOR_SCHEMA_OUTPUT, TABLE_RELATION_ERROR_KIND, TABLE_RELATION_EXCEPTION_OUTPUT,
    TABLE_RELATION_OUTPUT, TABLE_RELATION_RETRY_COUNT, WORKFLOW_ERROR, SharedState,
)
from .common import canonical_query, dump_documents, load_documents

NO_ACTIVE_DATASOURCE_MESSAGE = "No active datasource is configured for this agent, the query cannot continue."
NO_TABLES_MESSAGE = "No table related to the question was found, please rephrase or check the schema."


async def schema_recall_node(state: SharedState, ctx: NodeContext) -> Dict:
    ctx.logger.info("▶️ NODE START")
    scope_id = state.get(SCOPE_ID)
    empty = {TABLE_DOCUMENTS_FOR_SCHEMA_OUTPUT: [], COLUMN_DOCUMENTS_BY_KEYWORDS_OUTPUT: []}

    datasource = await ctx.services.datasources.get_active_datasource(scope_id)
    if datasource is None:
        ctx.logger.warning(f"No active datasource for scope {scope_id}")
        ctx.emit(NO_ACTIVE_DATASOURCE_MESSAGE)
        return {**empty, WORKFLOW_ERROR: NO_ACTIVE_DATASOURCE_MESSAGE}

    query = canonical_query(state)
    keywords = state.get_or_default(KEYWORD_EXTRACT_NODE_OUTPUT)
    search_text = " ".join([query] + keywords) if keywords else query
    ctx.emit("Recalling tables...\n")
    try:
        table_docs = await ctx.services.schema_service.get_table_documents(scope_id, search_text)
        table_names = [doc.metadata.get("name") for doc in table_docs if doc.metadata.get("name")]
        if not table_names:
            ctx.emit(NO_TABLES_MESSAGE)
            return {**empty, WORKFLOW_ERROR: NO_TABLES_MESSAGE}
        column_docs = await ctx.services.schema_service.get_column_documents_by_table_names(
            scope_id, search_text, table_names
        )
    except CollaboratorError as e:
        ctx.logger.error(f"❌ Schema recall failed: {e}")
        message = "The schema could not be retrieved, please try again later."
        ctx.emit(message)
        return {**empty, WORKFLOW_ERROR: message}

    ctx.emit(f"Recalled tables: {', '.join(table_names)}\n")
    ctx.logger.info(f"Recalled {len(table_docs)} tables and {len(column_docs)} columns")
    return {
        TABLE_DOCUMENTS_FOR_SCHEMA_OUTPUT: dump_documents(table_docs),
        COLUMN_DOCUMENTS_BY_KEYWORDS_OUTPUT: dump_documents(column_docs),
    }


async def _fine_select(ctx: NodeContext, schema: SchemaDTO, question: str, evidences) -> SchemaDTO:
    """Narrow the schema to the tables the LLM selects; keep it whole on any doubt."""
    if len(schema.tables) <= 1:
        return schema
    system, user = prompts.build_table_selection_prompt(question, evidences, schema)
    try:
        selected = parse_json_response(await ctx.services.llm.call(user, system))
    except CollaboratorError as e:
        ctx.logger.warning(f"⚠️ Table selection failed, keeping all tables: {e}")
        return schema
    if not isinstance(selected, list):
        return schema
    names = {str(name) for name in selected}
    tables = [table for table in schema.tables if table.name in names]
    if not tables:
        return schema
    kept = {table.name for table in tables}
    foreign_keys = [
        fk for fk in schema.foreign_keys
        if all(side.rsplit(".", 1)[0] in kept for side in fk.split("=", 1))
    ]
    return SchemaDTO(name=schema.name, tables=tables, foreign_keys=foreign_keys)


async def table_relation_node(state: SharedState, ctx: NodeContext) -> Dict:
    """
    Build the schema from the recalled documents.

    Failures are recorded in ``TABLE_RELATION_EXCEPTION_OUTPUT`` with their
    kind; retryable ones are retried by the dispatcher.
    """
    ctx.logger.info("▶️ NODE START")
    scope_id = state.get(SCOPE_ID)
    retry_count = state.get_or_default(TABLE_RELATION_RETRY_COUNT)
    query = canonical_query(state)
    evidences = state.get_or_default(EVIDENCES)

    try:
        datasource = await ctx.services.datasources.get_active_datasource(scope_id)
        schema = await ctx.services.schema_service.build_schema(
            scope_id,
            query,
            load_documents(state, TABLE_DOCUMENTS_FOR_SCHEMA_OUTPUT),
            load_documents(state, COLUMN_DOCUMENTS_BY_KEYWORDS_OUTPUT),
            datasource.name if datasource else "",
        )
    except CollaboratorError as e:
        kind = classify_error(e)
        retry_count += 1
        terminal = kind is ErrorKind.NON_RETRYABLE or retry_count >= ctx.settings.table_relation_max_retries
        ctx.logger.error(f"❌ Table relation failed ({kind.value}, attempt {retry_count}): {e}")
        delta = {
            TABLE_RELATION_EXCEPTION_OUTPUT: f"{kind.value}: {e}",
            TABLE_RELATION_ERROR_KIND: kind.value,
            TABLE_RELATION_RETRY_COUNT: retry_count,
        }
        if terminal:
            message = "Table relations could not be resolved, please try again later."
            ctx.emit(message)
            delta[WORKFLOW_ERROR] = message
        else:
            ctx.emit(f"Table relation lookup failed, retrying ({retry_count})...\n")
        return delta

    if schema.is_empty():
        ctx.emit(NO_TABLES_MESSAGE)
        return {
            TABLE_RELATION_EXCEPTION_OUTPUT: f"{ErrorKind.NON_RETRYABLE.value}: empty schema",
            TABLE_RELATION_ERROR_KIND: ErrorKind.NON_RETRYABLE.value,
            TABLE_RELATION_RETRY_COUNT: retry_count,
            WORKFLOW_ERROR: NO_TABLES_MESSAGE,
        }

    schema = await _fine_select(ctx, schema, query, evidences)
    ctx.emit(f"Tables selected: {', '.join(schema.table_names())}\n")
    if schema.foreign_keys:
        ctx.emit(f"Relations: {'; '.join(schema.foreign_keys)}\n")
    return {
        TABLE_RELATION_OUTPUT: schema.model_dump(),
        TABLE_RELATION_EXCEPTION_OUTPUT: "",
        TABLE_RELATION_ERROR_KIND: "",
        TABLE_RELATION_RETRY_COUNT: 0,
    }
