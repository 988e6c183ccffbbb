"""
Prompt templates of the LLM-backed nodes.

Every template is a ``ChatPromptTemplate`` with a system and a human
message; ``build_*`` functions render them to ``(system, user)`` strings for
``LlmService``. The first line of each system prompt is its role line,
exported as ``*_ROLE``.
"""

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

from langchain_core.prompts import ChatPromptTemplate

from ..schemas.plan import ToolName
from ..schemas.schema import SchemaDTO

# Answer markers
ANALYSIS_REQUEST_MARKER = "需求类型：《数据分析》"
REQUEST_TYPE_PREFIX = "需求类型："
REQUEST_CONTENT_PREFIX = "需求内容："
CONSISTENCY_PASS_MARKER = "通过"
CONSISTENCY_FAIL_MARKER = "不通过"
SCHEMA_MISSING_MARKER = "[SCHEMA_MISSING]"
NO_EVIDENCE = "无"


def _render(template: ChatPromptTemplate, **variables: Any) -> Tuple[str, str]:
    messages = template.format_messages(**variables)
    system = "\n".join(m.content for m in messages if m.type == "system")
    user = "\n".join(m.content for m in messages if m.type == "human")
    return system, user


def format_schema(schema: Optional[SchemaDTO]) -> str:
    """Compact text form of the schema used in every SQL-related prompt."""
    if schema is None or schema.is_empty():
        return "(empty schema)"
    lines = [f"# Database: {schema.name}" if schema.name else "# Database"]
    for table in schema.tables:
        header = f"## {table.name}"
        if table.description:
            header += f": {table.description}"
        lines.append(header)
        if table.primary_keys:
            lines.append(f"primary key: {', '.join(table.primary_keys)}")
        for column in table.columns:
            line = f"- {column.name}"
            if column.type:
                line += f" ({column.type})"
            if column.description:
                line += f": {column.description}"
            if column.sample_values:
                line += f"; samples: {', '.join(column.sample_values[:5])}"
            lines.append(line)
    if schema.foreign_keys:
        lines.append("# Foreign keys")
        lines.extend(schema.foreign_keys)
    return "\n".join(lines)


def format_evidences(evidences: Sequence[str]) -> str:
    return ";\n".join(evidences) if evidences else NO_EVIDENCE


# --- QUERY REWRITE ---
QUERY_REWRITE_ROLE = "You are a requirements analyst for a data analysis assistant."
QUERY_REWRITE_SYSTEM_PROMPT = QUERY_REWRITE_ROLE + """
Classify the user's request and rewrite it as one standalone, unambiguous question.

**OUTPUT FORMAT (exactly two lines):**
需求类型：《数据分析》 | 《自由闲聊》 | 《需要澄清》
需求内容：<the rewritten question>

**RULES:**
- Use 《数据分析》 only when the request can be answered by querying business data.
- Resolve relative time expressions ("last month", "上月") into explicit wording.
- Keep every filter, metric and dimension the user mentioned. Do not invent new ones.
"""

_QUERY_REWRITE_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", QUERY_REWRITE_SYSTEM_PROMPT),
    ("human", "User request: {question}"),
])


def build_query_rewrite_prompt(question: str) -> Tuple[str, str]:
    return _render(_QUERY_REWRITE_TEMPLATE, question=question)


# --- QUERY EXPANSION ---
QUERY_EXPANSION_ROLE = "You expand a data question into alternative phrasings."
QUERY_EXPANSION_SYSTEM_PROMPT = QUERY_EXPANSION_ROLE + """
Write different phrasings of the same question, using synonyms a database might use
for the metrics and dimensions involved. Do not change the meaning.

Answer with a JSON array of strings only.
"""

_QUERY_EXPANSION_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", QUERY_EXPANSION_SYSTEM_PROMPT),
    ("human", "Question: {question}\nNumber of phrasings: {count}"),
])


def build_query_expansion_prompt(question: str, count: int) -> Tuple[str, str]:
    return _render(_QUERY_EXPANSION_TEMPLATE, question=question, count=count)


# --- KEYWORD EXTRACTION ---
KEYWORD_EXTRACTION_ROLE = "You extract search keywords from a data question."
KEYWORD_EXTRACTION_SYSTEM_PROMPT = KEYWORD_EXTRACTION_ROLE + """
List the business entities, metrics, dimensions, filter values and time expressions
needed to find the right tables and columns.

Answer with a JSON array of strings only.
"""

_KEYWORD_EXTRACTION_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", KEYWORD_EXTRACTION_SYSTEM_PROMPT),
    ("human", "Question: {question}\n\nBusiness knowledge:\n{evidence}\n\nMissing schema hints:\n{advice}"),
])


def build_keyword_extraction_prompt(question: str, evidences: Sequence[str],
                                    advice: str = "") -> Tuple[str, str]:
    return _render(
        _KEYWORD_EXTRACTION_TEMPLATE,
        question=question,
        evidence=format_evidences(evidences),
        advice=advice or NO_EVIDENCE,
    )


# --- TABLE SELECTION ---
TABLE_SELECTION_ROLE = "You are a database expert selecting the tables needed for a question."
TABLE_SELECTION_SYSTEM_PROMPT = TABLE_SELECTION_ROLE + """
Keep every table needed to answer the question, including tables only needed for joins.
Answer with a JSON array of table names only.
"""

_TABLE_SELECTION_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", TABLE_SELECTION_SYSTEM_PROMPT),
    ("human", "Question: {question}\n\nBusiness knowledge:\n{evidence}\n\nSchema:\n{schema}"),
])


def build_table_selection_prompt(question: str, evidences: Sequence[str],
                                 schema: SchemaDTO) -> Tuple[str, str]:
    return _render(
        _TABLE_SELECTION_TEMPLATE,
        question=question,
        evidence=format_evidences(evidences),
        schema=format_schema(schema),
    )


# --- PLANNER ---
PLANNER_ROLE = "You are a senior data analyst planning how to answer a business question."
PLANNER_SYSTEM_PROMPT = PLANNER_ROLE + """
Break the question into ordered steps. Each step uses exactly one tool:

- {sql_tool}: run one SELECT query. Put the query in "sql_query" and what it computes in "description".
- {python_tool}: analyse previous query results with Python. Put the task in "instruction" and
  the expected input in "input_data_description".
- {report_tool}: write the final report. Optional, only as the last step, with
  "summary_and_recommendations".

**OUTPUT (JSON only):**
{{
  "thought_process": "how the question will be answered",
  "execution_plan": [
    {{"step": 1, "tool_to_use": "{sql_tool}",
      "tool_parameters": {{"description": "...", "sql_query": "SELECT ..."}}}}
  ]
}}

**RULES:**
- Number steps from 1 without gaps.
- Only use tables and columns present in the schema.
- If reviewer feedback or a validation error is given, fix the plan accordingly.
"""

_PLANNER_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", PLANNER_SYSTEM_PROMPT),
    ("human",
     "Question: {question}\n\n"
     "Business knowledge:\n{evidence}\n\n"
     "Schema:\n{schema}\n\n"
     "Previous thoughts:\n{thinking}\n\n"
     "Reviewer feedback:\n{feedback}\n\n"
     "Validation error of the previous plan:\n{validation_error}"),
])

_PLANNER_REASK_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", PLANNER_SYSTEM_PROMPT),
    ("human",
     "Your previous answer could not be used as a plan.\n"
     "Error: {error}\n\nPrevious answer:\n{previous}\n\n"
     "Question: {question}\n\nSchema:\n{schema}\n\n"
     "Answer again with the JSON plan only."),
])


def build_planner_prompt(question: str, evidences: Sequence[str], schema: SchemaDTO,
                         thinking: str = "", feedback: Sequence[str] = (),
                         validation_error: str = "") -> Tuple[str, str]:
    return _render(
        _PLANNER_TEMPLATE,
        sql_tool=ToolName.SQL.value,
        python_tool=ToolName.PYTHON.value,
        report_tool=ToolName.REPORT.value,
        question=question,
        evidence=format_evidences(evidences),
        schema=format_schema(schema),
        thinking=thinking or NO_EVIDENCE,
        feedback="\n".join(feedback) if feedback else NO_EVIDENCE,
        validation_error=validation_error or NO_EVIDENCE,
    )


def build_planner_reask_prompt(question: str, schema: SchemaDTO,
                               previous: str, error: str) -> Tuple[str, str]:
    return _render(
        _PLANNER_REASK_TEMPLATE,
        sql_tool=ToolName.SQL.value,
        python_tool=ToolName.PYTHON.value,
        report_tool=ToolName.REPORT.value,
        question=question,
        schema=format_schema(schema),
        previous=previous,
        error=error,
    )


# --- SQL GENERATION ---
SQL_GENERATION_ROLE = "You are an expert SQL developer."
SQL_GENERATION_SYSTEM_PROMPT = SQL_GENERATION_ROLE + """
Write one read-only {dialect} SELECT statement answering the task, using only the schema given.

**RULES:**
- Answer with the SQL only, no explanation.
- Never select columns with *; filter with WHERE whenever the task implies a filter.
- If the schema lacks a table or column the task needs, answer
  "{schema_missing} <what is missing>" instead of SQL.
"""

_SQL_GENERATION_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", SQL_GENERATION_SYSTEM_PROMPT),
    ("human",
     "Question: {question}\n\nTask of this step: {description}\n\n"
     "Business knowledge:\n{evidence}\n\nSchema:\n{schema}"),
])

SQL_REPAIR_ROLE = "You are an expert SQL developer fixing a query."
SQL_REPAIR_SYSTEM_PROMPT = SQL_REPAIR_ROLE + """
The query below failed or does not match the task. Return an improved {dialect} SELECT statement.

**RULES:**
- Answer with the SQL only, no explanation.
- Address the reason given first; keep what was already correct.
- Never select columns with *; avoid comments, UNION tricks and data-modifying statements.
"""

_SQL_REPAIR_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", SQL_REPAIR_SYSTEM_PROMPT),
    ("human",
     "Optimization round: {round}\n\nQuestion: {question}\n\nTask of this step: {description}\n\n"
     "Current SQL:\n{sql}\n\nReason for revision:\n{reason}\n\n"
     "Business knowledge:\n{evidence}\n\nSchema:\n{schema}"),
])


def build_sql_generation_prompt(question: str, description: str, evidences: Sequence[str],
                                schema: SchemaDTO, dialect: str) -> Tuple[str, str]:
    return _render(
        _SQL_GENERATION_TEMPLATE,
        dialect=dialect,
        schema_missing=SCHEMA_MISSING_MARKER,
        question=question,
        description=description or question,
        evidence=format_evidences(evidences),
        schema=format_schema(schema),
    )


def build_sql_repair_prompt(sql: str, reason: str, round_no: int, question: str,
                            description: str, evidences: Sequence[str],
                            schema: SchemaDTO, dialect: str) -> Tuple[str, str]:
    return _render(
        _SQL_REPAIR_TEMPLATE,
        dialect=dialect,
        round=round_no,
        question=question,
        description=description or question,
        sql=sql,
        reason=reason or NO_EVIDENCE,
        evidence=format_evidences(evidences),
        schema=format_schema(schema),
    )


# --- SEMANTIC CONSISTENCY ---
SEMANTIC_CONSISTENCY_ROLE = "You review whether a SQL query does what its task says."
SEMANTIC_CONSISTENCY_SYSTEM_PROMPT = SEMANTIC_CONSISTENCY_ROLE + """
Check filters, aggregation level, joins, time ranges and selected metrics against the task.

**OUTPUT:**
- "通过" if the SQL matches the task.
- "不通过：<what is wrong and how to fix it>" otherwise.
"""

_SEMANTIC_CONSISTENCY_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", SEMANTIC_CONSISTENCY_SYSTEM_PROMPT),
    ("human",
     "Task: {description}\n\nSQL:\n{sql}\n\n"
     "Business knowledge:\n{evidence}\n\nSchema:\n{schema}"),
])


def build_semantic_consistency_prompt(sql: str, description: str, evidences: Sequence[str],
                                      schema: SchemaDTO) -> Tuple[str, str]:
    return _render(
        _SEMANTIC_CONSISTENCY_TEMPLATE,
        description=description,
        sql=sql,
        evidence=format_evidences(evidences),
        schema=format_schema(schema),
    )


# --- PYTHON ---
PYTHON_GENERATION_ROLE = "You are a Python data analyst."
PYTHON_GENERATION_SYSTEM_PROMPT = PYTHON_GENERATION_ROLE + """
Write a self-contained Python 3 script for the task.

**RUNTIME CONTRACT:**
- The input data is a JSON array of row objects on stdin: `json.load(sys.stdin)`.
- Print the results to stdout.
- Save charts as PNG files in the current directory.

Answer with the code only, in one ```python block.
"""

_PYTHON_GENERATION_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", PYTHON_GENERATION_SYSTEM_PROMPT),
    ("human",
     "Task: {instruction}\n\nInput description: {input_description}\n\n"
     "Sample rows:\n{sample}\n\nError of the previous attempt:\n{previous_error}"),
])

PYTHON_ANALYSIS_ROLE = "You summarise the output of a data analysis script."
PYTHON_ANALYSIS_SYSTEM_PROMPT = PYTHON_ANALYSIS_ROLE + """
State the findings relevant to the task in a few sentences, quoting the key numbers.
"""

_PYTHON_ANALYSIS_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", PYTHON_ANALYSIS_SYSTEM_PROMPT),
    ("human", "Task: {instruction}\n\nScript output:\n{output}"),
])


def build_python_generation_prompt(instruction: str, input_description: str,
                                   rows: List[Dict[str, Any]], previous_error: str = "") -> Tuple[str, str]:
    return _render(
        _PYTHON_GENERATION_TEMPLATE,
        instruction=instruction,
        input_description=input_description or NO_EVIDENCE,
        sample=json.dumps(rows[:5], ensure_ascii=False, default=str),
        previous_error=previous_error or NO_EVIDENCE,
    )


def build_python_analysis_prompt(instruction: str, output: str) -> Tuple[str, str]:
    return _render(_PYTHON_ANALYSIS_TEMPLATE, instruction=instruction, output=output)


# --- REPORT ---
REPORT_ROLE = "You write data analysis reports in Markdown."
REPORT_SYSTEM_PROMPT = REPORT_ROLE + """
Answer the user's requirement from the step results. Quote the figures the results contain,
present tabular data as Markdown tables and end with conclusions and recommendations.
Never invent numbers that are not in the results.
"""

_REPORT_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", REPORT_SYSTEM_PROMPT),
    ("human",
     "## User requirement\n{question}\n\n"
     "## Plan\nThought process: {thought_process}\n{steps}\n\n"
     "## Step results\n{results}\n\n"
     "## Summary hints\n{summary}"),
])


def build_report_prompt(question: str, thought_process: str, steps: str,
                        results: str, summary: str = "") -> Tuple[str, str]:
    return _render(
        _REPORT_TEMPLATE,
        question=question,
        thought_process=thought_process or NO_EVIDENCE,
        steps=steps,
        results=results or NO_EVIDENCE,
        summary=summary or NO_EVIDENCE,
    )
