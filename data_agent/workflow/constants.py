"""Node identifiers of the workflow graph."""

from enum import Enum

from langgraph.graph import END as GRAPH_END


class NodeName(str, Enum):
    QUERY_REWRITE = "QUERY_REWRITE_NODE"
    KEYWORD_EXTRACT = "KEYWORD_EXTRACT_NODE"
    SCHEMA_RECALL = "SCHEMA_RECALL_NODE"
    TABLE_RELATION = "TABLE_RELATION_NODE"
    PLANNER = "PLANNER_NODE"
    PLAN_EXECUTOR = "PLAN_EXECUTOR_NODE"
    SQL_GENERATE = "SQL_GENERATE_NODE"
    SQL_EXECUTE = "SQL_EXECUTE_NODE"
    SEMANTIC_CONSISTENCY = "SEMANTIC_CONSISTENCY_NODE"
    PYTHON_GENERATE = "PYTHON_GENERATE_NODE"
    PYTHON_EXECUTE = "PYTHON_EXECUTE_NODE"
    PYTHON_ANALYZE = "PYTHON_ANALYZE_NODE"
    REPORT_GENERATOR = "REPORT_GENERATOR_NODE"
    HUMAN_FEEDBACK = "HUMAN_FEEDBACK_NODE"
    END = GRAPH_END


START_NODE = NodeName.QUERY_REWRITE
