"""Pytest configuration and fixtures"""
import asyncio
import json
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import pytest

# Keep the application's checkpoint database out of the working directory
os.environ.setdefault("CHECKPOINT_DB_PATH", ":memory:")

from fastapi.testclient import TestClient
from langgraph.checkpoint.memory import MemorySaver

from data_agent.api.graph import get_graph_service
from data_agent.core.config import Settings
from data_agent.main import app
from data_agent.schemas.documents import RetrievedDocument, VectorType
from data_agent.services.code_runner import CodeRunner, CodeRunResult
from data_agent.services.datasource_service import DatasourceConfig, DatasourceResolver
from data_agent.services.schema_service import SchemaService
from data_agent.services.sql_executor import ResultSet, SqlExecutor
from data_agent.services.vector_store import VectorStoreService
from data_agent.workflow import prompts
from data_agent.workflow.context import WorkflowServices
from data_agent.workflow.errors import LlmError
from data_agent.workflow.graph import WorkflowGraph, build_workflow_graph
from data_agent.workflow.service import GraphService


QUESTION = "上月华东区销售额"
REWRITTEN = "统计上个月华东区的销售额"
PLAN_SQL = "SELECT SUM(amount) AS total FROM orders WHERE region = '华东' AND order_date >= '2024-05-01'"
REPORT = "# 华东区销售报告\n\n上月华东区销售额为 12345.6。"


# =============================================================================
# FAKE COLLABORATORS
# =============================================================================

@dataclass
class LlmCall:
    role: str
    user: str
    system: str


class FakeLlm:
    """
    Scripted chat model keyed by the role line of the system prompt.

    A script is a string, a callable ``(user, system) -> str``, or a list
    consumed in order whose last entry repeats. Exceptions in a script are
    raised. Roles without a script fail with ``LlmError``.
    """

    def __init__(self, scripts: Dict[str, Any]):
        self.scripts = {role: list(s) if isinstance(s, list) else s for role, s in scripts.items()}
        self.calls: List[LlmCall] = []

    def _answer(self, user: str, system: Optional[str]) -> str:
        role = (system or "").splitlines()[0] if system else ""
        self.calls.append(LlmCall(role, user, system or ""))
        if role not in self.scripts:
            raise LlmError(f"LLM call failed: no scripted answer for '{role}'")
        script = self.scripts[role]
        if isinstance(script, list):
            answer = script.pop(0) if len(script) > 1 else script[0]
        elif callable(script):
            answer = script(user, system)
        else:
            answer = script
        if isinstance(answer, Exception):
            raise answer
        return answer

    def calls_for(self, role: str) -> List[LlmCall]:
        return [call for call in self.calls if call.role == role]

    async def call(self, user: str, system: Optional[str] = None) -> str:
        return self._answer(user, system)

    async def stream(self, user: str, system: Optional[str] = None):
        answer = self._answer(user, system)
        middle = len(answer) // 2
        for chunk in (answer[:middle], answer[middle:]):
            if chunk:
                yield chunk


class FakeVectorStore(VectorStoreService):
    """Returns the stored documents of a type, narrowed by metadata filters."""

    def __init__(self, documents: Optional[Dict[VectorType, List[RetrievedDocument]]] = None):
        self.documents = documents or {}
        self.searches: List[Dict[str, Any]] = []

    async def search(self, scope_id, query, vector_type, top_k, filters=None):
        self.searches.append({
            "scope_id": scope_id, "query": query, "vector_type": vector_type,
            "top_k": top_k, "filters": filters,
        })
        docs = self.documents.get(vector_type, [])
        for key, values in (filters or {}).items():
            docs = [doc for doc in docs if doc.metadata.get(key) in values]
        return list(docs)[:top_k]


class FakeSqlExecutor(SqlExecutor):
    """Answers every query with ``results`` (a list consumed in order, last repeats)."""

    def __init__(self, results: Optional[List[Any]] = None):
        self.results = list(results or [ResultSet(columns=["total"], rows=[[12345.6]])])
        self.executed: List[str] = []

    async def execute(self, datasource, sql):
        self.executed.append(sql)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeCodeRunner(CodeRunner):

    def __init__(self, results: Optional[List[CodeRunResult]] = None):
        self.results = list(results or [CodeRunResult(stdout="ok", success=True)])
        self.runs: List[Dict[str, str]] = []

    async def run(self, code, input_payload):
        self.runs.append({"code": code, "input": input_payload})
        return self.results.pop(0) if len(self.results) > 1 else self.results[0]


class FakeDatasourceResolver(DatasourceResolver):

    def __init__(self, datasource: Optional[DatasourceConfig]):
        self.datasource = datasource

    async def get_active_datasource(self, scope_id):
        return self.datasource


SALES_DATASOURCE = DatasourceConfig(name="sales", url="sqlite://", dialect="mysql")


def table_doc(name: str, score: float = 0.9, foreign_key: str = "", description: str = "") -> RetrievedDocument:
    metadata = {"name": name, "description": description or name, "primaryKey": "id"}
    if foreign_key:
        metadata["foreignKey"] = foreign_key
    return RetrievedDocument(id=f"table:{name}", text=description or name, metadata=metadata, score=score)


def column_doc(table: str, name: str, score: float = 0.8, type_: str = "varchar",
               description: str = "") -> RetrievedDocument:
    return RetrievedDocument(
        id=f"column:{table}.{name}",
        text=description or name,
        metadata={"name": name, "tableName": table, "type": type_, "description": description or name},
        score=score,
    )


def orders_documents() -> Dict[VectorType, List[RetrievedDocument]]:
    return {
        VectorType.TABLE: [table_doc("orders", 0.9, description="订单表")],
        VectorType.COLUMN: [
            column_doc("orders", "region", 0.9, description="销售大区"),
            column_doc("orders", "amount", 0.8, "decimal", "订单金额"),
            column_doc("orders", "order_date", 0.7, "date", "下单日期"),
        ],
        VectorType.BUSINESS_TERM: [
            RetrievedDocument(id="term:1", text="华东区: region = '华东'", score=0.9),
        ],
    }


def plan_answer(*steps: Dict[str, Any], thought: str = "先查询上月华东区订单金额总和，再生成报告") -> str:
    execution_plan = []
    for number, (tool, params) in enumerate(steps, start=1):
        execution_plan.append({"step": number, "tool_to_use": tool, "tool_parameters": params})
    return json.dumps({"thought_process": thought, "execution_plan": execution_plan}, ensure_ascii=False)


def sales_plan() -> str:
    return plan_answer(
        ("SQL_EXECUTE_NODE", {"description": "上月华东区销售额", "sql_query": PLAN_SQL}),
        ("REPORT_GENERATOR_NODE", {"summary_and_recommendations": "给出销售额"}),
    )


def happy_scripts(**overrides: Any) -> Dict[str, Any]:
    scripts = {
        prompts.QUERY_REWRITE_ROLE: f"需求类型：《数据分析》\n需求内容：{REWRITTEN}",
        prompts.KEYWORD_EXTRACTION_ROLE: '["销售额", "华东区", "上月"]',
        prompts.PLANNER_ROLE: sales_plan(),
        prompts.SEMANTIC_CONSISTENCY_ROLE: "通过",
        prompts.REPORT_ROLE: REPORT,
    }
    scripts.update(overrides)
    return scripts


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def test_settings():
    """Default policy constants, independent of the environment."""
    return Settings(query_expansion_variants=1, worker_pool_size=4)


@pytest.fixture
def make_services(test_settings):
    """Factory building ``WorkflowServices`` around fake collaborators."""
    def _make(llm: FakeLlm,
              vector_store: Optional[FakeVectorStore] = None,
              sql_executor: Optional[FakeSqlExecutor] = None,
              code_runner: Optional[FakeCodeRunner] = None,
              datasource: Optional[DatasourceConfig] = SALES_DATASOURCE,
              settings: Optional[Settings] = None) -> WorkflowServices:
        settings = settings or test_settings
        vector_store = vector_store or FakeVectorStore(orders_documents())
        return WorkflowServices(
            llm=llm,
            vector_store=vector_store,
            schema_service=SchemaService(vector_store, settings),
            datasources=FakeDatasourceResolver(datasource),
            sql_executor=sql_executor or FakeSqlExecutor(),
            code_runner=code_runner or FakeCodeRunner(),
            settings=settings,
        )
    return _make


@pytest.fixture
def make_workflow_graph(make_services):
    """Factory compiling the workflow on fake collaborators and an in-memory checkpointer."""
    def _make(llm: FakeLlm, checkpointer=None, **kwargs) -> WorkflowGraph:
        services = make_services(llm, **kwargs)
        return build_workflow_graph(services, checkpointer or MemorySaver())
    return _make


@pytest.fixture
def make_graph_service(make_workflow_graph):
    def _make(llm: FakeLlm, **kwargs) -> GraphService:
        return GraphService(make_workflow_graph(llm, **kwargs))
    return _make


@pytest.fixture
def collect_events():
    """Run ``start``/``resume`` on a fresh event loop and return every event."""
    def _collect(service_call: Callable[[], Any]) -> List[Any]:
        async def _run():
            return [event async for event in await service_call()]
        return asyncio.run(_run())
    return _collect


@pytest.fixture
def fake_llm():
    return FakeLlm(happy_scripts())


@pytest.fixture(scope="function")
def client(make_graph_service, fake_llm):
    """Create a test client whose graph service runs on fake collaborators"""
    service = make_graph_service(fake_llm)
    app.dependency_overrides[get_graph_service] = lambda: service
    with TestClient(app) as test_client:
        test_client.graph_service = service
        yield test_client
    app.dependency_overrides.clear()
