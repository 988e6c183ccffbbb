"""Tests for the durable checkpointer"""
import asyncio

from conftest import QUESTION, REPORT, FakeLlm, happy_scripts

from data_agent.schemas.graph import GraphResumeRequest, GraphStartRequest, StreamEventType
from data_agent.workflow import prompts
from data_agent.workflow.checkpoint import open_checkpointer, thread_config
from data_agent.workflow.constants import NodeName
from data_agent.workflow.state import INPUT_KEY, PLANNER_NODE_OUTPUT

SESSION = "durable-1"


def test_thread_config_uses_session_as_thread():
    assert thread_config("s-1") == {"configurable": {"thread_id": "s-1"}}


def test_suspended_session_survives_restart(tmp_path, make_graph_service):
    path = str(tmp_path / "checkpoints.sqlite")
    request = GraphStartRequest(query=QUESTION, scope_id="1", session_id=SESSION, human_review_enabled=True)

    async def before_restart():
        async with open_checkpointer(path) as checkpointer:
            service = make_graph_service(FakeLlm(happy_scripts()), checkpointer=checkpointer)
            return [event async for event in await service.start(request)]

    async def after_restart(llm):
        async with open_checkpointer(path) as checkpointer:
            service = make_graph_service(llm, checkpointer=checkpointer)
            checkpoint = await service.get_checkpoint(SESSION)
            events = [event async for event in await service.resume(
                GraphResumeRequest(session_id=SESSION, approved=True)
            )]
            return checkpoint, events, await service.get_checkpoint(SESSION)

    events = asyncio.run(before_restart())
    assert events[-1].type is StreamEventType.COMPLETE

    llm = FakeLlm(happy_scripts())
    checkpoint, events, remaining = asyncio.run(after_restart(llm))

    assert checkpoint.current_node is NodeName.HUMAN_FEEDBACK
    assert checkpoint.state[INPUT_KEY] == QUESTION
    assert checkpoint.state[PLANNER_NODE_OUTPUT]["execution_plan"][0]["tool_to_use"] == "SQL_EXECUTE_NODE"
    assert events[-1].type is StreamEventType.COMPLETE
    assert events[-1].payload == REPORT
    # The plan came from the checkpoint, nothing before review runs again
    assert llm.calls_for(prompts.PLANNER_ROLE) == []
    assert llm.calls_for(prompts.QUERY_REWRITE_ROLE) == []
    assert remaining is None


def test_unknown_session_has_no_checkpoint(tmp_path, make_graph_service):
    async def lookup():
        async with open_checkpointer(str(tmp_path / "checkpoints.sqlite")) as checkpointer:
            service = make_graph_service(FakeLlm(happy_scripts()), checkpointer=checkpointer)
            return await service.get_checkpoint("missing")

    assert asyncio.run(lookup()) is None
