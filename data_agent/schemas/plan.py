"""
Pydantic models for the execution plan produced by the planner.

The LLM answers with snake_case JSON::

    {
      "thought_process": "...",
      "execution_plan": [
        {"step": 1, "tool_to_use": "SQL_EXECUTE_NODE",
         "tool_parameters": {"description": "...", "sql_query": "SELECT ..."}}
      ]
    }

Field aliases map that wire format onto the model attributes.
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional
from enum import Enum


class ToolName(str, Enum):
    """Execution nodes a plan step can be dispatched to."""
    SQL = "SQL_EXECUTE_NODE"
    PYTHON = "PYTHON_GENERATE_NODE"
    REPORT = "REPORT_GENERATOR_NODE"


class ToolParameters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instruction: Optional[str] = None
    sql_query: Optional[str] = None
    description: Optional[str] = None
    summary_and_recommendations: Optional[str] = None
    input_data_description: Optional[str] = None


class ExecutionStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step_number: int = Field(..., alias="step", ge=1)
    tool: str = Field(..., alias="tool_to_use")
    parameters: ToolParameters = Field(default_factory=ToolParameters, alias="tool_parameters")


class Plan(BaseModel):
    """
    Ordered steps of one planning round.

    ``execution_plan`` is consumed in ascending ``step_number`` order through
    the ``PLAN_CURRENT_STEP`` cursor (1-indexed).
    """
    model_config = ConfigDict(populate_by_name=True)

    thought_process: str = ""
    execution_plan: List[ExecutionStep] = Field(default_factory=list)

    def step_at(self, cursor: int) -> Optional[ExecutionStep]:
        if 1 <= cursor <= len(self.execution_plan):
            return self.execution_plan[cursor - 1]
        return None

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
