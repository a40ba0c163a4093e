"""
State definitions for the LangGraph agent step loop.
"""

from typing import Any, Dict, List, Literal, Optional, TypedDict
from edit_worker.schemas import ModelTurn, ToolInvocation


LoopStatus = Literal["running", "done", "failed"]


class AgentState(TypedDict, total=False):
    """
    Typed state dictionary for the agent step loop.

    This state is passed between nodes and updated as the graph executes.
    """
    # User input
    prompt: str

    # Chat-completions context sent to the model each step
    context: List[Dict[str, Any]]

    # Current step
    turn: Optional[ModelTurn]
    invocations: List[ToolInvocation]

    # Counters
    steps: int
    tool_calls: int

    # Outputs
    response: str
    status: LoopStatus
    error: Optional[str]


def create_initial_state(prompt: str, system_prompt: str) -> AgentState:
    """
    Create the seed state: system prompt plus the user's request.

    Args:
        prompt: The user's edit request
        system_prompt: Tool descriptions and domain guidance

    Returns:
        Initialized AgentState
    """
    return AgentState(
        prompt=prompt,
        context=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ],
        turn=None,
        invocations=[],
        steps=0,
        tool_calls=0,
        response="",
        status="running",
        error=None,
    )
