from typing import Any, Optional

from langgraph.graph import END, StateGraph
from pydantic import BaseModel, ConfigDict

from ai_nodes import CoachNodes
from schemas import SafetyVerdict


class PipelineState(BaseModel):
    """
    State carried through one generation request.

    - kind: "quests" | "scripts" | "reset"
    - request: the validated request model for that kind
    - verdict: filled by the safety node
    - response: filled by either the intervene or the generate node
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    kind: str
    request: Any = None
    verdict: Optional[SafetyVerdict] = None
    response: Any = None


def route_after_safety(state: PipelineState) -> str:
    if state.verdict is not None and state.verdict.requires_intervention:
        return "intervene"
    return "generate"


def build_intervention_graph(nodes: CoachNodes):
    """
    Shared flow for every generation endpoint:

    1) safety     – keyword scan, classifier only on a match.
    2a) intervene – fixed supportive message, empty content (no generation).
    2b) generate  – model call with schema validation and fallback.
    """
    graph = StateGraph(PipelineState)

    graph.add_node("safety", nodes.safety_node)
    graph.add_node("intervene", nodes.intervene_node)
    graph.add_node("generate", nodes.generate_node)

    graph.set_entry_point("safety")

    graph.add_conditional_edges(
        "safety",
        route_after_safety,
        {"intervene": "intervene", "generate": "generate"},
    )
    graph.add_edge("intervene", END)
    graph.add_edge("generate", END)

    return graph.compile()


def run_pipeline(graph, kind: str, request) -> Any:
    result = graph.invoke({"kind": kind, "request": request})
    return result["response"]
