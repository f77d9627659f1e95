from typing import Any, Mapping, Optional

from langgraph.graph import END, StateGraph

from loincfix.engine.pipeline import ValidationEngine
from loincfix.engine.state import BatchState
from loincfix.kb.kb_api import KnowledgeBase

from .inference_agent import inference_node, route_after_inference
from .ingest_agent import ingest_node
from .report_agent import report_node
from .suggestion_agent import suggestion_node
from .validator_agent import validator_node


def route_after_validation(state: BatchState) -> str:
    if state.errors:
        return "to_end"
    return "to_report"


def create_graph(kb: KnowledgeBase, options: Optional[Mapping[str, Any]] = None):
    """Creates the batch validation graph; the knowledge base is shared by every node."""
    engine = ValidationEngine(kb, options)
    workflow = StateGraph(BatchState)

    # Define the nodes
    workflow.add_node("ingest", ingest_node)
    workflow.add_node("infer", lambda s: inference_node(s, engine))
    workflow.add_node("suggest", lambda s: suggestion_node(s, engine))
    workflow.add_node("validate", validator_node)
    workflow.add_node("report", report_node)

    workflow.set_entry_point("ingest")
    workflow.add_edge("ingest", "infer")
    workflow.add_conditional_edges(
        "infer",
        route_after_inference,
        {
            "to_suggest": "suggest",
            "to_validator": "validate",
        },
    )
    workflow.add_edge("suggest", "validate")
    workflow.add_conditional_edges(
        "validate",
        route_after_validation,
        {
            "to_report": "report",
            "to_end": END,
        },
    )
    workflow.add_edge("report", END)

    app = workflow.compile()
    return app
