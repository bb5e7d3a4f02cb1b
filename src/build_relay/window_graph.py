"""LangGraph wrapper for one window - trace harness only.

Wraps the WindowDriver steps in a LangGraph StateGraph so each phase run is
visible as a node in LangGraph Studio.

NO new orchestration logic. Same semantics as window.run_window.
"""

import logging
from typing import Any, Optional
from typing_extensions import TypedDict

from langgraph.graph import StateGraph, END

from build_relay.window import WindowDriver, WindowResult, create_driver

logger = logging.getLogger(__name__)


class WindowGraphState(TypedDict):
    """State for the window graph."""
    phase: Optional[str]
    finished: bool
    error: Optional[BaseException]
    # Driver reference (passed through state)
    driver: Any


# --- Graph Nodes ---

def node_restore(state: WindowGraphState) -> WindowGraphState:
    """Restore the checkpoint and load the phase."""
    driver: WindowDriver = state["driver"]
    phase = driver.restore()
    return {**state, "phase": phase.value}


def node_run_phase(state: WindowGraphState) -> WindowGraphState:
    """Run the current phase under the supervisor."""
    driver: WindowDriver = state["driver"]
    try:
        driver.run_phase()
    except Exception as e:
        logger.error("Phase stopped on an error: %s", e)
        driver.record_error(e)
        return {**state, "error": e}
    return {**state, "phase": driver.machine.current_phase().value}


def node_finalize(state: WindowGraphState) -> WindowGraphState:
    """Report finished, or upload a checkpoint."""
    driver: WindowDriver = state["driver"]
    result = driver.finalize()
    return {**state, "finished": result.finished}


# --- Conditional Edges ---

def should_run_phase(state: WindowGraphState) -> str:
    """Run another phase while the window is not stopped and not done."""
    driver: WindowDriver = state["driver"]
    if driver.should_continue():
        return "run_phase"
    return "finalize"


# --- Graph Builder ---

def build_window_graph() -> StateGraph:
    """
    Build the window graph.

    Flow:
        restore -> (phase left?) -> run_phase -> (phase left?) -> run_phase ...
                -> (stopped or done?) -> finalize -> end
    """
    graph = StateGraph(WindowGraphState)

    graph.add_node("restore", node_restore)
    graph.add_node("run_phase", node_run_phase)
    graph.add_node("finalize", node_finalize)

    graph.set_entry_point("restore")

    route = {"run_phase": "run_phase", "finalize": "finalize"}
    graph.add_conditional_edges("restore", should_run_phase, route)
    graph.add_conditional_edges("run_phase", should_run_phase, route)
    graph.add_edge("finalize", END)

    return graph


def run_window_graph(config, finished: bool, from_checkpoint: bool, **collaborators) -> WindowResult:
    """
    Run one window through the graph.

    This is the traced equivalent of run_window(); it accepts the same
    collaborators and raises the same errors.
    """
    if finished:
        logger.info("Previous window finished the build, nothing to do")
        return WindowResult(finished=True)

    driver = create_driver(config, from_checkpoint, **collaborators)
    compiled = build_window_graph().compile()

    initial_state: WindowGraphState = {
        "phase": None,
        "finished": False,
        "error": None,
        "driver": driver,
    }

    final_state = compiled.invoke(initial_state)

    if final_state.get("error") is not None:
        raise final_state["error"]
    return driver.result
