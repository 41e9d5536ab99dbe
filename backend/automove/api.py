from fastapi import APIRouter, HTTPException
from typing import Dict, List
from .models import (
    ApplyResponse,
    EdgeState,
    GraphSnapshot,
    MoveRequest,
    MoveResponse,
    NodeState,
    Position,
    RuleSpec,
    RuleState,
    ToggleRequest,
)
from .engine import RuleHandle, destroy_all
from .errors import ConfigurationError
from .graph import Event, Graph, Node, SelectorError
from .graph_loader import GraphLoader, register_rule_spec
import os

router = APIRouter()

# Initialize graph loader, graph and rules
PACKS_DIR = os.environ.get(
    "AUTOMOVE_PACKS_DIR",
    os.path.join(os.path.dirname(__file__), "knowledge", "packs"),
)
loader = GraphLoader(PACKS_DIR)
loader.load_all()
graph: Graph = loader.build_graph()
handles: Dict[str, RuleHandle] = loader.register_rules(graph)
specs: Dict[str, RuleSpec] = {spec.id: spec for spec in loader.rules}


def _reload_engine_state():
    global graph, handles, specs
    # Build and register on a fresh graph; the running one is only replaced on success.
    loader.load_all()
    new_graph = loader.build_graph()
    try:
        new_handles = loader.register_rules(new_graph)
    except Exception:
        destroy_all(new_graph)
        raise
    destroy_all(graph)
    graph, handles = new_graph, new_handles
    specs = {spec.id: spec for spec in loader.rules}


def _get_handle(rule_id: str) -> RuleHandle:
    handle = handles.get(rule_id)
    if handle is None:
        raise HTTPException(status_code=404, detail=f"Rule not found: {rule_id}")
    return handle


def _rule_state(rule_id: str) -> RuleState:
    spec = specs[rule_id]
    return RuleState(
        id=rule_id,
        enabled=handles[rule_id].enabled,
        reposition=spec.reposition,
        when=spec.when,
        description=spec.description,
    )


def _snapshot() -> GraphSnapshot:
    return GraphSnapshot(
        nodes=[
            NodeState(id=node.id, position=node.position, classes=sorted(node.classes))
            for node in graph.nodes()
        ],
        edges=[
            EdgeState(id=edge.id, source=edge.source.id, target=edge.target.id)
            for edge in graph.edges()
        ],
        rules=[_rule_state(rule_id) for rule_id in handles],
    )


@router.get("/graph", response_model=GraphSnapshot)
async def get_graph():
    return _snapshot()


@router.post("/nodes/{node_id}/position", response_model=MoveResponse)
async def move_node(node_id: str, request: MoveRequest):
    node = graph.get_element_by_id(node_id)
    if not isinstance(node, Node):
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")

    automoved: List[str] = []

    def on_automove(event: Event):
        automoved.append(event.target.id)

    graph.on("automove", "node", on_automove)
    try:
        node.position = Position(x=request.x, y=request.y)
    finally:
        graph.off("automove", "node", on_automove)

    return MoveResponse(node_id=node_id, position=node.position, automoved=automoved)


@router.get("/rules", response_model=List[RuleState])
async def list_rules():
    return [_rule_state(rule_id) for rule_id in handles]


@router.post("/rules", response_model=RuleState)
async def create_rule(spec: RuleSpec):
    if spec.id in handles:
        raise HTTPException(status_code=409, detail=f"Duplicate rule ID: {spec.id}")
    try:
        handles[spec.id] = register_rule_spec(graph, spec)
    except (ConfigurationError, SelectorError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    specs[spec.id] = spec
    return _rule_state(spec.id)


@router.post("/rules/{rule_id}/apply", response_model=ApplyResponse)
async def apply_rule(rule_id: str):
    moved = _get_handle(rule_id).apply()
    return ApplyResponse(rule_id=rule_id, moved=[node.id for node in moved])


@router.post("/rules/{rule_id}/toggle", response_model=RuleState)
async def toggle_rule(rule_id: str, request: ToggleRequest = ToggleRequest()):
    _get_handle(rule_id).toggle(request.enabled)
    return _rule_state(rule_id)


@router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: str):
    _get_handle(rule_id).destroy()
    del handles[rule_id]
    del specs[rule_id]
    return {"status": "success", "rule_id": rule_id}


@router.delete("/rules")
async def delete_all_rules():
    count = len(handles)
    destroy_all(graph)
    handles.clear()
    specs.clear()
    return {"status": "success", "destroyed": count}


@router.post("/reload")
async def reload_graph():
    try:
        _reload_engine_state()
    except (ConfigurationError, SelectorError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", "node_count": len(graph.nodes()), "rule_count": len(handles)}
