"""In-memory graph model that automove rules run against.

The graph owns nodes, edges, positions, the viewport and event dispatch.
Rules only talk to it through the small surface below: element queries,
neighborhood traversal, position get/set, selector matching, on/off/emit,
a per-instance scratch slot and a batch() context.
"""

import contextlib
import functools
import itertools
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .models import BoundingBox, Position, Viewport

logger = logging.getLogger(__name__)

Listener = Callable[["Event"], None]


class SelectorError(ValueError):
    pass


# ---------------------------------------------------------------------------
# Selectors
# ---------------------------------------------------------------------------

_GROUP_RE = re.compile(r"\s*(node|edge|\*)")
_PART_RE = re.compile(
    r"#(?P<id>[\w-]+)"
    r"|\.(?P<cls>[\w-]+)"
    r"|\[\s*(?P<key>\w+)\s*(?:(?P<op>!=|>=|<=|=|>|<)\s*(?P<value>\"[^\"]*\"|'[^']*'|[^\]\s]+)\s*)?\]"
    r"|:(?P<pseudo>\w+)"
)
_PSEUDOS = {"locked", "unlocked", "parent", "childless"}


def _coerce_value(raw: str) -> Any:
    if raw[:1] in {'"', "'"}:
        return raw[1:-1]
    if raw in {"true", "false"}:
        return raw == "true"
    try:
        return float(raw)
    except ValueError:
        return raw


def _compare(actual: Any, op: str, expected: Any) -> bool:
    if isinstance(expected, float) and isinstance(actual, (int, float)) and not isinstance(actual, bool):
        actual = float(actual)
    if op == "=":
        return actual == expected
    if op == "!=":
        return actual != expected
    if not isinstance(actual, (int, float)) or not isinstance(expected, float):
        return False
    if op == ">":
        return actual > expected
    if op == ">=":
        return actual >= expected
    if op == "<":
        return actual < expected
    return actual <= expected


@dataclass
class _Clause:
    group: Optional[str] = None
    ids: List[str] = field(default_factory=list)
    classes: List[str] = field(default_factory=list)
    attrs: List[Tuple[str, Optional[str], Any]] = field(default_factory=list)
    pseudos: List[str] = field(default_factory=list)

    def matches(self, ele: "Element") -> bool:
        if self.group is not None and self.group != ele.group:
            return False
        if any(ele.id != ele_id for ele_id in self.ids):
            return False
        if any(cls not in ele.classes for cls in self.classes):
            return False
        for key, op, value in self.attrs:
            actual = ele.data.get(key)
            if op is None:
                if actual is None:
                    return False
            elif not _compare(actual, op, value):
                return False
        for pseudo in self.pseudos:
            if not ele.is_node:
                return False
            if pseudo == "locked" and not ele.locked:
                return False
            if pseudo == "unlocked" and ele.locked:
                return False
            if pseudo == "parent" and not ele.children():
                return False
            if pseudo == "childless" and ele.children():
                return False
        return True


class CompiledSelector:
    def __init__(self, text: str, clauses: List[_Clause]):
        self.text = text
        self.clauses = clauses

    def matches(self, ele: "Element") -> bool:
        return any(clause.matches(ele) for clause in self.clauses)

    def __repr__(self) -> str:
        return f"CompiledSelector({self.text!r})"


def _parse_clause(text: str, source: str) -> _Clause:
    clause = _Clause()
    pos = 0
    group_match = _GROUP_RE.match(text)
    if group_match:
        group = group_match.group(1)
        clause.group = None if group == "*" else group
        pos = group_match.end()

    while pos < len(text):
        match = _PART_RE.match(text, pos)
        if not match:
            raise SelectorError(f"Invalid selector {source!r} near {text[pos:]!r}")
        if match.group("id"):
            clause.ids.append(match.group("id"))
        elif match.group("cls"):
            clause.classes.append(match.group("cls"))
        elif match.group("key"):
            raw = match.group("value")
            value = _coerce_value(raw) if raw is not None else None
            clause.attrs.append((match.group("key"), match.group("op"), value))
        else:
            pseudo = match.group("pseudo")
            if pseudo not in _PSEUDOS:
                raise SelectorError(f"Unknown pseudo-class :{pseudo} in selector {source!r}")
            clause.pseudos.append(pseudo)
        pos = match.end()
    return clause


@functools.lru_cache(maxsize=256)
def parse_selector(text: str) -> CompiledSelector:
    if not isinstance(text, str) or not text.strip():
        raise SelectorError(f"Invalid selector {text!r}")
    clauses = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            raise SelectorError(f"Invalid selector {text!r}: empty alternative")
        clauses.append(_parse_clause(part, text))
    return CompiledSelector(text, clauses)


# ---------------------------------------------------------------------------
# Elements
# ---------------------------------------------------------------------------

@dataclass
class Event:
    type: str
    target: "Element"
    graph: "Graph"


class Element:
    group = ""

    def __init__(self, graph: "Graph", ele_id: str, data: Optional[Dict[str, Any]] = None,
                 classes: Iterable[str] = ()):
        self.graph = graph
        self.id = ele_id
        self.data: Dict[str, Any] = dict(data or {})
        self.data["id"] = ele_id
        self.classes = set(classes)
        self._removed = False

    @property
    def removed(self) -> bool:
        return self._removed

    @property
    def is_node(self) -> bool:
        return self.group == "node"

    @property
    def is_edge(self) -> bool:
        return self.group == "edge"

    def matches(self, selector: Union[str, CompiledSelector]) -> bool:
        if isinstance(selector, str):
            selector = parse_selector(selector)
        return selector.matches(self)

    def emit(self, event_type: str) -> None:
        self.graph.emit(event_type, self)

    def __repr__(self) -> str:
        state = " removed" if self._removed else ""
        return f"{type(self).__name__}({self.id!r}{state})"


class Node(Element):
    group = "node"

    def __init__(self, graph: "Graph", ele_id: str, position: Position, width: float = 30.0,
                 height: float = 30.0, locked: bool = False, **kwargs: Any):
        super().__init__(graph, ele_id, **kwargs)
        self._position = position
        self.width = width
        self.height = height
        self.locked = locked

    @property
    def position(self) -> Position:
        return self._position

    @position.setter
    def position(self, value: Any) -> None:
        new_pos = Position.coerce(value)
        old_pos = self._position
        if new_pos.x == old_pos.x and new_pos.y == old_pos.y:
            return
        self._position = new_pos
        self.graph._mark_dirty()
        self.emit("position")

    @property
    def outer_width(self) -> float:
        return self.width

    @property
    def outer_height(self) -> float:
        return self.height

    def connected_edges(self) -> List["Edge"]:
        return [edge for edge in self.graph._incident.get(self.id, []) if not edge.removed]

    def children(self) -> List["Node"]:
        return [node for node in self.graph.nodes() if node.data.get("parent") == self.id]

    def neighborhood(self) -> List[Element]:
        """Connected edges plus the nodes at their other ends, excluding this node."""
        members: Dict[int, Element] = {}
        for edge in self.connected_edges():
            members.setdefault(id(edge), edge)
            for end in (edge.source, edge.target):
                if end is not self:
                    members.setdefault(id(end), end)
        return list(members.values())


class Edge(Element):
    group = "edge"

    def __init__(self, graph: "Graph", ele_id: str, source: Node, target: Node, **kwargs: Any):
        super().__init__(graph, ele_id, **kwargs)
        self.source = source
        self.target = target
        self.data["source"] = source.id
        self.data["target"] = target.id


class Collection:
    """Ordered set of elements with constant time membership."""

    def __init__(self, elements: Iterable[Element] = ()):
        self._elements: List[Element] = list(dict.fromkeys(elements))
        self._members = set(self._elements)

    def has(self, ele: Element) -> bool:
        return ele in self._members

    def __contains__(self, ele: object) -> bool:
        return ele in self._members

    def __iter__(self) -> Iterator[Element]:
        return iter(self._elements)

    def __len__(self) -> int:
        return len(self._elements)

    def __getitem__(self, index: int) -> Element:
        return self._elements[index]

    def __repr__(self) -> str:
        return f"Collection({[ele.id for ele in self._elements]!r})"


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

@dataclass
class _Binding:
    events: Tuple[str, ...]
    selector: str
    compiled: CompiledSelector
    callback: Listener


_MISSING = object()


class Graph:
    def __init__(self, viewport: Optional[Viewport] = None):
        self.viewport = viewport or Viewport()
        self._elements: Dict[str, Element] = {}
        self._incident: Dict[str, List[Edge]] = {}
        self._listeners: List[_Binding] = []
        self._scratch: Dict[str, Any] = {}
        self._ids = itertools.count(1)
        self._batch_depth = 0
        self._dirty = False
        self.render_count = 0

    # -- elements ----------------------------------------------------------

    def _next_id(self, prefix: str) -> str:
        while True:
            candidate = f"{prefix}{next(self._ids)}"
            if candidate not in self._elements:
                return candidate

    def add_node(self, node_id: Optional[str] = None, position: Any = None, **kwargs: Any) -> Node:
        node_id = node_id or self._next_id("n")
        if node_id in self._elements:
            raise ValueError(f"Duplicate element ID: {node_id}")
        pos = Position.coerce(position) if position is not None else Position(x=0.0, y=0.0)
        node = Node(self, node_id, pos, **kwargs)
        self._elements[node_id] = node
        self._incident[node_id] = []
        self._mark_dirty()
        self.emit("add", node)
        return node

    def add_edge(self, source: Union[Node, str], target: Union[Node, str],
                 edge_id: Optional[str] = None, **kwargs: Any) -> Edge:
        src = self._resolve_node(source)
        tgt = self._resolve_node(target)
        edge_id = edge_id or self._next_id("e")
        if edge_id in self._elements:
            raise ValueError(f"Duplicate element ID: {edge_id}")
        edge = Edge(self, edge_id, src, tgt, **kwargs)
        self._elements[edge_id] = edge
        self._incident[src.id].append(edge)
        if tgt is not src:
            self._incident[tgt.id].append(edge)
        self._mark_dirty()
        self.emit("add", edge)
        return edge

    def _resolve_node(self, ref: Union[Node, str]) -> Node:
        node = ref if isinstance(ref, Node) else self._elements.get(ref)
        if not isinstance(node, Node) or node.removed:
            raise ValueError(f"Node not found: {ref!r}")
        return node

    def remove(self, ref: Union[Element, str]) -> None:
        ele = ref if isinstance(ref, Element) else self._elements.get(ref)
        if ele is None or ele.removed:
            return
        if isinstance(ele, Node):
            # Dangling edges go first, as they would be orphaned otherwise.
            for edge in list(ele.connected_edges()):
                self.remove(edge)
            del self._incident[ele.id]
        else:
            for end in (ele.source, ele.target):
                incident = self._incident.get(end.id)
                if incident and ele in incident:
                    incident.remove(ele)
        del self._elements[ele.id]
        ele._removed = True
        self._mark_dirty()
        self.emit("remove", ele)

    def get_element_by_id(self, ele_id: str) -> Optional[Element]:
        return self._elements.get(ele_id)

    def nodes(self, selector: Optional[str] = None) -> Collection:
        compiled = parse_selector(selector) if selector else None
        return Collection(
            ele for ele in self._elements.values()
            if ele.is_node and (compiled is None or compiled.matches(ele))
        )

    def edges(self, selector: Optional[str] = None) -> Collection:
        compiled = parse_selector(selector) if selector else None
        return Collection(
            ele for ele in self._elements.values()
            if ele.is_edge and (compiled is None or compiled.matches(ele))
        )

    def collection(self, elements: Iterable[Union[Element, str]]) -> Collection:
        resolved = []
        for ref in elements:
            ele = ref if isinstance(ref, Element) else self._elements.get(ref)
            if ele is None:
                raise ValueError(f"Element not found: {ref!r}")
            resolved.append(ele)
        return Collection(resolved)

    # -- geometry ----------------------------------------------------------

    def extent(self) -> BoundingBox:
        vp = self.viewport
        x1 = -vp.pan.x / vp.zoom
        y1 = -vp.pan.y / vp.zoom
        return BoundingBox(x1=x1, y1=y1, x2=x1 + vp.width / vp.zoom, y2=y1 + vp.height / vp.zoom)

    # -- events ------------------------------------------------------------

    def on(self, events: str, selector: str, callback: Listener) -> None:
        self._listeners.append(
            _Binding(tuple(events.split()), selector, parse_selector(selector), callback)
        )

    def off(self, events: str, selector: str, callback: Listener) -> None:
        names = set(events.split())
        kept = []
        for binding in self._listeners:
            if binding.selector == selector and binding.callback == callback:
                remaining = tuple(name for name in binding.events if name not in names)
                if remaining:
                    kept.append(_Binding(remaining, binding.selector, binding.compiled, binding.callback))
                continue
            kept.append(binding)
        self._listeners = kept

    def listener_count(self, event_type: Optional[str] = None) -> int:
        if event_type is None:
            return len(self._listeners)
        return sum(1 for binding in self._listeners if event_type in binding.events)

    def emit(self, event_type: str, target: Element) -> None:
        event = Event(type=event_type, target=target, graph=self)
        # Snapshot so listeners may bind or unbind while being dispatched.
        for binding in list(self._listeners):
            if event_type in binding.events and binding.compiled.matches(target):
                binding.callback(event)

    # -- scratch & batching ------------------------------------------------

    def scratch(self, name: str, value: Any = _MISSING) -> Any:
        if value is _MISSING:
            return self._scratch.get(name)
        self._scratch[name] = value
        return value

    def remove_scratch(self, name: str) -> None:
        self._scratch.pop(name, None)

    @contextlib.contextmanager
    def batch(self) -> Iterator["Graph"]:
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                self._render()

    def _mark_dirty(self) -> None:
        self._dirty = True
        if self._batch_depth == 0:
            self._render()

    def _render(self) -> None:
        self._dirty = False
        self.render_count += 1
        logger.debug("Graph render #%d", self.render_count)
