from dataclasses import dataclass, field
from typing import Callable, FrozenSet, List, Optional, Union

from .errors import ConfigurationError
from .graph import Collection, CompiledSelector, Element, Node, parse_selector

Matcher = Callable[[Element], bool]


@dataclass(frozen=True)
class Predicate:
    fn: Matcher


@dataclass(frozen=True)
class Selector:
    query: str
    compiled: Optional[CompiledSelector] = field(compare=False, repr=False, default=None)

    def __post_init__(self):
        # Parse up front so a malformed selector fails at registration.
        if self.compiled is None:
            object.__setattr__(self, "compiled", parse_selector(self.query))


@dataclass(frozen=True)
class NodeSet:
    nodes: List[Node]
    members: FrozenSet[Node] = field(compare=False, repr=False, default=frozenset())

    def __post_init__(self):
        object.__setattr__(self, "members", frozenset(self.nodes))


MatchSpec = Union[Predicate, Selector, NodeSet]


def _never(ele: Element) -> bool:
    return False


def as_node_spec(value: object, option: str = "nodes_matching") -> MatchSpec:
    """Classify a raw option value once, at registration time."""
    if value is None:
        return Predicate(_never)
    if isinstance(value, (Predicate, Selector, NodeSet)):
        return value
    if isinstance(value, str):
        return Selector(value)
    if isinstance(value, Collection):
        return NodeSet([ele for ele in value if ele.is_node])
    if isinstance(value, (list, tuple, set, frozenset)) and all(isinstance(v, Node) for v in value):
        return NodeSet(list(value))
    if callable(value):
        return Predicate(value)
    raise ConfigurationError(option, value)


def element_exists(ele: Element) -> bool:
    return ele is not None and not ele.removed


def compile_matcher(spec: MatchSpec) -> Matcher:
    if isinstance(spec, Predicate):
        fn = spec.fn
    elif isinstance(spec, Selector):
        fn = spec.compiled.matches
    elif isinstance(spec, NodeSet):
        fn = spec.members.__contains__
    else:
        raise ConfigurationError("matcher", spec)

    def matches(ele: Element) -> bool:
        return element_exists(ele) and bool(fn(ele))

    return matches


def explicit_nodes(spec: MatchSpec) -> Optional[List[Node]]:
    if isinstance(spec, NodeSet):
        return spec.nodes
    return None
