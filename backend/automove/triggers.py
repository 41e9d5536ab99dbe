import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from .errors import ConfigurationError
from .graph import Event, Graph, Listener, Node
from .strategies import is_box

if TYPE_CHECKING:
    from .engine import Rule

logger = logging.getLogger(__name__)

Update = Callable[[], None]
Scheduler = Callable[[Update, Graph], None]


@dataclass(frozen=True)
class Binding:
    graph: Graph
    events: str
    selector: str
    callback: Listener

    def unbind(self) -> None:
        self.graph.off(self.events, self.selector, self.callback)


def bind_on_rule(rule: "Rule", graph: Graph, events: str, selector: str, callback: Listener) -> Binding:
    binding = Binding(graph, events, selector or "node", callback)
    graph.on(binding.events, binding.selector, binding.callback)
    rule.bindings.append(binding)
    return binding


def unbind_all_on_rule(rule: "Rule") -> None:
    bindings, rule.bindings = rule.bindings, []
    for binding in bindings:
        binding.unbind()


def mean_listener(rule: "Rule") -> Scheduler:
    def connected_match(node: Node) -> bool:
        # Governed and linked to more than one edge and one node.
        return rule.matches(node) and len(node.neighborhood()) > 2

    def schedule(update: Update, graph: Graph) -> None:
        def on_position(event: Event) -> None:
            if any(connected_match(ele) for ele in event.target.neighborhood() if ele.is_node):
                update()

        def on_edge(event: Event) -> None:
            edge = event.target
            if connected_match(edge.source) or connected_match(edge.target):
                update()

        bind_on_rule(rule, graph, "position", "node", on_position)
        bind_on_rule(rule, graph, "add remove", "edge", on_edge)

    return schedule


def matching_listener(rule: "Rule") -> Scheduler:
    def schedule(update: Update, graph: Graph) -> None:
        def on_position(event: Event) -> None:
            if rule.matches(event.target):
                update()

        bind_on_rule(rule, graph, "position", "node", on_position)

    return schedule


def any_position_listener(rule: "Rule") -> Scheduler:
    def schedule(update: Update, graph: Graph) -> None:
        def on_position(event: Event) -> None:
            update()

        bind_on_rule(rule, graph, "position", "node", on_position)

    return schedule


def get_listener(rule: "Rule") -> Scheduler:
    options = rule.options
    if options.reposition == "mean":
        return mean_listener(rule)
    if is_box(options.reposition) or options.reposition == "viewport" or options.when == "matching":
        return matching_listener(rule)
    if options.when is None:
        logger.debug("Rule %s has no trigger; recomputing on any node position change", rule.id)
        return any_position_listener(rule)
    if callable(options.when) and not isinstance(options.when, str):
        return options.when
    raise ConfigurationError("when", options.when)
