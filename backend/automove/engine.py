import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from .errors import ConfigurationError
from .graph import Event, Graph, Node
from .matchers import Matcher, as_node_spec, compile_matcher, explicit_nodes
from .models import RuleOptions
from .strategies import Repositioner, compile_repositioner
from .triggers import Binding, Scheduler, get_listener, unbind_all_on_rule

logger = logging.getLogger(__name__)

SCRATCH_KEY = "automove"


@dataclass(eq=False)
class Rule:
    id: str
    options: RuleOptions
    matches: Matcher
    get_new_pos: Repositioner
    # Only set when the rule was given an explicit node collection.
    nodes: Optional[List[Node]] = None
    trigger: Optional[Scheduler] = None
    enabled: bool = True
    destroyed: bool = False
    in_progress: bool = False
    bindings: List[Binding] = field(default_factory=list)

    def __repr__(self) -> str:
        return f"Rule({self.id!r}, enabled={self.enabled}, destroyed={self.destroyed})"


def _check_when(when: Any) -> None:
    if when is None or when == "matching":
        return
    if callable(when) and not isinstance(when, str):
        return
    raise ConfigurationError("when", when)


class Registry:
    def __init__(self, graph: Graph):
        self.graph = graph
        self.rules: List[Rule] = []
        self.nodes: List[Node] = []
        self.tracking = False
        self._ids = itertools.count(1)

    @classmethod
    def for_graph(cls, graph: Graph, create: bool = True) -> Optional["Registry"]:
        registry = graph.scratch(SCRATCH_KEY)
        if registry is None and create:
            registry = graph.scratch(SCRATCH_KEY, cls(graph))
        return registry

    def _next_id(self) -> str:
        while True:
            candidate = f"rule-{next(self._ids)}"
            if self.get(candidate) is None:
                return candidate

    def get(self, rule_id: str) -> Optional[Rule]:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    def governed_nodes(self, rule: Rule) -> List[Node]:
        candidates = rule.nodes if rule.nodes is not None else self.nodes
        return [node for node in candidates if rule.matches(node)]

    # -- shared node list -------------------------------------------------

    def _on_add_node(self, event: Event) -> None:
        self.nodes.append(event.target)

    def start_tracking(self) -> None:
        if self.tracking:
            return
        self.nodes = list(self.graph.nodes())
        self.graph.on("add", "node", self._on_add_node)
        self.tracking = True

    def stop_tracking(self) -> None:
        if not self.tracking:
            return
        self.graph.off("add", "node", self._on_add_node)
        self.tracking = False

    def teardown(self) -> None:
        self.stop_tracking()
        if self.graph.scratch(SCRATCH_KEY) is self:
            self.graph.remove_scratch(SCRATCH_KEY)
        logger.debug("Automove registry for graph %s torn down", id(self.graph))

    # -- rules ------------------------------------------------------------

    def add_rule(self, options: RuleOptions, rule_id: Optional[str] = None) -> Rule:
        rule_id = rule_id or self._next_id()
        if self.get(rule_id) is not None:
            raise ValueError(f"Duplicate rule ID: {rule_id}")

        rule = None
        try:
            nodes_spec = as_node_spec(options.nodes_matching)
            _check_when(options.when)
            rule = Rule(
                id=rule_id,
                options=options,
                matches=compile_matcher(nodes_spec),
                get_new_pos=compile_repositioner(options.reposition, self.graph, options.mean_ignores),
                enabled=options.enabled,
            )
            nodes = explicit_nodes(nodes_spec)
            if nodes is not None:
                rule.nodes = list(nodes)
            rule.trigger = get_listener(rule)

            if not self.rules:
                self.start_tracking()
            rule.trigger(lambda: self.update([rule]), self.graph)
            self.rules.append(rule)

            # Bring the governed nodes into their start state right away.
            self.update([rule])
        except Exception:
            if rule is not None:
                self._discard(rule)
            if not self.rules:
                self.teardown()
            raise

        logger.info("Registered automove rule %s (reposition=%r)", rule.id, options.reposition)
        return rule

    def _discard(self, rule: Rule) -> None:
        rule.destroyed = True
        unbind_all_on_rule(rule)
        if rule in self.rules:
            self.rules.remove(rule)

    def remove_rule(self, rule: Rule) -> None:
        self._discard(rule)
        logger.info("Destroyed automove rule %s", rule.id)
        if not self.rules:
            self.teardown()

    def destroy_all(self) -> None:
        for rule in list(self.rules):
            self._discard(rule)
        self.rules.clear()
        self.teardown()
        logger.info("Destroyed all automove rules")

    # -- update pass --------------------------------------------------------

    def update(self, rules: Optional[Sequence[Rule]] = None) -> List[Node]:
        rules = list(self.rules if rules is None else rules)
        moved: List[Node] = []

        with self.graph.batch():
            for rule in rules:
                if rule.destroyed or not rule.enabled:
                    # An inactive rule ends the whole pass, not just its own turn.
                    break
                if rule.in_progress:
                    logger.debug("Skipping re-entrant update of rule %s", rule.id)
                    continue

                rule.in_progress = True
                try:
                    self._run(rule, moved)
                finally:
                    rule.in_progress = False

        if moved:
            logger.debug("Automove pass moved %d node(s)", len(moved))
        return moved

    def _run(self, rule: Rule, moved: List[Node]) -> None:
        nodes = rule.nodes if rule.nodes is not None else self.nodes

        # Walk backwards so removed nodes can be dropped in place.
        for index in range(len(nodes) - 1, -1, -1):
            if index >= len(nodes):
                # A nested pass pruned the shared list under us.
                continue
            node = nodes[index]
            if node.removed:
                del nodes[index]
                continue
            if not rule.matches(node):
                continue

            pos = node.position
            new_pos = rule.get_new_pos(node)
            if pos.x != new_pos.x or pos.y != new_pos.y:
                node.position = new_pos
                node.emit("automove")
                moved.append(node)


class RuleHandle:
    def __init__(self, registry: Registry, rule: Rule):
        self._registry = registry
        self._rule = rule

    @property
    def id(self) -> str:
        return self._rule.id

    @property
    def rule(self) -> Rule:
        return self._rule

    @property
    def enabled(self) -> bool:
        return self._rule.enabled

    def apply(self) -> List[Node]:
        return self._registry.update([self._rule])

    def enable(self) -> None:
        self.toggle(True)

    def disable(self) -> None:
        self.toggle(False)

    def toggle(self, on: Optional[bool] = None) -> None:
        self._rule.enabled = (not self._rule.enabled) if on is None else on
        if self._rule.enabled:
            self._registry.update([self._rule])

    def destroy(self) -> "RuleHandle":
        self._registry.remove_rule(self._rule)
        return self

    def __repr__(self) -> str:
        return f"RuleHandle({self._rule!r})"


def _as_options(options: Union[RuleOptions, Dict[str, Any], None], kwargs: Dict[str, Any]) -> RuleOptions:
    if isinstance(options, RuleOptions):
        return options.model_copy(update=kwargs) if kwargs else options
    return RuleOptions.model_validate({**(options or {}), **kwargs})


def automove(graph: Graph, options: Union[RuleOptions, Dict[str, Any], str, None] = None,
             rule_id: Optional[str] = None, **kwargs: Any) -> Optional[RuleHandle]:
    """Register a repositioning rule on ``graph`` and return its handle.

    ``automove(graph, "destroy")`` tears down every rule on the graph instead.
    """
    if options == "destroy":
        destroy_all(graph)
        return None
    if isinstance(options, str):
        raise ConfigurationError("options", options)

    rule_options = _as_options(options, kwargs)
    registry = Registry.for_graph(graph)
    rule = registry.add_rule(rule_options, rule_id=rule_id)
    return RuleHandle(registry, rule)


def update(graph: Graph, rules: Optional[Sequence[Rule]] = None) -> List[Node]:
    registry = Registry.for_graph(graph, create=False)
    if registry is None:
        return []
    return registry.update(rules)


def destroy_all(graph: Graph) -> None:
    registry = Registry.for_graph(graph, create=False)
    if registry is not None:
        registry.destroy_all()
