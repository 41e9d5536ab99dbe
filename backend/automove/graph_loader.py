import logging
import os
import yaml
from typing import Dict, List, Optional
from .engine import RuleHandle, automove
from .graph import Graph
from .models import EdgeSpec, GraphPack, NodeSpec, RuleOptions, RuleSpec, Viewport

logger = logging.getLogger(__name__)


class GraphLoader:
    def __init__(self, packs_dir: str):
        self.packs_dir = packs_dir
        self.nodes: Dict[str, NodeSpec] = {}
        self.edges: List[EdgeSpec] = []
        self.rules: List[RuleSpec] = []
        self.viewport: Optional[Viewport] = None

    def load_all(self):
        # Reset state to allow for reloads
        self.nodes = {}
        self.edges = []
        self.rules = []
        self.viewport = None

        if os.path.isdir(self.packs_dir):
            for root, _, files in sorted(os.walk(self.packs_dir)):
                for file in sorted(files):
                    if file.endswith(".yaml") or file.endswith(".yml"):
                        self._load_pack(os.path.join(root, file))
        else:
            logger.warning("Packs directory not found: %s", self.packs_dir)
        self._validate_graph()
        logger.info(
            "Loaded %d nodes, %d edges, %d rules from %s",
            len(self.nodes), len(self.edges), len(self.rules), self.packs_dir,
        )
        return self.nodes, self.edges, self.rules

    def _load_pack(self, pack_path: str):
        with open(pack_path, 'r') as f:
            data = yaml.safe_load(f)
            if not data:
                return

            data.setdefault('name', os.path.splitext(os.path.basename(pack_path))[0])
            pack = GraphPack(**data)

            if pack.viewport is not None:
                self.viewport = pack.viewport

            for node in pack.nodes:
                if node.id in self.nodes:
                    raise ValueError(f"Duplicate node ID: {node.id}")
                self.nodes[node.id] = node

            self.edges.extend(pack.edges)

            seen_rules = {rule.id for rule in self.rules}
            for rule in pack.rules:
                if rule.id in seen_rules:
                    raise ValueError(f"Duplicate rule ID: {rule.id}")
                seen_rules.add(rule.id)
                self.rules.append(rule)

    def _validate_graph(self):
        # Ensure all edge sources and targets exist
        for edge in self.edges:
            if edge.source not in self.nodes:
                raise ValueError(f"Edge source not found: {edge.source}")
            if edge.target not in self.nodes:
                raise ValueError(f"Edge target not found: {edge.target}")

        # Node id lists in rules must name known nodes
        for rule in self.rules:
            for field_name in ("nodes_matching", "mean_ignores"):
                value = getattr(rule, field_name)
                if isinstance(value, list):
                    for node_id in value:
                        if node_id not in self.nodes:
                            raise ValueError(f"Rule {rule.id} references unknown node: {node_id}")

    def build_graph(self) -> Graph:
        graph = Graph(viewport=self.viewport)
        for spec in self.nodes.values():
            graph.add_node(
                spec.id,
                position=spec.position,
                width=spec.width,
                height=spec.height,
                locked=spec.locked,
                classes=spec.classes,
                data=spec.data,
            )
        for spec in self.edges:
            graph.add_edge(spec.source, spec.target, edge_id=spec.id, classes=spec.classes, data=spec.data)
        return graph

    def register_rules(self, graph: Graph) -> Dict[str, RuleHandle]:
        handles: Dict[str, RuleHandle] = {}
        for spec in self.rules:
            handles[spec.id] = register_rule_spec(graph, spec)
        return handles


def rule_options(graph: Graph, spec: RuleSpec) -> RuleOptions:
    def resolve(value):
        if isinstance(value, list):
            return graph.collection(value)
        return value

    return RuleOptions(
        nodes_matching=resolve(spec.nodes_matching),
        reposition=spec.reposition,
        mean_ignores=resolve(spec.mean_ignores),
        when=spec.when,
        enabled=spec.enabled,
    )


def register_rule_spec(graph: Graph, spec: RuleSpec) -> RuleHandle:
    return automove(graph, rule_options(graph, spec), rule_id=spec.id)
