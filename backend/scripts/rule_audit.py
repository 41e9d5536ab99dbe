#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List

SCRIPT_DIR = os.path.abspath(os.path.dirname(__file__))
BACKEND_DIR = os.path.abspath(os.path.join(SCRIPT_DIR, ".."))

sys.path.append(BACKEND_DIR)

from automove.engine import Registry
from automove.graph import Event
from automove.graph_loader import GraphLoader, register_rule_spec
from automove.strategies import describe


def build_report(packs_dir: str) -> Dict[str, Any]:
    loader = GraphLoader(packs_dir)
    loader.load_all()
    graph = loader.build_graph()

    moved_by_rule: Dict[str, List[str]] = {}
    current: List[str] = []

    def on_automove(event: Event) -> None:
        current.append(event.target.id)

    graph.on("automove", "node", on_automove)
    handles = {}
    for spec in loader.rules:
        current.clear()
        handles[spec.id] = register_rule_spec(graph, spec)
        moved_by_rule[spec.id] = list(dict.fromkeys(current))
    graph.off("automove", "node", on_automove)

    registry = Registry.for_graph(graph, create=False)
    rules = []
    for spec in loader.rules:
        rule = handles[spec.id].rule
        governed = registry.governed_nodes(rule) if registry is not None else []
        rules.append({
            "id": spec.id,
            "enabled": rule.enabled,
            "reposition": describe(rule.options.reposition),
            "governed": sorted(node.id for node in governed),
            "moved": moved_by_rule[spec.id],
            "undefined": sorted(node.id for node in governed if not node.position.is_defined),
        })

    return {
        "nodes": len(graph.nodes()),
        "edges": len(graph.edges()),
        "rules": rules,
    }


def _render_markdown(report: Dict[str, Any]) -> str:
    lines: List[str] = [
        "# Automove Rule Audit",
        "",
        "## Summary",
        f"- nodes: {report['nodes']}",
        f"- edges: {report['edges']}",
        f"- rules: {len(report['rules'])}",
        "",
        "## Rules",
    ]
    if not report["rules"]:
        lines.append("_No rules found._")

    for rule in report["rules"]:
        lines.append(f"### {rule['id']}")
        lines.append(f"- strategy: {rule['reposition']['strategy']}")
        lines.append(f"- enabled: {rule['enabled']}")
        lines.append(f"- governed: {', '.join(rule['governed']) or 'none'}")
        lines.append(f"- moved_on_register: {', '.join(rule['moved']) or 'none'}")
        if rule["undefined"]:
            lines.append(f"- undefined_positions: {', '.join(rule['undefined'])}")

    return "\n".join(lines).rstrip() + "\n"


def main() -> int:
    parser = argparse.ArgumentParser(description="Report which nodes each automove rule governs and moves.")
    parser.add_argument(
        "--packs-dir",
        default=os.path.join(BACKEND_DIR, "automove", "knowledge", "packs"),
        help="Directory of YAML graph packs.",
    )
    parser.add_argument(
        "--format",
        choices=("markdown", "json"),
        default="markdown",
        help="Output format.",
    )
    parser.add_argument("--verbose", action="store_true", help="Log rule registration details.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    report = build_report(args.packs_dir)

    if args.format == "json":
        print(json.dumps(report, indent=2, sort_keys=True))
        return 0

    print(_render_markdown(report), end="")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
