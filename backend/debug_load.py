import os
import sys

# Ensure backend acts as root
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

try:
    from automove.graph_loader import GraphLoader
    PACKS_DIR = os.environ.get("AUTOMOVE_PACKS_DIR", os.path.join(os.getcwd(), 'automove', 'knowledge', 'packs'))
    print(f"Loading from: {PACKS_DIR}")
    loader = GraphLoader(PACKS_DIR)
    nodes, edges, rules = loader.load_all()
    graph = loader.build_graph()
    loader.register_rules(graph)
    print(f"Success! Loaded {len(nodes)} nodes, {len(edges)} edges, {len(rules)} rules.")
    for node in graph.nodes():
        print(f"  {node.id}: ({node.position.x:.2f}, {node.position.y:.2f})")
except Exception as e:
    import traceback
    print("Failed to load graph:")
    traceback.print_exc()
