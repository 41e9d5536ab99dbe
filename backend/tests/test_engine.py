import math

import pytest
from automove.engine import Registry, automove, destroy_all, update
from automove.errors import ConfigurationError
from automove.graph import Graph, SelectorError
from automove.models import BoundingBox, Position, RuleOptions, Viewport

BOX = {"x1": 0, "y1": 0, "x2": 10, "y2": 10}


@pytest.fixture
def graph():
    return Graph()


@pytest.fixture
def star(graph):
    # n sits somewhere arbitrary; its three neighbours average to (1, 1).
    n = graph.add_node("n", position=(10, 10))
    for node_id, pos in (("a", (0, 0)), ("b", (2, 0)), ("c", (1, 3))):
        graph.add_node(node_id, position=pos)
        graph.add_edge("n", node_id)
    return n


def _automove_log(graph):
    log = []
    graph.on("automove", "node", lambda event: log.append(event.target.id))
    return log


def test_mean_moves_node_to_average_of_neighbours(graph, star):
    automove(graph, nodes_matching=[star], reposition="mean")

    assert star.position == Position(x=1, y=1)


def test_mean_follows_neighbour_moves(graph, star):
    automove(graph, nodes_matching=[star], reposition="mean")

    graph.get_element_by_id("a").position = (3, 0)

    assert star.position == Position(x=2, y=1)


def test_mean_reacts_to_edge_add_and_remove(graph, star):
    automove(graph, nodes_matching=[star], reposition="mean")
    graph.add_node("d", position=(4, 4))

    edge = graph.add_edge("n", "d")
    assert star.position.x == pytest.approx(1.75)
    assert star.position.y == pytest.approx(1.75)

    graph.remove(edge)
    assert star.position == Position(x=1, y=1)


def test_mean_ignores_excluded_neighbours(graph, star):
    automove(graph, nodes_matching="#n", reposition="mean", mean_ignores="#c")

    assert star.position == Position(x=1, y=0)


def test_mean_does_not_trigger_for_leaf_nodes(graph):
    leaf = graph.add_node("leaf", position=(5, 5))
    other = graph.add_node("other", position=(0, 0))
    graph.add_edge(leaf, other)
    automove(graph, nodes_matching=[leaf], reposition="mean")
    assert leaf.position == Position(x=0, y=0)

    # leaf has one edge and one neighbour, so moving its neighbour is ignored.
    other.position = (8, 8)

    assert leaf.position == Position(x=0, y=0)


def test_mean_of_empty_neighbourhood_is_undefined(graph, caplog):
    n = graph.add_node("n", position=(1, 1))
    m = graph.add_node("m", position=(2, 2))
    graph.add_edge(n, m)

    automove(graph, nodes_matching=[n], reposition="mean", mean_ignores=[m])

    assert math.isnan(n.position.x)
    assert math.isnan(n.position.y)
    assert not n.position.is_defined
    assert "undefined" in caplog.text


def test_box_clamps_outside_nodes_and_leaves_inside_nodes(graph):
    outside = graph.add_node("outside", position=(-5, 15), classes=["boxed"])
    inside = graph.add_node("inside", position=(5, 5), classes=["boxed"])
    log = _automove_log(graph)

    automove(graph, nodes_matching=".boxed", reposition=BOX)

    assert outside.position == Position(x=0, y=10)
    assert inside.position == Position(x=5, y=5)
    assert log == ["outside"]


def test_box_rule_reclamps_when_governed_node_moves(graph):
    node = graph.add_node("p", position=(5, 5))
    automove(graph, nodes_matching="#p", reposition=BoundingBox(**BOX))

    node.position = (20, -3)

    assert node.position == Position(x=10, y=0)


def test_viewport_keeps_node_body_inside_extent():
    graph = Graph(viewport=Viewport(width=100, height=100))
    node = graph.add_node("v", position=(0, 50), width=4, height=4)

    automove(graph, nodes_matching="#v", reposition="viewport")

    assert node.position.x >= graph.extent().x1 + 2
    assert node.position == Position(x=2, y=50)


def test_viewport_is_recomputed_after_pan_and_zoom():
    graph = Graph(viewport=Viewport(width=100, height=100))
    node = graph.add_node("v", position=(50, 50), width=4, height=4)
    handle = automove(graph, nodes_matching="#v", reposition="viewport")

    graph.viewport = Viewport(width=100, height=100, pan=Position(x=-200, y=0), zoom=2)
    handle.apply()

    # extent is now x in [100, 150], y in [0, 50]
    assert node.position == Position(x=102, y=48)


def test_custom_function_position(graph):
    node = graph.add_node("f", position=(0, 0))

    automove(graph, nodes_matching="#f", reposition=lambda n: {"x": 7, "y": 8}, when="matching")

    assert node.position == Position(x=7, y=8)


def test_second_update_is_a_no_op(graph):
    graph.add_node("p", position=(-5, 15))
    handle = automove(graph, nodes_matching="#p", reposition=BOX)

    assert handle.apply() == []
    assert handle.apply() == []


def test_update_reports_moved_nodes(graph):
    node = graph.add_node("p", position=(5, 5))
    handle = automove(graph, nodes_matching="#p", reposition=lambda n: (0, 0), when=lambda update, g: None)

    assert node.position == Position(x=0, y=0)
    assert handle.apply() == []

    # The custom scheduler never fires on its own.
    node.position = (3, 3)
    assert node.position == Position(x=3, y=3)
    assert handle.apply() == [node]


def test_update_runs_in_one_batch(graph):
    for i in range(5):
        graph.add_node(f"p{i}", position=(-i - 1, 0), classes=["boxed"])
    handle = automove(graph, nodes_matching=".boxed", reposition=lambda n: (0, 0), when=lambda update, g: None)
    for node in graph.nodes():
        node.position = (-1, -1)
    renders = graph.render_count

    handle.apply()

    assert graph.render_count == renders + 1


def test_destroyed_rule_never_writes_again(graph):
    node = graph.add_node("p", position=(5, 5))
    handle = automove(graph, nodes_matching="#p", reposition=BOX)
    rule = handle.rule

    handle.destroy()
    node.position = (-5, 15)
    update(graph, [rule])

    assert rule.destroyed
    assert node.position == Position(x=-5, y=15)


def test_last_destroy_removes_node_tracking(graph):
    graph.add_node("p", position=(5, 5))
    handle = automove(graph, nodes_matching="#p", reposition=BOX)
    registry = Registry.for_graph(graph, create=False)
    tracked = len(registry.nodes)

    graph.add_node("q")
    assert len(registry.nodes) == tracked + 1

    handle.destroy()
    graph.add_node("r")

    assert len(registry.nodes) == tracked + 1
    assert graph.scratch("automove") is None
    assert graph.listener_count() == 0


def test_destroy_keeps_tracking_while_other_rules_remain(graph):
    first = automove(graph, nodes_matching="#p", reposition=BOX)
    automove(graph, nodes_matching="#q", reposition=BOX)
    registry = Registry.for_graph(graph, create=False)

    first.destroy()
    graph.add_node("p")

    assert registry.tracking
    assert registry.nodes[-1].id == "p"


def test_destroy_all_tears_down_every_rule(graph):
    node = graph.add_node("p", position=(5, 5))
    handles = [
        automove(graph, nodes_matching="#p", reposition=BOX),
        automove(graph, nodes_matching="#p", reposition={"x1": -100, "y1": -100, "x2": 100, "y2": 100}),
    ]

    automove(graph, "destroy")

    assert all(handle.rule.destroyed for handle in handles)
    assert graph.listener_count() == 0
    assert graph.scratch("automove") is None
    node.position = (-5, 15)
    assert node.position == Position(x=-5, y=15)


def test_destroy_all_without_rules_is_harmless(graph):
    destroy_all(graph)
    assert graph.scratch("automove") is None


def test_disabled_rule_short_circuits_rest_of_batch(graph):
    node = graph.add_node("x", position=(5, 5))
    manual = lambda update, g: None
    a = automove(graph, nodes_matching="#x", reposition=lambda n: (1, 1), when=manual)
    b = automove(graph, nodes_matching="#x", reposition=lambda n: (0, 0), when=manual)
    a.disable()

    assert update(graph, [a.rule, b.rule]) == []
    assert node.position == Position(x=0, y=0)

    node.position = (5, 5)
    assert update(graph, [a.rule, b.rule]) == []
    assert node.position == Position(x=5, y=5)

    assert update(graph, [b.rule]) == [node]
    assert node.position == Position(x=0, y=0)


def test_toggle_enables_with_immediate_update(graph):
    node = graph.add_node("p", position=(5, 5))
    handle = automove(graph, nodes_matching="#p", reposition=BOX)

    handle.toggle()
    assert handle.enabled is False
    node.position = (20, 20)
    assert node.position == Position(x=20, y=20)

    handle.toggle()
    assert handle.enabled is True
    assert node.position == Position(x=10, y=10)

    handle.disable()
    handle.enable()
    assert handle.enabled


def test_rule_is_not_reentered_during_its_own_pass(graph):
    drifting = graph.add_node("d", position=(0, 0), classes=["drift"])
    bystander = graph.add_node("b", position=(0, 0))

    def drift(node):
        return Position(x=node.position.x + 1, y=node.position.y)

    # No trigger given: the rule runs on every node position change, its own writes included.
    automove(graph, nodes_matching=".drift", reposition=drift)
    assert drifting.position.x == 1

    bystander.position = (4, 4)
    assert drifting.position.x == 2


def test_custom_scheduler_controls_cadence(graph):
    node = graph.add_node("p", position=(-5, -5))
    captured = {}

    def when(update, g):
        captured["update"] = update
        assert g is graph

    automove(graph, nodes_matching="#p", reposition=lambda n: (0, 0), when=when)
    node.position = (9, 9)
    assert node.position == Position(x=9, y=9)

    captured["update"]()

    assert node.position == Position(x=0, y=0)


def test_explicit_node_set_drops_removed_nodes(graph):
    keep = graph.add_node("keep", position=(-1, -1))
    gone = graph.add_node("gone", position=(-1, -1))
    handle = automove(graph, nodes_matching=graph.collection(["keep", "gone"]), reposition=BOX)

    graph.remove(gone)
    keep.position = (-3, -3)
    handle.apply()

    assert handle.rule.nodes == [keep]
    assert keep.position == Position(x=0, y=0)


def test_shared_list_drops_removed_nodes(graph):
    graph.add_node("p", position=(1, 1))
    gone = graph.add_node("gone", position=(1, 1))
    handle = automove(graph, nodes_matching="node", reposition=BOX)
    registry = Registry.for_graph(graph, create=False)

    graph.remove(gone)
    handle.apply()

    assert gone not in registry.nodes


def test_camel_case_options(graph):
    node = graph.add_node("p", position=(-5, 15))

    handle = automove(graph, {"nodesMatching": "#p", "reposition": BOX})

    assert handle.rule.options == RuleOptions(nodes_matching="#p", reposition=BOX)
    assert node.position == Position(x=0, y=10)


@pytest.mark.parametrize(
    "options",
    [
        {"nodes_matching": 42},
        {"nodes_matching": "#p", "reposition": "orbit"},
        {"nodes_matching": "#p", "reposition": 3.5},
        {"nodes_matching": "#p", "mean_ignores": object()},
        {"nodes_matching": "#p", "reposition": BOX, "when": "sometimes"},
        {"nodes_matching": "#p", "reposition": {"x1": 10, "y1": 0, "x2": 0, "y2": 10}},
    ],
)
def test_invalid_options_fail_registration_cleanly(graph, options):
    with pytest.raises(ConfigurationError):
        automove(graph, options)

    assert graph.scratch("automove") is None
    assert graph.listener_count() == 0


def test_invalid_selector_propagates(graph):
    with pytest.raises(SelectorError):
        automove(graph, nodes_matching="node[", reposition=BOX)

    assert graph.listener_count() == 0


def test_failing_initial_pass_unbinds_rule(graph):
    graph.add_node("p")
    kept = automove(graph, nodes_matching="#q", reposition=BOX)

    def explode(node):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        automove(graph, nodes_matching="#p", reposition=explode, when="matching")

    registry = Registry.for_graph(graph, create=False)
    assert registry.rules == [kept.rule]
    assert graph.listener_count("position") == 1


def test_duplicate_rule_id_is_rejected(graph):
    automove(graph, nodes_matching="#p", reposition=BOX, rule_id="fence")

    with pytest.raises(ValueError):
        automove(graph, nodes_matching="#p", reposition=BOX, rule_id="fence")


def test_generated_ids_skip_ids_already_taken(graph):
    automove(graph, nodes_matching="#p", reposition=BOX, rule_id="rule-1")

    handle = automove(graph, nodes_matching="#p", reposition=BOX)

    assert handle.id == "rule-2"


@pytest.mark.parametrize("reposition", [BOX, "viewport"])
def test_matching_trigger_ignores_ungoverned_nodes(graph, reposition):
    governed = graph.add_node("p", position=(5, 5), classes=["boxed"])
    other = graph.add_node("q", position=(50, 50))
    handle = automove(graph, nodes_matching=".boxed", reposition=reposition)
    calls = []
    get_new_pos = handle.rule.get_new_pos

    def counting(node):
        calls.append(node.id)
        return get_new_pos(node)

    handle.rule.get_new_pos = counting

    other.position = (70, 80)
    assert calls == []

    governed.position = (6, 6)
    assert calls == ["p"]


def test_governed_nodes_lists_matches(graph):
    graph.add_node("p", classes=["boxed"])
    graph.add_node("q")
    handle = automove(graph, nodes_matching=".boxed", reposition=BOX)

    registry = Registry.for_graph(graph, create=False)

    assert [node.id for node in registry.governed_nodes(handle.rule)] == ["p"]
