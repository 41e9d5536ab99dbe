import logging
import math
from typing import Any, Callable, Dict

from pydantic import ValidationError

from .errors import ConfigurationError
from .graph import Graph, Node
from .matchers import Matcher, as_node_spec, compile_matcher
from .models import BoundingBox, Position

logger = logging.getLogger(__name__)

Repositioner = Callable[[Node], Position]


def constrain(value: float, low: float, high: float) -> float:
    return low if value < low else (high if value > high else value)


def constrain_in_box(node: Node, box: BoundingBox) -> Position:
    pos = node.position
    return Position(x=constrain(pos.x, box.x1, box.x2), y=constrain(pos.y, box.y1, box.y2))


def mean_position(ignore: Matcher) -> Repositioner:
    def reposition(node: Node) -> Position:
        total_x = 0.0
        total_y = 0.0
        count = 0
        for member in node.neighborhood():
            if member.is_node and not ignore(member):
                pos = member.position
                total_x += pos.x
                total_y += pos.y
                count += 1

        if count == 0:
            logger.warning("Mean position of %s is undefined: no neighbours to average", node.id)
            return Position(x=math.nan, y=math.nan)
        return Position(x=total_x / count, y=total_y / count)

    return reposition


def box_position(box: BoundingBox) -> Repositioner:
    def reposition(node: Node) -> Position:
        return constrain_in_box(node, box)

    return reposition


def viewport_position(graph: Graph) -> Repositioner:
    def reposition(node: Node) -> Position:
        # Extent and node size are read on every call; either may change between passes.
        extent = graph.extent()
        half_w = node.outer_width / 2
        half_h = node.outer_height / 2
        box = BoundingBox.model_construct(
            x1=extent.x1 + half_w,
            x2=extent.x2 - half_w,
            y1=extent.y1 + half_h,
            y2=extent.y2 - half_h,
        )
        return constrain_in_box(node, box)

    return reposition


def custom_position(fn: Callable[[Node], Any]) -> Repositioner:
    def reposition(node: Node) -> Position:
        return Position.coerce(fn(node))

    return reposition


def as_bounding_box(value: Any) -> BoundingBox:
    if isinstance(value, BoundingBox):
        return value
    if isinstance(value, dict) and {"x1", "y1", "x2", "y2"} <= set(value):
        try:
            return BoundingBox(**{key: value[key] for key in ("x1", "y1", "x2", "y2")})
        except ValidationError as e:
            raise ConfigurationError("reposition", value) from e
    raise ConfigurationError("reposition", value)


def is_box(value: Any) -> bool:
    return isinstance(value, (BoundingBox, dict))


def compile_repositioner(reposition: Any, graph: Graph, mean_ignores: Any = None) -> Repositioner:
    if reposition == "mean":
        return mean_position(compile_matcher(as_node_spec(mean_ignores, "mean_ignores")))
    if reposition == "viewport":
        return viewport_position(graph)
    if is_box(reposition):
        return box_position(as_bounding_box(reposition))
    if callable(reposition) and not isinstance(reposition, str):
        return custom_position(reposition)
    raise ConfigurationError("reposition", reposition)


def describe(reposition: Any) -> Dict[str, Any]:
    if isinstance(reposition, str):
        return {"strategy": reposition}
    if is_box(reposition):
        return {"strategy": "box", "box": as_bounding_box(reposition).model_dump()}
    return {"strategy": "custom", "function": getattr(reposition, "__name__", repr(reposition))}
