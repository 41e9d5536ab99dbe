import math
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

Strategy = Literal["mean", "viewport"]
When = Literal["matching"]


class Position(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float
    y: float

    @classmethod
    def coerce(cls, value: Any) -> "Position":
        # Custom strategies may hand back a Position, an {x, y} mapping or an (x, y) pair.
        if isinstance(value, Position):
            return value
        if isinstance(value, dict):
            return cls(x=value["x"], y=value["y"])
        if isinstance(value, (tuple, list)) and len(value) == 2:
            return cls(x=value[0], y=value[1])
        raise TypeError(f"Can not read a position from {value!r}")

    @property
    def is_defined(self) -> bool:
        return not (math.isnan(self.x) or math.isnan(self.y))


class BoundingBox(BaseModel):
    model_config = ConfigDict(frozen=True)

    x1: float
    y1: float
    x2: float
    y2: float

    @model_validator(mode="after")
    def validate_corners(self) -> "BoundingBox":
        if self.x1 > self.x2 or self.y1 > self.y2:
            raise ValueError(
                f"Bounding box corners are inverted: ({self.x1}, {self.y1}) -> ({self.x2}, {self.y2})"
            )
        return self


class Viewport(BaseModel):
    width: float = Field(default=800.0, gt=0.0)
    height: float = Field(default=600.0, gt=0.0)
    pan: Position = Field(default_factory=lambda: Position(x=0.0, y=0.0))
    zoom: float = Field(default=1.0, gt=0.0)


class RuleOptions(BaseModel):
    """Live registration options for one automove rule.

    Accepts the camelCase names (nodesMatching, meanIgnores) as well as the
    snake_case field names. Values are compiled by the engine, so callables
    and node collections pass through untouched.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)

    nodes_matching: Any = Field(default=None, alias="nodesMatching")
    reposition: Any = "mean"
    mean_ignores: Any = Field(default=None, alias="meanIgnores")
    when: Any = None
    enabled: bool = True


# Declarative records, safe to read from YAML packs or JSON bodies.

class NodeSpec(BaseModel):
    id: str
    position: Position = Field(default_factory=lambda: Position(x=0.0, y=0.0))
    width: float = Field(default=30.0, ge=0.0)
    height: float = Field(default=30.0, ge=0.0)
    classes: List[str] = Field(default_factory=list)
    locked: bool = False
    data: Dict[str, Any] = Field(default_factory=dict)


class EdgeSpec(BaseModel):
    source: str
    target: str
    id: Optional[str] = None
    classes: List[str] = Field(default_factory=list)
    data: Dict[str, Any] = Field(default_factory=dict)


class RuleSpec(BaseModel):
    id: str
    # A selector string or an explicit list of node ids.
    nodes_matching: Union[str, List[str]]
    reposition: Union[Strategy, BoundingBox] = "mean"
    mean_ignores: Optional[Union[str, List[str]]] = None
    when: Optional[When] = None
    enabled: bool = True
    description: Optional[str] = None


class GraphPack(BaseModel):
    name: str
    viewport: Optional[Viewport] = None
    nodes: List[NodeSpec] = Field(default_factory=list)
    edges: List[EdgeSpec] = Field(default_factory=list)
    rules: List[RuleSpec] = Field(default_factory=list)


class MoveRequest(BaseModel):
    x: float
    y: float


class MoveResponse(BaseModel):
    node_id: str
    position: Position
    automoved: List[str] = Field(default_factory=list)


class ToggleRequest(BaseModel):
    enabled: Optional[bool] = None


class RuleState(BaseModel):
    id: str
    enabled: bool
    reposition: Union[Strategy, BoundingBox]
    when: Optional[When] = None
    description: Optional[str] = None


class ApplyResponse(BaseModel):
    rule_id: str
    moved: List[str] = Field(default_factory=list)


class NodeState(BaseModel):
    id: str
    position: Position
    classes: List[str] = Field(default_factory=list)


class EdgeState(BaseModel):
    id: str
    source: str
    target: str


class GraphSnapshot(BaseModel):
    nodes: List[NodeState] = Field(default_factory=list)
    edges: List[EdgeState] = Field(default_factory=list)
    rules: List[RuleState] = Field(default_factory=list)
