"""
Reference Path Templates
========================

The idealized bar path is described in template units: x grows away from
the rep's bottom towards the lockout side, y grows upwards from the bottom.
A template is scaled into pixels by ``canvas_size / unit_height`` where
``canvas_size`` is the vertical extent of the observed trajectory.

Bench press (template units):

    ascent:  arc (0,0)-(6,9)-(13,15), arc (13,15)-(14.5,16)-(15,17),
             vertical line (15,17)-(15,28)
    descent: arc (0,0)-(4,16)-(13,27)
"""

import os
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple, Union

import yaml


Point = Tuple[float, float]


@dataclass(frozen=True)
class PathTemplate:
    """Control points and the indices that pick each reference primitive."""
    name: str
    points: Tuple[Point, ...]
    ascent_arcs: Tuple[Tuple[int, int, int], Tuple[int, int, int]]
    ascent_line: Tuple[int, int]
    descent_arc: Tuple[int, int, int]
    unit_height: float = 27.0

    def __post_init__(self):
        indices = list(self.ascent_line) + list(self.descent_arc)
        for arc in self.ascent_arcs:
            indices.extend(arc)
        if any(i < 0 or i >= len(self.points) for i in indices):
            raise ValueError(
                f"Template '{self.name}' references a control point outside "
                f"0..{len(self.points) - 1}"
            )
        if self.unit_height <= 0:
            raise ValueError("unit_height must be positive")

    def scaled_points(self, scalor: float) -> Tuple[Point, ...]:
        """Control points converted from template units to pixels."""
        return tuple((x * scalor, y * scalor) for x, y in self.points)


# ============================================================================
# Built-in Templates
# ============================================================================

BENCH_PRESS_TEMPLATE = PathTemplate(
    name="bench_press",
    points=(
        (0.0, 0.0),
        (6.0, 9.0),
        (13.0, 15.0),
        (14.5, 16.0),
        (15.0, 17.0),
        (15.0, 28.0),
        (0.0, 0.0),
        (4.0, 16.0),
        (13.0, 27.0),
    ),
    ascent_arcs=((0, 1, 2), (2, 3, 4)),
    ascent_line=(4, 5),
    descent_arc=(6, 7, 8),
    unit_height=27.0,
)

TEMPLATES: Dict[str, PathTemplate] = {
    BENCH_PRESS_TEMPLATE.name: BENCH_PRESS_TEMPLATE,
}


def template_from_dict(data: Dict) -> PathTemplate:
    """Build a template from a mapping (usually a YAML ``template:`` block)."""
    try:
        points = tuple((float(x), float(y)) for x, y in data["points"])
        arcs = data["ascent_arcs"]
        return PathTemplate(
            name=str(data.get("name", "custom")),
            points=points,
            ascent_arcs=(tuple(arcs[0]), tuple(arcs[1])),
            ascent_line=tuple(data["ascent_line"]),
            descent_arc=tuple(data["descent_arc"]),
            unit_height=float(data.get("unit_height", 27.0)),
        )
    except (KeyError, IndexError, TypeError) as e:
        raise ValueError(f"Invalid template definition: {e}") from e


def load_template(source: Union[None, str, Dict] = None) -> PathTemplate:
    """
    Resolve a template from a config value.

    Args:
        source: None (bench press), a built-in template name, a path to a
            YAML file holding a template mapping, or the mapping itself

    Returns:
        The resolved PathTemplate
    """
    if source is None:
        return BENCH_PRESS_TEMPLATE
    if isinstance(source, dict):
        return template_from_dict(source)
    if source in TEMPLATES:
        return TEMPLATES[source]
    if os.path.exists(source):
        with open(source, "r") as f:
            return template_from_dict(yaml.safe_load(f) or {})
    raise ValueError(f"Unknown path template: {source}")


def template_points(template: PathTemplate, indices: Sequence[int],
                    scalor: float) -> Tuple[Point, ...]:
    scaled = template.scaled_points(scalor)
    return tuple(scaled[i] for i in indices)


def describe(template: Optional[PathTemplate] = None) -> str:
    template = template or BENCH_PRESS_TEMPLATE
    return (
        f"{template.name}: {len(template.points)} control points, "
        f"unit height {template.unit_height:g}"
    )
