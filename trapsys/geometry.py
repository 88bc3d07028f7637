"""Grid and pixel geometry: boxes, grid coordinates, overlap, segment intersection."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from trapsys.world import Token

Point = tuple[float, float]


@dataclass(frozen=True, slots=True)
class Box:
    """Axis-aligned box in pixel space (y grows downwards)."""

    left: float
    top: float
    right: float
    bottom: float

    @classmethod
    def from_center(cls, cx: float, cy: float, width: float, height: float) -> Box:
        return cls(cx - width / 2, cy - height / 2, cx + width / 2, cy + height / 2)

    @property
    def width(self) -> float:
        return self.right - self.left

    @property
    def height(self) -> float:
        return self.bottom - self.top

    @property
    def area(self) -> float:
        return self.width * self.height

    def expanded(self, margin: float) -> Box:
        return Box(self.left - margin, self.top - margin,
                   self.right + margin, self.bottom + margin)

    def contains(self, x: float, y: float) -> bool:
        """Point test, boundary inclusive."""
        return self.left <= x <= self.right and self.top <= y <= self.bottom

    def edges(self) -> list[tuple[Point, Point]]:
        """Top, right, bottom, left edges as segments (clockwise)."""
        return [
            ((self.left, self.top), (self.right, self.top)),
            ((self.right, self.top), (self.right, self.bottom)),
            ((self.right, self.bottom), (self.left, self.bottom)),
            ((self.left, self.bottom), (self.left, self.top)),
        ]


@dataclass(frozen=True, slots=True)
class GridCoords:
    """A token's footprint expressed in grid cells plus its raw pixel geometry."""

    x: int  # column of the top-left cell
    y: int  # row of the top-left cell
    width: int  # cells
    height: int  # cells
    grid_size: float
    pixel_x: float
    pixel_y: float
    token_width: float
    token_height: float

    def cell_center(self, rel_col: int, rel_row: int) -> Point:
        """Pixel centre of a cell given relative to the top-left cell."""
        return cell_center(self.x + rel_col, self.y + rel_row, self.grid_size)

    def contains_cell(self, rel_col: int, rel_row: int) -> bool:
        return 0 <= rel_col < self.width and 0 <= rel_row < self.height


# ── Helpers ──────────────────────────────────────────────────────

def round_half_up(value: float) -> int:
    """Nearest integer, halves always going up (``round`` would go to even)."""
    return math.floor(value + 0.5)


def distance(a: Point, b: Point) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def cell_center(col: int, row: int, grid_size: float) -> Point:
    return (col * grid_size + grid_size / 2, row * grid_size + grid_size / 2)


def token_box(token: Token) -> Box:
    return Box.from_center(token.left, token.top, token.width, token.height)


def grid_coords(token: Token, grid_size: float) -> GridCoords:
    g = grid_size
    w, h = token.width, token.height
    return GridCoords(
        x=round_half_up((token.left - w / 2) / g),
        y=round_half_up((token.top - h / 2) / g),
        width=math.ceil(w / g),
        height=math.ceil(h / g),
        grid_size=g,
        pixel_x=token.left,
        pixel_y=token.top,
        token_width=w,
        token_height=h,
    )


# ── Overlap and intersection ─────────────────────────────────────

def overlap_percent(a: Box, b: Box) -> float:
    """Intersection area of a and b as a percentage of a's area."""
    if a.area <= 0:
        return 0.0
    x_overlap = max(0.0, min(a.right, b.right) - max(a.left, b.left))
    y_overlap = max(0.0, min(a.bottom, b.bottom) - max(a.top, b.top))
    return x_overlap * y_overlap * 100 / a.area


def line_intersection(p1: Point, p2: Point, p3: Point, p4: Point) -> Point | None:
    """Intersection of segments p1-p2 and p3-p4, or None.

    Parametric form; both parameters must lie in [0, 1]. Parallel or
    collinear segments never intersect.
    """
    x1, y1 = p1
    x2, y2 = p2
    x3, y3 = p3
    x4, y4 = p4
    denom = (x1 - x2) * (y3 - y4) - (y1 - y2) * (x3 - x4)
    if not denom:
        return None
    t = ((x1 - x3) * (y3 - y4) - (y1 - y3) * (x3 - x4)) / denom
    u = -((x1 - x2) * (y1 - y3) - (y1 - y2) * (x1 - x3)) / denom
    if 0 <= t <= 1 and 0 <= u <= 1:
        return (x1 + t * (x2 - x1), y1 + t * (y2 - y1))
    return None


def segment_vs_expanded_box(p0: Point, p1: Point, box: Box, margin: float) -> Point | None:
    """First contact of the path p0→p1 with ``box`` grown by ``margin``.

    An endpoint inside the expanded box is returned as-is (p0 first).
    Otherwise the edge intersection nearest p0 is returned.
    """
    grown = box.expanded(margin)
    if grown.contains(*p0):
        return p0
    if grown.contains(*p1):
        return p1
    hits = [
        hit for a, b in grown.edges()
        if (hit := line_intersection(p0, p1, a, b)) is not None
    ]
    if not hits:
        return None
    return min(hits, key=lambda hit: distance(hit, p0))


def path_margin(box: Box, factor: float) -> float:
    return min(box.width, box.height) * factor
