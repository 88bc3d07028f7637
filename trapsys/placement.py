"""Placement resolver: where a trapped entity comes to rest inside the trap."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from trapsys.descriptor import PlacementMode, TrapDescriptor
from trapsys.geometry import GridCoords, Point, cell_center, distance, grid_coords, round_half_up
from trapsys.session import TrapSession
from trapsys.world import Token

log = logging.getLogger(__name__)

# E, W, S, N, SE, NW, NE, SW (y grows downwards)
NEIGHBOUR_OFFSETS: tuple[tuple[int, int], ...] = (
    (1, 0), (-1, 0), (0, 1), (0, -1),
    (1, 1), (-1, -1), (1, -1), (-1, 1),
)


def ring_offsets(radius: int) -> Iterator[tuple[int, int]]:
    """Perimeter cells of ring ``radius``: dx outer loop, dy inner, both -r..r."""
    for dx in range(-radius, radius + 1):
        for dy in range(-radius, radius + 1):
            if abs(dx) == radius or abs(dy) == radius:
                yield dx, dy


class PlacementResolver:
    def __init__(self, session: TrapSession) -> None:
        self.session = session

    def occupied_points(self, mover: Token, page_id: str) -> list[Point]:
        """Resting points of every other entity locked on the page."""
        points = []
        for entity_id, record in self.session.locks.items():
            if entity_id == mover.id:
                continue
            token = self.session.world.get_token(entity_id)
            if token is not None and token.page_id == page_id:
                points.append(record.rest)
        return points

    @staticmethod
    def is_occupied(point: Point, occupied: list[Point], grid: float) -> bool:
        return any(distance(point, other) < grid * 0.5 for other in occupied)

    def resolve(self, mover: Token, trap: Token, d: TrapDescriptor, contact: Point) -> Point:
        g = self.session.grid_size(trap.page_id)
        tc = grid_coords(trap, g)
        occupied = self.occupied_points(mover, trap.page_id)

        if d.placement is None:
            rest = self._from_contact(contact, tc, occupied)
        elif d.placement.mode is PlacementMode.CENTER:
            rest = self._center(trap, g, occupied)
        else:
            rest = self._fixed_cell(d.placement.x, d.placement.y, tc, occupied)
        log.debug("Placement for %s in trap %s: contact=(%.1f,%.1f) rest=(%.1f,%.1f)",
                  mover.id, trap.id, contact[0], contact[1], rest[0], rest[1])
        return rest

    def _center(self, trap: Token, g: float, occupied: list[Point]) -> Point:
        col = round_half_up(trap.left / g - 0.5)
        row = round_half_up(trap.top / g - 0.5)
        center = cell_center(col, row, g)
        if not self.is_occupied(center, occupied, g):
            return center
        for radius in range(1, self.session.config.search_radius + 1):
            for dx, dy in ring_offsets(radius):
                candidate = cell_center(col + dx, row + dy, g)
                if not self.is_occupied(candidate, occupied, g):
                    return candidate
        return center

    def _fixed_cell(self, x: int, y: int, tc: GridCoords, occupied: list[Point]) -> Point:
        rel_x = min(max(0, x), tc.width - 1)
        rel_y = min(max(0, y), tc.height - 1)
        target = tc.cell_center(rel_x, rel_y)
        if not self.is_occupied(target, occupied, tc.grid_size):
            return target
        for depth in range(1, max(tc.width, tc.height) + 1):
            for dx, dy in ring_offsets(depth):
                if not tc.contains_cell(rel_x + dx, rel_y + dy):
                    continue
                candidate = tc.cell_center(rel_x + dx, rel_y + dy)
                if not self.is_occupied(candidate, occupied, tc.grid_size):
                    return candidate
        return target

    def _from_contact(self, contact: Point, tc: GridCoords, occupied: list[Point]) -> Point:
        g = tc.grid_size
        rel_x = min(max(0, int((contact[0] - tc.x * g) // g)), tc.width - 1)
        rel_y = min(max(0, int((contact[1] - tc.y * g) // g)), tc.height - 1)
        target = tc.cell_center(rel_x, rel_y)
        if not self.is_occupied(target, occupied, g):
            return target
        for dx, dy in NEIGHBOUR_OFFSETS:
            if not tc.contains_cell(rel_x + dx, rel_y + dy):
                continue
            candidate = tc.cell_center(rel_x + dx, rel_y + dy)
            if not self.is_occupied(candidate, occupied, g):
                return candidate
        return target
