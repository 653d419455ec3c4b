"""
Slot layout: deterministic visual partition of a slot among its occupants.

A slot is drawn as a 4-column, 2-row box. Positions depend only on an item's
rank and the number of items, so every render of the same occupancy agrees.

    1 item   full slot
    2 items  left half | right half
    3 items  two halves on top, one full-width item below
    4 items  2x2 grid, row-major
"""

from dataclasses import dataclass

GRID_COLUMNS = 4
GRID_ROWS = 2
SLOT_HOURS = 4.0


@dataclass(frozen=True)
class SlotPosition:
    column_start: int
    column_span: int
    row: int
    row_span: int


FULL = SlotPosition(column_start=0, column_span=4, row=0, row_span=2)
LEFT_HALF = SlotPosition(column_start=0, column_span=2, row=0, row_span=2)
RIGHT_HALF = SlotPosition(column_start=2, column_span=2, row=0, row_span=2)
TOP_LEFT = SlotPosition(column_start=0, column_span=2, row=0, row_span=1)
TOP_RIGHT = SlotPosition(column_start=2, column_span=2, row=0, row_span=1)
BOTTOM_FULL = SlotPosition(column_start=0, column_span=4, row=1, row_span=1)
BOTTOM_LEFT = SlotPosition(column_start=0, column_span=2, row=1, row_span=1)
BOTTOM_RIGHT = SlotPosition(column_start=2, column_span=2, row=1, row_span=1)

LAYOUTS = {
    0: [],
    1: [FULL],
    2: [LEFT_HALF, RIGHT_HALF],
    3: [TOP_LEFT, TOP_RIGHT, BOTTOM_FULL],
    4: [TOP_LEFT, TOP_RIGHT, BOTTOM_LEFT, BOTTOM_RIGHT],
}


def layout_for(count: int) -> list[SlotPosition]:
    """Positions for ranks 0..count-1"""
    if count < 0:
        raise ValueError("count must be non-negative")
    if count in LAYOUTS:
        return list(LAYOUTS[count])
    # Overbooked slots (admin override) keep filling two-per-row below the grid
    return [
        SlotPosition(column_start=(rank % 2) * 2, column_span=2, row=rank // 2, row_span=1)
        for rank in range(count)
    ]


def position_of(rank: int, count: int) -> SlotPosition:
    if not 0 <= rank < count:
        raise ValueError(f"rank {rank} outside slot of {count} items")
    return layout_for(count)[rank]


def automatic_hours(count: int) -> float:
    """Share of the 4-hour slot an item gets when no explicit duration is set"""
    if count <= 0:
        return 0.0
    return round(SLOT_HOURS / count, 2)


def stamp_layout(items: list) -> None:
    """
    Re-rank items in list order and stamp their column_start.

    Items are anything with writable ``slot_order`` and ``column_start``
    attributes, typically Assignment rows of a single slot.
    """
    positions = layout_for(len(items))
    for rank, (item, position) in enumerate(zip(items, positions)):
        item.slot_order = rank
        item.column_start = position.column_start
