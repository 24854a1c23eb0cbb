from typing import Dict, List, Sequence, TypeVar

T = TypeVar("T")

PICKING_ORDER_FILENAME = "location_picking_order.json"


def array_move(items: Sequence[T], from_index: int, to_index: int) -> List[T]:
    """Move one element, shifting the rest. Negative indexes count from the end."""
    out = list(items)
    if not out:
        return out
    n = len(out)
    src = from_index + n if from_index < 0 else from_index
    dst = to_index + n if to_index < 0 else to_index
    if not (0 <= src < n) or not (0 <= dst < n):
        raise IndexError(f"move {from_index}->{to_index} out of range for {n} locations")
    out.insert(dst, out.pop(src))
    return out


def move_location(locations: Sequence[str], active: str, over: str) -> List[str]:
    """Drag-and-drop move: put ``active`` where ``over`` currently is."""
    names = list(locations)
    for name in (active, over):
        if name not in names:
            raise ValueError(f"Unknown location {name!r}")
    return array_move(names, names.index(active), names.index(over))


def build_picking_order(main_locations: Sequence[str]) -> Dict[str, List[str]]:
    return {"Location_Picking_Order": list(main_locations)}
