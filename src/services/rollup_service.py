import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP, localcontext
from typing import List, Dict, Any, Optional, Iterable

logger = logging.getLogger(__name__)

HIERARCHY_FORWARD = "System.LinkTypes.Hierarchy-Forward"

# Metadata fetched alongside the rollup fields, used only for reporting
METADATA_FIELDS = ["System.Id", "System.Title", "System.WorkItemType", "System.State"]


class RollupError(Exception):
    """Base class for errors raised while computing rollups"""
    pass


class MissingChildSnapshotError(RollupError):
    """A work item referenced by the hierarchy has no fetched field snapshot"""

    def __init__(self, item_id: int, parent_id: Optional[int] = None):
        self.item_id = item_id
        self.parent_id = parent_id
        if parent_id is None:
            message = f"No field snapshot for work item {item_id}"
        else:
            message = f"No field snapshot for work item {item_id} (child of {parent_id})"
        super().__init__(message)


@dataclass
class WorkItemEdge:
    parent_id: Optional[int]
    child_id: int
    relation_kind: Optional[str]


@dataclass
class ComputationState:
    rollup_info: Dict[str, float] = field(default_factory=dict)
    is_processed: bool = False
    is_update_required: bool = False


@dataclass
class WorkItemSnapshot:
    """Fields as fetched from Azure DevOps plus the mutable rollup state"""
    id: int
    fields: Dict[str, Any]
    state: ComputationState = field(default_factory=ComputationState)

    @property
    def title(self) -> str:
        return self.fields.get("System.Title", "")

    @property
    def work_item_type(self) -> str:
        return self.fields.get("System.WorkItemType", "")

    @property
    def state_name(self) -> str:
        return self.fields.get("System.State", "")


def edges_from_wiql(payload: Dict[str, Any]) -> List[WorkItemEdge]:
    """
    Convert a WorkItemLinks WIQL response into edges

    Top level items come back with a null source and no relation kind.
    """
    edges = []
    for relation in payload.get("workItemRelations", []):
        target = relation.get("target") or {}
        if target.get("id") is None:
            continue
        source = relation.get("source") or {}
        edges.append(WorkItemEdge(
            parent_id=source.get("id"),
            child_id=target["id"],
            relation_kind=relation.get("rel")
        ))
    return edges


def build_hierarchy_index(edges: Iterable[WorkItemEdge]) -> Dict[int, List[int]]:
    """
    Map each parent ID to its direct children

    Only Hierarchy-Forward links are kept, where the source is the parent and the
    target the child. Items that never appear as a key are leaves.
    """
    hierarchy: Dict[int, List[int]] = {}
    for edge in edges:
        if edge.relation_kind != HIERARCHY_FORWARD or edge.parent_id is None:
            continue
        hierarchy.setdefault(edge.parent_id, []).append(edge.child_id)
    return hierarchy


def build_snapshots(raw_fields: Dict[int, Dict[str, Any]]) -> Dict[int, WorkItemSnapshot]:
    """Wrap fetched field maps with a fresh computation state per item"""
    return {
        item_id: WorkItemSnapshot(id=item_id, fields=fields or {})
        for item_id, fields in raw_fields.items()
    }


def field_value(fields: Dict[str, Any], name: str) -> float:
    """Read a cost field as a number; blank or missing values read as 0"""
    value = fields.get(name)
    if value is None or value == "":
        return 0
    if isinstance(value, str):
        return float(value.strip())
    return value


def round2(value: float) -> float:
    """Round to two decimals, halves away from zero"""
    if not math.isfinite(value):
        return value
    decimal_value = Decimal(repr(value))
    with localcontext() as ctx:
        # Large magnitudes need more than the default 28 digits to keep two decimals
        ctx.prec = max(ctx.prec, decimal_value.adjusted() + 3)
        rounded = decimal_value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return float(rounded)


def needs_update(fields: Dict[str, Any], rollup_info: Dict[str, float],
                 rollup_fields: List[str]) -> bool:
    """
    Decide whether a computed rollup should be written back

    A write is needed when some computed value differs from what is stored. Items
    whose cost fields are all blank and whose rollups are all zero are left alone,
    since newly created items usually have not been costed yet.
    """
    net_sum = 0
    any_changed = False

    for field_name in rollup_fields:
        rollup_value = rollup_info.get(field_name)
        current_value = field_value(fields, field_name)
        net_sum += (rollup_value or 0) + current_value
        if rollup_value is not None and rollup_value != current_value:
            any_changed = True

    return net_sum > 0 and any_changed


def rollup_item(item_id: int, hierarchy: Dict[int, List[int]],
                snapshots: Dict[int, WorkItemSnapshot], rollup_fields: List[str],
                parent_id: Optional[int] = None) -> None:
    """
    Compute the rollup for one item, processing its subtree first

    Calling this for an item that is already processed is a no-op. A cyclic
    hierarchy is not detected and ends in RecursionError.
    """
    snapshot = snapshots.get(item_id)
    if snapshot is None:
        raise MissingChildSnapshotError(item_id, parent_id)

    state = snapshot.state
    if state.is_processed:
        return

    child_ids = hierarchy.get(item_id)
    if child_ids is None:
        for field_name in rollup_fields:
            state.rollup_info[field_name] = field_value(snapshot.fields, field_name)
    else:
        for field_name in rollup_fields:
            state.rollup_info[field_name] = 0

        for child_id in child_ids:
            rollup_item(child_id, hierarchy, snapshots, rollup_fields, parent_id=item_id)
            child_info = snapshots[child_id].state.rollup_info
            for field_name in rollup_fields:
                state.rollup_info[field_name] = round2(
                    state.rollup_info[field_name] + child_info[field_name]
                )

    state.is_processed = True
    state.is_update_required = needs_update(snapshot.fields, state.rollup_info, rollup_fields)


def compute_rollups(hierarchy: Dict[int, List[int]], snapshots: Dict[int, WorkItemSnapshot],
                    rollup_fields: List[str]) -> None:
    """
    Recompute the rollup fields for every item from the leaves up

    Stored parent totals are ignored and always derived from the children. Every
    parent in the index is an entry point; items outside the hierarchy are then
    processed as standalone leaves.
    """
    logger.info(f"Rolling up {len(rollup_fields)} fields across {len(snapshots)} work items "
                f"({len(hierarchy)} parents)")

    for item_id in hierarchy:
        rollup_item(item_id, hierarchy, snapshots, rollup_fields)

    for item_id in snapshots:
        rollup_item(item_id, hierarchy, snapshots, rollup_fields)

    required = sum(1 for s in snapshots.values() if s.state.is_update_required)
    logger.info(f"Rollup complete: {required} work items need an update")
