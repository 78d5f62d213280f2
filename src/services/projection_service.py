import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from services.azure_devops_service import AzureDevOpsService
from services.config_service import RollupSettings
from services.rollup_service import field_value

logger = logging.getLogger(__name__)

PROJECTION_FIELDS = [
    "System.Id",
    "System.Title",
    "Microsoft.VSTS.Scheduling.RemainingWork",
    "Microsoft.VSTS.Scheduling.CompletedWork",
    "System.IterationPath",
    "System.State",
    "Custom.CommittedTargettedCut",
    "Custom.ReleaseType",
    "System.Tags",
    "Custom.InvestmentArea",
    "Microsoft.VSTS.Common.StackRank",
]

EMPTY_KEY = "<empty>"
SKIPPED_KEY = "N/A"
HARD_CUT = "Hard Cut"


class DataSlicer:
    """Buckets remaining work and item counts by a category value"""

    def __init__(self, name: str):
        self.name = name
        self.total = 0
        self.total_count = 0
        self.buckets: Dict[str, Dict[str, Any]] = {}

    def add_item(self, key: str, value: float, item_id: int) -> None:
        self.total += value
        self.total_count += 1
        bucket = self.buckets.setdefault(key, {"value": 0, "count": 0, "ids": []})
        bucket["value"] += value
        bucket["count"] += 1
        bucket["ids"].append(item_id)

    def summary(self) -> List[Dict[str, Any]]:
        rows = []
        for key, bucket in self.buckets.items():
            rows.append({
                "key": key,
                "value": bucket["value"],
                "value_percent": bucket["value"] * 100 / self.total if self.total else 0,
                "count": bucket["count"],
                "count_percent": bucket["count"] * 100 / self.total_count if self.total_count else 0,
            })
        return rows


@dataclass
class ProjectionRow:
    id: int
    cumulative_remaining: float
    remaining: float
    state: str
    investment_area: str
    commitment: str
    release_type: str
    title: str
    # Marker printed before this row: "capacity" or "user"
    cutline_before: Optional[str] = None
    cutline_after: Optional[str] = None


@dataclass
class ProjectionResult:
    capacity: Optional[float]
    rows: List[ProjectionRow] = field(default_factory=list)
    slicers: List[DataSlicer] = field(default_factory=list)
    capacity_cutline_cost: Optional[float] = None


def compute_projection(work_item_ids: List[int], fields_by_id: Dict[int, Dict[str, Any]],
                       capacity: Optional[float], skip_tag: str, cutline_tag: str) -> ProjectionResult:
    """
    Walk the backlog in stack rank order accumulating remaining work

    The capacity cut line is drawn before the first item that would push the
    cumulative total past capacity; nothing after it is sliced. A user cut line
    (cutline tag) stops slicing the same way. Items with the skip tag and Hard Cut
    items are listed but never sliced.
    """
    commitment_level = DataSlicer("Commitment Level")
    release_type = DataSlicer("Release type")
    investment_area = DataSlicer("Investment Area")
    release_type_committed = DataSlicer("Release type for Committed items")
    release_type_targeted = DataSlicer("Release type for Targeted items")

    result = ProjectionResult(capacity=capacity, slicers=[
        commitment_level, release_type, release_type_committed, release_type_targeted, investment_area
    ])

    cumulative = 0
    has_cutline_rendered = False
    stop_processing = False

    for item_id in work_item_ids:
        fields = fields_by_id.get(item_id)
        if fields is None:
            logger.warning(f"No fields fetched for work item {item_id}, skipping it in the projection")
            continue

        remaining = field_value(fields, "Microsoft.VSTS.Scheduling.RemainingWork")
        tags = fields.get("System.Tags") or ""
        is_skipped = bool(skip_tag) and skip_tag in tags

        cutline_before = None
        if not has_cutline_rendered and capacity and cumulative + remaining > capacity:
            cutline_before = "capacity"
            result.capacity_cutline_cost = cumulative
            has_cutline_rendered = True
            stop_processing = True

        cumulative += remaining

        commitment = fields.get("Custom.CommittedTargettedCut") or EMPTY_KEY
        area = fields.get("Custom.InvestmentArea") or EMPTY_KEY
        release = fields.get("Custom.ReleaseType") or EMPTY_KEY
        if is_skipped:
            commitment = area = release = SKIPPED_KEY

        row = ProjectionRow(
            id=item_id,
            cumulative_remaining=cumulative,
            remaining=remaining,
            state=fields.get("System.State", ""),
            investment_area=area,
            commitment=commitment,
            release_type=release,
            title=fields.get("System.Title", ""),
            cutline_before=cutline_before
        )
        result.rows.append(row)

        if commitment == HARD_CUT or is_skipped:
            continue

        if cutline_tag and cutline_tag in tags:
            row.cutline_after = "user"
            stop_processing = True
            continue

        if stop_processing:
            continue

        commitment_level.add_item(commitment, remaining, item_id)
        release_type.add_item(release, remaining, item_id)
        if commitment == "Committed":
            release_type_committed.add_item(release, remaining, item_id)
        elif commitment == "Targeted":
            release_type_targeted.add_item(release, remaining, item_id)
        investment_area.add_item(area, remaining, item_id)

    return result


class ProjectionService:
    def __init__(self, azure_devops: AzureDevOpsService, settings: RollupSettings):
        self.azure_devops = azure_devops
        self.settings = settings

    def run(self, area_paths: List[str], iteration_path: str, capacity: Optional[float] = None,
            query_extension: Optional[str] = None) -> ProjectionResult:
        """Query the Features of an iteration and project them against capacity"""
        if capacity is None:
            logger.warning("No capacity given, the cut line will not be calculated")

        query = self.azure_devops.build_projection_query(area_paths, iteration_path, query_extension)
        query_results = self.azure_devops.run_wiql(query)
        work_item_ids = [item["id"] for item in query_results.get("workItems", [])]
        logger.info(f"Projecting {len(work_item_ids)} features in {iteration_path}")

        fields_by_id = self.azure_devops.get_work_item_fields(
            work_item_ids, PROJECTION_FIELDS, max_ids_per_call=self.settings.max_ids_per_call
        )
        return compute_projection(work_item_ids, fields_by_id, capacity,
                                  self.settings.skip_tag, self.settings.cutline_tag)
