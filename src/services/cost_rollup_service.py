import logging
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

from services.azure_devops_service import AzureDevOpsService
from services.config_service import RollupSettings
from services.rollup_service import (
    METADATA_FIELDS,
    WorkItemSnapshot,
    build_hierarchy_index,
    build_snapshots,
    compute_rollups,
    edges_from_wiql,
)
from services.update_service import PartialWriteFailureError, write_updates

logger = logging.getLogger(__name__)


@dataclass
class RollupPlan:
    """The computed rollups for one run, before anything is written"""
    hierarchy: Dict[int, List[int]]
    snapshots: Dict[int, WorkItemSnapshot]
    rollup_fields: List[str]

    def updates_required(self) -> List[int]:
        return [item_id for item_id, snapshot in self.snapshots.items()
                if snapshot.state.is_update_required]

    def rows(self, verbose: bool = False) -> List[Dict[str, Any]]:
        """
        Rows describing the plan for reports

        Only items that will be updated are included unless verbose is set.
        """
        rows = []
        for item_id, snapshot in self.snapshots.items():
            state = snapshot.state
            if not (verbose or state.is_update_required):
                continue
            rows.append({
                "id": item_id,
                "old": {f: snapshot.fields.get(f) for f in self.rollup_fields},
                "new": {f: state.rollup_info.get(f) for f in self.rollup_fields},
                "is_update_required": state.is_update_required,
                "work_item_type": snapshot.work_item_type,
                "state": snapshot.state_name,
                "title": snapshot.title,
            })
        return rows


@dataclass
class RollupOutcome:
    plan: RollupPlan
    updated_count: int = 0
    safe_mode: bool = True
    write_error: Optional[PartialWriteFailureError] = field(default=None, repr=False)


class CostRollupService:
    def __init__(self, azure_devops: AzureDevOpsService, settings: RollupSettings):
        self.azure_devops = azure_devops
        self.settings = settings

    def load_hierarchy(self, area_paths: Optional[List[str]] = None, iteration_path: Optional[str] = None,
                       query_extension: Optional[str] = None, query_id: Optional[str] = None) -> RollupPlan:
        """
        Query the hierarchy, fetch current costs and compute the rollups

        A saved query is used when query_id is given; it must be a tree query.
        Otherwise the Feature hierarchy under the area paths is queried.
        """
        if query_id:
            logger.info(f"Processing work items from query {query_id}")
            query_results = self.azure_devops.run_saved_query(query_id)
        else:
            if not area_paths:
                raise ValueError("Either area paths or a query id is required")
            logger.info(f"Processing features, requirements and tasks from {area_paths}")
            query = self.azure_devops.build_rollup_query(area_paths, iteration_path, query_extension)
            query_results = self.azure_devops.run_wiql(query)

        edges = edges_from_wiql(query_results)
        logger.info(f"Processing {len(edges)} work item relations")
        hierarchy = build_hierarchy_index(edges)

        field_names = METADATA_FIELDS + [f for f in self.settings.fields_to_rollup if f not in METADATA_FIELDS]
        raw_fields = self.azure_devops.get_work_item_fields(
            [edge.child_id for edge in edges],
            field_names,
            max_ids_per_call=self.settings.max_ids_per_call
        )

        snapshots = build_snapshots(raw_fields)
        compute_rollups(hierarchy, snapshots, self.settings.fields_to_rollup)
        return RollupPlan(hierarchy=hierarchy, snapshots=snapshots,
                          rollup_fields=list(self.settings.fields_to_rollup))

    def apply(self, plan: RollupPlan, force_cap: Optional[int] = None) -> int:
        """Write the plan back to Azure DevOps; returns the number of items updated"""
        max_updates = force_cap or self.settings.max_updates
        return write_updates(
            plan.snapshots,
            max_updates=max_updates,
            batch_size=self.settings.batch_size,
            write_batch=self.azure_devops.submit_patch_batch,
            rollup_fields=plan.rollup_fields,
            api_version=self.settings.api_version
        )

    def run(self, area_paths: Optional[List[str]] = None, iteration_path: Optional[str] = None,
            query_extension: Optional[str] = None, query_id: Optional[str] = None,
            apply: bool = False, force_cap: Optional[int] = None) -> RollupOutcome:
        """
        Compute the plan and, when apply is set, write it

        Safe mode (the default) never writes. A failed write is recorded on the
        outcome so the computed plan can still be reported.
        """
        plan = self.load_hierarchy(area_paths, iteration_path, query_extension, query_id)
        outcome = RollupOutcome(plan=plan, safe_mode=not apply)

        if not apply:
            logger.info("Skipping update because safe mode is enabled.")
            return outcome

        logger.info("Writing updated costs into Azure DevOps.")
        try:
            outcome.updated_count = self.apply(plan, force_cap)
        except PartialWriteFailureError as e:
            logger.error(f"Writing updates failed: {str(e)}")
            outcome.write_error = e
        logger.info(f"Count of work items updated: {outcome.updated_count}")
        return outcome
