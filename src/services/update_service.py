import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Dict, Any, Callable, Tuple

from services.rollup_service import RollupError, WorkItemSnapshot

logger = logging.getLogger(__name__)

# Upper bound on concurrent $batch submissions
MAX_WRITE_WORKERS = 8


class PartialWriteFailureError(RollupError):
    """One or more update batches were rejected; other batches may have committed"""

    def __init__(self, failed_batches: int, total_batches: int, cause: Exception):
        self.failed_batches = failed_batches
        self.total_batches = total_batches
        self.cause = cause
        super().__init__(
            f"{failed_batches} of {total_batches} update batches failed: {cause}"
        )


def select_updates(snapshots: Dict[int, WorkItemSnapshot], max_updates: int) -> Tuple[List[int], List[int]]:
    """
    Pick the items flagged for update and cap them

    Returns:
        tuple: (all flagged IDs, the first max_updates of them)
    """
    selected = [item_id for item_id, snapshot in snapshots.items()
                if snapshot.state.is_update_required]
    capped = selected[:max_updates]
    if len(capped) != len(selected):
        logger.warning(f"{len(selected)} updates computed, capping to {len(capped)} "
                       f"({len(selected) - len(capped)} skipped)")
    return selected, capped


def chunk_ids(ids: List[int], batch_size: int) -> List[List[int]]:
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    return [ids[i:i + batch_size] for i in range(0, len(ids), batch_size)]


def format_field_value(value: float) -> str:
    """Serialize a rollup value the way Azure DevOps accepts it in a patch"""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_patch_requests(ids: List[int], snapshots: Dict[int, WorkItemSnapshot],
                         rollup_fields: List[str], api_version: str) -> List[Dict[str, Any]]:
    """
    Build the $batch body for a group of items

    Each item gets one PATCH with a replace operation per rollup field. Values
    have to be strings, the endpoint rejects numbers.
    """
    patch_requests = []
    for item_id in ids:
        rollup_info = snapshots[item_id].state.rollup_info
        patch_requests.append({
            "method": "PATCH",
            "uri": f"/_apis/wit/workitems/{item_id}?api-version={api_version}",
            "headers": {
                "Content-Type": "application/json-patch+json"
            },
            "body": [
                {
                    "op": "replace",
                    "path": f"/fields/{field_name}",
                    "value": format_field_value(rollup_info[field_name])
                }
                for field_name in rollup_fields
            ]
        })
    return patch_requests


def write_updates(snapshots: Dict[int, WorkItemSnapshot], max_updates: int, batch_size: int,
                  write_batch: Callable[[List[Dict[str, Any]]], Any],
                  rollup_fields: List[str], api_version: str = "7.0") -> int:
    """
    Write computed rollups back in capped, concurrent batches

    Args:
        snapshots: Work items with computed state
        max_updates: Most items to write in this run
        batch_size: Items per $batch request
        write_batch: Callable submitting one $batch body
        rollup_fields: Fields to write for each item
        api_version: API version used in the per-item PATCH uri

    Returns:
        Number of items submitted

    Raises:
        PartialWriteFailureError: if any batch failed. Batches that succeeded are
            not rolled back.
    """
    _, capped_ids = select_updates(snapshots, max_updates)
    batches = chunk_ids(capped_ids, batch_size)
    if not batches:
        logger.info("No work items need updating")
        return 0

    logger.info(f"Writing {len(capped_ids)} work items in {len(batches)} batches")

    def _submit(batch_ids: List[int]) -> int:
        write_batch(build_patch_requests(batch_ids, snapshots, rollup_fields, api_version))
        return len(batch_ids)

    updated = 0
    errors = []
    with ThreadPoolExecutor(max_workers=min(MAX_WRITE_WORKERS, len(batches))) as pool:
        futures = [pool.submit(_submit, batch_ids) for batch_ids in batches]
        for batch_ids, future in zip(batches, futures):
            try:
                updated += future.result()
            except Exception as e:
                logger.error(f"Update batch of {len(batch_ids)} items "
                             f"(first id {batch_ids[0]}) failed: {str(e)}")
                errors.append(e)

    if errors:
        raise PartialWriteFailureError(len(errors), len(batches), errors[0]) from errors[0]

    logger.info(f"Updated {updated} work items")
    return updated
