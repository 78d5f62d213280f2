import logging
import threading

import pytest

from services.rollup_service import build_snapshots
from services.update_service import (
    PartialWriteFailureError,
    build_patch_requests,
    chunk_ids,
    format_field_value,
    select_updates,
    write_updates,
)

RW = "Microsoft.VSTS.Scheduling.RemainingWork"
OE = "Microsoft.VSTS.Scheduling.OriginalEstimate"


def _planned(required_ids, other_ids=()):
    """Snapshots with computed state, flagged for update where listed"""
    snapshots = build_snapshots({i: {} for i in sorted(set(required_ids) | set(other_ids))})
    for item_id, snapshot in snapshots.items():
        snapshot.state.rollup_info = {RW: float(item_id), OE: 2.5}
        snapshot.state.is_processed = True
        snapshot.state.is_update_required = item_id in required_ids
    return snapshots


class RecordingWriter:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.batches = []
        self._lock = threading.Lock()

    def __call__(self, patch_requests):
        ids = [int(p["uri"].split("/")[-1].split("?")[0]) for p in patch_requests]
        if self.fail_on is not None and self.fail_on in ids:
            raise RuntimeError("batch rejected")
        with self._lock:
            self.batches.append(ids)


def test_select_updates_keeps_order_and_caps(caplog):
    snapshots = _planned(required_ids=[1, 3, 4, 6, 7], other_ids=[2, 5])

    with caplog.at_level(logging.WARNING):
        selected, capped = select_updates(snapshots, max_updates=3)

    assert selected == [1, 3, 4, 6, 7]
    assert capped == [1, 3, 4]
    assert "5 updates computed, capping to 3" in caplog.text


def test_select_updates_without_capping_does_not_warn(caplog):
    snapshots = _planned(required_ids=[1, 2])

    with caplog.at_level(logging.WARNING):
        selected, capped = select_updates(snapshots, max_updates=10)

    assert selected == capped == [1, 2]
    assert "capping" not in caplog.text


def test_chunk_ids_makes_ceil_batches():
    ids = list(range(1, 8))
    chunks = chunk_ids(ids, 3)
    assert chunks == [[1, 2, 3], [4, 5, 6], [7]]
    assert chunk_ids([], 3) == []
    with pytest.raises(ValueError):
        chunk_ids(ids, 0)


def test_format_field_value():
    assert format_field_value(7.0) == "7"
    assert format_field_value(7) == "7"
    assert format_field_value(2.5) == "2.5"
    assert format_field_value(0.0) == "0"


def test_build_patch_requests_has_one_operation_per_field():
    snapshots = _planned(required_ids=[12])

    requests = build_patch_requests([12], snapshots, [RW, OE], "7.0")

    assert requests == [{
        "method": "PATCH",
        "uri": "/_apis/wit/workitems/12?api-version=7.0",
        "headers": {"Content-Type": "application/json-patch+json"},
        "body": [
            {"op": "replace", "path": f"/fields/{RW}", "value": "12"},
            {"op": "replace", "path": f"/fields/{OE}", "value": "2.5"},
        ],
    }]


def test_write_updates_submits_every_capped_item_once():
    snapshots = _planned(required_ids=list(range(1, 8)), other_ids=[8, 9])
    writer = RecordingWriter()

    count = write_updates(snapshots, max_updates=100, batch_size=3, write_batch=writer,
                          rollup_fields=[RW, OE])

    assert count == 7
    assert len(writer.batches) == 3
    written = [i for batch in writer.batches for i in batch]
    assert sorted(written) == list(range(1, 8))
    assert len(written) == len(set(written))


def test_write_updates_submits_batches_concurrently():
    snapshots = _planned(required_ids=list(range(1, 7)))
    # Each batch waits for the others; sequential submission would break the barrier
    barrier = threading.Barrier(3, timeout=5)
    written = []

    def writer(patch_requests):
        barrier.wait()
        written.append(len(patch_requests))

    count = write_updates(snapshots, max_updates=100, batch_size=2, write_batch=writer, rollup_fields=[RW])

    assert count == 6
    assert sorted(written) == [2, 2, 2]


def test_write_updates_respects_cap():
    snapshots = _planned(required_ids=list(range(1, 11)))
    writer = RecordingWriter()

    count = write_updates(snapshots, max_updates=4, batch_size=50, write_batch=writer,
                          rollup_fields=[RW])

    assert count == 4
    assert writer.batches == [[1, 2, 3, 4]]


def test_write_updates_with_nothing_to_do():
    snapshots = _planned(required_ids=[], other_ids=[1, 2])
    writer = RecordingWriter()

    assert write_updates(snapshots, 100, 50, writer, [RW]) == 0
    assert writer.batches == []


def test_failed_batch_fails_the_whole_write():
    snapshots = _planned(required_ids=list(range(1, 8)))
    writer = RecordingWriter(fail_on=5)

    with pytest.raises(PartialWriteFailureError) as excinfo:
        write_updates(snapshots, max_updates=100, batch_size=3, write_batch=writer, rollup_fields=[RW])

    assert excinfo.value.failed_batches == 1
    assert excinfo.value.total_batches == 3
    assert isinstance(excinfo.value.cause, RuntimeError)
    # The other batches were still submitted and are not rolled back
    assert sorted(writer.batches) == [[1, 2, 3], [7]]
