"""
Snapshot publisher

Validates a snapshot, diffs it against the previously published one and
writes latest, diff and a capped history entry to the state store. A
snapshot that fails validation is never written, so the last good
publication stays intact.
"""

import logging
from typing import Any, Dict, List, Optional

from ingestion_logger import IngestionLogger, get_ingestion_logger
from pipeline_errors import ValidationError
from snapshot_models import Snapshot, SnapshotDiff, collapse_whitespace
from state_store import StateStore, DIFF_KEY, LATEST_KEY

logger = logging.getLogger(__name__)

DIFF_FIELDS = ('uid', 'no', 'type', 'name', 'country', 'remark', 'isRegionRelated')


def entry_key(entry: Dict[str, Any], stable_uids: bool) -> str:
    """Identity of a published entry across runs

    Sequence uids are reassigned on every run, so sources without stable
    uids are matched on normalized name and remark instead.
    """
    if stable_uids:
        return str(entry.get('uid') or entry.get('id') or '')
    name = collapse_whitespace(entry.get('name')).lower()
    remark = collapse_whitespace(entry.get('remark')).lower()
    return f"{name}|{remark}"


def _summary(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {k: entry[k] for k in DIFF_FIELDS if k in entry}


def compute_diff(current: Dict[str, Any], previous: Optional[Dict[str, Any]],
                 stable_uids: bool = True) -> SnapshotDiff:
    """Diff two published payloads"""
    current_data: List[Dict[str, Any]] = current.get('data', [])
    previous_data: List[Dict[str, Any]] = (previous or {}).get('data', []) or []

    current_keys = {entry_key(e, stable_uids) for e in current_data}
    previous_keys = {entry_key(e, stable_uids) for e in previous_data}

    added = [_summary(e) for e in current_data if entry_key(e, stable_uids) not in previous_keys]
    removed = [_summary(e) for e in previous_data if entry_key(e, stable_uids) not in current_keys]

    note = "" if previous else "first publication"
    return SnapshotDiff(
        updated_at=current.get('updatedAt', ''),
        current_total=len(current_data),
        previous_total=len(previous_data),
        added=added,
        removed=removed,
        note=note
    )


class SnapshotPublisher:
    """Writes validated snapshots to the state store"""

    def __init__(self, store: StateStore, history_limit: int = 50,
                 ingestion_logger: Optional[IngestionLogger] = None):
        self.store = store
        self.history_limit = history_limit
        self.events = ingestion_logger or get_ingestion_logger()

    def validate(self, snapshot: Snapshot, payload: Dict[str, Any], min_entries: int) -> None:
        """Refuse snapshots that must never become the latest

        Raises:
            ValidationError: On zero entries, a total below the floor, or a
                payload whose total disagrees with its entry list
        """
        if snapshot.total == 0:
            raise ValidationError(f"[{snapshot.source}] refusing to publish an empty snapshot", got=0)
        if snapshot.total < min_entries:
            raise ValidationError(
                f"[{snapshot.source}] snapshot below the confidence floor of {min_entries}",
                got=snapshot.total, expected=min_entries
            )
        if payload.get('total') != len(payload.get('data', [])):
            raise ValidationError(
                f"[{snapshot.source}] total does not match the entry list",
                got=len(payload.get('data', [])), expected=payload.get('total')
            )

    def publish(self, snapshot: Snapshot, min_entries: int = 1, run_id: str = "") -> SnapshotDiff:
        """Validate, diff and persist one snapshot

        Returns:
            The diff against the previously published snapshot
        """
        payload = snapshot.to_dict()
        self.validate(snapshot, payload, min_entries)

        previous = self.store.get_latest(snapshot.source)
        diff = compute_diff(payload, previous, snapshot.stable_uids)

        self.store.write(snapshot.source, LATEST_KEY, payload)
        self.store.write(snapshot.source, DIFF_KEY, diff.to_dict())
        self.store.append_history(snapshot.source, {
            'updatedAt': snapshot.updated_at,
            'total': snapshot.total,
            'totalRegion': snapshot.region_related_count,
            'addedCount': diff.added_count,
            'removedCount': diff.removed_count,
        }, self.history_limit)

        self.events.log_published(snapshot.source, snapshot.total, snapshot.updated_at,
                                  diff.added_count, diff.removed_count, run_id)
        logger.info(f"✓ [{snapshot.source}] published {snapshot.total} entries "
                    f"(+{diff.added_count} / -{diff.removed_count})")
        return diff
