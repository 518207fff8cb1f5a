"""
Ingestion job skeleton

One job per source: open a SessionContext, check for change, ingest,
publish, commit the signature. Run-level failures are caught here, logged
as RUN_ABORTED with their diagnostic, and reported in the JobResult; they
never reach other jobs and never touch the published snapshot.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from change_detector import ChangeCheck, ChangeDetector
from config_manager import ConfigManager, get_config
from fetcher import SessionContext
from ingestion_logger import IngestionLogger, get_ingestion_logger
from pipeline_errors import PipelineError, ValidationError
from publisher import SnapshotPublisher
from snapshot_models import Snapshot, TimestampProvenance
from state_store import StateStore

logger = logging.getLogger(__name__)


STATUS_PUBLISHED = "published"
STATUS_UNCHANGED = "unchanged"
STATUS_CHECKED = "checked"
STATUS_CHECK_FAILED = "check_failed"
STATUS_ABORTED = "aborted"


@dataclass
class JobResult:
    """Outcome of one job run"""
    source: str
    status: str
    run_id: str = ""
    changed: bool = False
    total: int = 0
    updated_at: str = ""
    updated_at_source: str = ""
    added: int = 0
    removed: int = 0
    diagnostic: str = ""

    @property
    def ok(self) -> bool:
        return self.status != STATUS_ABORTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'status': self.status,
            'runId': self.run_id,
            'changed': self.changed,
            'total': self.total,
            'updatedAt': self.updated_at,
            'updatedAtSource': self.updated_at_source,
            'added': self.added,
            'removed': self.removed,
            'diagnostic': self.diagnostic,
        }


SessionFactory = Callable[[str], SessionContext]


class IngestionJob:
    """Base class; subclasses implement probe_descriptor and ingest"""

    source = ""

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        store: Optional[StateStore] = None,
        ingestion_logger: Optional[IngestionLogger] = None,
        session_factory: Optional[SessionFactory] = None
    ):
        self.config = config or get_config()
        self.store = store or StateStore(self.config.storage.state_directory)
        self.events = ingestion_logger or get_ingestion_logger(self.config.logging.event_log_dir)
        self.detector = ChangeDetector(self.store, self.events)
        self.publisher = SnapshotPublisher(self.store, self.config.storage.history_limit, self.events)
        self.session_factory = session_factory or (
            lambda name: SessionContext(name, self.config.fetch)
        )

    # ============================================
    # SUBCLASS HOOKS
    # ============================================

    def probe_descriptor(self, session: SessionContext) -> Dict[str, Any]:
        """Lightweight metadata describing the current publication"""
        raise NotImplementedError

    def ingest(self, session: SessionContext, run_id: str = "") -> Snapshot:
        """Fetch and parse the full list

        Raises:
            PipelineError: Any run-level failure
        """
        raise NotImplementedError

    def min_publish_entries(self) -> int:
        return self.config.storage.min_entries

    # ============================================
    # RUN
    # ============================================

    def _abort(self, run_id: str, error: PipelineError, check: Optional[ChangeCheck]) -> JobResult:
        diagnostic = error.diagnostic if isinstance(error, ValidationError) else str(error)
        context = {}
        if isinstance(error, ValidationError):
            context = {'got': error.got, 'expected': error.expected}
            if error.reason:
                context['reason'] = error.reason
        self.events.log_run_aborted(self.source, diagnostic, run_id,
                                    type(error).__name__, context)
        logger.error(f"✗ [{self.source}] run aborted: {diagnostic}")
        return JobResult(source=self.source, status=STATUS_ABORTED, run_id=run_id,
                         changed=bool(check and check.changed), diagnostic=diagnostic)

    def run(self, force: bool = False, check_only: bool = False) -> JobResult:
        """Check for change and, if changed, ingest and publish"""
        run_id = self.events.new_run_id(self.source)
        logger.info(f"=== [{self.source}] run {run_id} (force={force}, check_only={check_only}) ===")

        check = None
        try:
            with self.session_factory(self.source) as session:
                check = self.detector.check(
                    self.source, lambda: self.probe_descriptor(session), force, run_id
                )
                if check_only:
                    status = STATUS_CHECK_FAILED if check.error else STATUS_CHECKED
                    return JobResult(source=self.source, status=status, run_id=run_id,
                                     changed=check.changed, diagnostic=check.error or "")
                if not check.changed:
                    status = STATUS_CHECK_FAILED if check.error else STATUS_UNCHANGED
                    logger.info(f"[{self.source}] no change, nothing to publish")
                    return JobResult(source=self.source, status=status, run_id=run_id,
                                     diagnostic=check.error or "")

                snapshot = self.ingest(session, run_id)
                removed = snapshot.dedupe_entries()
                if removed:
                    logger.warning(f"[{self.source}] {removed} duplicate uid(s) dropped")
                if snapshot.updated_at_source != TimestampProvenance.DECLARED:
                    self.events.log_timestamp_fallback(
                        self.source, snapshot.updated_at_source.value, snapshot.updated_at, run_id
                    )

                diff = self.publisher.publish(snapshot, self.min_publish_entries(), run_id)
                # an embedded dataset must not mark the live edition as seen
                if snapshot.updated_at_source != TimestampProvenance.EMBEDDED:
                    self.detector.commit(check)
        except PipelineError as e:
            return self._abort(run_id, e, check)

        return JobResult(
            source=self.source,
            status=STATUS_PUBLISHED,
            run_id=run_id,
            changed=True,
            total=snapshot.total,
            updated_at=snapshot.updated_at,
            updated_at_source=snapshot.updated_at_source.value,
            added=diff.added_count,
            removed=diff.removed_count,
            diagnostic=snapshot.note
        )
