"""
Ingestion Event Logging Module

Provides structured logging for pipeline events that operators must be
able to audit after the fact:
- Aborted runs, with the validation that failed
- Candidate attachments that could not be used
- Timestamp provenance when a snapshot falls back to transport or wall clock
- Change checks that failed (as opposed to a genuine "unchanged")
- Fallback to the embedded last-known-good dataset
- Published snapshots

SECURITY: Document-derived values are sanitized before logging.
"""

import logging
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any
from dataclasses import dataclass, field as dataclass_field

from xml_utils import sanitize_for_logging


RUN_ABORTED = "RUN_ABORTED"
CANDIDATE_FAILED = "CANDIDATE_FAILED"
TIMESTAMP_FALLBACK = "TIMESTAMP_FALLBACK"
CHANGE_CHECK_FAILED = "CHANGE_CHECK_FAILED"
FALLBACK_DATASET_USED = "FALLBACK_DATASET_USED"
SNAPSHOT_PUBLISHED = "SNAPSHOT_PUBLISHED"


@dataclass
class IngestionEvent:
    """Structured ingestion event for logging"""
    event_type: str
    severity: str  # INFO, WARNING, ERROR
    source: str = ""  # source identifier, e.g. ofac_xml
    run_id: str = ""
    message: str = ""
    additional_context: Dict[str, Any] = dataclass_field(default_factory=dict)
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            'timestamp': self.timestamp,
            'event_type': self.event_type,
            'severity': self.severity,
            'source': self.source,
            'run_id': self.run_id,
            'message': self.message,
            'context': self.additional_context
        }

    def to_json(self) -> str:
        """Convert to JSON string"""
        return json.dumps(self.to_dict(), ensure_ascii=False)


class IngestionLogger:
    """Writes ingestion events as JSON lines to a dedicated log

    Features:
    - Separate ingestion.log file
    - JSON-formatted events for easy parsing
    - Sanitization of document-derived values
    - Run ID correlation per source job
    """

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.INFO,
        enable_console: bool = False,
        enable_file: bool = True
    ):
        """Initialize ingestion logger

        Args:
            log_dir: Directory for log files
            log_level: Minimum log level to record
            enable_console: Also output to console
            enable_file: Write to ingestion.log file
        """
        self.log_dir = Path(log_dir)
        if enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self.logger = logging.getLogger('ingestion')
        self.logger.setLevel(log_level)
        self.logger.handlers.clear()
        self.logger.propagate = False

        formatter = logging.Formatter(
            '%(asctime)s - INGESTION - %(levelname)s - %(message)s'
        )

        if enable_file:
            file_handler = logging.FileHandler(self.log_dir / "ingestion.log", encoding='utf-8')
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        if enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(log_level)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

    @staticmethod
    def new_run_id(source: str) -> str:
        """Generate a run identifier for one source job"""
        return f"RUN-{source}-{uuid.uuid4().hex[:8]}"

    def _sanitize_context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Sanitize all values in a context dictionary for safe logging

        Args:
            context: Dictionary with context data

        Returns:
            Sanitized dictionary safe for JSON logging
        """
        if not context:
            return {}

        sanitized = {}
        for key, value in context.items():
            safe_key = sanitize_for_logging(str(key))[:100] if key else "unknown"

            if value is None or isinstance(value, (bool, int, float)):
                sanitized[safe_key] = value
            elif isinstance(value, str):
                sanitized[safe_key] = sanitize_for_logging(value)[:200]
            elif isinstance(value, dict):
                sanitized[safe_key] = self._sanitize_context(value)
            elif isinstance(value, (list, tuple)):
                sanitized[safe_key] = [
                    item if isinstance(item, (bool, int, float, type(None)))
                    else sanitize_for_logging(str(item))[:200]
                    for item in value
                ]
            else:
                sanitized[safe_key] = sanitize_for_logging(str(value))[:200]

        return sanitized

    def log_event(
        self,
        event_type: str,
        source: str,
        message: str = "",
        severity: str = "INFO",
        run_id: str = "",
        additional_context: Optional[Dict[str, Any]] = None
    ) -> IngestionEvent:
        """Log one ingestion event

        Returns:
            The event that was written
        """
        event = IngestionEvent(
            event_type=event_type,
            severity=severity,
            source=source,
            run_id=run_id,
            message=sanitize_for_logging(message),
            additional_context=self._sanitize_context(additional_context)
        )

        if severity == "ERROR":
            self.logger.error(event.to_json())
        elif severity == "WARNING":
            self.logger.warning(event.to_json())
        else:
            self.logger.info(event.to_json())
        return event

    def log_run_aborted(self, source: str, diagnostic: str, run_id: str = "",
                        error_type: str = "", additional_context: Optional[Dict[str, Any]] = None) -> IngestionEvent:
        """Log an aborted run together with the validation that failed"""
        context = dict(additional_context or {})
        context['error_type'] = error_type
        return self.log_event(RUN_ABORTED, source, diagnostic, "ERROR", run_id, context)

    def log_candidate_failed(self, source: str, candidate: str, reason: str,
                             run_id: str = "") -> IngestionEvent:
        return self.log_event(CANDIDATE_FAILED, source, reason, "WARNING", run_id,
                              {'candidate': candidate})

    def log_timestamp_fallback(self, source: str, provenance: str, updated_at: str,
                               run_id: str = "") -> IngestionEvent:
        """Record that updatedAt did not come from the document itself"""
        return self.log_event(
            TIMESTAMP_FALLBACK, source,
            f"updatedAt taken from {provenance}", "WARNING", run_id,
            {'provenance': provenance, 'updated_at': updated_at}
        )

    def log_change_check_failed(self, source: str, error: str, forced: bool,
                                run_id: str = "") -> IngestionEvent:
        return self.log_event(CHANGE_CHECK_FAILED, source, error, "WARNING", run_id,
                              {'forced': forced})

    def log_fallback_dataset(self, source: str, reason: str, run_id: str = "") -> IngestionEvent:
        return self.log_event(FALLBACK_DATASET_USED, source, reason, "WARNING", run_id)

    def log_published(self, source: str, total: int, updated_at: str, added: int,
                      removed: int, run_id: str = "") -> IngestionEvent:
        return self.log_event(
            SNAPSHOT_PUBLISHED, source, f"published {total} entries", "INFO", run_id,
            {'total': total, 'updated_at': updated_at, 'added': added, 'removed': removed}
        )


# Global ingestion logger instance
_ingestion_logger: Optional[IngestionLogger] = None


def get_ingestion_logger(
    log_dir: str = "logs",
    enable_console: bool = False
) -> IngestionLogger:
    """Get or create the global ingestion logger instance

    Args:
        log_dir: Directory for log files
        enable_console: Also output to console

    Returns:
        IngestionLogger instance
    """
    global _ingestion_logger
    if _ingestion_logger is None:
        _ingestion_logger = IngestionLogger(
            log_dir=log_dir,
            enable_console=enable_console
        )
    return _ingestion_logger


def reset_ingestion_logger() -> None:
    """Reset the global ingestion logger (for testing)"""
    global _ingestion_logger
    _ingestion_logger = None
