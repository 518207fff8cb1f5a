"""
Change/signature engine

A source is "changed" when the SHA-256 of its stability-filtered descriptor
differs from the last committed signature. Descriptors are lightweight
metadata (cache validators, notice titles, attachment names and sizes),
never the entity list itself.

Properties:
- Canonical serialization sorts keys recursively, so field order never
  affects the signature
- Session-volatile keys (download handles, session tokens) are removed
  recursively before hashing
- A failed descriptor fetch reports unchanged unless forced, and is logged
  as CHANGE_CHECK_FAILED rather than passing for "unchanged"
- State is written only when the signature really differs, whatever the
  force flag says
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from ingestion_logger import IngestionLogger, get_ingestion_logger
from snapshot_models import utc_now_iso
from state_store import StateStore, StateStoreError

logger = logging.getLogger(__name__)


VOLATILE_KEYS = frozenset({
    'fileId',
    'jsessionid',
    'JSESSIONID',
    'sessionId',
    'token',
    'csrfToken',
    '_csrf',
})


def stable_descriptor(obj: Any) -> Any:
    """Copy of ``obj`` with volatile keys removed at every depth"""
    if isinstance(obj, dict):
        return {k: stable_descriptor(v) for k, v in obj.items() if k not in VOLATILE_KEYS}
    if isinstance(obj, (list, tuple)):
        return [stable_descriptor(v) for v in obj]
    return obj


def canonical_json(obj: Any) -> str:
    """Key-sorted compact JSON"""
    return json.dumps(obj, sort_keys=True, separators=(',', ':'), ensure_ascii=False)


def compute_signature(descriptor: Dict[str, Any]) -> str:
    """SHA-256 hex digest of the canonical stable descriptor"""
    payload = canonical_json(stable_descriptor(descriptor))
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()


@dataclass
class ChangeCheck:
    """Result of one change check"""
    source: str
    changed: bool
    signature: Optional[str] = None
    previous_signature: Optional[str] = None
    descriptor: Dict[str, Any] = field(default_factory=dict)
    forced: bool = False
    error: Optional[str] = None

    @property
    def differs(self) -> bool:
        """True only when a fresh signature differs from the stored one"""
        return self.signature is not None and self.signature != self.previous_signature

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'changed': self.changed,
            'signature': self.signature,
            'previousSignature': self.previous_signature,
            'forced': self.forced,
            'error': self.error,
        }


class ChangeDetector:
    """Compares descriptor signatures against the per-source state"""

    def __init__(self, store: StateStore, ingestion_logger: Optional[IngestionLogger] = None):
        self.store = store
        self.events = ingestion_logger or get_ingestion_logger()

    def check(self, source: str, fetch_descriptor: Callable[[], Dict[str, Any]],
              force: bool = False, run_id: str = "") -> ChangeCheck:
        """Fetch a descriptor and compare its signature with the stored one

        Never raises for a failed fetch: the result carries the error and
        ``changed`` equals ``force``.
        """
        try:
            previous = self.store.get_signature(source)
        except StateStoreError as e:
            logger.warning(f"✗ [{source}] stored signature unreadable ({e}); treating as changed")
            previous = None

        try:
            descriptor = stable_descriptor(fetch_descriptor())
        except Exception as e:
            self.events.log_change_check_failed(source, f"{type(e).__name__}: {e}", force, run_id)
            logger.warning(f"✗ [{source}] change check failed ({e}); changed={force}")
            return ChangeCheck(source=source, changed=force, previous_signature=previous,
                               forced=force, error=str(e))

        signature = compute_signature(descriptor)
        changed = force or signature != previous
        logger.info(f"[{source}] signature {signature[:12]}... "
                    f"(previous {previous[:12] + '...' if previous else 'none'}) "
                    f"changed={changed}{' (forced)' if force else ''}")
        return ChangeCheck(source=source, changed=changed, signature=signature,
                           previous_signature=previous, descriptor=descriptor, forced=force)

    def commit(self, check: ChangeCheck) -> bool:
        """Persist the check's signature if it really differs

        Returns:
            True if state was written
        """
        if not check.differs:
            logger.debug(f"[{check.source}] signature unchanged, state not written")
            return False
        self.store.set_signature(check.source, check.signature, check.descriptor, utc_now_iso())
        return True


# ============================================
# DESCRIPTOR BUILDERS
# ============================================

def feed_descriptor(date_key: str, declared_date: Optional[str],
                    etag: str = "", last_modified: str = "") -> Dict[str, Any]:
    """Descriptor for an XML feed: declared date plus cache validators

    Args:
        date_key: ``publishDate`` for OFAC, ``dateGenerated`` for UN
    """
    return {
        date_key: declared_date or "",
        'etag': etag or "",
        'lastModified': last_modified or "",
    }


def vasp_descriptor(board_code: str, notice_no: str, title: str,
                    file_name: str, file_ordinal: Any = "", file_size: Any = "") -> Dict[str, Any]:
    """Descriptor for the VASP registry notice; never includes the download handle"""
    return {
        'seCd': board_code,
        'chosen': {'ntcnYardOrdrNo': str(notice_no), 'title': title},
        'file': {'name': file_name, 'ordinal': file_ordinal, 'size': file_size},
    }


def _attachment_sort_key(item: Dict[str, Any]) -> str:
    return f"{item.get('fileOrdrNo', '')}|{item.get('fileNm', '')}|{item.get('streFileNm', '')}"


def restricted_descriptor(law: Dict[str, Any], best: Optional[Dict[str, Any]],
                          attachments: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Descriptor for the restricted-persons notice

    Args:
        law: Notice identifiers (ordrNo, seCd, lawordInfoTySeCd)
        best: Stable fields of the top-ranked attachment
        attachments: Stable fields of every attachment
    """
    ordered: List[Dict[str, Any]] = sorted(
        (stable_descriptor(a) for a in attachments), key=_attachment_sort_key
    )
    digest = hashlib.sha256(canonical_json(ordered).encode('utf-8')).hexdigest()
    return {
        'law': law,
        'best': stable_descriptor(best or {}),
        'filesDigest': digest,
    }
