"""
KoFIU virtual-asset service provider registry job

Locates the newest registry notice on the KoFIU board, downloads its .xlsx
attachment and parses it. If the workbook no longer matches the expected
layout the embedded last-known-good registry is published instead; a
network failure aborts the run.
"""

import logging
from typing import Any, Dict, Optional

from change_detector import vasp_descriptor
from fetcher import SessionContext
from pipeline_errors import ExtractionError, ParseError
from snapshot_models import Snapshot, TimestampProvenance, utc_now_iso
from sources.base import IngestionJob
from sources.kofiu_client import BoardFile, BoardNotice, KofiuClient
from sources.vasp_fallback import (
    EMBEDDED_UPDATED_AT,
    VASP_EXPIRED_NOTE_2,
    VASP_EXPIRED_NOTE_FALLBACK,
    embedded_registry
)
from tabular_parser import VaspRegistry, parse_expired_note, parse_registry, registry_to_entries

logger = logging.getLogger(__name__)


class KofiuVaspJob(IngestionJob):
    source = "kofiu_excel"

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._notice: Optional[BoardNotice] = None
        self._workbook: Optional[BoardFile] = None

    def _client(self, session: SessionContext) -> KofiuClient:
        return KofiuClient(session, self.config.sources, self.config.fetch)

    def _locate(self, client: KofiuClient) -> None:
        client.bootstrap()
        self._notice = client.choose_notice(client.list_notices())
        self._workbook = client.choose_workbook(client.list_board_files(self._notice.ordr_no))
        logger.info(f"[{self.source}] notice {self._notice.ordr_no} '{self._notice.title}' "
                    f"-> {self._workbook.name}")

    def probe_descriptor(self, session: SessionContext) -> Dict[str, Any]:
        self._notice = self._workbook = None
        self._locate(self._client(session))
        return vasp_descriptor(
            self.config.sources.vasp_board_code,
            self._notice.ordr_no,
            self._notice.title,
            self._workbook.name,
            self._workbook.ordinal,
            self._workbook.size
        )

    def _parse_live(self, client: KofiuClient) -> VaspRegistry:
        download = client.download_board_file(self._notice.ordr_no, self._workbook)
        tab = self.config.tabular
        return parse_registry(download.data, tab.header_rows, tab.base_date_scan_rows)

    def ingest(self, session: SessionContext, run_id: str = "") -> Snapshot:
        client = self._client(session)
        if self._notice is None or self._workbook is None:
            self._locate(client)

        dataset = "live"
        try:
            registry = self._parse_live(client)
            if registry.base_date:
                updated_at, provenance = registry.base_date, TimestampProvenance.DECLARED
            else:
                updated_at, provenance = utc_now_iso(), TimestampProvenance.FALLBACK
        except (ParseError, ExtractionError) as e:
            self.events.log_fallback_dataset(self.source, str(e), run_id)
            logger.warning(f"✗ [{self.source}] workbook unusable ({e}); using embedded registry")
            registry = embedded_registry()
            updated_at, provenance = EMBEDDED_UPDATED_AT, TimestampProvenance.EMBEDDED
            dataset = "embedded"

        expired = registry.expired
        note = ""
        if not registry.expired_note_found:
            expired = parse_expired_note(VASP_EXPIRED_NOTE_FALLBACK)
            note = "expired list taken from the embedded note"

        snapshot = Snapshot(
            source=self.source,
            updated_at=updated_at,
            entries=registry_to_entries(registry.normal),
            updated_at_source=provenance,
            stable_uids=False,
            note=note,
            extras={
                'dataset': dataset,
                'normal': [r.to_dict() for r in registry.normal],
                'expired': [r.to_dict() for r in expired],
                'expiredNote': VASP_EXPIRED_NOTE_2,
                'notice': {
                    'ntcnYardOrdrNo': self._notice.ordr_no,
                    'title': self._notice.title,
                    'file': self._workbook.name,
                },
            }
        )
        logger.info(f"✓ [{self.source}] {snapshot.total} registrants, {len(expired)} lapsed "
                    f"({dataset}, updatedAt {updated_at})")
        return snapshot
