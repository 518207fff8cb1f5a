"""
KoFIU restricted-persons notice job

The notice carries several attachments (HWPX, PDF, HWP editions of the
same list, sometimes unrelated files). Candidates are tried in ranked
order: download, sniff, extract, recognize, score. The loop stops early at
a near-exact match with the expected count. The best result is published
only if it clears the confidence floor and matches the expected count
within the publish tolerance.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from change_detector import restricted_descriptor
from extractors import extract_text, sniff_format
from fetcher import SessionContext
from list_recognizer import RecognitionResult, recognize, score_result, should_stop_early
from pipeline_errors import ExtractionError, FetchError, ValidationError
from snapshot_models import Snapshot, TimestampProvenance, utc_now_iso
from sources.attachments import Attachment, rank_attachments
from sources.base import IngestionJob
from sources.kofiu_client import Download, KofiuClient

logger = logging.getLogger(__name__)


@dataclass
class CandidateOutcome:
    """One attachment that made it through download and extraction"""
    attachment: Attachment
    download: Download
    kind: str
    result: RecognitionResult
    score: int


class KofiuRestrictedJob(IngestionJob):
    source = "kofiu_restricted"

    def __init__(self, *args: Any, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._attachments: Optional[List[Attachment]] = None

    def _client(self, session: SessionContext) -> KofiuClient:
        return KofiuClient(session, self.config.sources, self.config.fetch)

    def law_ids(self) -> Dict[str, str]:
        se_cd = self.config.sources.restricted_law_type_code
        return {
            'ordrNo': self.config.sources.restricted_law_notice_no,
            'seCd': se_cd,
            'lawordInfoTySeCd': se_cd,
        }

    def min_publish_entries(self) -> int:
        return self.config.recognizer.min_entries

    def probe_descriptor(self, session: SessionContext) -> Dict[str, Any]:
        self._attachments = self._client(session).list_law_attachments()
        ranked = rank_attachments(self._attachments)
        return restricted_descriptor(
            self.law_ids(),
            ranked[0].stable_fields() if ranked else None,
            [a.stable_fields() for a in self._attachments]
        )

    def _expected_override(self, client: KofiuClient) -> Optional[int]:
        try:
            expected = client.fetch_expected_count()
        except FetchError as e:
            logger.info(f"[{self.source}] announcement page unavailable: {e}")
            return None
        logger.info(f"[{self.source}] expected count from announcement page: "
                    f"{expected if expected else '(not found)'}")
        return expected

    def _try_candidate(self, client: KofiuClient, att: Attachment,
                       expected_override: Optional[int], run_id: str) -> Optional[CandidateOutcome]:
        try:
            download = client.download_law_attachment(att)
        except FetchError as e:
            self.events.log_candidate_failed(self.source, att.file_name, f"download failed: {e}", run_id)
            return None

        kind = sniff_format(download.data, att.file_name, att.mime)
        logger.info(f"   downloaded {len(download.data) / 1024:.1f} KB | kind={kind} | "
                    f"sha256={download.sha256[:16]}...")
        try:
            text = extract_text(download.data, att.file_name, att.mime, detected=kind)
        except ExtractionError as e:
            self.events.log_candidate_failed(self.source, att.file_name, f"extraction failed: {e}", run_id)
            return None

        result = recognize(text, expected_override, self.config.recognizer)
        return CandidateOutcome(att, download, kind, result, score_result(result))

    def select_best(self, client: KofiuClient, attachments: List[Attachment],
                    expected_override: Optional[int], run_id: str = "") -> Optional[CandidateOutcome]:
        """Try candidates in ranked order and keep the best-scoring result"""
        candidates = rank_attachments(attachments)
        best: Optional[CandidateOutcome] = None
        for idx, att in enumerate(candidates, start=1):
            logger.info(f"[{self.source}] candidate {idx}/{len(candidates)}: {att.file_name} "
                        f"(fileOrdrNo={att.file_ordinal})")
            outcome = self._try_candidate(client, att, expected_override, run_id)
            if outcome is None:
                continue
            if best is None or outcome.score > best.score:
                best = outcome
            if should_stop_early(outcome.result, self.config.recognizer):
                logger.info(f"[{self.source}] early stop: {outcome.result.note}")
                break
        return best

    def validate(self, best: Optional[CandidateOutcome]) -> None:
        """
        Raises:
            ValidationError: No usable candidate, or a count mismatch
        """
        if best is None:
            raise ValidationError(f"[{self.source}] no attachment yielded extractable text", got=0)
        result = best.result
        if result.total == 0:
            floor = self.config.recognizer.min_entries
            reason = f"below confidence floor {floor}"
            if result.expected:
                reason += f" (declared {result.expected})"
            raise ValidationError(
                f"[{self.source}] best candidate {best.attachment.file_name!r} below the "
                f"confidence floor ({result.note})",
                got=result.found, expected=result.expected, reason=reason
            )
        tolerance = self.config.recognizer.publish_tolerance
        if result.expected and abs(result.total - result.expected) > tolerance:
            raise ValidationError(
                f"[{self.source}] recognized list does not match the expected count",
                got=result.total, expected=result.expected
            )

    def ingest(self, session: SessionContext, run_id: str = "") -> Snapshot:
        client = self._client(session)
        attachments = self._attachments or client.list_law_attachments()
        self._attachments = None
        if not attachments:
            raise ValidationError(f"[{self.source}] notice has no attachments", got=0)

        expected_override = self._expected_override(client)
        best = self.select_best(client, attachments, expected_override, run_id)
        self.validate(best)

        result = best.result
        att = best.attachment
        # the notice carries no machine-readable publication date
        return Snapshot(
            source=self.source,
            updated_at=utc_now_iso(),
            entries=result.to_entries(),
            updated_at_source=TimestampProvenance.FALLBACK,
            stable_uids=False,
            note=result.note,
            extras={
                'law': {'ordrNo': self.law_ids()['ordrNo'], 'seCd': self.law_ids()['seCd']},
                'expectedOverride': expected_override,
                'expectedUsed': result.expected,
                'expectedOrigin': result.expected_origin,
                'file': {
                    'name': att.file_name,
                    'mime': att.mime,
                    'size': len(best.download.data),
                    'sha256': best.download.sha256,
                    'fileOrdrNo': att.file_ordinal,
                    'fileNm': att.stored_name,
                    'detectedKind': best.kind,
                },
                'parsedNote': result.note,
            }
        )
