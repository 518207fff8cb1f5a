"""
Integration tests for the per-source jobs and the pipeline runner

Network access is replaced by mocked sessions and KoFIU clients; parsing,
change detection and publication run for real against a temp state dir.
"""

import io
import zipfile
import pytest
from pathlib import Path
from unittest.mock import MagicMock, Mock

import openpyxl
import requests

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

import pipeline
from config_manager import ConfigManager, ConfigurationError
from fetcher import CacheValidators
from pipeline_errors import FetchError
from sources import JOBS
from sources.attachments import Attachment
from sources.base import (
    IngestionJob, JobResult, STATUS_ABORTED, STATUS_CHECKED, STATUS_PUBLISHED, STATUS_UNCHANGED
)
from sources.kofiu_client import BoardFile, BoardNotice, Download, KofiuClient
from sources.kofiu_restricted import KofiuRestrictedJob
from sources.kofiu_vasp import KofiuVaspJob
from sources.ofac import OfacJob
from sources.vasp_fallback import EMBEDDED_UPDATED_AT
from state_store import StateStore


OFAC_XML = b"""<?xml version="1.0"?>
<sdnList>
  <publshInformation><Publish_Date>03/15/2024</Publish_Date></publshInformation>
  <sdnEntry><uid>1</uid><lastName>ALPHA TRADING</lastName><sdnType>Entity</sdnType>
    <addressList><address><city>Seoul</city><country>Korea, South</country></address></addressList>
  </sdnEntry>
  <sdnEntry><uid>2</uid><lastName>BETA SHIPPING</lastName><sdnType>Entity</sdnType></sdnEntry>
</sdnList>
"""


# ============================================
# FIXTURES AND BUILDERS
# ============================================

@pytest.fixture
def config(tmp_path):
    ConfigManager.reset_instance()
    return ConfigManager(str(tmp_path / "missing.yaml"))


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state"))


@pytest.fixture
def events():
    logger = Mock()
    logger.new_run_id.return_value = "RUN-test"
    return logger


@pytest.fixture
def session():
    ctx = MagicMock()
    ctx.__enter__.return_value = ctx
    return ctx


def make_response(content=b'', headers=None, status=200):
    response = requests.Response()
    response.status_code = status
    response._content = content
    response.encoding = 'utf-8'
    response.headers.update(headers or {})
    return response


def build_registry_workbook(rows=3) -> bytes:
    wb = openpyxl.Workbook()
    ws = wb.active
    ws['A1'] = "가상자산사업자 신고 현황"
    ws['A2'] = "2024. 3. 15. 기준"
    for col, header in enumerate(["번호", "서비스명", "법인명", "대표자"], start=1):
        ws.cell(row=5, column=col, value=header)
    for i in range(1, rows + 1):
        ws.cell(row=6 + i, column=1, value=i)
        ws.cell(row=6 + i, column=2, value=f"거래소{i}")
        ws.cell(row=6 + i, column=3, value=f"주식회사 거래소{i}")
        ws.cell(row=6 + i, column=4, value=f"대표{i}")
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def build_notice_hwpx(count: int) -> bytes:
    lines = [f"금융거래등 제한대상자 ({count}명)"]
    lines += [f"{i}. Person Number{i} (born 1970)" for i in range(1, count + 1)]
    body = ''.join(f"<hp:p><hp:t>{line}</hp:t></hp:p>" for line in lines)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, 'w') as zf:
        zf.writestr('mimetype', 'application/hwp+zip')
        zf.writestr('Contents/section0.xml', f'<sec xmlns:hp="urn:p">{body}</sec>')
    return buf.getvalue()


def build_damaged_hwpx(count: int) -> bytes:
    """Stored (uncompressed) HWPX whose section bytes no longer match the CRC"""
    return build_notice_hwpx(count).replace(b"Person Number1 ", b"Persom Number1 ", 1)


# ============================================
# XML FEEDS
# ============================================

class TestXmlFeedJob:
    """Tests for the OFAC/UN job flow"""

    def make_job(self, config, store, events, session):
        return OfacJob(config=config, store=store, ingestion_logger=events,
                       session_factory=lambda name: session)

    def test_publish_then_unchanged(self, config, store, events, session):
        session.head.return_value = CacheValidators(etag='"v1"')
        session.get.return_value = make_response(OFAC_XML)
        job = self.make_job(config, store, events, session)

        first = job.run()
        second = job.run()

        assert first.status == STATUS_PUBLISHED
        assert first.total == 2
        assert first.updated_at == "2024-03-15T00:00:00.000Z"
        assert first.updated_at_source == "declared"
        assert store.get_latest("ofac_xml")['totalRegion'] == 1
        assert store.get_signature("ofac_xml") is not None
        assert second.status == STATUS_UNCHANGED
        events.log_timestamp_fallback.assert_not_called()

    def test_feed_downloaded_once_per_run(self, config, store, events, session):
        session.head.return_value = CacheValidators()
        session.get.return_value = make_response(OFAC_XML)

        self.make_job(config, store, events, session).run()

        assert session.get.call_count == 1

    def test_head_failure_tolerated(self, config, store, events, session):
        session.head.side_effect = FetchError("405 Method Not Allowed")
        session.get.return_value = make_response(OFAC_XML)

        result = self.make_job(config, store, events, session).run()

        assert result.status == STATUS_PUBLISHED

    def test_head_outage_does_not_republish(self, config, store, events, session):
        validators = CacheValidators(etag='"v1"', last_modified='Fri, 15 Mar 2024 12:00:00 GMT')
        session.head.side_effect = [validators, FetchError("503 Service Unavailable"), validators]
        session.get.return_value = make_response(OFAC_XML)
        job = self.make_job(config, store, events, session)

        statuses = [job.run().status for _ in range(3)]

        assert statuses == [STATUS_PUBLISHED, STATUS_UNCHANGED, STATUS_UNCHANGED]
        assert len(store.get_history("ofac_xml")) == 1

    def test_check_only_writes_nothing(self, config, store, events, session):
        session.head.return_value = CacheValidators()
        session.get.return_value = make_response(OFAC_XML)

        result = self.make_job(config, store, events, session).run(check_only=True)

        assert result.status == STATUS_CHECKED
        assert result.changed is True
        assert store.get_latest("ofac_xml") is None
        assert store.get_signature("ofac_xml") is None

    def test_transport_timestamp_logged(self, config, store, events, session):
        xml = OFAC_XML.replace(b"<Publish_Date>03/15/2024</Publish_Date>", b"")
        session.head.return_value = CacheValidators()
        session.get.return_value = make_response(xml, {'Last-Modified': 'Fri, 15 Mar 2024 12:00:00 GMT'})

        result = self.make_job(config, store, events, session).run()

        assert result.updated_at_source == "transport"
        assert result.updated_at == "2024-03-15T12:00:00.000Z"
        events.log_timestamp_fallback.assert_called_once_with(
            "ofac_xml", "transport", "2024-03-15T12:00:00.000Z", "RUN-test"
        )

    def test_empty_feed_aborts_and_keeps_previous(self, config, store, events, session):
        session.head.return_value = CacheValidators(etag='"v1"')
        session.get.return_value = make_response(OFAC_XML)
        job = self.make_job(config, store, events, session)
        job.run()
        signature = store.get_signature("ofac_xml")

        session.head.return_value = CacheValidators(etag='"v2"')
        session.get.return_value = make_response(b"<sdnList><publshInformation/></sdnList>")
        result = job.run()

        assert result.status == STATUS_ABORTED
        assert "no entities" in result.diagnostic
        assert store.get_latest("ofac_xml")['total'] == 2
        assert store.get_signature("ofac_xml") == signature
        events.log_run_aborted.assert_called_once()
        assert events.log_run_aborted.call_args[0][3] == "FeedParseError"

    def test_failed_probe_reports_check_failed(self, config, store, events, session):
        session.head.return_value = CacheValidators()
        session.get.side_effect = FetchError("connection reset")

        result = self.make_job(config, store, events, session).run()

        assert result.status == "check_failed"
        assert "connection reset" in result.diagnostic
        events.log_change_check_failed.assert_called_once()


# ============================================
# KOFIU VASP REGISTRY
# ============================================

class TestKofiuVaspJob:
    """Tests for the registry job"""

    @pytest.fixture
    def client(self):
        client = Mock(spec=KofiuClient)
        notice = BoardNotice(ordr_no="194", title="2024년 가상자산사업자 신고 현황")
        client.list_notices.return_value = [notice]
        client.choose_notice.return_value = notice
        client.list_board_files.return_value = []
        client.choose_workbook.return_value = BoardFile(file_id="FILE_0001", name="status.xlsx",
                                                        ordinal="1", size=24576)
        return client

    def make_job(self, config, store, events, session, client):
        job = KofiuVaspJob(config=config, store=store, ingestion_logger=events,
                           session_factory=lambda name: session)
        job._client = lambda s: client
        return job

    def test_live_workbook(self, config, store, events, session, client):
        client.download_board_file.return_value = Download(data=build_registry_workbook(3))

        result = self.make_job(config, store, events, session, client).run()
        latest = store.get_latest("kofiu_excel")

        assert result.status == STATUS_PUBLISHED
        assert result.total == 3
        assert result.updated_at == "2024-03-15T00:00:00.000Z"
        assert latest['dataset'] == "live"
        assert latest['notice'] == {'ntcnYardOrdrNo': "194",
                                    'title': "2024년 가상자산사업자 신고 현황",
                                    'file': "status.xlsx"}
        assert latest['data'][0]['name'] == "주식회사 거래소1"
        assert len(latest['expired']) == 16
        assert latest['note'] == "expired list taken from the embedded note"
        assert store.get_signature("kofiu_excel") is not None

    def test_descriptor_excludes_file_handle(self, config, store, events, session, client):
        client.download_board_file.return_value = Download(data=build_registry_workbook(3))

        self.make_job(config, store, events, session, client).run()
        descriptor = store.read("kofiu_excel", "signature")['descriptor']

        assert "FILE_0001" not in str(descriptor)
        assert descriptor['chosen'] == {'ntcnYardOrdrNo': "194",
                                        'title': "2024년 가상자산사업자 신고 현황"}

    def test_unparseable_workbook_uses_embedded_dataset(self, config, store, events, session, client):
        client.download_board_file.return_value = Download(data=b"<html>error</html>")

        result = self.make_job(config, store, events, session, client).run()

        assert result.status == STATUS_PUBLISHED
        assert result.total == 27
        assert result.updated_at == EMBEDDED_UPDATED_AT
        assert result.updated_at_source == "embedded"
        assert store.get_latest("kofiu_excel")['dataset'] == "embedded"
        events.log_fallback_dataset.assert_called_once()
        # next run retries the live workbook
        assert store.get_signature("kofiu_excel") is None

    def test_network_failure_aborts(self, config, store, events, session, client):
        client.download_board_file.side_effect = FetchError("read timed out")

        result = self.make_job(config, store, events, session, client).run()

        assert result.status == STATUS_ABORTED
        assert store.get_latest("kofiu_excel") is None
        events.log_fallback_dataset.assert_not_called()


# ============================================
# KOFIU RESTRICTED PERSONS
# ============================================

class TestKofiuRestrictedJob:
    """Tests for the restricted-persons notice job"""

    @pytest.fixture
    def attachments(self):
        return [
            Attachment(file_name="고시문.pdf", stored_name="S2", file_ordinal="2", file_size=2048),
            Attachment(file_name="금융거래등제한대상자.hwpx", stored_name="S1", file_ordinal="1",
                       file_size=40960),
        ]

    @pytest.fixture
    def client(self, attachments):
        client = Mock(spec=KofiuClient)
        client.list_law_attachments.return_value = attachments
        client.fetch_expected_count.return_value = 30
        client.download_law_attachment.return_value = Download(data=build_notice_hwpx(30))
        return client

    def make_job(self, config, store, events, session, client):
        job = KofiuRestrictedJob(config=config, store=store, ingestion_logger=events,
                                 session_factory=lambda name: session)
        job._client = lambda s: client
        return job

    def test_early_stop_on_exact_match(self, config, store, events, session, client):
        result = self.make_job(config, store, events, session, client).run()
        latest = store.get_latest("kofiu_restricted")

        assert result.status == STATUS_PUBLISHED
        assert result.total == 30
        assert result.updated_at_source == "fallback"
        assert client.download_law_attachment.call_count == 1
        assert client.download_law_attachment.call_args[0][0].stored_name == "S1"
        assert latest['expectedOrigin'] == "override"
        assert latest['file']['detectedKind'] == "hwpx"
        assert latest['file']['fileOrdrNo'] == "1"
        assert [e['no'] for e in latest['data']] == list(range(1, 31))
        events.log_timestamp_fallback.assert_called_once()

    def test_count_mismatch_aborts(self, config, store, events, session, client):
        client.fetch_expected_count.return_value = 35

        result = self.make_job(config, store, events, session, client).run()

        assert result.status == STATUS_ABORTED
        assert result.diagnostic == "got 30 entries, expected 35"
        assert client.download_law_attachment.call_count == 2
        assert store.get_latest("kofiu_restricted") is None
        assert store.get_signature("kofiu_restricted") is None
        context = events.log_run_aborted.call_args[0][4]
        assert context == {'got': 30, 'expected': 35}

    def test_candidate_failure_moves_on(self, config, store, events, session, client):
        client.download_law_attachment.side_effect = [
            FetchError("downloadLaw.do returned an HTML page"),
            Download(data=build_notice_hwpx(30)),
        ]

        result = self.make_job(config, store, events, session, client).run()

        assert result.status == STATUS_PUBLISHED
        events.log_candidate_failed.assert_called_once()
        assert events.log_candidate_failed.call_args[0][1] == "금융거래등제한대상자.hwpx"

    def test_corrupt_candidate_moves_on(self, config, store, events, session, client):
        client.list_law_attachments.return_value = [
            Attachment(file_name="금융거래등제한대상자.hwpx", stored_name="S1", file_ordinal="1",
                       file_size=40960),
            Attachment(file_name="금융거래등제한대상자(정정).hwpx", stored_name="S3", file_ordinal="3",
                       file_size=40960),
        ]
        client.download_law_attachment.side_effect = [
            Download(data=build_damaged_hwpx(30)),
            Download(data=build_notice_hwpx(30)),
        ]

        result = self.make_job(config, store, events, session, client).run()

        assert result.status == STATUS_PUBLISHED
        assert result.total == 30
        assert client.download_law_attachment.call_count == 2
        assert store.get_latest("kofiu_restricted")['file']['fileNm'] == "S3"
        events.log_candidate_failed.assert_called_once()
        reason = events.log_candidate_failed.call_args[0][2]
        assert "Contents/section0.xml" in reason

    def test_announcement_page_unavailable(self, config, store, events, session, client):
        client.fetch_expected_count.side_effect = FetchError("503")

        self.make_job(config, store, events, session, client).run()

        assert store.get_latest("kofiu_restricted")['expectedOrigin'] == "document"

    def test_low_confidence_aborts(self, config, store, events, session, client):
        client.fetch_expected_count.return_value = None
        client.download_law_attachment.return_value = Download(data=build_notice_hwpx(5))

        result = self.make_job(config, store, events, session, client).run()

        assert result.status == STATUS_ABORTED
        assert result.diagnostic == "got 5 entries, below confidence floor 20 (declared 5)"
        context = events.log_run_aborted.call_args[0][4]
        assert context == {'got': 5, 'expected': 5,
                           'reason': "below confidence floor 20 (declared 5)"}

    def test_no_extractable_candidate(self, config, store, events, session, client):
        client.download_law_attachment.return_value = Download(data=b"plain bytes")

        result = self.make_job(config, store, events, session, client).run()

        assert result.status == STATUS_ABORTED
        assert events.log_candidate_failed.call_count == 2


# ============================================
# PIPELINE
# ============================================

class FailingJob(IngestionJob):
    source = "ofac_xml"

    def run(self, force=False, check_only=False):
        raise RuntimeError("boom")


class PublishedJob(IngestionJob):
    source = "un_xml"

    def run(self, force=False, check_only=False):
        return JobResult(source=self.source, status=STATUS_PUBLISHED, total=3)


class TestPipeline:
    """Tests for running several jobs together"""

    def test_failure_isolated(self, config, store, events, monkeypatch):
        monkeypatch.setitem(JOBS, "ofac_xml", FailingJob)
        monkeypatch.setitem(JOBS, "un_xml", PublishedJob)

        results = pipeline.run_pipeline(["un_xml", "ofac_xml"], config=config, store=store,
                                        ingestion_logger=events)

        assert [r.source for r in results] == ["un_xml", "ofac_xml"]
        assert results[0].status == STATUS_PUBLISHED
        assert results[1].status == STATUS_ABORTED
        assert results[1].diagnostic == "boom"
        events.log_run_aborted.assert_called_once()

    def test_unknown_source(self, config, store, events):
        with pytest.raises(ConfigurationError):
            pipeline.run_pipeline(["nope"], config=config, store=store, ingestion_logger=events)

    def test_main_bad_config(self, tmp_path):
        bad = tmp_path / "config.yaml"
        bad.write_text("fetch: [unclosed")
        ConfigManager.reset_instance()

        assert pipeline.main(["--config", str(bad)]) == 2
        ConfigManager.reset_instance()

    def test_main_exit_code(self, tmp_path, monkeypatch):
        cfg = tmp_path / "config.yaml"
        cfg.write_text(f"logging:\n  file: '{tmp_path / 'pipeline.log'}'\n  console: false\n"
                       f"  event_log_dir: '{tmp_path}'\n")
        ConfigManager.reset_instance()
        monkeypatch.setattr(pipeline, "run_pipeline", lambda *a, **kw: [
            JobResult(source="un_xml", status=STATUS_PUBLISHED),
            JobResult(source="ofac_xml", status=STATUS_ABORTED, diagnostic="boom"),
        ])

        assert pipeline.main(["--config", str(cfg)]) == 1
        ConfigManager.reset_instance()
