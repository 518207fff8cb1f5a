"""
KoFIU website client

The site is session-dependent: the notice page must be visited first so
its Set-Cookie headers can be replayed on the JSON board endpoints, and
downloads only succeed with the matching notice page as Referer. All
requests go through the caller's SessionContext.
"""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from config_manager import FetchConfig, SourcesConfig
from fetcher import SessionContext, TransientFetchError
from pipeline_errors import FetchError, ParseError
from sources.attachments import Attachment, extract_attachment_list, normalize_attachment

logger = logging.getLogger(__name__)


AJAX_HEADERS = {
    'X-Requested-With': 'XMLHttpRequest',
    'Accept': 'application/json, text/javascript, */*; q=0.01',
}
HTML_HEADERS = {
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
    'Accept-Language': 'ko-KR,ko;q=0.9,en;q=0.8',
}

NOTICE_LIST_KEYS = ('result', 'resultList', 'data')
BOARD_FILE_KEYS = ('result', 'fileList', 'resultList', 'data')

HTML_COUNT_RE = re.compile(r'\(\s*([\d,\s]{3,10})\s*명\s*\)')


@dataclass
class BoardNotice:
    """One entry of the notice board list"""
    ordr_no: str
    title: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BoardFile:
    """One attachment of a board notice"""
    file_id: str
    name: str
    ordinal: str = ""
    size: int = 0


@dataclass
class Download:
    """Downloaded attachment bytes plus response metadata"""
    data: bytes
    content_type: str = ""

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()


def _check_rs_msg(body: Any, what: str) -> None:
    if isinstance(body, dict):
        rs = body.get('rsMsg') or {}
        if isinstance(rs, dict) and rs.get('statusCode') == 'E':
            raise FetchError(f"KoFIU {what} rejected: {rs.get('code')} {rs.get('message')}")


def _first_list(body: Any, keys) -> List[Dict[str, Any]]:
    if isinstance(body, dict):
        for key in keys:
            value = body.get(key)
            if isinstance(value, list) and value:
                return value
    return []


def looks_like_html(data: bytes) -> bool:
    head = data[:512].lstrip().lower()
    return head.startswith(b'<!doctype html') or head.startswith(b'<html') or b'<head' in head


def html_to_text(html: str) -> str:
    text = re.sub(r'<script[\s\S]*?</script>', ' ', html, flags=re.IGNORECASE)
    text = re.sub(r'<style[\s\S]*?</style>', ' ', text, flags=re.IGNORECASE)
    text = re.sub(r'<[^>]+>', ' ', text)
    text = re.sub(r'&nbsp;', ' ', text, flags=re.IGNORECASE)
    return re.sub(r'\s+', ' ', text).strip()


def parse_expected_count(html: str) -> Optional[int]:
    """Read a "(N명)" count from an announcement page"""
    m = HTML_COUNT_RE.search(html_to_text(html))
    if not m:
        return None
    digits = re.sub(r'\D', '', m.group(1))
    return int(digits) if digits else None


class KofiuClient:
    """Board and law-notice endpoints of the KoFIU site"""

    def __init__(self, session: SessionContext, sources: SourcesConfig,
                 fetch: Optional[FetchConfig] = None):
        self.session = session
        self.sources = sources
        self.fetch = fetch or session.config
        self.origin = sources.kofiu_origin.rstrip('/')

    # ============================================
    # URLS
    # ============================================

    def notice_view_url(self, ordr_no: str) -> str:
        query = urlencode({'ntcnYardOrdrNo': ordr_no, 'seCd': self.sources.vasp_board_code})
        return f"{self.origin}/kor/notification/notice_view.do?{query}"

    def announce_view_url(self, ordr_no: Optional[str] = None, se_cd: Optional[str] = None) -> str:
        query = urlencode({
            'lawordInfoOrdrNo': ordr_no or self.sources.restricted_law_notice_no,
            'seCd': se_cd or self.sources.restricted_law_type_code,
        })
        return f"{self.origin}/kor/law/announce_view.do?{query}"

    # ============================================
    # BOARD (VASP REGISTRY)
    # ============================================

    def bootstrap(self) -> None:
        """Visit the notice page so the session carries the site cookies"""
        self.session.get(f"{self.origin}/kor/notification/notice.do", headers=HTML_HEADERS)
        logger.debug(f"KoFIU session cookies: {sorted(self.session.cookies)}")

    def list_notices(self) -> List[BoardNotice]:
        """First page of the registry board

        Raises:
            FetchError: On an error status or an empty list
        """
        params = {
            'ntcnYardOrdrNo': '', 'page': 1, 'seCd': self.sources.vasp_board_code,
            'selScope': '', 'size': 20, 'subSech': '',
        }
        headers = dict(AJAX_HEADERS, Origin=self.origin)
        body = self.session.get_json(f"{self.origin}/cmn/board/selectBoardListFile.do",
                                     params=params, headers=headers)
        _check_rs_msg(body, "notice list")
        items = _first_list(body, NOTICE_LIST_KEYS)
        if not items:
            raise FetchError("KoFIU notice list is empty")
        return [BoardNotice(ordr_no=str(it.get('ntcnYardOrdrNo') or ''),
                            title=str(it.get('ntcnYardSjNm') or ''), raw=it)
                for it in items]

    def choose_notice(self, notices: List[BoardNotice]) -> BoardNotice:
        """Title keyword match, else the default notice number, else the newest"""
        keyword = self.sources.vasp_title_keyword
        for notice in notices:
            if keyword and keyword in notice.title:
                return notice
        for notice in notices:
            if notice.ordr_no == self.sources.vasp_default_notice_no:
                return notice
        return notices[0]

    def list_board_files(self, ordr_no: str) -> List[BoardFile]:
        headers = dict(AJAX_HEADERS, Origin=self.origin, Referer=self.notice_view_url(ordr_no))
        response = self.session.post(
            f"{self.origin}/cmn/board/selectBoardFile.do",
            data={'ntcnYardOrdrNo': ordr_no, 'seCd': self.sources.vasp_board_code},
            headers=headers
        )
        try:
            body = response.json()
        except ValueError as e:
            raise FetchError(f"KoFIU board file list is not JSON: {e}")
        _check_rs_msg(body, "board file list")
        items = _first_list(body, BOARD_FILE_KEYS)
        if not items:
            raise FetchError(f"KoFIU notice {ordr_no} has no attachments")
        return [BoardFile(
            file_id=str(it.get('fileId') or ''),
            name=str(it.get('atchmnflOrginlNm') or ''),
            ordinal=str(it.get('atchmnflOrdrNo') or it.get('fileOrdrNo') or ''),
            size=int(re.sub(r'\D', '', str(it.get('atchmnflSzVal') or it.get('fileSize') or '')) or 0),
        ) for it in items]

    @staticmethod
    def choose_workbook(files: List[BoardFile]) -> BoardFile:
        """The first .xlsx attachment, else the first attachment

        Raises:
            ParseError: If the chosen attachment has no download handle
        """
        chosen = next((f for f in files if f.name.lower().endswith('.xlsx')), files[0])
        if not chosen.file_id:
            raise ParseError(f"Attachment {chosen.name!r} has no fileId")
        return chosen

    def download_board_file(self, ordr_no: str, board_file: BoardFile) -> Download:
        response = self.session.get(
            f"{self.origin}/cmn/file/downloadBoard.do",
            params={'fileId': board_file.file_id},
            headers={'Referer': self.notice_view_url(ordr_no), 'Accept': '*/*'}
        )
        return Download(data=response.content,
                        content_type=response.headers.get('Content-Type', ''))

    # ============================================
    # LAW NOTICE (RESTRICTED PERSONS)
    # ============================================

    def list_law_attachments(self) -> List[Attachment]:
        """Attachments of the restricted-persons notice, normalized

        Raises:
            FetchError: If no strategy finds an attachment list
        """
        ordr_no = self.sources.restricted_law_notice_no
        se_cd = self.sources.restricted_law_type_code
        headers = dict(AJAX_HEADERS, Origin=self.origin, Referer=self.announce_view_url())
        response = self.session.post(
            f"{self.origin}/cmn/board/selectLawFile.do",
            data={'lawordInfoOrdrNo': ordr_no, 'seCd': se_cd, 'lawordInfoTySeCd': se_cd},
            headers=headers
        )
        items, strategy = extract_attachment_list(response.text)
        if not items:
            raise FetchError("selectLawFile.do returned no attachment list")
        attachments = [normalize_attachment(it, se_cd, ordr_no) for it in items]
        logger.info(f"KoFIU law notice {ordr_no}: {len(attachments)} attachment(s) via {strategy}")
        for att in attachments:
            logger.info(f"  - {att.file_name or '(no name)'} | {att.mime or '?'} | "
                        f"size={att.file_size} | fileOrdrNo={att.file_ordinal or '?'}")
        return attachments

    def _download_law_once(self, att: Attachment) -> Download:
        if not att.file_ordinal or not att.stored_name:
            raise FetchError(f"downloadLaw.do parameters missing "
                             f"(fileOrdrNo={att.file_ordinal!r}, fileNm={att.stored_name!r})")
        se_cd = att.se_cd or self.sources.restricted_law_type_code
        ordr_no = att.ordr_no or self.sources.restricted_law_notice_no
        url = f"{self.origin}/cmn/file/downloadLaw.do"
        response = self.session.request('GET', url, retry=False, params={
            'seCd': se_cd, 'ordrNo': ordr_no,
            'fileOrdrNo': att.file_ordinal, 'fileNm': att.stored_name,
        }, headers={'Referer': self.announce_view_url(ordr_no, se_cd), 'Accept': '*/*'})

        data = response.content
        content_type = (response.headers.get('Content-Type') or '').lower()
        if 'text/html' in content_type or looks_like_html(data):
            raise TransientFetchError(f"downloadLaw.do returned an HTML page for {att.file_name!r}",
                                      url=url)
        if len(data) < self.fetch.min_attachment_bytes:
            raise TransientFetchError(f"downloadLaw.do returned only {len(data)} bytes "
                                      f"for {att.file_name!r} (ct={content_type})", url=url)
        return Download(data=data, content_type=content_type)

    def download_law_attachment(self, att: Attachment) -> Download:
        """Download one attachment, retrying HTML error pages and truncated bodies

        Raises:
            FetchError: After the last attempt fails
        """
        return self.session.retrying(self._download_law_once)(att)

    def fetch_expected_count(self) -> Optional[int]:
        """Listed-person count from the announcement page, if it prints one"""
        response = self.session.get(self.announce_view_url(), headers=HTML_HEADERS)
        return parse_expected_count(response.text)
