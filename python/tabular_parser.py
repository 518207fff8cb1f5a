"""
Spreadsheet registry parser (KoFIU VASP registration status workbook)

The workbook carries a two-row merged header, a data block, a "※"
footnote block (one footnote lists registrants whose registration lapsed)
and a reference date near the top. Column positions move between
publications, so columns are resolved by header text, never by index.
"""

import io
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Any, Sequence

import openpyxl

import jurisdiction
from pipeline_errors import ParseError
from snapshot_models import EntryType, SanctionEntry, collapse_whitespace

logger = logging.getLogger(__name__)


SERVICE = 'service'
COMPANY = 'company'
EXECUTIVE = 'executive'

HEADER_SYNONYMS: Dict[str, Sequence[str]] = {
    SERVICE: ('서비스명', 'service'),
    COMPANY: ('법인명', '법인', '상호', '회사', 'company'),
    EXECUTIVE: ('대표자', '대표', 'ceo'),
}
REQUIRED_COLUMNS = (SERVICE, COMPANY)

FOOTNOTE_MARKER = '※'
EXPIRED_NOTE_KEYWORD = '신고 유효기간 만료된 미갱신 사업자'
EXPIRED_NOTE_PREFIX = '※ 신고 유효기간 만료된 미갱신 사업자 :'
EXPIRED_NUMBER_BASE = 1001

_HANGUL_RE = re.compile(r'[가-힣]')
_NUMERIC_RE = re.compile(r'^\d+$')
_BASE_DATE_RE = re.compile(r'(\d{4})\.\s*(\d{1,2})\.\s*(\d{1,2})')
_PAREN_GROUP_RE = re.compile(r'\([^()]*\)')


@dataclass
class VaspRecord:
    """One registrant row"""
    no: int
    service: str
    company: str
    ceo: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {'no': self.no, 'service': self.service, 'company': self.company, 'ceo': self.ceo}


@dataclass
class VaspRegistry:
    """Parsed registry: active registrants, lapsed registrants, base date"""
    normal: List[VaspRecord] = field(default_factory=list)
    expired: List[VaspRecord] = field(default_factory=list)
    base_date: Optional[str] = None
    expired_note_found: bool = False
    columns: Dict[str, int] = field(default_factory=dict)


# ============================================
# GRID
# ============================================

def cell_text(value: Any) -> str:
    """Render a cell value as trimmed display text"""
    if value is None:
        return ''
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        return value.strftime('%Y.%m.%d')
    return str(value).replace('\u00a0', ' ').strip()


def load_grid(data: bytes) -> List[List[Any]]:
    """Load the first worksheet as a value grid with merged ranges filled

    Every cell inside a merged range receives the range's top-left value,
    so header lookup never sees blanks inside a merge.

    Raises:
        ParseError: If the workbook cannot be opened
    """
    try:
        wb = openpyxl.load_workbook(io.BytesIO(data), data_only=True)
    except Exception as e:
        raise ParseError(f"Workbook could not be opened: {e}") from e

    ws = wb.worksheets[0]
    grid = [[cell.value for cell in row] for row in ws.iter_rows()]
    fill_merged_ranges(grid, [
        (r.min_row - 1, r.min_col - 1, r.max_row - 1, r.max_col - 1)
        for r in ws.merged_cells.ranges
    ])
    wb.close()
    return grid


def fill_merged_ranges(grid: List[List[Any]], ranges: Sequence[Sequence[int]]) -> None:
    """Propagate each merge's top-left value into its blank cells

    Args:
        grid: Row-major values, modified in place
        ranges: 0-based (min_row, min_col, max_row, max_col) rectangles
    """
    for min_row, min_col, max_row, max_col in ranges:
        if min_row >= len(grid) or min_col >= len(grid[min_row]):
            continue
        value = grid[min_row][min_col]
        if value is None or cell_text(value) == '':
            continue
        for r in range(min_row, min(max_row, len(grid) - 1) + 1):
            row = grid[r]
            for c in range(min_col, min(max_col, len(row) - 1) + 1):
                if row[c] is None or cell_text(row[c]) == '':
                    row[c] = value


def _cell(grid: List[List[Any]], r: int, c: Optional[int]) -> str:
    if c is None or r >= len(grid) or c >= len(grid[r]):
        return ''
    return cell_text(grid[r][c])


# ============================================
# HEADER RESOLUTION
# ============================================

def normalize_header(value: Any) -> str:
    return re.sub(r'\s+', '', cell_text(value).replace('\u00a0', ''))


def resolve_columns(grid: List[List[Any]], header_rows: Sequence[int]) -> Dict[str, int]:
    """Map semantic roles to column indexes using the two header rows

    Raises:
        ParseError: If the service or company column cannot be found
    """
    width = max((len(grid[r]) for r in header_rows if r < len(grid)), default=0)
    headers = [
        ''.join(normalize_header(grid[r][c]) for r in header_rows
                if r < len(grid) and c < len(grid[r]))
        for c in range(width)
    ]

    columns: Dict[str, int] = {}
    claimed = set()
    for role, synonyms in HEADER_SYNONYMS.items():
        for c, header in enumerate(headers):
            if c in claimed:
                continue
            low = header.lower()
            if any(s.lower() in low for s in synonyms):
                columns[role] = c
                claimed.add(c)
                break

    missing = [role for role in REQUIRED_COLUMNS if role not in columns]
    if missing:
        raise ParseError(f"Required registry column(s) not found: {', '.join(missing)} "
                         f"(headers={headers})")

    logger.info(f"Registry columns resolved: "
                + ', '.join(f"{role}={headers[c]}@{c}" for role, c in columns.items()))
    return columns


# ============================================
# ROWS
# ============================================

def _leading_text(row: List[Any]) -> str:
    for value in row:
        text = cell_text(value)
        if text:
            return text
    return ''


def parse_rows(grid: List[List[Any]], columns: Dict[str, int], data_start: int) -> List[VaspRecord]:
    """Extract registrant rows below the header

    Raises:
        ParseError: On a non-Hangul first service cell or a numeric service
    """
    svc_col = columns[SERVICE]
    co_col = columns[COMPANY]
    ceo_col = columns.get(EXECUTIVE)

    sample = _cell(grid, data_start, svc_col)
    if not _HANGUL_RE.search(sample):
        raise ParseError(f"Service column looks misaligned (first value={sample!r})")

    records: List[VaspRecord] = []
    seen = set()

    for r in range(data_start, len(grid)):
        row = grid[r]
        if _leading_text(row).startswith(FOOTNOTE_MARKER):
            break

        service = _cell(grid, r, svc_col)
        company = _cell(grid, r, co_col)
        ceo = _cell(grid, r, ceo_col)

        if not service and not company:
            continue
        if service.startswith(FOOTNOTE_MARKER) or company.startswith(FOOTNOTE_MARKER):
            break
        # legend text merged across the display columns
        if service and service == company and (not ceo or ceo == service):
            break
        if _NUMERIC_RE.match(service):
            raise ParseError(f"Service value looks numeric ({service!r}) at row {r + 1}")

        key = collapse_whitespace(f"{service}|{company}|{ceo}")
        if key in seen:
            logger.debug(f"Duplicate registry row skipped: {key}")
            continue
        seen.add(key)
        records.append(VaspRecord(no=len(records) + 1, service=service, company=company, ceo=ceo))

    return records


# ============================================
# LAPSED REGISTRATIONS FOOTNOTE
# ============================================

def split_expired_item(raw: str) -> Dict[str, str]:
    """Split one footnote item into service and company names

    Two or more parenthesized groups: the last group is the company, the
    text before the last "(" is the service. One group: it is the company
    and the text before it is the service. None: all text is the service.
    """
    text = (raw or '').strip()
    if not text:
        return {'service': '', 'company': ''}

    groups = _PAREN_GROUP_RE.findall(text)
    if len(groups) >= 2:
        company = groups[-1].strip('()').strip()
        service = text[:text.rfind('(')].strip()
        return {'service': service, 'company': company}
    if len(groups) == 1:
        company = groups[0].strip('()').strip()
        service = text.split('(')[0].strip()
        return {'service': service, 'company': company}
    return {'service': text, 'company': ''}


def company_service_label(service: str, company: str, raw: str = '') -> str:
    """Display form "company(service)" with graceful degradation"""
    s, c = (service or '').strip(), (company or '').strip()
    if c and s:
        return f"{c}({s})"
    return c or s or (raw or '').strip()


def parse_expired_note(note: str) -> List[VaspRecord]:
    """Parse the lapsed-registration footnote into records numbered from 1001"""
    body = (note or '').replace(EXPIRED_NOTE_PREFIX, '')
    items = [s.strip() for s in body.split(',') if s.strip()]
    records = []
    for idx, raw in enumerate(items):
        parts = split_expired_item(raw)
        records.append(VaspRecord(
            no=EXPIRED_NUMBER_BASE + idx,
            service='',
            company=company_service_label(parts['service'], parts['company'], raw)
        ))
    return records


def find_expired_note(grid: List[List[Any]]) -> Optional[str]:
    for row in grid:
        for value in row:
            text = cell_text(value)
            if EXPIRED_NOTE_KEYWORD in text:
                return text
    return None


# ============================================
# BASE DATE
# ============================================

def _iso_day(year: int, month: int, day: int) -> Optional[str]:
    try:
        return date(year, month, day).strftime('%Y-%m-%dT00:00:00.000Z')
    except ValueError:
        return None


def find_base_date(grid: List[List[Any]], scan_rows: int = 15) -> Optional[str]:
    """Find the registry's reference date in the leading rows"""
    for row in grid[:scan_rows]:
        for value in row:
            if isinstance(value, (datetime, date)):
                return _iso_day(value.year, value.month, value.day)
            m = _BASE_DATE_RE.search(cell_text(value))
            if m:
                iso = _iso_day(int(m.group(1)), int(m.group(2)), int(m.group(3)))
                if iso:
                    return iso
    return None


# ============================================
# ENTRY POINTS
# ============================================

def parse_registry_grid(grid: List[List[Any]], header_rows: Sequence[int] = (4, 5),
                        base_date_scan_rows: int = 15) -> VaspRegistry:
    """Parse an already-loaded grid

    Raises:
        ParseError: If the layout does not match the expected registry
    """
    columns = resolve_columns(grid, header_rows)
    data_start = max(header_rows) + 1
    registry = VaspRegistry(columns=columns)
    registry.normal = parse_rows(grid, columns, data_start)
    if not registry.normal:
        raise ParseError("Registry contains no registrant rows")

    note = find_expired_note(grid)
    if note:
        registry.expired_note_found = True
        registry.expired = parse_expired_note(note)

    registry.base_date = find_base_date(grid, base_date_scan_rows)
    logger.info(f"✓ Parsed registry: {len(registry.normal)} registrants, "
                f"{len(registry.expired)} lapsed, base date {registry.base_date or '(none)'}")
    return registry


def parse_registry(data: bytes, header_rows: Sequence[int] = (4, 5),
                   base_date_scan_rows: int = 15) -> VaspRegistry:
    """Parse workbook bytes into a VaspRegistry"""
    return parse_registry_grid(load_grid(data), header_rows, base_date_scan_rows)


def registry_to_entries(records: List[VaspRecord]) -> List[SanctionEntry]:
    """Represent registrants as SanctionEntry records

    The registry has no full text; classification looks at country and name.
    """
    entries = []
    for rec in records:
        full_text = f"SERVICE: {rec.service}\nCOMPANY: {rec.company}"
        if rec.ceo:
            full_text += f"\nCEO: {rec.ceo}"
        entries.append(SanctionEntry(
            uid=f"KOFIU-VASP-{rec.no}",
            type=EntryType.ENTITY,
            name=rec.company,
            is_region_related=jurisdiction.is_region_related(rec.company),
            remark=rec.service,
            full_text=full_text,
            no=rec.no
        ))
    return entries
