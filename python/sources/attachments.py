"""
Attachment list extraction, normalisation and ranking for KoFIU notices

The law-attachment endpoint has answered with several response shapes over
time. Each shape is handled by one strategy: a pure function from the raw
response text to a list of attachment-like dicts or None. Strategies are
tried in order and the first non-empty answer wins.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


NAME_KEYS = ('atchmnflOrginlNm', 'fileNm', 'orignlFileNm', 'orgnlFileNm', 'atchFileNm')
STORED_NAME_KEYS = ('atchmnflStreNm', 'streFileNm', 'stre', 'fileStreNm', 'saveFileName',
                    'storedFileName')
SIZE_KEYS = ('atchmnflSzVal', 'fileSize', 'size', 'fileSz')
MIME_KEYS = ('atchmnflTyNm', 'mime', 'contentType')
ORDINAL_KEYS = ('atchmnflOrdrNo', 'fileOrdrNo')
LIST_KEYS = ('result', 'fileList', 'resultList', 'data')

# keys that mark an array as an attachment list during deep search
ATTACHMENT_MARKER_KEYS = frozenset({
    'streFileNm', 'orignlFileNm', 'fileNm', 'atchFileNm', 'atchmnflStreNm', 'atchmnflOrginlNm'
})

STRONG_KEYWORDS = ('금융거래', '제한대상')
KEYWORD_SCORE = 700
TYPE_SCORES = (('hwpx', 600), ('pdf', 450), ('hwp', 200))
MAX_SIZE_SCORE = 120

MIME_BY_EXTENSION = {
    '.hwpx': 'application/haansofthwpx',
    '.hwp': 'application/x-hwp',
    '.pdf': 'application/pdf',
    '.xlsx': 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
}

_REGEX_PAIR_RE = re.compile(
    r'atchmnflStreNm["\']?\s*[:=]\s*["\']([^"\']+)["\'][\s\S]{0,160}?'
    r'atchmnflOrginlNm["\']?\s*[:=]\s*["\']([^"\']+)["\']'
)


@dataclass
class Attachment:
    """One downloadable file attached to a notice"""
    file_name: str = ""        # original display name
    stored_name: str = ""      # server-side stored name, the download key
    file_size: int = 0
    mime: str = ""
    file_ordinal: str = ""
    se_cd: str = ""
    ordr_no: str = ""

    @property
    def extension(self) -> str:
        m = re.search(r'\.[A-Za-z0-9]+$', self.file_name or self.stored_name)
        return m.group(0).lower() if m else ''

    def stable_fields(self) -> Dict[str, Any]:
        """Fields that only change when the file itself changes"""
        return {
            'fileNm': self.file_name,
            'streFileNm': self.stored_name,
            'fileOrdrNo': self.file_ordinal,
            'fileSize': self.file_size,
            'mime': self.mime,
        }


# ============================================
# EXTRACTION STRATEGIES
# ============================================

def _load_json(raw: str) -> Optional[Any]:
    try:
        return json.loads(raw)
    except ValueError:
        return None


def from_result_key(raw: str) -> Optional[List[Dict[str, Any]]]:
    """``{"result": [...]}`` or one of the alternate list keys"""
    doc = _load_json(raw)
    if isinstance(doc, dict):
        for key in LIST_KEYS:
            value = doc.get(key)
            if isinstance(value, list) and value:
                return value
    return None


def from_bare_list(raw: str) -> Optional[List[Dict[str, Any]]]:
    doc = _load_json(raw)
    if isinstance(doc, list) and doc:
        return doc
    return None


def _json_substring(raw: str) -> Optional[Any]:
    for opener, closer in (('{', '}'), ('[', ']')):
        start, end = raw.find(opener), raw.rfind(closer)
        if 0 <= start < end:
            doc = _load_json(raw[start:end + 1])
            if doc is not None:
                return doc
    return None


def _looks_like_attachments(value: Any) -> bool:
    return (isinstance(value, list) and len(value) > 0
            and all(isinstance(v, dict) and ATTACHMENT_MARKER_KEYS & set(v) for v in value))


def _deep_find(node: Any) -> Optional[List[Dict[str, Any]]]:
    if _looks_like_attachments(node):
        return node
    children = node.values() if isinstance(node, dict) else node if isinstance(node, list) else []
    for child in children:
        found = _deep_find(child)
        if found:
            return found
    return None


def from_deep_search(raw: str) -> Optional[List[Dict[str, Any]]]:
    """Any nested array whose items all carry attachment-name keys"""
    doc = _load_json(raw)
    if doc is None:
        doc = _json_substring(raw)
    return _deep_find(doc) if doc is not None else None


def from_regex(raw: str) -> Optional[List[Dict[str, Any]]]:
    """Recover stored/original name pairs from non-JSON text"""
    pairs = _REGEX_PAIR_RE.findall(raw or '')
    if not pairs:
        return None
    return [{'atchmnflStreNm': stored, 'atchmnflOrginlNm': original} for stored, original in pairs]


EXTRACTION_STRATEGIES: List[Tuple[str, Callable[[str], Optional[List[Dict[str, Any]]]]]] = [
    ('result_key', from_result_key),
    ('bare_list', from_bare_list),
    ('deep_search', from_deep_search),
    ('regex', from_regex),
]


def extract_attachment_list(raw: str) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """Apply the strategies in order

    Returns:
        (items, name of the strategy that produced them); ([], None) if none did
    """
    for name, strategy in EXTRACTION_STRATEGIES:
        items = strategy(raw)
        if items:
            logger.debug(f"Attachment list found by strategy '{name}' ({len(items)} items)")
            return items, name
    return [], None


# ============================================
# NORMALISATION
# ============================================

def _first(item: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ''):
            return value
    return None


def _parse_size(value: Any) -> int:
    if isinstance(value, (int, float)):
        return int(value)
    digits = re.sub(r'\D', '', str(value or ''))
    return int(digits) if digits else 0


def normalize_attachment(item: Dict[str, Any], default_se_cd: str = "",
                         default_ordr_no: str = "") -> Attachment:
    """Map any known field-name variant onto an Attachment"""
    att = Attachment(
        file_name=str(_first(item, NAME_KEYS) or ''),
        stored_name=str(_first(item, STORED_NAME_KEYS) or ''),
        file_size=_parse_size(_first(item, SIZE_KEYS)),
        mime=str(_first(item, MIME_KEYS) or ''),
        file_ordinal=str(_first(item, ORDINAL_KEYS) or ''),
        se_cd=str(_first(item, ('seCd', 'lawordInfoTySeCd')) or default_se_cd),
        ordr_no=str(item.get('lawordInfoOrdrNo') or default_ordr_no),
    )
    if not att.mime:
        att.mime = MIME_BY_EXTENSION.get(att.extension, '')
    return att


# ============================================
# RANKING
# ============================================

def attachment_kind(att: Attachment) -> str:
    name = att.file_name.lower()
    mime = att.mime.lower()
    if name.endswith('.hwpx') or 'hwpx' in mime:
        return 'hwpx'
    if name.endswith('.pdf') or 'pdf' in mime:
        return 'pdf'
    if name.endswith('.hwp') or 'hwp' in mime:
        return 'hwp'
    return 'unknown'


def rank_score(att: Attachment) -> float:
    """Keyword 700, HWPX 600 / PDF 450 / HWP 200, plus up to 120 for size in KiB"""
    score = KEYWORD_SCORE if any(k in att.file_name for k in STRONG_KEYWORDS) else 0
    score += dict(TYPE_SCORES).get(attachment_kind(att), 0)
    return score + min(att.file_size / 1024, MAX_SIZE_SCORE)


def rank_attachments(attachments: List[Attachment]) -> List[Attachment]:
    """Best candidate first; ties keep listing order"""
    return sorted(attachments, key=rank_score, reverse=True)
