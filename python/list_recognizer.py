"""
List-item recognizer for unstructured notices

Turns extracted document text into a dense, gap-free list of enumerated
entries ("1. ...", "2. ...") and validates it against an expected count.

Pipeline:
1. Cut the trailing reference/appendix block (it carries its own numbered list)
2. Resolve the expected count: override > "(N persons)" phrase > inferred max index
3. Slice the text to the list body and drop page markers
4. Enumerate line-leading "<n>." blocks, discard boilerplate, keep the longest
   block per index
5. Restrict to [1, expected], apply the confidence floor, renumber 1..K

The recognizer is a pure function of (text, override, thresholds): running
it twice on the same input yields the same entries and numbering.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Pattern

import jurisdiction
from config_manager import RecognizerConfig
from snapshot_models import EntryType, SanctionEntry

logger = logging.getLogger(__name__)


# ============================================
# RULE TABLES
# ============================================

# Everything from the first match onward is a reference appendix.
REFERENCE_MARKERS: List[Tuple[str, Pattern]] = [
    ('glyph_reference_heading', re.compile(r'[◇◆■□]\s*참고(?=\s|$)')),
    ('sdn_list_sentence', re.compile(r'미국의\s*제재대상자\s*\(SDN\s*List\)')),
    ('ofac_sdnlist_url', re.compile(r'ofac/downloads/sdnlist\.pdf', re.IGNORECASE)),
]


def _normalized(block: str) -> str:
    return re.sub(r'\s+', ' ', block).strip()


# Blocks that are numbered but are not listed parties.
BOILERPLATE_RULES: List[Tuple[str, Callable[[str], bool]]] = [
    ('too_short', lambda t: len(t) < 2),
    ('article_heading', lambda t: re.match(r'^제\s*\d+\s*(조|장)(?![가-힣])', t) is not None),
    ('agency_name', lambda t: '금융위원회' in t),
    ('notice_word', lambda t: '고시' in t),
    ('addendum', lambda t: '부칙' in t),
    ('restriction_content_heading', lambda t: '금융거래등 제한 내용' in t or '금융거래등제한 내용' in t),
    ('revocation_heading', lambda t: '지정 취소' in t and len(t) < 40),
]

COUNT_PHRASE_RE = re.compile(r'\(\s*(\d[\d,\s]*?)\s*(명|persons?|people)\s*\)', re.IGNORECASE)
LABELLED_COUNT_PHRASE_RE = re.compile(r'대상자\s*\(\s*(\d[\d,\s]*?)\s*(명|persons?|people)\s*\)',
                                      re.IGNORECASE)

LIST_START_KEYWORDS = ('대상자', '제한대상자')
LIST_END_KEYWORDS = ('지정취소', '부칙', '붙임', '고시문', '제한내용')
LEADING_INDEX_RE = re.compile(r'^(\d{1,5})(?:\s*([.)]|[-–—]))?\s*')
MAX_LEADING_INDEX = 50000

BODY_START_RE = re.compile(r'(별첨|붙임|Annex|APPENDIX|첨부)')

PAGE_NOISE_PATTERNS = [
    re.compile(r'^-\s*\d+\s*-$', re.MULTILINE),
    re.compile(r'^--\s*\d+\s+of\s+\d+\s+--$', re.MULTILINE | re.IGNORECASE),
    re.compile(r'^-?\s*(다\s*음|계\s*속)\s*-?\s*$', re.MULTILINE),
]

ITEM_RE = re.compile(r'(?:^|\n)\s*(\d{1,5})\.\s+([\s\S]*?)(?=\n\s*\d{1,5}\.\s+|\Z)')

EXPECTED_OVERRIDE = 'override'
EXPECTED_DOCUMENT = 'document'
EXPECTED_INFERRED = 'inferred'


@dataclass
class RecognizedItem:
    """One accepted list entry"""
    no: int            # dense 1..K sequence
    source_index: int  # index as printed in the document
    name: str


@dataclass
class RecognitionResult:
    """Outcome of recognizing one document"""
    items: List[RecognizedItem] = field(default_factory=list)
    expected: Optional[int] = None
    expected_origin: Optional[str] = None
    candidates_found: int = 0
    found: int = 0     # entries recognized before the confidence floor
    note: str = ""
    accepted: bool = False

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def max_index(self) -> Optional[int]:
        return self.items[-1].source_index if self.items else None

    def to_entries(self) -> List[SanctionEntry]:
        entries = []
        for item in self.items:
            uid = f"KOFIU-RESTRICTED-{item.no}"
            entries.append(SanctionEntry(
                uid=uid,
                type=EntryType.UNKNOWN,
                name=item.name,
                is_region_related=jurisdiction.is_region_related(item.name),
                no=item.no
            ))
        return entries


# ============================================
# TEXT HELPERS
# ============================================

def cut_reference_block(text: str) -> str:
    """Drop everything from the first reference/appendix marker onward"""
    positions = [m.start() for _, pattern in REFERENCE_MARKERS
                 for m in [pattern.search(text)] if m]
    if not positions:
        return text
    return text[:min(positions)].strip()


def clean_text(text: str) -> str:
    """Normalize line endings and horizontal whitespace"""
    cleaned = (text or '').replace('\r', '\n').replace('\u00a0', ' ')
    cleaned = re.sub(r'\t+', ' ', cleaned)
    cleaned = re.sub(r'[ \t]+', ' ', cleaned)
    cleaned = re.sub(r'\n{3,}', '\n\n', cleaned)
    return cleaned.strip()


def normalize_block(block: str) -> str:
    """Collapse a block to one line and tidy parentheses"""
    t = _normalized(block.replace('\r', '\n'))
    t = re.sub(r'\(\s+', '(', t)
    t = re.sub(r'\s+\)', ')', t)
    t = re.sub(r'다\s*음', '다음', t)
    t = re.sub(r'계\s*속', '계속', t)
    return cut_reference_block(t)


def boilerplate_rule(block: str) -> Optional[str]:
    """Name of the first boilerplate rule a block matches, if any"""
    t = _normalized(block)
    for name, predicate in BOILERPLATE_RULES:
        if predicate(t):
            return name
    return None


def _parse_count(raw: str) -> Optional[int]:
    digits = re.sub(r'\D', '', raw or '')
    return int(digits) if digits else None


def find_count_phrase(text: str) -> Optional[Tuple[int, int]]:
    """Find an embedded "(N persons)" phrase

    Returns:
        (count, position) of the labelled phrase if present, else of the
        first unlabelled one, else None
    """
    for pattern in (LABELLED_COUNT_PHRASE_RE, COUNT_PHRASE_RE):
        for m in pattern.finditer(text):
            n = _parse_count(m.group(1))
            if n and n > 0:
                start = m.start(0) if pattern is COUNT_PHRASE_RE else m.start(0) + m.group(0).index('(')
                return n, start
    return None


def _is_year_like(n: int, cfg: RecognizerConfig) -> bool:
    return cfg.year_min <= n <= cfg.year_max


def infer_expected(text: str, cfg: RecognizerConfig) -> Optional[int]:
    """Infer the list length from the largest leading index

    Only lines between the first list-start keyword and the first
    end-of-list keyword after it are scanned.
    """
    lines = [ln.strip() for ln in text.replace('\r', '\n').split('\n') if ln.strip()]

    def compact(s: str) -> str:
        return re.sub(r'\s+', '', s)

    start = 0
    for i, line in enumerate(lines):
        if any(k in compact(line) for k in LIST_START_KEYWORDS):
            start = i
            break

    end = len(lines)
    for i in range(start + 1, len(lines)):
        if any(k in compact(lines[i]) for k in LIST_END_KEYWORDS):
            end = i
            break

    max_index = None
    for line in lines[start:end]:
        m = LEADING_INDEX_RE.match(line)
        if not m:
            continue
        n = int(m.group(1))
        if _is_year_like(n, cfg) or n < 1 or n > MAX_LEADING_INDEX:
            continue
        if max_index is None or n > max_index:
            max_index = n

    if max_index is not None and cfg.inferred_min <= max_index <= cfg.inferred_max:
        return max_index
    return None


def _position_of_count(text: str, expected: int) -> Optional[int]:
    for m in COUNT_PHRASE_RE.finditer(text):
        if _parse_count(m.group(1)) == expected:
            return m.start(0)
    return None


def strip_page_noise(text: str) -> str:
    for pattern in PAGE_NOISE_PATTERNS:
        text = pattern.sub('\n', text)
    return re.sub(r'\n{3,}', '\n\n', text)


def enumerate_blocks(text: str, cfg: RecognizerConfig) -> Tuple[dict, int]:
    """Collect line-leading numbered blocks keyed by printed index

    Returns:
        ({index: block}, number of raw candidates seen)
    """
    by_index = {}
    seen = 0
    for m in ITEM_RE.finditer(text):
        seen += 1
        n = int(m.group(1))
        if n <= 0 or _is_year_like(n, cfg):
            continue
        block = normalize_block(m.group(2) or '')
        rule = boilerplate_rule(block)
        if rule:
            logger.debug(f"Block {n} discarded as {rule}")
            continue
        previous = by_index.get(n)
        if previous is None or len(block) > len(previous):
            by_index[n] = block
    return by_index, seen


# ============================================
# ENTRY POINTS
# ============================================

def recognize(text: str, expected_override: Optional[int] = None,
              config: Optional[RecognizerConfig] = None) -> RecognitionResult:
    """Recognize the enumerated entity list in a notice

    Args:
        text: Extracted plain text
        expected_override: Count supplied from outside the document
        config: Recognizer thresholds

    Returns:
        RecognitionResult; ``accepted`` is False and ``items`` empty when
        fewer than ``config.min_entries`` entries were recognized
    """
    cfg = config or RecognizerConfig()
    cleaned = cut_reference_block(clean_text(text))

    result = RecognitionResult()
    phrase = find_count_phrase(cleaned)
    if expected_override:
        result.expected, result.expected_origin = expected_override, EXPECTED_OVERRIDE
    elif phrase:
        result.expected, result.expected_origin = phrase[0], EXPECTED_DOCUMENT
    else:
        inferred = infer_expected(cleaned, cfg)
        if inferred:
            result.expected, result.expected_origin = inferred, EXPECTED_INFERRED

    body = cleaned
    if result.expected_origin == EXPECTED_DOCUMENT:
        body = body[phrase[1]:]
    elif result.expected_origin == EXPECTED_OVERRIDE:
        pos = _position_of_count(body, result.expected)
        if pos is not None:
            body = body[pos:]
    elif result.expected is None:
        m = BODY_START_RE.search(body)
        if m:
            body = body[m.start():]

    body = cut_reference_block(strip_page_noise(body))

    by_index, result.candidates_found = enumerate_blocks(body, cfg)
    indexes = sorted(by_index)
    if result.expected:
        indexes = [n for n in indexes if 1 <= n <= result.expected]

    result.found = len(indexes)
    if len(indexes) < cfg.min_entries:
        result.note = (f"parsed_low_confidence(got={len(indexes)}, "
                       f"expected={result.expected if result.expected else '?'})")
        logger.warning(f"✗ Recognizer: {result.note}")
        return result

    result.items = [RecognizedItem(no=seq, source_index=n, name=by_index[n])
                    for seq, n in enumerate(indexes, start=1)]
    result.accepted = True
    if result.expected:
        result.note = (f"parsed_ok_expected(expected={result.expected}, "
                       f"got={result.total}, maxNo={result.max_index})")
    else:
        result.note = f"parsed_ok_no_expected(got={result.total})"
    logger.info(f"✓ Recognizer: {result.note}")
    return result


def score_result(result: RecognitionResult) -> int:
    """Rank results: closeness to the expected count dominates volume"""
    total = result.total
    if result.expected and result.expected > 0:
        diff = abs(total - result.expected)
        return 2_000_000 // (diff + 1) + min(total, 5000)
    return min(total, 8000)


def should_stop_early(result: RecognitionResult, config: Optional[RecognizerConfig] = None) -> bool:
    """True once a result is a near-exact match with a plausible size"""
    cfg = config or RecognizerConfig()
    if not result.expected or result.expected <= 0:
        return False
    if result.total < cfg.min_entries:
        return False
    return abs(result.total - result.expected) <= cfg.early_stop_tolerance
