"""
Text extraction from binary publication formats

Supported payloads:
- PDF (pdfplumber), page-number watermarks removed
- HWPX (zipped XML), section documents in order
- HWP (OLE compound file), BodyText section streams decoded record by record

Formats are sniffed from magic bytes first; the filename/MIME hint is only
consulted when the content is inconclusive, so mislabeled attachments are
still routed correctly.
"""

import io
import logging
import re
import struct
import zipfile
import zlib
from typing import List, Optional

import olefile
import pdfplumber
from lxml import etree

from pipeline_errors import ExtractionError
from xml_utils import secure_fromstring, local_name

logger = logging.getLogger(__name__)


PDF = "pdf"
HWPX = "hwpx"
HWP = "hwp"
XLSX = "xlsx"
UNKNOWN = "unknown"

OLE_SIGNATURE = b'\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1'

# "- 3 -" and "-- 2 of 10 --" page footers
PAGE_MARKER_PATTERNS = [
    re.compile(r'^-\s*\d+\s*-$', re.MULTILINE),
    re.compile(r'^--\s*\d+\s+of\s+\d+\s+--$', re.MULTILINE | re.IGNORECASE),
]

HWPX_SECTION_RE = re.compile(r'^Contents/section(\d+)\.xml$', re.IGNORECASE)
HWPX_SECTION_SUFFIX_RE = re.compile(r'section(\d+)\.xml$', re.IGNORECASE)
HWPX_MAX_XML_ENTRIES = 30

HWP_SECTION_RE = re.compile(r'^BodyText/Section(\d+)$', re.IGNORECASE)
HWP_TAG_PARA_TEXT = 67
HWP_MIN_LETTERS = 5
HWP_MIN_SECTION_CHARS = 30
_LETTER_RE = re.compile(r'[A-Za-z가-힣]')

# raised by zipfile, zlib and olefile on damaged containers
CORRUPT_CONTAINER_ERRORS = (zipfile.BadZipFile, zlib.error, NotImplementedError, OSError, ValueError, EOFError)


def _hint_format(name: str = "", mime: str = "") -> str:
    """Guess a format from filename extension and MIME type"""
    lname = (name or '').lower()
    lmime = (mime or '').lower()
    if lname.endswith('.pdf') or 'pdf' in lmime:
        return PDF
    if lname.endswith('.hwpx') or 'hwpx' in lmime or 'haansofthwpx' in lmime:
        return HWPX
    if lname.endswith('.hwp') or 'hwp' in lmime:
        return HWP
    if lname.endswith('.xlsx') or 'spreadsheetml' in lmime:
        return XLSX
    return UNKNOWN


def _zip_flavor(data: bytes, hint: str) -> str:
    """Tell an HWPX package apart from an XLSX workbook"""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            names = zf.namelist()
    except CORRUPT_CONTAINER_ERRORS:
        return hint if hint in (HWPX, XLSX) else HWPX
    if any(n.startswith('xl/') for n in names):
        return XLSX
    if any(n.startswith('Contents/') for n in names) or 'mimetype' in names:
        return HWPX
    return hint if hint in (HWPX, XLSX) else HWPX


def sniff_format(data: bytes, name: str = "", mime: str = "") -> str:
    """Detect the payload format

    Args:
        data: Raw bytes
        name: Declared filename (hint)
        mime: Declared MIME type (hint)

    Returns:
        One of "pdf", "hwpx", "hwp", "xlsx", "unknown"
    """
    head = data[:8] if data else b''
    hint = _hint_format(name, mime)

    if head.startswith(b'%PDF'):
        return PDF
    if head.startswith(b'PK'):
        return _zip_flavor(data, hint)
    if head == OLE_SIGNATURE:
        return HWP
    return hint


def strip_page_markers(text: str) -> str:
    """Remove page-number watermark lines"""
    for pattern in PAGE_MARKER_PATTERNS:
        text = pattern.sub('', text)
    return re.sub(r'\n{3,}', '\n\n', text)


def extract_pdf_text(data: bytes) -> str:
    """Extract text from a PDF in page order

    Raises:
        ExtractionError: If the PDF cannot be opened or holds no text
    """
    pages: List[str] = []
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            for page in pdf.pages:
                pages.append(page.extract_text() or '')
    except Exception as e:
        raise ExtractionError(f"PDF could not be read: {e}", PDF) from e

    text = strip_page_markers('\n'.join(pages)).strip()
    if not text:
        raise ExtractionError("PDF contains no extractable text", PDF)
    return text


def _hwpx_targets(names: List[str]) -> List[str]:
    def section_no(name: str) -> int:
        m = HWPX_SECTION_SUFFIX_RE.search(name)
        return int(m.group(1)) if m else 0

    targets = sorted((n for n in names if HWPX_SECTION_RE.match(n)), key=section_no)
    if not targets:
        targets = sorted((n for n in names if HWPX_SECTION_SUFFIX_RE.search(n)), key=section_no)
    if not targets:
        targets = [n for n in names if n.lower().endswith('.xml')][:HWPX_MAX_XML_ENTRIES]
    return targets


def extract_hwpx_text(data: bytes) -> str:
    """Extract paragraph text from an HWPX package

    Raises:
        ExtractionError: If the archive is unreadable or holds no text
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except CORRUPT_CONTAINER_ERRORS as e:
        raise ExtractionError(f"not a zip archive: {e}", HWPX) from e

    sections: List[str] = []
    with zf:
        for name in _hwpx_targets(zf.namelist()):
            try:
                raw = zf.read(name)
            except CORRUPT_CONTAINER_ERRORS as e:
                raise ExtractionError(f"damaged HWPX entry {name}: {e}", HWPX) from e
            try:
                root = secure_fromstring(raw, recover=True)
            except etree.XMLSyntaxError as e:
                logger.warning(f"Skipping unreadable HWPX entry {name}: {e}")
                continue

            parts = []
            for elem in root.iter():
                if local_name(elem) != 't':
                    continue
                text = re.sub(r'\s+', ' ', ''.join(elem.itertext())).strip()
                if text:
                    parts.append(text)
            if parts:
                sections.append('\n'.join(parts))

    text = '\n'.join(sections).strip()
    if not text:
        raise ExtractionError("no text nodes found in section documents", HWPX)
    return text


def _inflate_candidates(raw: bytes) -> bytes:
    """Return whichever of raw / raw-deflate / zlib decoding is largest"""
    candidates = [raw]
    for wbits in (-15, 15):
        try:
            candidates.append(zlib.decompress(raw, wbits))
        except zlib.error:
            pass
    return max(candidates, key=len)


def _decode_para_text(payload: bytes) -> str:
    """Decode one paragraph-text record, dropping short noise fragments"""
    if not payload:
        return ''
    try:
        text = payload.decode('utf-16-le')
    except UnicodeDecodeError:
        text = payload.decode('utf-8', errors='ignore')

    text = text.replace('\r', '\n').replace('\x00', '')
    text = re.sub(r'\n{3,}', '\n\n', text).strip()
    if len(_LETTER_RE.findall(text)) < HWP_MIN_LETTERS:
        return ''
    return text


def parse_hwp_records(buf: bytes) -> str:
    """Walk the HWP record stream and collect paragraph text

    Record header is a little-endian u32: tag id in the low 10 bits, size
    in the high 12 bits; a size of 0xFFF means a u32 size follows.
    """
    out: List[str] = []
    offset = 0
    length = len(buf)

    while offset + 4 <= length:
        header, = struct.unpack_from('<I', buf, offset)
        offset += 4

        tag_id = header & 0x3FF
        size = (header >> 20) & 0xFFF
        if size == 0xFFF:
            if offset + 4 > length:
                break
            size, = struct.unpack_from('<I', buf, offset)
            offset += 4
        if offset + size > length:
            break

        payload = buf[offset:offset + size]
        offset += size

        if tag_id == HWP_TAG_PARA_TEXT:
            text = _decode_para_text(payload)
            if text:
                out.append(text)

    joined = '\n'.join(out).strip()
    return joined if len(joined) >= HWP_MIN_SECTION_CHARS else ''


def extract_hwp_text(data: bytes) -> str:
    """Extract body text from a legacy HWP compound file

    Raises:
        ExtractionError: If the container is unreadable or holds no text
    """
    if data[:8] != OLE_SIGNATURE:
        raise ExtractionError("not an OLE compound file", HWP)

    try:
        ole = olefile.OleFileIO(io.BytesIO(data))
    except CORRUPT_CONTAINER_ERRORS as e:
        raise ExtractionError(f"OLE container could not be opened: {e}", HWP) from e

    texts: List[str] = []
    try:
        sections = []
        try:
            entries = ole.listdir(streams=True, storages=False)
        except CORRUPT_CONTAINER_ERRORS as e:
            raise ExtractionError(f"OLE directory unreadable: {e}", HWP) from e
        for entry in entries:
            path = '/'.join(entry)
            m = HWP_SECTION_RE.match(path)
            if m:
                sections.append((int(m.group(1)), entry))
        if not sections:
            raise ExtractionError("BodyText sections not found", HWP)

        for _, entry in sorted(sections):
            try:
                raw = ole.openstream(entry).read()
            except CORRUPT_CONTAINER_ERRORS as e:
                raise ExtractionError(f"damaged HWP stream {'/'.join(entry)}: {e}", HWP) from e
            if not raw:
                continue
            text = parse_hwp_records(_inflate_candidates(raw))
            if text:
                texts.append(text)
    finally:
        ole.close()

    text = '\n'.join(texts).strip()
    if not text:
        raise ExtractionError("no paragraph text records found", HWP)
    return text


def extract_text(data: bytes, name: str = "", mime: str = "",
                 detected: Optional[str] = None) -> str:
    """Extract plain text from any supported document payload

    Args:
        data: Raw bytes
        name: Declared filename (hint)
        mime: Declared MIME type (hint)
        detected: Format already sniffed by the caller

    Returns:
        Best-effort plain text

    Raises:
        ExtractionError: Naming the detected format on failure
    """
    fmt = detected or sniff_format(data, name, mime)
    if fmt == PDF:
        return extract_pdf_text(data)
    if fmt == HWPX:
        return extract_hwpx_text(data)
    if fmt == HWP:
        return extract_hwp_text(data)
    raise ExtractionError("unsupported document format", fmt)
