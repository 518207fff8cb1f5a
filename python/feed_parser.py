"""
Structured sanctions feed parsers (OFAC SDN XML, UN Consolidated XML)

Both feeds are decoded into a common FeedRecord. The synthetic full text
built from a FeedRecord is the only input to the jurisdiction classifier,
so OFAC and UN records are classified by exactly the same rules.

Features:
- Secure lxml parsing, namespace-agnostic lookups
- Every repeatable element handled as a list
- Publication date resolution with provenance (declared, transport, fallback)
- Fatal errors for a missing root or an empty entity list
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Dict, List, Optional, Any, Tuple

from lxml import etree

import jurisdiction
from pipeline_errors import FeedParseError
from snapshot_models import (
    EntryType, SanctionEntry, Snapshot, TimestampProvenance, collapse_whitespace, utc_now_iso
)
from xml_utils import secure_fromstring, strip_namespaces, get_text_from_element, find_all

logger = logging.getLogger(__name__)


@dataclass
class Address:
    """Address data structure"""
    address1: Optional[str] = None
    address2: Optional[str] = None
    address3: Optional[str] = None
    city: Optional[str] = None
    state_province: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    def to_line(self) -> str:
        parts = [self.address1, self.address2, self.address3, self.city,
                 self.state_province, self.postal_code, self.country]
        return ', '.join(p.strip() for p in parts if p and p.strip())


@dataclass
class IdentityDocument:
    """Identity document data structure"""
    doc_type: Optional[str] = None
    number: Optional[str] = None
    issuing_country: Optional[str] = None
    issue_date: Optional[str] = None
    expiration_date: Optional[str] = None

    def to_line(self) -> str:
        parts = [p for p in (self.doc_type, self.number, self.issuing_country) if p]
        if self.issue_date:
            parts.append(f"ISSUE:{self.issue_date}")
        if self.expiration_date:
            parts.append(f"EXP:{self.expiration_date}")
        return ' | '.join(parts)


@dataclass
class FeedRecord:
    """One sanctioned party as declared by a structured feed"""
    uid: str
    type_label: str
    name: str
    aliases: List[str] = field(default_factory=list)
    dates_of_birth: List[str] = field(default_factory=list)
    nationalities: List[str] = field(default_factory=list)
    programs: List[str] = field(default_factory=list)
    addresses: List[Address] = field(default_factory=list)
    documents: List[IdentityDocument] = field(default_factory=list)
    remarks: str = ""

    @property
    def country(self) -> str:
        """Country of the first listed address, or empty"""
        if self.addresses and self.addresses[0].country:
            return self.addresses[0].country.strip()
        return ""


def build_full_text(record: FeedRecord) -> str:
    """Render a record as labelled text in a fixed order

    Single-line fields come first (UID, TYPE, NAME, AKA, DOB, NATIONALITY,
    PROGRAM), then the multi-line ADDRESS, IDS and REMARKS blocks. The
    NATIONALITY line is included so a nationality-only match still reaches
    the jurisdiction classifier. Records without a uid or a name never get
    here: the parsers skip and count them.
    """
    blocks = []
    if record.uid:
        blocks.append(f"UID: {record.uid}")
    if record.type_label:
        blocks.append(f"TYPE: {record.type_label}")
    if record.name:
        blocks.append(f"NAME: {record.name}")
    if record.aliases:
        blocks.append(f"AKA: {'; '.join(record.aliases)}")
    if record.dates_of_birth:
        blocks.append(f"DOB: {'; '.join(record.dates_of_birth)}")
    if record.nationalities:
        blocks.append(f"NATIONALITY: {', '.join(record.nationalities)}")
    if record.programs:
        blocks.append(f"PROGRAM: {', '.join(record.programs)}")

    address_lines = [a.to_line() for a in record.addresses]
    address_lines = [line for line in address_lines if line]
    if address_lines:
        blocks.append("ADDRESS:\n" + '\n'.join(address_lines))

    id_lines = [d.to_line() for d in record.documents]
    id_lines = [line for line in id_lines if line]
    if id_lines:
        blocks.append("IDS:\n" + '\n'.join(id_lines))

    if record.remarks:
        blocks.append(f"REMARKS:\n{record.remarks}")

    return '\n\n'.join(blocks)


def record_to_entry(record: FeedRecord) -> SanctionEntry:
    """Convert a feed record to a classified SanctionEntry"""
    full_text = build_full_text(record)
    return SanctionEntry(
        uid=record.uid,
        type=EntryType.from_text(record.type_label),
        name=record.name,
        birth='; '.join(record.dates_of_birth),
        country=record.country,
        is_region_related=jurisdiction.is_region_related(full_text),
        remark=record.remarks,
        full_text=full_text
    )


# ============================================
# TIMESTAMPS
# ============================================

_ISO_RE = re.compile(
    r'^(\d{4})-(\d{2})-(\d{2})'
    r'(?:[T ](\d{2}):(\d{2})(?::(\d{2})(?:\.(\d+))?)?)?'
    r'\s*(Z|[+-]\d{2}:?\d{2})?$'
)
_US_DATE_RE = re.compile(r'^(\d{1,2})/(\d{1,2})/(\d{4})$')


def _format_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime('%Y-%m-%dT%H:%M:%S.') + f"{dt.microsecond // 1000:03d}Z"


def parse_timestamp(value: Optional[str]) -> Optional[str]:
    """Normalize a feed or HTTP date to ISO-8601 UTC

    Accepts ISO-8601 (any fractional precision), US "MM/DD/YYYY" as used by
    OFAC, and RFC 1123 HTTP dates. Returns None for anything else.
    """
    text = (value or '').strip()
    if not text:
        return None

    m = _ISO_RE.match(text)
    if m:
        year, month, day, hh, mm, ss, frac, tz = m.groups()
        micro = int((frac or '0')[:6].ljust(6, '0'))
        tzinfo = timezone.utc
        if tz and tz != 'Z':
            sign = 1 if tz[0] == '+' else -1
            digits = tz[1:].replace(':', '')
            tzinfo = timezone(sign * timedelta(hours=int(digits[:2]), minutes=int(digits[2:])))
        try:
            dt = datetime(int(year), int(month), int(day), int(hh or 0), int(mm or 0),
                          int(ss or 0), micro, tzinfo=tzinfo)
        except ValueError:
            return None
        return _format_utc(dt)

    m = _US_DATE_RE.match(text)
    if m:
        month, day, year = (int(g) for g in m.groups())
        try:
            return _format_utc(datetime(year, month, day, tzinfo=timezone.utc))
        except ValueError:
            return None

    try:
        return _format_utc(parsedate_to_datetime(text))
    except (TypeError, ValueError, IndexError):
        return None


def resolve_updated_at(declared: Optional[str],
                       last_modified: Optional[str] = None) -> Tuple[str, TimestampProvenance]:
    """Pick the snapshot timestamp: declared date, then Last-Modified, then now"""
    iso = parse_timestamp(declared)
    if iso:
        return iso, TimestampProvenance.DECLARED
    iso = parse_timestamp(last_modified)
    if iso:
        return iso, TimestampProvenance.TRANSPORT
    return utc_now_iso(), TimestampProvenance.FALLBACK


@dataclass
class FeedParseResult:
    """Entries decoded from one feed document"""
    source: str
    entries: List[SanctionEntry] = field(default_factory=list)
    declared_date: Optional[str] = None
    skipped: int = 0

    @property
    def total(self) -> int:
        return len(self.entries)

    def to_snapshot(self, last_modified: Optional[str] = None) -> Snapshot:
        updated_at, provenance = resolve_updated_at(self.declared_date, last_modified)
        snapshot = Snapshot(
            source=self.source,
            updated_at=updated_at,
            entries=list(self.entries),
            updated_at_source=provenance,
            stable_uids=True
        )
        if self.declared_date:
            snapshot.extras['declaredDate'] = self.declared_date
        return snapshot


# ============================================
# PARSERS
# ============================================

DateStrategy = Callable[[Any], Optional[str]]


class FeedParser:
    """Shared skeleton for XML feed parsers"""

    source = ""
    root_tags: Tuple[str, ...] = ()
    date_strategies: List[DateStrategy] = []

    def _load_root(self, data: bytes) -> Any:
        try:
            root = secure_fromstring(data)
        except etree.XMLSyntaxError as e:
            raise FeedParseError(f"{self.source}: XML is not well-formed: {e}")
        strip_namespaces(root)
        if root.tag not in self.root_tags:
            raise FeedParseError(
                f"{self.source}: missing root element {'/'.join(self.root_tags)} (got {root.tag})"
            )
        return root

    def _declared_date(self, root: Any) -> Optional[str]:
        for strategy in self.date_strategies:
            value = strategy(root)
            if value and value.strip():
                return value.strip()
        return None

    def read_declared_date(self, data: bytes) -> Optional[str]:
        """Publication date declared by the document, without parsing entries"""
        return self._declared_date(self._load_root(data))

    def _records(self, root: Any) -> List[Optional[FeedRecord]]:
        raise NotImplementedError

    def parse(self, data: bytes) -> FeedParseResult:
        """Parse feed bytes into classified entries

        Raises:
            FeedParseError: Missing root, malformed XML, or no entities
        """
        root = self._load_root(data)
        result = FeedParseResult(source=self.source, declared_date=self._declared_date(root))

        seen = set()
        for record in self._records(root):
            if record is None:
                result.skipped += 1
                continue
            if record.uid in seen:
                logger.warning(f"{self.source}: duplicate uid {record.uid} skipped")
                result.skipped += 1
                continue
            seen.add(record.uid)
            result.entries.append(record_to_entry(record))

        if not result.entries:
            raise FeedParseError(f"{self.source}: feed contains no entities")

        logger.info(f"✓ Parsed {result.total} {self.source} entries "
                    f"({sum(1 for e in result.entries if e.is_region_related)} region-related, "
                    f"{result.skipped} skipped)")
        return result


def _text(elem: Any, path: str) -> str:
    return get_text_from_element(elem, path) or ''


def _join(*parts: Optional[str]) -> str:
    return collapse_whitespace(' '.join(p for p in parts if p))


class OfacSdnParser(FeedParser):
    """Parser for the OFAC SDN XML list (sdnList/sdnEntry)"""

    source = "ofac_xml"
    root_tags = ('sdnList',)
    date_strategies = [
        lambda root: get_text_from_element(root, 'publshInformation/Publish_Date'),
        lambda root: get_text_from_element(root, 'publshInformation/PublishDate'),
        lambda root: get_text_from_element(root, 'publishInformation/Publish_Date'),
    ]

    def _records(self, root: Any) -> List[Optional[FeedRecord]]:
        return [self._parse_entry(e) for e in find_all(root, 'sdnEntry')]

    def _parse_entry(self, elem: Any) -> Optional[FeedRecord]:
        uid = _text(elem, 'uid')
        last_name = _text(elem, 'lastName')
        first_name = _text(elem, 'firstName')
        name = _join(last_name, first_name)
        if not uid or not name:
            logger.warning(f"ofac_xml: sdnEntry without uid or name skipped (uid={uid!r})")
            return None

        record = FeedRecord(
            uid=uid,
            type_label=_text(elem, 'sdnType') or 'Unknown',
            name=name,
            remarks=_text(elem, 'remarks')
        )

        for aka in find_all(elem, 'akaList/aka'):
            aka_name = _text(aka, 'akaName') or _join(_text(aka, 'lastName'), _text(aka, 'firstName'))
            aka_type = _text(aka, 'type') or _text(aka, 'akaType')
            if aka_name:
                record.aliases.append(f"{aka_name} ({aka_type})" if aka_type else aka_name)

        for dob in find_all(elem, 'dateOfBirthList/dateOfBirthItem'):
            value = _text(dob, 'dateOfBirth')
            if value:
                record.dates_of_birth.append(value)

        for nat in find_all(elem, 'nationalityList/nationality'):
            value = _text(nat, 'country')
            if value:
                record.nationalities.append(value)

        record.programs = [p.text.strip() for p in find_all(elem, 'programList/program')
                           if p.text and p.text.strip()]

        for addr in find_all(elem, 'addressList/address'):
            record.addresses.append(Address(
                address1=_text(addr, 'address1') or None,
                address2=_text(addr, 'address2') or None,
                address3=_text(addr, 'address3') or None,
                city=_text(addr, 'city') or None,
                state_province=_text(addr, 'stateOrProvince') or None,
                postal_code=_text(addr, 'postalCode') or None,
                country=_text(addr, 'country') or None
            ))

        for id_elem in find_all(elem, 'idList/id'):
            doc = IdentityDocument(
                doc_type=_text(id_elem, 'idType') or None,
                number=_text(id_elem, 'idNumber') or None,
                issuing_country=_text(id_elem, 'idCountry') or None,
                issue_date=_text(id_elem, 'issueDate') or None,
                expiration_date=_text(id_elem, 'expirationDate') or None
            )
            if doc.to_line():
                record.documents.append(doc)

        return record


class UnConsolidatedParser(FeedParser):
    """Parser for the UN Security Council consolidated list"""

    source = "un_xml"
    root_tags = ('CONSOLIDATED_LIST', 'ConsolidatedList', 'consolidatedList')
    date_strategies = [
        lambda root: root.get('dateGenerated'),
        lambda root: get_text_from_element(root, 'DATE_GENERATED'),
        lambda root: get_text_from_element(root, 'dateGenerated'),
        lambda root: get_text_from_element(root, 'GENERATED_ON'),
    ]

    def _records(self, root: Any) -> List[Optional[FeedRecord]]:
        records = [self._parse_individual(e) for e in find_all(root, 'INDIVIDUALS/INDIVIDUAL')]
        records += [self._parse_entity(e) for e in find_all(root, 'ENTITIES/ENTITY')]
        return records

    @staticmethod
    def _uid(elem: Any) -> str:
        return _text(elem, 'REFERENCE_NUMBER') or _text(elem, 'DATAID')

    @staticmethod
    def _programs(elem: Any) -> List[str]:
        programs = []
        list_type = _text(elem, 'UN_LIST_TYPE')
        if list_type:
            programs.append(list_type)
        for value in find_all(elem, 'LIST_TYPE/VALUE'):
            if value.text and value.text.strip() and value.text.strip() not in programs:
                programs.append(value.text.strip())
        return programs

    @staticmethod
    def _addresses(elem: Any, tag: str) -> List[Address]:
        addresses = []
        for addr in find_all(elem, tag):
            address = Address(
                address1=_text(addr, 'STREET') or None,
                city=_text(addr, 'CITY') or None,
                state_province=_text(addr, 'STATE_PROVINCE') or None,
                postal_code=_text(addr, 'ZIP_CODE') or None,
                country=_text(addr, 'COUNTRY') or None
            )
            if address.to_line():
                addresses.append(address)
        return addresses

    @staticmethod
    def _aliases(elem: Any, tag: str) -> List[str]:
        aliases = []
        for alias in find_all(elem, tag):
            alias_name = _text(alias, 'ALIAS_NAME')
            quality = _text(alias, 'QUALITY')
            if alias_name:
                aliases.append(f"{alias_name} ({quality})" if quality else alias_name)
        return aliases

    def _parse_individual(self, elem: Any) -> Optional[FeedRecord]:
        uid = self._uid(elem)
        name = _join(_text(elem, 'FIRST_NAME'), _text(elem, 'SECOND_NAME'),
                     _text(elem, 'THIRD_NAME'), _text(elem, 'FOURTH_NAME'))
        if not uid or not name:
            logger.warning(f"un_xml: INDIVIDUAL without reference or name skipped (uid={uid!r})")
            return None

        record = FeedRecord(
            uid=uid,
            type_label='Individual',
            name=name,
            aliases=self._aliases(elem, 'INDIVIDUAL_ALIAS'),
            programs=self._programs(elem),
            addresses=self._addresses(elem, 'INDIVIDUAL_ADDRESS'),
            remarks=_text(elem, 'COMMENTS1')
        )

        for dob in find_all(elem, 'INDIVIDUAL_DATE_OF_BIRTH'):
            value = _text(dob, 'DATE') or _text(dob, 'YEAR')
            if not value:
                from_year, to_year = _text(dob, 'FROM_YEAR'), _text(dob, 'TO_YEAR')
                value = f"{from_year}-{to_year}" if from_year and to_year else from_year
            date_type = _text(dob, 'TYPE_OF_DATE')
            if value:
                record.dates_of_birth.append(f"{date_type} {value}" if date_type else value)

        record.nationalities = [v.text.strip() for v in find_all(elem, 'NATIONALITY/VALUE')
                                if v.text and v.text.strip()]

        for doc in find_all(elem, 'INDIVIDUAL_DOCUMENT'):
            document = IdentityDocument(
                doc_type=_text(doc, 'TYPE_OF_DOCUMENT') or None,
                number=_text(doc, 'NUMBER') or None,
                issuing_country=_text(doc, 'ISSUING_COUNTRY') or _text(doc, 'COUNTRY_OF_ISSUE') or None,
                issue_date=_text(doc, 'DATE_OF_ISSUE') or None
            )
            if document.to_line():
                record.documents.append(document)

        return record

    def _parse_entity(self, elem: Any) -> Optional[FeedRecord]:
        uid = self._uid(elem)
        name = _text(elem, 'FIRST_NAME') or _text(elem, 'ENTITY_NAME')
        if not uid or not name:
            logger.warning(f"un_xml: ENTITY without reference or name skipped (uid={uid!r})")
            return None

        return FeedRecord(
            uid=uid,
            type_label='Entity',
            name=collapse_whitespace(name),
            aliases=self._aliases(elem, 'ENTITY_ALIAS'),
            programs=self._programs(elem),
            addresses=self._addresses(elem, 'ENTITY_ADDRESS'),
            remarks=_text(elem, 'COMMENTS1')
        )


PARSERS: Dict[str, FeedParser] = {
    OfacSdnParser.source: OfacSdnParser(),
    UnConsolidatedParser.source: UnConsolidatedParser(),
}


def parse_feed(source: str, data: bytes) -> FeedParseResult:
    """Parse feed bytes with the parser registered for a source"""
    try:
        parser = PARSERS[source]
    except KeyError:
        raise FeedParseError(f"No feed parser registered for {source}")
    return parser.parse(data)
