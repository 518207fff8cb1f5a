"""
Data structures shared by every ingestion source

SanctionEntry is the normalized record produced by all parsers.
Snapshot is one ingestion result for one source; its total is always
derived from the entry list.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any


class EntryType(str, Enum):
    """Kind of sanctioned party"""
    INDIVIDUAL = "Individual"
    ENTITY = "Entity"
    UNKNOWN = "Unknown"

    @classmethod
    def from_text(cls, value: Optional[str]) -> 'EntryType':
        """Map a feed-specific type label onto the enum"""
        text = (value or '').strip().lower()
        if text in ('individual', 'person', 'individuals'):
            return cls.INDIVIDUAL
        if text in ('entity', 'entities', 'organization', 'organisation', 'company',
                    'vessel', 'aircraft'):
            return cls.ENTITY
        return cls.UNKNOWN


class TimestampProvenance(str, Enum):
    """Where a snapshot's updatedAt came from"""
    DECLARED = "declared"      # publication date inside the document
    TRANSPORT = "transport"    # HTTP Last-Modified
    FALLBACK = "fallback"      # ingestion wall clock
    EMBEDDED = "embedded"      # last-known-good dataset shipped with the code


_WS_RE = re.compile(r'\s+')


def collapse_whitespace(value: Optional[str]) -> str:
    """Collapse runs of whitespace and line breaks into single spaces"""
    if not value:
        return ''
    return _WS_RE.sub(' ', str(value)).strip()


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision"""
    now = datetime.now(timezone.utc)
    return now.strftime('%Y-%m-%dT%H:%M:%S.') + f"{now.microsecond // 1000:03d}Z"


@dataclass
class SanctionEntry:
    """One sanctioned individual, entity or organization"""
    uid: str
    name: str
    type: EntryType = EntryType.UNKNOWN
    birth: str = ""
    country: str = ""
    is_region_related: bool = False
    remark: str = ""
    full_text: str = ""
    no: Optional[int] = None

    def __post_init__(self):
        self.name = collapse_whitespace(self.name)

    def to_dict(self) -> Dict[str, Any]:
        """Convert entry to the published dictionary shape"""
        data = {
            'uid': self.uid,
            'id': self.uid,
            'type': self.type.value,
            'name': self.name,
            'birth': self.birth,
            'country': self.country,
            'isRegionRelated': self.is_region_related,
        }
        if self.no is not None:
            data['no'] = self.no
        if self.remark:
            data['remark'] = self.remark
        if self.full_text:
            data['fullText'] = self.full_text
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SanctionEntry':
        return cls(
            uid=str(data.get('uid') or data.get('id') or ''),
            name=data.get('name', ''),
            type=EntryType.from_text(data.get('type')),
            birth=data.get('birth', '') or '',
            country=data.get('country', '') or '',
            is_region_related=bool(data.get('isRegionRelated', False)),
            remark=data.get('remark', '') or '',
            full_text=data.get('fullText', '') or '',
            no=data.get('no')
        )


@dataclass
class Snapshot:
    """One ingestion result for one source

    ``total`` is a read-only view over ``entries`` so it can never be
    reported independently of the list.
    """
    source: str
    updated_at: str
    entries: List[SanctionEntry] = field(default_factory=list)
    updated_at_source: TimestampProvenance = TimestampProvenance.FALLBACK
    stable_uids: bool = True
    note: str = ""
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.entries)

    @property
    def region_related_count(self) -> int:
        return sum(1 for e in self.entries if e.is_region_related)

    def dedupe_entries(self) -> int:
        """Drop entries whose uid was already seen, keeping the first

        Returns:
            Number of entries removed
        """
        seen = set()
        kept = []
        for entry in self.entries:
            if entry.uid in seen:
                continue
            seen.add(entry.uid)
            kept.append(entry)
        removed = len(self.entries) - len(kept)
        self.entries = kept
        return removed

    def to_dict(self) -> Dict[str, Any]:
        """Convert snapshot to the published payload

        Source-specific extras never override the core keys.
        """
        data = dict(self.extras)
        data.update({
            'source': self.source,
            'updatedAt': self.updated_at,
            'updatedAtSource': self.updated_at_source.value,
            'total': self.total,
            'totalRegion': self.region_related_count,
            'data': [e.to_dict() for e in self.entries],
        })
        if self.note:
            data['note'] = self.note
        return data


@dataclass
class SnapshotDiff:
    """Entries added and removed between two consecutive snapshots"""
    updated_at: str
    current_total: int
    previous_total: int
    added: List[Dict[str, Any]] = field(default_factory=list)
    removed: List[Dict[str, Any]] = field(default_factory=list)
    note: str = ""

    @property
    def added_count(self) -> int:
        return len(self.added)

    @property
    def removed_count(self) -> int:
        return len(self.removed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'updatedAt': self.updated_at,
            'currentTotal': self.current_total,
            'previousTotal': self.previous_total,
            'addedCount': self.added_count,
            'removedCount': self.removed_count,
            'added': self.added,
            'removed': self.removed,
            'note': self.note,
        }
