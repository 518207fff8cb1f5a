"""
Jurisdiction classifier: is a record related to South Korea?

Two ordered rule tables. Any veto rule (North Korea indicators) returns
False unconditionally; only then are the allow rules consulted. Allow rules
require the words to be adjacent, so a text that merely mentions "south"
and "Korea" far apart is not a match.
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern


@dataclass(frozen=True)
class JurisdictionRule:
    """One named classification pattern"""
    name: str
    pattern: Pattern

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


def _rule(name: str, regex: str) -> JurisdictionRule:
    return JurisdictionRule(name, re.compile(regex, re.IGNORECASE))


VETO_RULES: List[JurisdictionRule] = [
    _rule('dprk_abbreviation', r"\bdprk\b"),
    _rule('north_korea', r"\bnorth\s+korea\b"),
    _rule('korea_north', r"\bkorea\s*,?\s*north\b"),
    _rule('dprk_formal_name', r"\bdemocratic\s+people'?s\s+republic\s+of\s+korea\b"),
    _rule('pyongyang', r"\bpyongyang\b"),
]

ALLOW_RULES: List[JurisdictionRule] = [
    _rule('south_korea_adjacent', r"\b(?:south\s*,?\s*korea|korea\s*,?\s*south)\b"),
    _rule('republic_of_korea', r"\brepublic\s+of\s+korea\b"),
    _rule('korea_republic_of', r"\bkorea\s*,\s*republic\s+of\b"),
]


@dataclass
class Classification:
    """Outcome of classifying one text"""
    related: bool
    rule: Optional[str] = None
    vetoed: bool = False


def explain(text: Optional[str]) -> Classification:
    """Classify text and report which rule decided"""
    s = str(text or '')
    for rule in VETO_RULES:
        if rule.matches(s):
            return Classification(related=False, rule=rule.name, vetoed=True)
    for rule in ALLOW_RULES:
        if rule.matches(s):
            return Classification(related=True, rule=rule.name)
    return Classification(related=False)


def is_region_related(text: Optional[str]) -> bool:
    """True if the text ties the record to South Korea

    Note "Democratic People's Republic of Korea" contains "Republic of
    Korea"; the veto table runs first so it is never a positive.
    """
    return explain(text).related
