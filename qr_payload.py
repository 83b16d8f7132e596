"""Parse the free-form text printed in rail-stock QR labels into structured fields.

Labels come from several mills and carry the same information in different
orders and separators, e.g. ``RAILCO123456789 SAR60 R260LHT UIC 60 18m``.
Parsing is token based: the text is cleaned, split on common separators and
an ordered rule table picks the first token that fits each field.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Pattern, Sequence

_NON_PRINTABLE = re.compile(r'[^\x20-\x7E]')
_WHITESPACE = re.compile(r'\s+')
_TOKEN_SPLIT = re.compile(r'[ \t\r\n|,:/]+')

SPEC_PREFIX = re.compile(r'^(?:ATX|ATA|AREMA|UIC|EN\d*|GB\d*)$', re.IGNORECASE)
LENGTH = re.compile(r'^\d{1,3}(?:\.\d+)?m$', re.IGNORECASE)
_DESIGNATION = re.compile(r'^[A-Z0-9-]{3,}$', re.IGNORECASE)
_NUMERIC_DESIGNATION = re.compile(r'^\d{2,}$')


@dataclass(frozen=True)
class Candidate:
    raw: str
    serial: str = ""
    grade: str = ""
    rail_type: str = ""
    spec: str = ""
    length_m: str = ""

    @property
    def has_serial(self) -> bool:
        return bool(self.serial)


Transform = Callable[[Sequence[str], int], str]


def _as_is(tokens: Sequence[str], i: int) -> str:
    return tokens[i]


def _upper(tokens: Sequence[str], i: int) -> str:
    return tokens[i].upper()


def _is_designation(token: str) -> bool:
    if not token or LENGTH.match(token):
        return False
    return bool(_DESIGNATION.match(token) or _NUMERIC_DESIGNATION.match(token))


def _with_designation(tokens: Sequence[str], i: int) -> str:
    nxt = tokens[i + 1] if i + 1 < len(tokens) else ""
    if _is_designation(nxt):
        return f"{tokens[i]} {nxt}"
    return tokens[i]


@dataclass(frozen=True)
class FieldRule:
    field: str
    pattern: Pattern[str]
    transform: Transform = _as_is


# First rule producing a value wins for its field; serial prefers 12+ chars.
PAYLOAD_RULES: List[FieldRule] = [
    FieldRule('serial', re.compile(r'^[A-Z0-9]{12,}$')),
    FieldRule('serial', re.compile(r'^[A-Z0-9]{8,}$')),
    FieldRule('grade', re.compile(r'^SAR\d{2}$', re.IGNORECASE), _upper),
    FieldRule('rail_type', re.compile(r'^R\d{3}(?:L?HT)?$', re.IGNORECASE), _upper),
    FieldRule('spec', SPEC_PREFIX, _with_designation),
    FieldRule('length_m', LENGTH),
]


def clean_text(raw_text: Optional[str]) -> str:
    text = _NON_PRINTABLE.sub(' ', str(raw_text or ''))
    return _WHITESPACE.sub(' ', text).strip()


def tokenize(text: str) -> List[str]:
    return [t for t in _TOKEN_SPLIT.split(text) if t]


def apply_rules(tokens: Sequence[str], rules: Sequence[FieldRule] = PAYLOAD_RULES) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for rule in rules:
        if fields.get(rule.field):
            continue
        for i, token in enumerate(tokens):
            if rule.pattern.match(token):
                fields[rule.field] = rule.transform(tokens, i)
                break
    return fields


def parse_qr_payload(raw_text: Optional[str]) -> Candidate:
    """Parse decoded QR text. A missing serial yields ``serial == ""``, never an exception."""
    clean = clean_text(raw_text)
    fields = apply_rules(tokenize(clean))

    grade = fields.get('grade', '')
    rail_type = fields.get('rail_type', '')
    # One ambiguous token must not fill both fields; rail type wins
    if grade and grade == rail_type:
        grade = ''

    return Candidate(
        raw=clean,
        serial=fields.get('serial', ''),
        grade=grade,
        rail_type=rail_type,
        spec=fields.get('spec', ''),
        length_m=fields.get('length_m', ''),
    )
