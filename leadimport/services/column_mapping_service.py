"""Header-to-field mapping suggestions for spreadsheet imports.

The alias table is plain immutable data so callers can extend or localize it
without touching :func:`suggest_column_mapping`.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

CANONICAL_FIELDS: Tuple[str, ...] = ("firstName", "lastName", "email", "phone", "company", "notes")


def _normalize(text: str) -> str:
    return text.strip().casefold()


@dataclass(frozen=True)
class AliasTable:
    """Canonical fields in match priority order, each with its header synonyms."""

    entries: Tuple[Tuple[str, frozenset], ...]

    @classmethod
    def from_mapping(cls, aliases: Mapping[str, Iterable[str]]) -> "AliasTable":
        entries = []
        for canonical, synonyms in aliases.items():
            if canonical not in CANONICAL_FIELDS:
                raise ValueError(f"Unknown canonical field: {canonical}")
            entries.append((canonical, frozenset(_normalize(s) for s in synonyms)))
        return cls(entries=tuple(entries))

    def extended(self, extra: Mapping[str, Iterable[str]]) -> "AliasTable":
        """Return a new table with ``extra`` synonyms merged in."""
        merged = {canonical: set(synonyms) for canonical, synonyms in self.entries}
        for canonical, synonyms in extra.items():
            merged.setdefault(canonical, set()).update(synonyms)
        return AliasTable.from_mapping(merged)

    @property
    def fields(self) -> Tuple[str, ...]:
        return tuple(canonical for canonical, _ in self.entries)

    def as_dict(self) -> Mapping[str, frozenset]:
        return MappingProxyType(dict(self.entries))


DEFAULT_ALIAS_TABLE = AliasTable.from_mapping(
    {
        "firstName": ["first name", "firstname", "first", "given name", "givenname"],
        "lastName": ["last name", "lastname", "last", "surname", "family name", "familyname"],
        "email": ["email", "e-mail", "email address", "emailaddress"],
        "phone": ["phone", "telephone", "mobile", "cell", "phone number", "phonenumber"],
        "company": ["company", "organization", "org", "business", "company name", "companyname"],
        "notes": ["notes", "note", "comments", "comment", "description"],
    }
)


def suggest_column_mapping(
    headers: Sequence[str], aliases: Optional[AliasTable] = None
) -> Dict[str, str]:
    """Map each recognised header to a canonical field.

    Headers are matched in order; a field claimed by an earlier header is not
    offered again, so the result never maps two headers to the same field.
    """
    table = aliases or DEFAULT_ALIAS_TABLE
    mapping: Dict[str, str] = {}
    claimed = set()

    for header in headers:
        normalized = _normalize(header)
        if not normalized or header in mapping:
            continue
        for canonical, synonyms in table.entries:
            if canonical in claimed:
                continue
            if normalized in synonyms:
                mapping[header] = canonical
                claimed.add(canonical)
                break

    return mapping
