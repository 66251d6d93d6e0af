"""
Matching tier engine.

Each tier turns a snapshot of ``SourceRecord``s into scored pairs using one
matching rule. Tiers share a ``ClaimedPairs`` set and run from most to least
precise, so a pair matched by an earlier tier is never re-scored by a later
one. Everything here is pure: no database access, no logging.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from rapidfuzz import fuzz
from rapidfuzz.distance import JaroWinkler

from flask_app.identity.pipeline.normalize import DEFAULT_FREE_EMAIL_DOMAINS, is_free_email_domain
from flask_app.identity.store import SourceRecord
from flask_app.models import MatchTier, SourceType

DEFAULT_REVIEW_THRESHOLD = 0.85
DEFAULT_COMMON_NAME_THRESHOLD = 3
GIVEN_NAME_SIMILARITY_FLOOR = 0.88

TIER_CONFIDENCE = {
    MatchTier.EXACT_EMAIL: 1.0,
    MatchTier.EXACT_PHONE: 0.95,
    MatchTier.NORMALIZED_EMAIL: 0.90,
    MatchTier.NAME_COMPANY: 0.80,
    MatchTier.NAME_EMAIL_DOMAIN: 0.75,
}

# Fuzzy tiers: base + name weight * Jaro-Winkler (+ address weight * token-set ratio)
FUZZY_ADDRESS_BASE = 0.60
FUZZY_ADDRESS_NAME_WEIGHT = 0.10
FUZZY_ADDRESS_ADDRESS_WEIGHT = 0.05
FUZZY_NAME_BASE = 0.40
FUZZY_NAME_WEIGHT = 0.20

_SOURCE_ORDER = {source_type: index for index, source_type in enumerate(SourceType)}


@dataclass(frozen=True)
class MatchSettings:
    """Tunable knobs for a single waterfall pass."""

    review_threshold: float = DEFAULT_REVIEW_THRESHOLD
    common_name_threshold: int = DEFAULT_COMMON_NAME_THRESHOLD
    free_email_domains: frozenset[str] = frozenset(DEFAULT_FREE_EMAIL_DOMAINS)
    given_name_floor: float = GIVEN_NAME_SIMILARITY_FLOOR


@dataclass(frozen=True)
class TierMatch:
    """A scored pairing produced by one tier."""

    record_a: SourceRecord
    record_b: SourceRecord
    tier: MatchTier
    confidence: float
    signals: tuple[str, ...]
    matched_on: str
    needs_review: bool

    @property
    def pair_key(self) -> str:
        return pair_key(self.record_a, self.record_b)


@dataclass
class TierResult:
    tier: MatchTier
    matches: list[TierMatch] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.matches)


def _sort_key(record: SourceRecord) -> tuple[int, int]:
    return (_SOURCE_ORDER[record.source_type], record.record_id)


def pair_key(a: SourceRecord, b: SourceRecord) -> str:
    """Order-independent identifier for a record pair."""
    left, right = sorted((a.key, b.key))
    return f"{left}::{right}"


def orient(a: SourceRecord, b: SourceRecord) -> tuple[SourceRecord, SourceRecord]:
    """Deterministic (A, B) orientation: source order first, then record id."""
    return (a, b) if _sort_key(a) <= _sort_key(b) else (b, a)


class ClaimedPairs:
    """Pairs already matched in this run; the first tier to claim a pair owns it."""

    def __init__(self) -> None:
        self._keys: set[str] = set()

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def claim(self, a: SourceRecord, b: SourceRecord) -> bool:
        key = pair_key(a, b)
        if key in self._keys:
            return False
        self._keys.add(key)
        return True


def _cross_source_pairs(group: Sequence[SourceRecord]) -> Iterable[tuple[SourceRecord, SourceRecord]]:
    ordered = sorted(group, key=_sort_key)
    for i, left in enumerate(ordered):
        for right in ordered[i + 1 :]:
            if left.source_type == right.source_type:
                continue
            yield left, right


def _group_by(records: Iterable[SourceRecord], key_fn: Callable[[SourceRecord], str | None]) -> dict[str, list[SourceRecord]]:
    groups: dict[str, list[SourceRecord]] = defaultdict(list)
    for record in records:
        key = key_fn(record)
        if not key:
            continue
        groups[key].append(record)
    return groups


def _needs_review(confidence: float, settings: MatchSettings) -> bool:
    return confidence < settings.review_threshold


class TierDefinition:
    """Base class: one matching rule with a fixed place in the waterfall."""

    tier: MatchTier
    signals: tuple[str, ...] = ()

    def match(
        self,
        records: Sequence[SourceRecord],
        claimed: ClaimedPairs,
        settings: MatchSettings,
    ) -> list[TierMatch]:
        raise NotImplementedError


class BlockingKeyTier(TierDefinition):
    """Exact equality on a normalized blocking key with a fixed confidence."""

    def __init__(
        self,
        tier: MatchTier,
        key_fn: Callable[[SourceRecord, MatchSettings], str | None],
        signals: tuple[str, ...],
    ):
        self.tier = tier
        self.key_fn = key_fn
        self.signals = signals

    def match(self, records, claimed, settings):
        confidence = TIER_CONFIDENCE[self.tier]
        groups = _group_by(records, lambda record: self.key_fn(record, settings))
        matches: list[TierMatch] = []
        for key in sorted(groups):
            for left, right in _cross_source_pairs(groups[key]):
                if not claimed.claim(left, right):
                    continue
                record_a, record_b = orient(left, right)
                matches.append(
                    TierMatch(
                        record_a=record_a,
                        record_b=record_b,
                        tier=self.tier,
                        confidence=confidence,
                        signals=self.signals,
                        matched_on=key.replace("|", " + "),
                        needs_review=_needs_review(confidence, settings),
                    )
                )
        return matches


def _joined(*parts: str | None) -> str | None:
    if not all(parts):
        return None
    return "|".join(parts)  # type: ignore[arg-type]


def _email_key(record: SourceRecord, settings: MatchSettings) -> str | None:
    return record.email


def _phone_key(record: SourceRecord, settings: MatchSettings) -> str | None:
    return record.phone


def _canonical_email_key(record: SourceRecord, settings: MatchSettings) -> str | None:
    return record.canonical_email


def _name_company_key(record: SourceRecord, settings: MatchSettings) -> str | None:
    return _joined(record.first_name, record.last_name, record.company)


def _name_domain_key(record: SourceRecord, settings: MatchSettings) -> str | None:
    if is_free_email_domain(record.email_domain, settings.free_email_domains):
        return None
    return _joined(record.first_name, record.last_name, record.email_domain)


def given_names_compatible(first_a: str | None, first_b: str | None, *, floor: float = GIVEN_NAME_SIMILARITY_FLOOR) -> bool:
    """Equal, an initial of one another, or Jaro-Winkler similar above ``floor``."""

    if not first_a or not first_b:
        return False
    if first_a == first_b:
        return True
    if len(first_a) == 1 or len(first_b) == 1:
        return first_a[0] == first_b[0]
    return JaroWinkler.normalized_similarity(first_a, first_b) >= floor


def compute_name_similarity(a: SourceRecord, b: SourceRecord) -> float:
    """Return Jaro-Winkler similarity between two full names (0..1)."""

    name_a = a.full_name
    name_b = b.full_name
    if not name_a or not name_b:
        return 0.0
    score = JaroWinkler.normalized_similarity(name_a, name_b)
    return float(max(0.0, min(1.0, score)))


def compute_address_similarity(a: SourceRecord, b: SourceRecord) -> float:
    """Token-set similarity of the combined address strings (0..1)."""

    text_a = " ".join(part for part in (a.address_line1, a.city, a.postal_code) if part)
    text_b = " ".join(part for part in (b.address_line1, b.city, b.postal_code) if part)
    if not text_a or not text_b:
        return 0.0
    return float(fuzz.token_set_ratio(text_a, text_b)) / 100.0


def _shared_location(a: SourceRecord, b: SourceRecord) -> str | None:
    if a.postal_code and a.postal_code == b.postal_code:
        return "postal_code"
    if a.city and a.city == b.city:
        return "city"
    return None


class FuzzyNameTier(TierDefinition):
    """
    Surname-blocked fuzzy name matching.

    With ``require_location`` the pair must also share a city or postal code
    (the name + address tier); without it the name alone decides. Names
    carried by ``common_name_threshold`` or more scanned records are always
    sent to review.
    """

    def __init__(self, tier: MatchTier, *, require_location: bool):
        self.tier = tier
        self.require_location = require_location
        self.signals = ("first_name", "last_name")

    def _score(self, a: SourceRecord, b: SourceRecord, location: str | None) -> float:
        name_similarity = compute_name_similarity(a, b)
        if self.require_location:
            score = (
                FUZZY_ADDRESS_BASE
                + FUZZY_ADDRESS_NAME_WEIGHT * name_similarity
                + FUZZY_ADDRESS_ADDRESS_WEIGHT * compute_address_similarity(a, b)
            )
        else:
            score = FUZZY_NAME_BASE + FUZZY_NAME_WEIGHT * name_similarity
        return round(min(score, 0.99), 4)

    def match(self, records, claimed, settings):
        name_counts = Counter(record.full_name for record in records if record.full_name and record.first_name)
        groups = _group_by(records, lambda record: record.last_name if record.first_name else None)
        matches: list[TierMatch] = []
        for surname in sorted(groups):
            for left, right in _cross_source_pairs(groups[surname]):
                if pair_key(left, right) in claimed:
                    continue
                if not given_names_compatible(left.first_name, right.first_name, floor=settings.given_name_floor):
                    continue
                location = _shared_location(left, right)
                if self.require_location and location is None:
                    continue
                claimed.claim(left, right)
                record_a, record_b = orient(left, right)
                confidence = self._score(record_a, record_b, location)
                is_common = max(name_counts[record_a.full_name], name_counts[record_b.full_name]) >= (
                    settings.common_name_threshold
                )
                signals = self.signals + ((location,) if location else ())
                matched_on = f"{record_a.full_name} ~ {record_b.full_name}"
                if location:
                    matched_on = f"{matched_on} + {getattr(record_a, location)}"
                matches.append(
                    TierMatch(
                        record_a=record_a,
                        record_b=record_b,
                        tier=self.tier,
                        confidence=confidence,
                        signals=signals,
                        matched_on=matched_on,
                        needs_review=is_common or _needs_review(confidence, settings),
                    )
                )
        return matches


DEFAULT_TIERS: tuple[TierDefinition, ...] = (
    BlockingKeyTier(MatchTier.EXACT_EMAIL, _email_key, ("email",)),
    BlockingKeyTier(MatchTier.EXACT_PHONE, _phone_key, ("phone",)),
    BlockingKeyTier(MatchTier.NORMALIZED_EMAIL, _canonical_email_key, ("email",)),
    BlockingKeyTier(MatchTier.NAME_COMPANY, _name_company_key, ("first_name", "last_name", "company")),
    BlockingKeyTier(MatchTier.NAME_EMAIL_DOMAIN, _name_domain_key, ("first_name", "last_name", "email_domain")),
    FuzzyNameTier(MatchTier.FUZZY_NAME_ADDRESS, require_location=True),
    FuzzyNameTier(MatchTier.FUZZY_NAME, require_location=False),
)


def run_waterfall(
    records: Sequence[SourceRecord],
    *,
    tiers: Sequence[TierDefinition] = DEFAULT_TIERS,
    settings: MatchSettings | None = None,
) -> list[TierResult]:
    """Run every tier in priority order over one snapshot, sharing the claimed-pairs set."""

    settings = settings or MatchSettings()
    ordered = sorted(tiers, key=lambda definition: definition.tier.priority)
    claimed = ClaimedPairs()
    return [TierResult(tier=definition.tier, matches=definition.match(records, claimed, settings)) for definition in ordered]
