"""kaiproof.capsule

Proof capsule (KPV-1): the minimal identity + time binding of a sigil.

The capsule hash is SHA-256 over the canonical JSON of the capsule. When a
capsule is read back from an embedded bundle its hash is recomputed over the
object exactly as embedded; day-label normalization applies only when a
capsule is *built*.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from kaiproof.digest import hash_canonical
from kaiproof.errors import CapsuleHashMismatch
from kaiproof.result import Ok, ParseResult, parse_with_schema

CAPSULE_VERSION = "KPV-1"

DAY_LABELS = ("Root", "Sacral", "Solar Plexus", "Heart", "Throat", "Third Eye", "Crown")

_DAY_LABEL_ALIASES: Dict[str, str] = {
    "root": "Root",
    "sacral": "Sacral",
    "solarplexus": "Solar Plexus",
    "solar": "Solar Plexus",
    "solarp": "Solar Plexus",
    "heart": "Heart",
    "throat": "Throat",
    "thirdeye": "Third Eye",
    "crown": "Crown",
    "krown": "Crown",
}

SLUG_SIG_CHARS = 10
_SLUG_RE = re.compile(r"^(\d+)-([A-Za-z0-9]+)(?:-(\d+))?$")


def normalize_day_label(label: Any) -> str:
    """Map a loosely written day label onto one of :data:`DAY_LABELS`."""

    key = re.sub(r"[\s_\-]+", "", str(label or "")).lower()
    try:
        return _DAY_LABEL_ALIASES[key]
    except KeyError:
        raise ValueError(f"Unknown day label: {label!r}") from None


# ---------------------------------------------------------------------------
# Verifier slug
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VerifierSlug:
    pulse: int
    short_sig: str
    verified_at_pulse: Optional[int] = None

    @property
    def raw(self) -> str:
        base = f"{self.pulse}-{self.short_sig}"
        if self.verified_at_pulse is not None:
            return f"{base}-{self.verified_at_pulse}"
        return base


def build_verifier_slug(pulse: int, identity_signature: str, verified_at_pulse: Optional[int] = None) -> str:
    """``<pulse>-<first 10 chars of the identity signature>[-<verifiedAtPulse>]``."""

    short = str(identity_signature or "").strip() or "unknown-signature"
    return VerifierSlug(int(pulse), short[:SLUG_SIG_CHARS], verified_at_pulse).raw


def parse_verifier_slug(slug: str) -> Optional[VerifierSlug]:
    m = _SLUG_RE.match(str(slug or "").strip())
    if not m:
        return None
    verified = int(m.group(3)) if m.group(3) is not None else None
    return VerifierSlug(pulse=int(m.group(1)), short_sig=m.group(2), verified_at_pulse=verified)


# ---------------------------------------------------------------------------
# Capsule
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProofCapsule:
    pulse: int
    day_label: str
    identity_signature: str
    identity_key: str
    verifier_slug: str
    v: str = CAPSULE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": self.v,
            "pulse": self.pulse,
            "dayLabel": self.day_label,
            "identitySignature": self.identity_signature,
            "identityKey": self.identity_key,
            "verifierSlug": self.verifier_slug,
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "ProofCapsule":
        return cls(
            pulse=int(obj["pulse"]),
            day_label=str(obj["dayLabel"]),
            identity_signature=str(obj["identitySignature"]),
            identity_key=str(obj["identityKey"]),
            verifier_slug=str(obj["verifierSlug"]),
            v=str(obj.get("v") or CAPSULE_VERSION),
        )

    def hash(self) -> str:
        return hash_canonical(self.to_dict())


def build_capsule(
    pulse: int,
    day_label: str,
    identity_signature: str,
    identity_key: str,
    verifier_slug: Optional[str] = None,
) -> ProofCapsule:
    """Build a capsule with a normalized day label and a derived slug when none is given."""

    if isinstance(pulse, bool) or not isinstance(pulse, int) or pulse < 0:
        raise ValueError("pulse must be a non-negative integer")
    if not identity_signature:
        raise ValueError("identity_signature must be non-empty")
    if not identity_key:
        raise ValueError("identity_key must be non-empty")
    slug = verifier_slug or build_verifier_slug(pulse, identity_signature)
    return ProofCapsule(
        pulse=pulse,
        day_label=normalize_day_label(day_label),
        identity_signature=identity_signature,
        identity_key=identity_key,
        verifier_slug=slug,
    )


CapsuleLike = Union[ProofCapsule, Dict[str, Any]]


_CAPSULE_FIELDS = ("v", "pulse", "dayLabel", "identitySignature", "identityKey", "verifierSlug")


def capsule_dict(capsule: CapsuleLike) -> Dict[str, Any]:
    """Project a capsule onto its hashed fields; unknown members never affect the hash."""

    if isinstance(capsule, ProofCapsule):
        return capsule.to_dict()
    return {k: capsule[k] for k in _CAPSULE_FIELDS if k in capsule}


def hash_proof_capsule(capsule: CapsuleLike) -> str:
    """Capsule hash over the capsule as embedded (values are not re-normalized)."""

    return hash_canonical(capsule_dict(capsule))


def assert_capsule_hash(capsule: CapsuleLike, claimed: str) -> str:
    actual = hash_proof_capsule(capsule)
    if actual != str(claimed or "").lower():
        raise CapsuleHashMismatch(
            "capsuleHash does not match the embedded proof capsule",
            expected=claimed,
            actual=actual,
        )
    return actual


def _build_checked(obj: Dict[str, Any]) -> ProofCapsule:
    capsule = ProofCapsule.from_dict(obj)
    if capsule.day_label not in DAY_LABELS:
        normalize_day_label(capsule.day_label)
    if capsule.v != CAPSULE_VERSION:
        raise ValueError(f"unsupported capsule version {capsule.v!r}")
    return capsule


def parse_capsule(obj: Any) -> ParseResult[ProofCapsule]:
    """Parse a capsule from JSON; the returned value preserves the label as written."""

    return parse_with_schema(obj, "capsule", _build_checked)


def is_capsule(obj: Any) -> bool:
    return isinstance(parse_capsule(obj), Ok)
