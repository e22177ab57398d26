import pytest

from kaiproof.capsule import (
    DAY_LABELS,
    ProofCapsule,
    VerifierSlug,
    assert_capsule_hash,
    build_capsule,
    build_verifier_slug,
    capsule_dict,
    hash_proof_capsule,
    is_capsule,
    normalize_day_label,
    parse_capsule,
    parse_verifier_slug,
)
from kaiproof.digest import sha256_hex
from kaiproof.errors import CapsuleHashMismatch
from kaiproof.result import Malformed, MissingField, Ok


def test_capsule_hash_is_sha256_of_canonical_capsule(capsule):
    expected = sha256_hex(
        '{"dayLabel":"Heart","identityKey":"phi123","identitySignature":"sig123",'
        '"pulse":1000,"v":"KPV-1","verifierSlug":"1000-sig123"}'
    )
    assert hash_proof_capsule(capsule) == expected


def test_build_capsule_matches_wire_capsule(capsule):
    built = build_capsule(1000, "heart", "sig123", "phi123")
    assert built.to_dict() == capsule
    assert built.hash() == hash_proof_capsule(capsule)
    assert hash_proof_capsule(built) == hash_proof_capsule(capsule)


def test_unknown_members_do_not_affect_hash(capsule):
    noisy = dict(capsule, note="ignored", extra={"a": 1})
    assert capsule_dict(noisy) == capsule
    assert hash_proof_capsule(noisy) == hash_proof_capsule(capsule)


def test_hash_changes_with_every_field(capsule):
    base = hash_proof_capsule(capsule)
    for key, value in [
        ("pulse", 1001),
        ("dayLabel", "Crown"),
        ("identitySignature", "sig124"),
        ("identityKey", "phi124"),
        ("verifierSlug", "1000-sig124"),
    ]:
        assert hash_proof_capsule(dict(capsule, **{key: value})) != base, key


def test_embedded_capsule_is_hashed_as_written(capsule):
    """A read-back capsule is never re-normalized before hashing."""
    loose = dict(capsule, dayLabel="heart")
    assert hash_proof_capsule(loose) != hash_proof_capsule(capsule)


@pytest.mark.parametrize(
    "raw,label",
    [
        ("root", "Root"),
        ("SACRAL", "Sacral"),
        ("solar plexus", "Solar Plexus"),
        ("Solar_Plexus", "Solar Plexus"),
        ("third-eye", "Third Eye"),
        ("Third Eye", "Third Eye"),
        ("krown", "Crown"),
    ],
)
def test_normalize_day_label(raw, label):
    assert normalize_day_label(raw) == label
    assert label in DAY_LABELS


def test_normalize_day_label_rejects_unknown():
    with pytest.raises(ValueError):
        normalize_day_label("Tuesday")


@pytest.mark.parametrize("pulse", [-1, True, 1.5, "1000"])
def test_build_capsule_rejects_bad_pulse(pulse):
    with pytest.raises(ValueError):
        build_capsule(pulse, "Heart", "sig123", "phi123")


def test_build_capsule_requires_identity():
    with pytest.raises(ValueError):
        build_capsule(1, "Heart", "", "phi123")
    with pytest.raises(ValueError):
        build_capsule(1, "Heart", "sig123", "")


def test_build_capsule_keeps_explicit_slug():
    built = build_capsule(5, "Root", "abcdefghijklmnop", "phi", verifier_slug="custom-slug")
    assert built.verifier_slug == "custom-slug"


class TestVerifierSlug:

    def test_short_signature_is_first_ten_chars(self):
        assert build_verifier_slug(1000, "abcdefghijklmnop") == "1000-abcdefghij"

    def test_verified_at_pulse_suffix(self):
        assert build_verifier_slug(1000, "sig123", verified_at_pulse=1005) == "1000-sig123-1005"

    def test_parse_round_trip(self):
        assert parse_verifier_slug("1000-sig123-1005") == VerifierSlug(1000, "sig123", 1005)
        assert parse_verifier_slug("1000-sig123") == VerifierSlug(1000, "sig123", None)
        assert parse_verifier_slug(" 1000-sig123 ").raw == "1000-sig123"

    @pytest.mark.parametrize("bad", ["", "sig123", "abc-sig", "1000-", "1000-sig-x"])
    def test_parse_rejects_garbage(self, bad):
        assert parse_verifier_slug(bad) is None


class TestParseCapsule:

    def test_ok(self, capsule):
        result = parse_capsule(capsule)
        assert isinstance(result, Ok)
        assert result.ok
        assert result.value == ProofCapsule.from_dict(capsule)
        assert is_capsule(capsule)

    def test_missing_field(self, capsule):
        del capsule["identityKey"]
        result = parse_capsule(capsule)
        assert result == MissingField("identityKey")
        assert not result.ok

    def test_wrong_type_is_malformed(self, capsule):
        capsule["pulse"] = "1000"
        assert isinstance(parse_capsule(capsule), Malformed)

    def test_non_object_is_malformed(self):
        assert isinstance(parse_capsule(["not", "a", "capsule"]), Malformed)
        assert not is_capsule(None)

    def test_unknown_day_label_is_malformed(self, capsule):
        capsule["dayLabel"] = "Tuesday"
        assert isinstance(parse_capsule(capsule), Malformed)

    def test_label_preserved_as_written(self, capsule):
        capsule["dayLabel"] = "heart"
        result = parse_capsule(capsule)
        assert result.ok
        assert result.value.day_label == "heart"


def test_assert_capsule_hash(capsule):
    h = hash_proof_capsule(capsule)
    assert assert_capsule_hash(capsule, h) == h
    assert assert_capsule_hash(capsule, h.upper()) == h

    with pytest.raises(CapsuleHashMismatch) as exc:
        assert_capsule_hash(dict(capsule, pulse=1001), h)
    assert exc.value.details["expected"] == h
