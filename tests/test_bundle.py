import copy

import pytest

from kaiproof.artifact import hash_svg_text
from kaiproof.bundle import (
    BUNDLE_VERSION,
    PROOF_BINDINGS,
    ZkInputs,
    assert_bundle_hash,
    assert_bundle_root_consistent,
    build_bundle_root,
    build_bundle_unsigned,
    compute_bundle_hash,
    parse_bundle,
    seal_bundle,
    verify_bundle_hashes,
)
from kaiproof.canonical import UNDEFINED
from kaiproof.capsule import hash_proof_capsule
from kaiproof.digest import hash_canonical
from kaiproof.errors import BundleHashMismatch, CapsuleHashMismatch, CurveMismatch
from kaiproof.result import Malformed, MissingField, Ok
from kaiproof.zk import DEFAULT_ZK_META, INFERRED_CURVE_NOTE, default_zk_statement

GROTH16_POINTS = {
    "pi_a": ["1", "2", "1"],
    "pi_b": [["1", "0"], ["1", "0"], ["1", "0"]],
    "pi_c": ["1", "2", "1"],
    "protocol": "groth16",
}


@pytest.fixture
def root(capsule, svg_text):
    return build_bundle_root(capsule, hash_svg_text(svg_text))


def test_root_without_zk(root, capsule, svg_text):
    assert root["v"] == BUNDLE_VERSION
    assert root["hashAlg"] == "sha256"
    assert root["canon"] == "JCS"
    assert root["bindings"] == PROOF_BINDINGS
    assert root["proofCapsule"] == capsule
    assert root["capsuleHash"] == hash_proof_capsule(capsule)
    assert root["svgHash"] == hash_svg_text(svg_text)
    for absent in ("zkStatement", "zkPoseidonHash", "zkProof", "zkPublicInputs", "zkMeta", "authorSig"):
        assert absent not in root


def test_unsigned_projection_forces_author_sig_null(root):
    unsigned = build_bundle_unsigned(root)
    assert unsigned["authorSig"] is None
    assert compute_bundle_hash(root) == hash_canonical(unsigned)


def test_bundle_hash_independent_of_envelope(root):
    """Signing, transport hints and receive fields never feed back into bundleHash."""
    h = compute_bundle_hash(root)
    sealed = seal_bundle(root, author_sig={"v": "KAS-1"}, transport={"shareUrl": "https://x"})
    sealed["ownerKey"] = "1abc"
    sealed["receiveSig"] = {"any": "thing"}
    sealed["proofHints"] = {"explorer": "https://example.invalid"}
    assert compute_bundle_hash(sealed) == h
    assert sealed["bundleHash"] == h
    assert sealed["bundleRoot"] == root
    assert sealed["transport"] == {"shareUrl": "https://x"}


def test_seal_does_not_alias_inputs(root):
    sig = {"v": "KAS-1", "credId": "abc"}
    sealed = seal_bundle(root, author_sig=sig)
    sealed["bundleRoot"]["svgHash"] = "00" * 32
    sealed["authorSig"]["credId"] = "changed"
    assert root["svgHash"] != "00" * 32
    assert sig["credId"] == "abc"


def test_explicit_null_differs_from_absent(capsule, svg_text):
    absent = build_bundle_root(capsule, hash_svg_text(svg_text))
    explicit = dict(absent, zkProof=None)
    assert compute_bundle_hash(absent) != compute_bundle_hash(explicit)


def test_poseidon_fills_statement_defaults(capsule, svg_text):
    root = build_bundle_root(capsule, hash_svg_text(svg_text), zk=ZkInputs(poseidon_hash="12345"))
    assert root["zkPoseidonHash"] == "12345"
    assert root["zkPublicInputs"] == ["12345", "12345"]
    assert root["zkStatement"] == default_zk_statement()
    assert root["zkMeta"] == DEFAULT_ZK_META
    assert "zkProof" not in root


def test_proof_without_curve_gets_inferred_curve(capsule, svg_text):
    zk = ZkInputs(poseidon_hash="7", proof=copy.deepcopy(GROTH16_POINTS))
    root = build_bundle_root(capsule, hash_svg_text(svg_text), zk=zk)
    assert root["zkProof"]["curve"] == "bn128"
    assert root["zkMeta"]["curve"] == "bn128"
    assert root["zkMeta"]["curveAliases"] == ["bn254", "altbn128"]
    assert root["zkMeta"]["curveNote"] == INFERRED_CURVE_NOTE
    # caller's proof untouched
    assert "curve" not in zk.proof


def test_conflicting_curves_abort(capsule, svg_text):
    zk = ZkInputs(
        poseidon_hash="7",
        proof=dict(GROTH16_POINTS, curve="bn128"),
        meta=dict(DEFAULT_ZK_META, curve="bls12-381"),
    )
    with pytest.raises(CurveMismatch):
        build_bundle_root(capsule, hash_svg_text(svg_text), zk=zk)


def test_undefined_zk_fields_are_omitted(capsule, svg_text):
    zk = ZkInputs(poseidon_hash=UNDEFINED, proof=UNDEFINED, meta=UNDEFINED)
    assert build_bundle_root(capsule, hash_svg_text(svg_text), zk=zk) == build_bundle_root(
        capsule, hash_svg_text(svg_text)
    )


def test_artifact_hash_is_lowercased(capsule, svg_text):
    h = hash_svg_text(svg_text)
    assert build_bundle_root(capsule, h.upper())["svgHash"] == h


def test_assert_bundle_hash(root):
    sealed = seal_bundle(root)
    assert assert_bundle_hash(sealed) == sealed["bundleHash"]
    assert assert_bundle_hash(sealed, sealed["bundleHash"].upper()) == sealed["bundleHash"]

    with pytest.raises(BundleHashMismatch):
        assert_bundle_hash(dict(sealed, bundleHash="00" * 32))
    with pytest.raises(BundleHashMismatch):
        assert_bundle_hash(dict(root))


def test_tampered_root_field_changes_hash(root):
    sealed = seal_bundle(root)
    sealed["svgHash"] = "11" * 32
    with pytest.raises(BundleHashMismatch):
        assert_bundle_hash(sealed)


def test_nested_root_must_agree(root):
    sealed = seal_bundle(root)
    assert_bundle_root_consistent(sealed)
    sealed["bundleRoot"]["capsuleHash"] = "22" * 32
    with pytest.raises(BundleHashMismatch):
        assert_bundle_root_consistent(sealed)


def test_verify_bundle_hashes_checks_capsule_first(root):
    sealed = seal_bundle(root)
    assert verify_bundle_hashes(sealed) == sealed["bundleHash"]

    sealed["proofCapsule"] = dict(sealed["proofCapsule"], pulse=1)
    with pytest.raises(CapsuleHashMismatch):
        verify_bundle_hashes(sealed)


def test_parse_bundle(root):
    sealed = seal_bundle(root)
    assert parse_bundle(sealed) == Ok(sealed)

    broken = dict(sealed)
    del broken["svgHash"]
    assert parse_bundle(broken) == MissingField("svgHash")

    bad_capsule = copy.deepcopy(sealed)
    del bad_capsule["proofCapsule"]["identityKey"]
    assert parse_bundle(bad_capsule) == MissingField("proofCapsule.identityKey")


def test_parse_bundle_checks_embedded_day_label(root):
    banana = copy.deepcopy(seal_bundle(root))
    banana["proofCapsule"]["dayLabel"] = "Banana"
    result = parse_bundle(banana)
    assert isinstance(result, Malformed)
    assert result.reason.startswith("proofCapsule: ")

    loose = copy.deepcopy(seal_bundle(root))
    loose["proofCapsule"]["dayLabel"] = "solar plexus"
    assert parse_bundle(loose) == Ok(loose)


@pytest.mark.parametrize(
    "zk",
    [
        ZkInputs(proof=copy.deepcopy(GROTH16_POINTS)),
        ZkInputs(public_inputs=["12345", "999"]),
        ZkInputs(proof=copy.deepcopy(GROTH16_POINTS), public_inputs=["12345", "12345"]),
    ],
    ids=["proof", "public-inputs", "both"],
)
def test_zk_material_requires_poseidon_hash(capsule, svg_text, zk):
    with pytest.raises(ValueError, match="zkPoseidonHash"):
        build_bundle_root(capsule, hash_svg_text(svg_text), zk=zk)
