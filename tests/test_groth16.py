"""Groth16 over BN254.

Pairings are slow in pure Python; only one accepting and one rejecting
pairing check run by default, the rest are marked ``slow``.
"""

import copy
import json

import pytest

from kaiproof.errors import CurveMismatch, MalformedPayload, PublicInputsContractViolated, ZkProofInvalid
from kaiproof.groth16 import (
    VerificationKey,
    check_proof_curve,
    groth16_verify,
    load_verification_key,
    parse_g1,
    parse_g2,
    verify_zk_bundle,
)

POSEIDON = "4242424242424242424242"


@pytest.fixture
def vector(groth16_vector):
    return groth16_vector([POSEIDON, POSEIDON])


def test_valid_proof_verifies(vector):
    vkey_json, proof = vector
    assert groth16_verify(VerificationKey.from_dict(vkey_json), proof, [POSEIDON, POSEIDON])


def test_wrong_public_signal_fails(vector):
    vkey_json, proof = vector
    assert not groth16_verify(VerificationKey.from_dict(vkey_json), proof, [POSEIDON, "1"])


@pytest.mark.slow
def test_tampered_proof_fails(vector, groth16_vector):
    vkey_json, proof = vector
    _, other = groth16_vector([POSEIDON, POSEIDON], seed=11)
    forged = dict(proof, pi_c=other["pi_c"])
    assert not groth16_verify(VerificationKey.from_dict(vkey_json), forged, [POSEIDON, POSEIDON])


@pytest.mark.slow
def test_verify_zk_bundle_accepts_consistent_bundle(vector):
    vkey_json, proof = vector
    verify_zk_bundle(VerificationKey.from_dict(vkey_json), proof, [POSEIDON, POSEIDON], POSEIDON, {"curve": "bn254"})


@pytest.mark.slow
def test_verify_zk_bundle_raises_on_failed_pairing(vector, groth16_vector):
    vkey_json, _ = vector
    _, foreign = groth16_vector([POSEIDON, POSEIDON], seed=3)
    with pytest.raises(ZkProofInvalid):
        verify_zk_bundle(VerificationKey.from_dict(vkey_json), foreign, [POSEIDON, POSEIDON], POSEIDON)


def test_contract_checked_before_pairing(vector):
    vkey_json, proof = vector
    vkey = VerificationKey.from_dict(vkey_json)
    with pytest.raises(PublicInputsContractViolated):
        verify_zk_bundle(vkey, proof, [POSEIDON, POSEIDON], "1")
    with pytest.raises(PublicInputsContractViolated):
        verify_zk_bundle(vkey, proof, [POSEIDON], POSEIDON)


def test_proof_curve_must_match_key(vector):
    vkey_json, proof = vector
    vkey = VerificationKey.from_dict(vkey_json)
    check_proof_curve(vkey, proof, {"curve": "alt_bn128"})
    with pytest.raises(CurveMismatch):
        check_proof_curve(vkey, dict(proof, curve="bls12-381"))
    with pytest.raises(CurveMismatch):
        verify_zk_bundle(vkey, proof, [POSEIDON, POSEIDON], POSEIDON, {"curve": "bls12-381"})


class TestVerificationKey:

    def test_round_trip(self, vector):
        vkey_json, _ = vector
        vkey = VerificationKey.from_dict(vkey_json)
        assert vkey.n_public == 2
        assert len(vkey.ic) == 3
        assert vkey.to_dict() == vkey_json

    def test_load_from_file(self, vector, tmp_path):
        vkey_json, _ = vector
        path = tmp_path / "verification_key.json"
        path.write_text(json.dumps(vkey_json), encoding="utf-8")
        assert load_verification_key(path).to_dict() == vkey_json

    def test_load_rejects_non_json(self, tmp_path):
        path = tmp_path / "vkey.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(MalformedPayload):
            load_verification_key(path)

    def test_unsupported_curve(self, vector):
        vkey_json, _ = vector
        with pytest.raises(CurveMismatch):
            VerificationKey.from_dict(dict(vkey_json, curve="bls12381"))

    def test_unsupported_protocol(self, vector):
        vkey_json, _ = vector
        with pytest.raises(MalformedPayload):
            VerificationKey.from_dict(dict(vkey_json, protocol="plonk"))

    def test_npublic_must_match_ic(self, vector):
        vkey_json, _ = vector
        with pytest.raises(MalformedPayload):
            VerificationKey.from_dict(dict(vkey_json, nPublic=5))

    def test_off_curve_point_rejected(self, vector):
        vkey_json, _ = vector
        broken = copy.deepcopy(vkey_json)
        broken["vk_alpha_1"][1] = str(int(broken["vk_alpha_1"][1]) + 1)
        with pytest.raises(ZkProofInvalid):
            VerificationKey.from_dict(broken)


class TestPointParsing:

    def test_g1_accepts_affine_pair(self, vector):
        _, proof = vector
        assert parse_g1(proof["pi_a"][:2]) == parse_g1(proof["pi_a"])

    def test_g1_point_at_infinity(self):
        x, y, z = parse_g1(["0", "1", "0"])
        assert z == 0

    @pytest.mark.parametrize("coords", [None, "1,2", ["1"], ["x", "2", "1"], ["-1", "2", "1"]])
    def test_g1_malformed(self, coords):
        with pytest.raises(MalformedPayload):
            parse_g1(coords)

    def test_g2_requires_pairs(self):
        with pytest.raises(MalformedPayload):
            parse_g2([["1", "0"], "1", ["1", "0"]])

    def test_g2_off_twist_rejected(self):
        with pytest.raises(ZkProofInvalid):
            parse_g2([["1", "0"], ["1", "0"], ["1", "0"]])


def test_signal_count_checked(vector):
    vkey_json, proof = vector
    with pytest.raises(MalformedPayload):
        groth16_verify(VerificationKey.from_dict(vkey_json), proof, [POSEIDON])


def test_signal_out_of_field_rejected(vector):
    from py_ecc.optimized_bn128 import curve_order

    vkey_json, proof = vector
    with pytest.raises(MalformedPayload):
        groth16_verify(VerificationKey.from_dict(vkey_json), proof, [str(curve_order), POSEIDON])


def test_proof_must_be_object(vector):
    vkey_json, _ = vector
    with pytest.raises(MalformedPayload):
        groth16_verify(VerificationKey.from_dict(vkey_json), ["not", "a", "proof"], [POSEIDON, POSEIDON])
