import struct

import cbor2
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from kaiproof.digest import b64url_encode, sha256_bytes
from kaiproof.errors import ClientDataMismatch, MalformedPayload, RpIdMismatch, SignatureInvalid
from kaiproof.signers import RegistrationOptions, SoftwareSigner
from kaiproof.webauthn import (
    FLAG_UP,
    FLAG_UV,
    WEBAUTHN_CREATE,
    build_client_data_json,
    cose_ec2_to_jwk,
    der_to_raw,
    jwk_to_public_key,
    parse_attestation_object,
    parse_authenticator_data,
    parse_client_data,
    public_key_to_cose,
    public_key_to_jwk,
    raw_to_der,
    verify_assertion,
)

RP_ID = "phi.network"
ORIGIN = "https://phi.network"
CHALLENGE = b64url_encode(b"\x01" * 32)


def _assertion(key, flags=FLAG_UP | FLAG_UV, rp_id=RP_ID, challenge=CHALLENGE, ctype="webauthn.get"):
    auth = sha256_bytes(rp_id) + bytes([flags]) + struct.pack(">I", 7)
    client = build_client_data_json(challenge, ORIGIN, ctype)
    sig = key.sign(auth + sha256_bytes(client), ec.ECDSA(hashes.SHA256()))
    return auth, client, sig


@pytest.fixture
def key():
    return ec.generate_private_key(ec.SECP256R1())


def _verify(key, auth, client, sig, **kwargs):
    kwargs.setdefault("expected_challenge", CHALLENGE)
    return verify_assertion(
        public_key_jwk=public_key_to_jwk(key.public_key()),
        authenticator_data=auth,
        client_data_json=client,
        signature=sig,
        **kwargs,
    )


def test_valid_der_assertion(key):
    auth, client, sig = _assertion(key)
    parsed = _verify(key, auth, client, sig, rp_id=RP_ID, require_user_verified=True)
    assert parsed.challenge == CHALLENGE
    assert parsed.origin == ORIGIN


def test_raw_signature_accepted(key):
    auth, client, sig = _assertion(key)
    raw = der_to_raw(sig)
    assert len(raw) == 64
    _verify(key, auth, client, raw, rp_id=RP_ID)


def test_any_listed_rp_id_accepted(key):
    auth, client, sig = _assertion(key, rp_id="legacy.phi.network")
    _verify(key, auth, client, sig, rp_id=[RP_ID, "legacy.phi.network"])
    with pytest.raises(RpIdMismatch):
        _verify(key, auth, client, sig, rp_id=RP_ID)


def test_rp_check_skipped_when_not_requested(key):
    auth, client, sig = _assertion(key, rp_id="elsewhere.example")
    _verify(key, auth, client, sig)


def test_wrong_challenge(key):
    auth, client, sig = _assertion(key)
    with pytest.raises(ClientDataMismatch):
        _verify(key, auth, client, sig, expected_challenge=b64url_encode(b"\x02" * 32))


def test_wrong_client_data_type(key):
    auth, client, sig = _assertion(key, ctype=WEBAUTHN_CREATE)
    with pytest.raises(ClientDataMismatch):
        _verify(key, auth, client, sig)


def test_user_verification_required(key):
    auth, client, sig = _assertion(key, flags=FLAG_UP)
    _verify(key, auth, client, sig)
    with pytest.raises(SignatureInvalid):
        _verify(key, auth, client, sig, require_user_verified=True)


def test_tampered_authenticator_data(key):
    auth, client, sig = _assertion(key)
    tampered = auth[:33] + struct.pack(">I", 8)
    with pytest.raises(SignatureInvalid):
        _verify(key, tampered, client, sig)


def test_signature_from_other_key(key):
    other = ec.generate_private_key(ec.SECP256R1())
    auth, client, sig = _assertion(other)
    with pytest.raises(SignatureInvalid):
        _verify(key, auth, client, sig)


def test_garbage_signature(key):
    auth, client, _ = _assertion(key)
    with pytest.raises(SignatureInvalid):
        _verify(key, auth, client, b"\x00" * 10)


def test_short_authenticator_data(key):
    _, client, sig = _assertion(key)
    with pytest.raises(MalformedPayload):
        _verify(key, b"\x00" * 36, client, sig)


def test_client_data_must_be_json():
    with pytest.raises(ClientDataMismatch):
        parse_client_data(b"\xff\xfe")
    with pytest.raises(ClientDataMismatch):
        parse_client_data(b'["list"]')
    with pytest.raises(ClientDataMismatch):
        parse_client_data(b'{"type": "webauthn.get"}')


def test_client_data_member_order():
    assert build_client_data_json("abc", ORIGIN) == (
        b'{"type":"webauthn.get","challenge":"abc","origin":"https://phi.network","crossOrigin":false}'
    )


def test_der_raw_round_trip(key):
    _, _, sig = _assertion(key)
    assert raw_to_der(der_to_raw(sig)) == sig
    with pytest.raises(ValueError):
        raw_to_der(b"\x00" * 63)


class TestKeys:

    def test_jwk_round_trip(self, key):
        jwk = public_key_to_jwk(key.public_key())
        assert jwk["kty"] == "EC" and jwk["crv"] == "P-256"
        assert jwk_to_public_key(jwk).public_numbers() == key.public_key().public_numbers()

    def test_cose_to_jwk(self, key):
        cose = public_key_to_cose(key.public_key())
        assert cose_ec2_to_jwk(cose) == public_key_to_jwk(key.public_key())
        assert cose_ec2_to_jwk(cbor2.dumps(cose)) == public_key_to_jwk(key.public_key())

    def test_cose_with_string_labels(self, key):
        cose = {str(k): v for k, v in public_key_to_cose(key.public_key()).items()}
        assert cose_ec2_to_jwk(cose) == public_key_to_jwk(key.public_key())

    @pytest.mark.parametrize("label,value", [(1, 1), (-1, 2), (3, -257)])
    def test_cose_rejects_other_key_types(self, key, label, value):
        cose = public_key_to_cose(key.public_key())
        cose[label] = value
        with pytest.raises(MalformedPayload):
            cose_ec2_to_jwk(cose)

    @pytest.mark.parametrize(
        "jwk",
        [
            {"kty": "OKP", "crv": "Ed25519", "x": "AA"},
            {"kty": "EC", "crv": "P-384", "x": "AA", "y": "AA"},
            {"kty": "EC", "crv": "P-256", "x": "AA", "y": "AA"},
            {"kty": "EC", "crv": "P-256", "x": "+/+/", "y": "AA"},
            {"kty": "EC", "crv": "P-256", "x": b64url_encode(b"\x01" * 32), "y": b64url_encode(b"\x01" * 32)},
        ],
    )
    def test_bad_jwk(self, jwk):
        with pytest.raises(MalformedPayload):
            jwk_to_public_key(jwk)


class TestAttestationObject:

    def test_software_signer_attestation_parses(self, arun):
        signer = SoftwareSigner()
        options = RegistrationOptions(
            rp_id=RP_ID, rp_name="Kai-Voh", user_id=b"u" * 16, user_name="phi123", challenge=b"c" * 32
        )
        created = arun(signer.create_credential(options))
        attested = parse_attestation_object(created.attestation_object)

        assert attested.credential_id == created.credential_id
        assert attested.fmt == "none"
        assert attested.authenticator_data.rp_id_hash == sha256_bytes(RP_ID)
        assert attested.authenticator_data.has_attested_credential
        assert attested.public_key_jwk["crv"] == "P-256"

    def test_not_cbor(self):
        with pytest.raises(MalformedPayload):
            parse_attestation_object(b"\xff\xff\xff")

    def test_missing_auth_data(self):
        with pytest.raises(MalformedPayload):
            parse_attestation_object(cbor2.dumps({"fmt": "none", "attStmt": {}}))

    def test_auth_data_without_credential(self):
        auth = sha256_bytes(RP_ID) + bytes([FLAG_UP]) + struct.pack(">I", 0)
        with pytest.raises(MalformedPayload):
            parse_attestation_object(cbor2.dumps({"fmt": "none", "attStmt": {}, "authData": auth}))

    def test_truncated_credential_id(self):
        auth = sha256_bytes(RP_ID) + bytes([0x41]) + struct.pack(">I", 0) + b"\x00" * 16 + struct.pack(">H", 64) + b"x"
        with pytest.raises(MalformedPayload):
            parse_authenticator_data(auth)
