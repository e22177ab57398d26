"""kaiproof.webauthn

WebAuthn payload decoding and ES256 assertion verification.

Covers the parts of WebAuthn that an offline verifier needs:

- authenticator data: ``rpIdHash(32) | flags(1) | signCount(4) | [attested credential data]``
- attestation objects (CBOR) and COSE EC2 keys, converted to P-256 JWKs
- ``clientDataJSON`` checks (type, challenge)
- ECDSA P-256 / SHA-256 over ``authenticatorData || SHA-256(clientDataJSON)``,
  accepting DER signatures and raw ``r || s`` signatures
"""

from __future__ import annotations

import io
import json
import struct
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Union

import cbor2
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from kaiproof.digest import b64url_decode, b64url_encode, sha256_bytes
from kaiproof.errors import ClientDataMismatch, MalformedPayload, RpIdMismatch, SignatureInvalid

FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_AT = 0x40
FLAG_ED = 0x80

COSE_KTY = 1
COSE_ALG = 3
COSE_CRV = -1
COSE_X = -2
COSE_Y = -3
COSE_KTY_EC2 = 2
COSE_ALG_ES256 = -7
COSE_CRV_P256 = 1

P256_COORD_LEN = 32

WEBAUTHN_GET = "webauthn.get"
WEBAUTHN_CREATE = "webauthn.create"


# ---------------------------------------------------------------------------
# Authenticator data
# ---------------------------------------------------------------------------


@dataclass
class AuthenticatorData:
    rp_id_hash: bytes
    flags: int
    sign_count: int
    aaguid: Optional[bytes] = None
    credential_id: Optional[bytes] = None
    credential_public_key: Optional[Dict[Any, Any]] = None

    @property
    def user_present(self) -> bool:
        return bool(self.flags & FLAG_UP)

    @property
    def user_verified(self) -> bool:
        return bool(self.flags & FLAG_UV)

    @property
    def has_attested_credential(self) -> bool:
        return bool(self.flags & FLAG_AT)


def parse_authenticator_data(data: bytes) -> AuthenticatorData:
    if len(data) < 37:
        raise MalformedPayload("authenticator data is shorter than 37 bytes")

    rp_id_hash = bytes(data[:32])
    flags = data[32]
    (sign_count,) = struct.unpack(">I", data[33:37])
    out = AuthenticatorData(rp_id_hash=rp_id_hash, flags=flags, sign_count=sign_count)
    if not flags & FLAG_AT:
        return out

    offset = 37
    if offset + 18 > len(data):
        raise MalformedPayload("authenticator data is missing the credential id length")
    out.aaguid = bytes(data[offset:offset + 16])
    offset += 16
    (cred_len,) = struct.unpack(">H", data[offset:offset + 2])
    offset += 2
    if offset + cred_len > len(data):
        raise MalformedPayload("credential id length out of bounds")
    out.credential_id = bytes(data[offset:offset + cred_len])
    offset += cred_len
    if offset >= len(data):
        raise MalformedPayload("credential public key missing from attested credential data")

    # The COSE key may be followed by extension data; decode exactly one item.
    try:
        key = cbor2.CBORDecoder(io.BytesIO(bytes(data[offset:]))).decode()
    except cbor2.CBORDecodeError as ex:
        raise MalformedPayload(f"credential public key is not CBOR: {ex}") from ex
    if not isinstance(key, dict):
        raise MalformedPayload("credential public key is not a COSE map")
    out.credential_public_key = key
    return out


@dataclass
class AttestedCredential:
    credential_id: bytes
    public_key_jwk: Dict[str, str]
    authenticator_data: AuthenticatorData
    fmt: str = "none"


def parse_attestation_object(attestation_object: bytes) -> AttestedCredential:
    """Decode a CBOR attestation object into credential id and P-256 JWK."""

    try:
        decoded = cbor2.loads(attestation_object)
    except cbor2.CBORDecodeError as ex:
        raise MalformedPayload(f"attestation object is not CBOR: {ex}") from ex
    if not isinstance(decoded, dict):
        raise MalformedPayload("attestation object is not a CBOR map")
    auth_data = decoded.get("authData")
    if not isinstance(auth_data, (bytes, bytearray)):
        raise MalformedPayload("attestation object has no authData")

    parsed = parse_authenticator_data(bytes(auth_data))
    if parsed.credential_id is None or parsed.credential_public_key is None:
        raise MalformedPayload("attestation missing credential data (AT flag not set)")
    return AttestedCredential(
        credential_id=parsed.credential_id,
        public_key_jwk=cose_ec2_to_jwk(parsed.credential_public_key),
        authenticator_data=parsed,
        fmt=str(decoded.get("fmt") or "none"),
    )


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def cose_ec2_to_jwk(cose_key: Union[Dict[Any, Any], bytes]) -> Dict[str, str]:
    if isinstance(cose_key, (bytes, bytearray)):
        cose_key = cbor2.loads(bytes(cose_key))
    if not isinstance(cose_key, dict):
        raise MalformedPayload("COSE key must be a map")

    def get(label: int) -> Any:
        # some encoders stringify integer labels
        return cose_key.get(label, cose_key.get(str(label)))

    if get(COSE_KTY) != COSE_KTY_EC2:
        raise MalformedPayload("COSE key is not EC2")
    crv = get(COSE_CRV)
    if crv is not None and crv != COSE_CRV_P256:
        raise MalformedPayload("COSE key curve is not P-256")
    alg = get(COSE_ALG)
    if alg is not None and alg != COSE_ALG_ES256:
        raise MalformedPayload("COSE key algorithm is not ES256")
    x, y = get(COSE_X), get(COSE_Y)
    if not isinstance(x, (bytes, bytearray)) or not isinstance(y, (bytes, bytearray)):
        raise MalformedPayload("COSE key coordinates missing")
    if len(x) != P256_COORD_LEN or len(y) != P256_COORD_LEN:
        raise MalformedPayload("COSE key coordinates must be 32 bytes")
    return {"kty": "EC", "crv": "P-256", "x": b64url_encode(bytes(x)), "y": b64url_encode(bytes(y))}


def jwk_to_public_key(jwk: Dict[str, Any]) -> ec.EllipticCurvePublicKey:
    if not isinstance(jwk, dict) or jwk.get("kty") != "EC" or jwk.get("crv") != "P-256":
        raise MalformedPayload("public key must be an EC P-256 JWK")
    try:
        x = b64url_decode(str(jwk.get("x") or ""))
        y = b64url_decode(str(jwk.get("y") or ""))
    except ValueError as ex:
        raise MalformedPayload(f"JWK coordinates are not base64url: {ex}") from ex
    if len(x) != P256_COORD_LEN or len(y) != P256_COORD_LEN:
        raise MalformedPayload("JWK coordinates must be 32 bytes")
    numbers = ec.EllipticCurvePublicNumbers(
        int.from_bytes(x, "big"), int.from_bytes(y, "big"), ec.SECP256R1()
    )
    try:
        return numbers.public_key()
    except ValueError as ex:
        raise MalformedPayload("JWK point is not on P-256") from ex


def public_key_to_jwk(public_key: ec.EllipticCurvePublicKey) -> Dict[str, str]:
    nums = public_key.public_numbers()
    return {
        "kty": "EC",
        "crv": "P-256",
        "x": b64url_encode(nums.x.to_bytes(P256_COORD_LEN, "big")),
        "y": b64url_encode(nums.y.to_bytes(P256_COORD_LEN, "big")),
    }


def public_key_to_cose(public_key: ec.EllipticCurvePublicKey) -> Dict[int, Any]:
    nums = public_key.public_numbers()
    return {
        COSE_KTY: COSE_KTY_EC2,
        COSE_ALG: COSE_ALG_ES256,
        COSE_CRV: COSE_CRV_P256,
        COSE_X: nums.x.to_bytes(P256_COORD_LEN, "big"),
        COSE_Y: nums.y.to_bytes(P256_COORD_LEN, "big"),
    }


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


def raw_to_der(signature: bytes) -> bytes:
    if len(signature) != 2 * P256_COORD_LEN:
        raise ValueError("raw ECDSA P-256 signature must be 64 bytes")
    r = int.from_bytes(signature[:P256_COORD_LEN], "big")
    s = int.from_bytes(signature[P256_COORD_LEN:], "big")
    return encode_dss_signature(r, s)


def der_to_raw(signature: bytes) -> bytes:
    r, s = decode_dss_signature(signature)
    return r.to_bytes(P256_COORD_LEN, "big") + s.to_bytes(P256_COORD_LEN, "big")


def verify_es256(public_key: ec.EllipticCurvePublicKey, signature: bytes, message: bytes) -> bool:
    """Verify an ES256 signature, DER first, then raw ``r || s``."""

    try:
        public_key.verify(signature, message, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError):
        pass
    if len(signature) != 2 * P256_COORD_LEN:
        return False
    try:
        public_key.verify(raw_to_der(signature), message, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError):
        return False


# ---------------------------------------------------------------------------
# Client data + assertion
# ---------------------------------------------------------------------------


@dataclass
class ClientData:
    type: str
    challenge: str
    origin: str = ""
    cross_origin: bool = False
    raw: bytes = b""


def parse_client_data(client_data_json: bytes) -> ClientData:
    try:
        obj = json.loads(client_data_json.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as ex:
        raise ClientDataMismatch(f"clientDataJSON is not JSON: {ex}") from ex
    if not isinstance(obj, dict):
        raise ClientDataMismatch("clientDataJSON is not an object")
    ctype, challenge = obj.get("type"), obj.get("challenge")
    if not isinstance(ctype, str) or not isinstance(challenge, str):
        raise ClientDataMismatch("clientDataJSON lacks type or challenge")
    return ClientData(
        type=ctype,
        challenge=challenge,
        origin=str(obj.get("origin") or ""),
        cross_origin=bool(obj.get("crossOrigin", False)),
        raw=client_data_json,
    )


def build_client_data_json(challenge_b64: str, origin: str, ctype: str = WEBAUTHN_GET) -> bytes:
    """clientDataJSON in the member order browsers emit."""

    return json.dumps(
        {"type": ctype, "challenge": challenge_b64, "origin": origin, "crossOrigin": False},
        separators=(",", ":"),
    ).encode("utf-8")


def rp_id_hash(rp_id: str) -> bytes:
    return sha256_bytes(rp_id)


def verify_assertion(
    *,
    public_key_jwk: Dict[str, Any],
    authenticator_data: bytes,
    client_data_json: bytes,
    signature: bytes,
    expected_challenge: str,
    rp_id: Optional[Union[str, Sequence[str]]] = None,
    require_user_verified: bool = False,
) -> ClientData:
    """Verify a WebAuthn ``get`` assertion; raises on the first failing check.

    ``rp_id`` may be a single relying-party id or several accepted ids (a
    canonical id plus legacy hostnames credentials were registered under).
    """

    client = parse_client_data(client_data_json)
    if client.type != WEBAUTHN_GET:
        raise ClientDataMismatch(f"clientData.type is {client.type!r}, expected {WEBAUTHN_GET!r}")
    if client.challenge != expected_challenge:
        raise ClientDataMismatch("clientData.challenge does not match the expected challenge")

    auth = parse_authenticator_data(authenticator_data)
    if rp_id is not None:
        accepted = [rp_id] if isinstance(rp_id, str) else list(rp_id)
        if auth.rp_id_hash not in {rp_id_hash(r) for r in accepted}:
            raise RpIdMismatch(f"authenticator data was not produced for rpId {rp_id!r}")
    if require_user_verified and not auth.user_verified:
        raise SignatureInvalid("authenticator did not report user verification")

    public_key = jwk_to_public_key(public_key_jwk)
    message = bytes(authenticator_data) + sha256_bytes(client_data_json)
    if not verify_es256(public_key, signature, message):
        raise SignatureInvalid("ES256 signature does not verify")
    return client
