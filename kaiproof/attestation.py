"""kaiproof.attestation

Presence attestation records (KAS-ATT-1) and signed verification receipts
(KVR-1).

An attestation is a standalone JSON document a holder can archive next to
the artifact: it references the capsule and bundle hashes and carries the
author signature. It is only ever built from a consistent set of inputs;
any disagreement aborts with :class:`AttestationInconsistent`.

A verification receipt records that a verifier checked a bundle at a pulse.
Its hash is signed the same way a bundle hash is: the WebAuthn challenge is
the raw receipt-hash bytes.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from kaiproof.bundle import build_bundle_unsigned
from kaiproof.capsule import CapsuleLike, capsule_dict
from kaiproof.digest import b64url_decode, b64url_encode, hash_canonical, hex_to_bytes, sha256_bytes
from kaiproof.errors import AttestationInconsistent, KaiproofError, MalformedPayload
from kaiproof.kas import KAS_ALG, KAS_VERSION, KasEngine, parse_author_sig, verify_author_sig
from kaiproof.result import ParseResult, parse_with_schema, unwrap
from kaiproof.webauthn import verify_assertion

logger = logging.getLogger(__name__)

ATTESTATION_VERSION = "KAS-ATT-1"
ATTESTATION_KIND = "presence.attestation"
ATTESTATION_FILENAME_PREFIX = "kas_v1"

RECEIPT_VERSION = "KVR-1"
RECEIPT_SIG_SCOPE = "verification-receipt"


# ════════════════════════════════════════════════════════════════════════════
# PRESENCE ATTESTATION
# ════════════════════════════════════════════════════════════════════════════


def compute_bundle_object_hash(bundle_object: Dict[str, Any]) -> str:
    """Hash of the unsigned bundle object; equals ``bundleHash`` for a consistent bundle."""

    return hash_canonical(build_bundle_unsigned(bundle_object))


def client_data_origin(author_sig: Dict[str, Any]) -> str:
    try:
        parsed = json.loads(b64url_decode(author_sig["clientDataJSON"]).decode("utf-8"))
    except (KeyError, TypeError, ValueError) as ex:
        raise MalformedPayload(f"authorSig.clientDataJSON is unreadable: {ex}") from ex
    origin = parsed.get("origin") if isinstance(parsed, dict) else None
    if not isinstance(origin, str):
        raise MalformedPayload("authorSig.clientDataJSON carries no origin")
    return origin


def make_kas_attestation(
    bundle_hash: str,
    bundle_object: Dict[str, Any],
    proof_capsule: CapsuleLike,
    capsule_hash: str,
    svg_hash: str,
    author_sig: Dict[str, Any],
    rp_id: str,
) -> Dict[str, Any]:
    """Build a KAS-ATT-1 record.

    Aborts unless the signature challenge is the raw bundle-hash bytes and the
    bundle object re-hashes to ``bundle_hash``.
    """

    bundle_hash = bundle_hash.lower()
    sig = unwrap(parse_author_sig(author_sig))
    expected = b64url_encode(hex_to_bytes(bundle_hash))
    if sig["challenge"] != expected:
        raise AttestationInconsistent("authorSig.challenge does not match the bundle hash")

    object_hash = compute_bundle_object_hash(bundle_object)
    if object_hash != bundle_hash:
        raise AttestationInconsistent(
            "bundle object hash does not match the bundle hash",
            expected=bundle_hash,
            actual=object_hash,
        )

    capsule = capsule_dict(proof_capsule)
    return {
        "v": ATTESTATION_VERSION,
        "kind": ATTESTATION_KIND,
        "ref": {
            "bundleHash": bundle_hash,
            "bundleObjectHash": object_hash,
            "capsuleHash": capsule_hash.lower(),
            "svgHash": svg_hash.lower(),
            "verifierSlug": capsule["verifierSlug"],
            "pulse": capsule["pulse"],
            "dayLabel": capsule["dayLabel"],
            "identityKey": capsule["identityKey"],
            "identitySignature": capsule["identitySignature"],
        },
        "authorSig": copy.deepcopy(author_sig),
        "meta": {
            "origin": client_data_origin(author_sig),
            "rpId": rp_id,
            "createdAtPulse": capsule["pulse"],
        },
    }


def attestation_from_bundle(bundle: Dict[str, Any], rp_id: str) -> Dict[str, Any]:
    """Build the attestation for a sealed, signed bundle."""

    if not isinstance(bundle.get("authorSig"), dict):
        raise AttestationInconsistent("bundle carries no author signature to attest")
    return make_kas_attestation(
        bundle_hash=bundle["bundleHash"],
        bundle_object=bundle,
        proof_capsule=bundle["proofCapsule"],
        capsule_hash=bundle["capsuleHash"],
        svg_hash=bundle["svgHash"],
        author_sig=bundle["authorSig"],
        rp_id=rp_id,
    )


def parse_attestation(obj: Any) -> ParseResult[Dict[str, Any]]:
    return parse_with_schema(obj, "attestation")


def verify_kas_attestation(attestation: Any, enforce_rp_id: bool = True) -> Dict[str, Any]:
    """Check an attestation record on its own: shape, hash agreement and signature."""

    att = unwrap(parse_attestation(attestation))
    ref = att["ref"]
    if ref["bundleObjectHash"] != ref["bundleHash"]:
        raise AttestationInconsistent("bundleObjectHash differs from bundleHash")
    origin = client_data_origin(att["authorSig"])
    if origin != att["meta"]["origin"]:
        raise AttestationInconsistent("meta.origin differs from the signed client origin")
    verify_author_sig(
        ref["bundleHash"],
        att["authorSig"],
        rp_id=att["meta"]["rpId"] if enforce_rp_id else None,
    )
    return att


def compute_cred_id8(cred_id: str) -> str:
    return b64url_encode(sha256_bytes(b64url_decode(cred_id)))[:8]


def make_kas_attestation_filename(
    verifier_slug: str,
    bundle_hash: str,
    cred_id: str,
    pulse: int,
    existing_names: Optional[Iterable[str]] = None,
) -> str:
    """``kas_v1__<slug>__<hash12>__<credId8>__p<pulse>.json``, suffixed ``__n<k>`` when taken."""

    base = "__".join(
        [
            ATTESTATION_FILENAME_PREFIX,
            verifier_slug,
            bundle_hash[:12].lower(),
            compute_cred_id8(cred_id),
            f"p{pulse}",
        ]
    )
    taken = set(existing_names or ())
    candidate = f"{base}.json"
    if candidate not in taken:
        return candidate
    n = 2
    while f"{base}__n{n}.json" in taken:
        n += 1
    return f"{base}__n{n}.json"


# ════════════════════════════════════════════════════════════════════════════
# VERIFICATION RECEIPT
# ════════════════════════════════════════════════════════════════════════════


def build_verification_receipt(
    bundle_hash: str,
    zk_poseidon_hash: str,
    verified_at_pulse: int,
    verifier: str,
    verification_version: str,
) -> Dict[str, Any]:
    return {
        "v": RECEIPT_VERSION,
        "bundleHash": bundle_hash,
        "zkPoseidonHash": zk_poseidon_hash,
        "verifiedAtPulse": verified_at_pulse,
        "verifier": verifier,
        "verificationVersion": verification_version,
    }


def is_verification_receipt(value: Any) -> bool:
    if not isinstance(value, dict) or value.get("v") != RECEIPT_VERSION:
        return False
    pulse = value.get("verifiedAtPulse")
    return (
        isinstance(value.get("bundleHash"), str)
        and isinstance(value.get("zkPoseidonHash"), str)
        and isinstance(pulse, (int, float))
        and not isinstance(pulse, bool)
        and isinstance(value.get("verifier"), str)
        and isinstance(value.get("verificationVersion"), str)
    )


def hash_verification_receipt(receipt: Dict[str, Any]) -> str:
    return hash_canonical(receipt)


def verification_receipt_challenge(receipt_hash: str) -> Tuple[bytes, str]:
    challenge = hex_to_bytes(receipt_hash)
    return challenge, b64url_encode(challenge)


def assert_receipt_hash_match(receipt: Any, receipt_hash: str) -> None:
    """An empty ``receipt_hash`` means "nothing claimed" and always passes."""

    if not receipt_hash:
        return
    if not is_verification_receipt(receipt) or hash_verification_receipt(receipt) != receipt_hash:
        raise AttestationInconsistent("verification receipt mismatch")


def verification_sig_from_kas(sig: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: sig[k] for k in ("credId", "pubKeyJwk", "challenge", "signature", "authenticatorData", "clientDataJSON")}
    out.update({"v": KAS_VERSION, "scope": RECEIPT_SIG_SCOPE, "alg": sig.get("alg", KAS_ALG)})
    return out


def kas_sig_from_verification(sig: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in sig.items() if k != "scope"}


def is_verification_sig(value: Any) -> bool:
    if not isinstance(value, dict) or value.get("scope") != RECEIPT_SIG_SCOPE:
        return False
    return parse_author_sig(kas_sig_from_verification(value)).ok


async def sign_verification_receipt(
    engine: KasEngine,
    identity_key: str,
    receipt: Dict[str, Any],
) -> Dict[str, Any]:
    """Sign a receipt's hash with the verifier's passkey; returns the scoped signature."""

    challenge, _ = verification_receipt_challenge(hash_verification_receipt(receipt))
    sig = await engine.sign_challenge(identity_key, challenge)
    return verification_sig_from_kas(sig)


def verify_verification_sig(receipt_hash: str, sig: Any, rp_id: Optional[str] = None) -> bool:
    """True when ``sig`` is a valid receipt-scoped assertion over ``receipt_hash``."""

    if not is_verification_sig(sig):
        return False
    try:
        _, challenge = verification_receipt_challenge(receipt_hash)
        if sig["challenge"] != challenge:
            return False
        verify_assertion(
            public_key_jwk=sig["pubKeyJwk"],
            authenticator_data=b64url_decode(sig["authenticatorData"]),
            client_data_json=b64url_decode(sig["clientDataJSON"]),
            signature=b64url_decode(sig["signature"]),
            expected_challenge=challenge,
            rp_id=rp_id,
        )
    except (KaiproofError, ValueError) as ex:
        logger.info("verification receipt signature rejected: %s", ex)
        return False
    return True


__all__ = [
    "ATTESTATION_VERSION",
    "RECEIPT_VERSION",
    "assert_receipt_hash_match",
    "attestation_from_bundle",
    "build_verification_receipt",
    "client_data_origin",
    "compute_bundle_object_hash",
    "compute_cred_id8",
    "hash_verification_receipt",
    "is_verification_receipt",
    "is_verification_sig",
    "kas_sig_from_verification",
    "make_kas_attestation",
    "make_kas_attestation_filename",
    "parse_attestation",
    "sign_verification_receipt",
    "verification_receipt_challenge",
    "verification_sig_from_kas",
    "verify_kas_attestation",
    "verify_verification_sig",
]
