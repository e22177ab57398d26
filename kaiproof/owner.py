"""kaiproof.owner

Owner-key derivation (OPK-1) for custody transfer.

When a sealed sigil is received, the receiver builds a *receive bundle root*:
the original bundle root plus the receive bindings (origin bundle hash, the
origin author signature, the receive pulse). Its hash binds the new owner key:

    receiverId = sha256_hex(JCS(receiverPublicKeyJwk))
    seed       = "phi.owner.receive.v1|" + receiverId + "|" + pulse + "|" + receiveBundleHash
    ownerKey   = Base58Check(0x00, sha256(seed)[:20])

The owner key and its derivation record are added to the receive root only
after ``receiveBundleHash`` is computed; they are never part of that hash.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from kaiproof.bundle import bundle_root_of
from kaiproof.canonical import UNDEFINED, drop_undefined
from kaiproof.digest import base58check_encode, hash_canonical, hex_to_bytes, sha256_hex
from kaiproof.errors import OwnerIdentityMismatch
from kaiproof.observability import KaiproofLayer, get_logger
from kaiproof.result import ParseResult, parse_with_schema

log = get_logger("derivation", KaiproofLayer.OWNER)

OWNER_KEY_VERSION = "OPK-1"
OWNER_KEY_METHOD = "identityKey@pulse"
OWNER_KEY_SEED_DOMAIN = "phi.owner.receive.v1"
OWNER_KEY_PAYLOAD_BYTES = 20
RECEIVE_MODE = "receive"


def receiver_public_key_id(receiver_public_key_jwk: Dict[str, Any]) -> str:
    return hash_canonical(receiver_public_key_jwk)


def owner_key_seed(receiver_id: str, receive_pulse: int, receive_bundle_hash: str) -> str:
    return f"{OWNER_KEY_SEED_DOMAIN}|{receiver_id}|{receive_pulse}|{receive_bundle_hash}"


def derive_owner_key(
    receiver_public_key_jwk: Dict[str, Any],
    receive_pulse: int,
    receive_bundle_hash: str,
) -> str:
    """Derive the Base58Check owner key for a receiver at a pulse.

    Deterministic: the same key, pulse and receive hash always give the same
    owner key, and changing any one of them gives a different key.
    """

    if isinstance(receive_pulse, bool) or not isinstance(receive_pulse, int) or receive_pulse < 0:
        raise ValueError("receive_pulse must be a non-negative integer")
    seed = owner_key_seed(receiver_public_key_id(receiver_public_key_jwk), receive_pulse, receive_bundle_hash)
    payload = hex_to_bytes(sha256_hex(seed))[:OWNER_KEY_PAYLOAD_BYTES]
    return base58check_encode(payload, version=0x00)


def build_owner_key_derivation(
    receive_pulse: int,
    receive_bundle_hash: str,
    origin_identity_key: Optional[str] = None,
) -> Dict[str, Any]:
    return drop_undefined(
        {
            "v": OWNER_KEY_VERSION,
            "method": OWNER_KEY_METHOD,
            "originIdentityKey": origin_identity_key if origin_identity_key is not None else UNDEFINED,
            "receivePulse": receive_pulse,
            "binds": {"receiveBundleHash": receive_bundle_hash},
        }
    )


def parse_owner_key_derivation(obj: Any) -> ParseResult[Dict[str, Any]]:
    return parse_with_schema(obj, "owner-key")


# ---------------------------------------------------------------------------
# Receive bundle root
# ---------------------------------------------------------------------------


def build_receive_bundle_root(
    bundle: Dict[str, Any],
    bundle_root: Optional[Dict[str, Any]] = None,
    origin_bundle_hash: Optional[str] = None,
    origin_author_sig: Optional[Dict[str, Any]] = None,
    receive_pulse: Optional[int] = None,
    owner_key: Optional[str] = None,
    owner_key_derivation: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """The received bundle's root plus receive bindings; absent inputs are omitted.

    Leave ``owner_key`` and ``owner_key_derivation`` unset when the result is
    going to be hashed with :func:`hash_receive_bundle_root`.
    """

    base = dict(bundle_root) if bundle_root is not None else bundle_root_of(bundle)

    def opt(value: Any) -> Any:
        return UNDEFINED if value is None else value

    merged = dict(base)
    merged.update(
        {
            "mode": RECEIVE_MODE,
            "originBundleHash": opt(origin_bundle_hash),
            "originAuthorSig": opt(origin_author_sig),
            "receivePulse": opt(receive_pulse),
            "ownerKey": opt(owner_key),
            "ownerKeyDerivation": opt(owner_key_derivation),
        }
    )
    return drop_undefined(merged)


def hash_receive_bundle_root(root: Dict[str, Any]) -> str:
    return hash_canonical(root)


@dataclass
class ReceivedOwnership:
    receive_bundle_hash: str
    owner_key: str
    derivation: Dict[str, Any]
    receive_root: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "receiveBundleHash": self.receive_bundle_hash,
            "ownerKey": self.owner_key,
            "ownerKeyDerivation": dict(self.derivation),
            "receiveRoot": self.receive_root,
        }


def receive_bundle(
    bundle: Dict[str, Any],
    receiver_public_key_jwk: Dict[str, Any],
    receive_pulse: int,
) -> ReceivedOwnership:
    """Bind a received bundle to a new owner key.

    The receive root is hashed without any owner fields, the owner key is
    derived from that hash, and the final root carries both.
    """

    capsule = bundle.get("proofCapsule") or {}
    origin_identity_key = capsule.get("identityKey") if isinstance(capsule, dict) else None
    unbound = build_receive_bundle_root(
        bundle,
        bundle_root=bundle.get("bundleRoot") if isinstance(bundle.get("bundleRoot"), dict) else None,
        origin_bundle_hash=bundle.get("bundleHash"),
        origin_author_sig=bundle.get("authorSig"),
        receive_pulse=receive_pulse,
    )
    receive_hash = hash_receive_bundle_root(unbound)
    owner_key = derive_owner_key(receiver_public_key_jwk, receive_pulse, receive_hash)
    derivation = build_owner_key_derivation(receive_pulse, receive_hash, origin_identity_key)
    final = dict(unbound)
    final["ownerKey"] = owner_key
    final["ownerKeyDerivation"] = derivation
    log.info("derived owner key", operation="derive", receive_bundle_hash=receive_hash, receive_pulse=receive_pulse)
    return ReceivedOwnership(receive_hash, owner_key, derivation, final)


def verify_owner_key(
    owner_key: str,
    receiver_public_key_jwk: Dict[str, Any],
    derivation: Dict[str, Any],
    receive_root: Optional[Dict[str, Any]] = None,
) -> None:
    """Check that ``owner_key`` was derived for this receiver as recorded.

    With ``receive_root`` given, the root (minus its owner fields) must also
    hash to the ``receiveBundleHash`` the derivation binds.
    """

    parsed = parse_owner_key_derivation(derivation)
    if not parsed.ok:
        raise OwnerIdentityMismatch("owner key derivation record is malformed", reason=str(parsed))
    bound_hash = derivation["binds"]["receiveBundleHash"]
    pulse = derivation["receivePulse"]

    if receive_root is not None:
        unbound = {k: v for k, v in receive_root.items() if k not in ("ownerKey", "ownerKeyDerivation")}
        actual = hash_receive_bundle_root(unbound)
        if actual != bound_hash:
            raise OwnerIdentityMismatch(
                "receive bundle root does not hash to the bound receiveBundleHash",
                expected=bound_hash,
                actual=actual,
            )
        if unbound.get("receivePulse") != pulse:
            raise OwnerIdentityMismatch("receive root pulse differs from the derivation pulse")

    expected = derive_owner_key(receiver_public_key_jwk, pulse, bound_hash)
    if expected != owner_key:
        raise OwnerIdentityMismatch(
            "owner key was not derived from this receiver key",
            expected=expected,
            actual=owner_key,
        )


__all__ = [
    "OWNER_KEY_METHOD",
    "OWNER_KEY_VERSION",
    "ReceivedOwnership",
    "build_owner_key_derivation",
    "build_receive_bundle_root",
    "derive_owner_key",
    "hash_receive_bundle_root",
    "owner_key_seed",
    "parse_owner_key_derivation",
    "receive_bundle",
    "receiver_public_key_id",
    "verify_owner_key",
]
