"""kaiproof.bundle

Proof bundle (KPB-1) construction and hashing.

A bundle is the proof capsule, its hash, the artifact hash and an optional
ZK statement, plus the envelope fields added after hashing (``bundleHash``,
``authorSig``, transport hints). ``bundleHash`` is SHA-256 over the canonical
*unsigned projection*: the root fields only, with ``authorSig`` forced to
``null``. The author signature is computed over ``bundleHash`` and so can
never be part of its own input.

Fields that were never provided are omitted from the root; explicit ``null``
values coming from the wire are kept as ``null``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from kaiproof.canonical import UNDEFINED, drop_undefined
from kaiproof.capsule import CapsuleLike, assert_capsule_hash, capsule_dict, hash_proof_capsule, parse_capsule
from kaiproof.digest import hash_canonical
from kaiproof.errors import BundleHashMismatch
from kaiproof.observability import KaiproofLayer, get_logger
from kaiproof.result import Malformed, ParseResult, parse_with_schema
from kaiproof.zk import (
    DEFAULT_ZK_META,
    build_zk_public_inputs,
    default_zk_statement,
    reconcile_zk_curves,
)

log = get_logger("builder", KaiproofLayer.BUNDLE)

BUNDLE_VERSION = "KPB-1"
PROOF_HASH_ALG = "sha256"
PROOF_CANON = "JCS"

PROOF_BINDINGS: Dict[str, str] = {
    "capsuleHashOf": "JCS(proofCapsule)",
    "bundleHashOf": "JCS(bundleRoot with authorSig=null)",
    "authorChallengeOf": "bytes(bundleHash)",
}

# Order of the root fields as they appear in a built bundle.
ROOT_FIELDS = (
    "v",
    "hashAlg",
    "canon",
    "bindings",
    "zkStatement",
    "proofCapsule",
    "capsuleHash",
    "svgHash",
    "zkPoseidonHash",
    "zkProof",
    "zkPublicInputs",
    "zkMeta",
)

# Never part of the hash input: derived from the hash, or transport-only.
UNSIGNED_EXCLUDED = frozenset(
    {
        "bundleHash",
        "bundleRoot",
        "authorSig",
        "receiveSig",
        "receiveBundleHash",
        "ownerKey",
        "ownerKeyDerivation",
        "transport",
        "proofHints",
    }
)


@dataclass
class ZkInputs:
    """Optional ZK material for :func:`build_bundle_root`.

    Attributes left as ``UNDEFINED`` are omitted from the root.
    """

    poseidon_hash: Any = UNDEFINED
    proof: Any = UNDEFINED
    public_inputs: Any = UNDEFINED
    meta: Any = UNDEFINED
    statement: Any = UNDEFINED


def _present(value: Any) -> bool:
    return value is not UNDEFINED and value is not None


def build_bundle_root(
    capsule: CapsuleLike,
    artifact_hash: str,
    zk: Optional[ZkInputs] = None,
    capsule_hash: Optional[str] = None,
) -> Dict[str, Any]:
    """Assemble the canonical bundle root.

    When a Poseidon hash is present but the statement, metadata or public
    inputs are not, the defaults are filled in. Curve metadata is reconciled
    before the root is returned.
    """

    zk = zk or ZkInputs()
    if not _present(zk.poseidon_hash) and (_present(zk.proof) or _present(zk.public_inputs)):
        raise ValueError("zkProof and zkPublicInputs require zkPoseidonHash")
    capsule_obj = capsule_dict(capsule)
    c_hash = capsule_hash or hash_proof_capsule(capsule_obj)

    statement = zk.statement
    meta = zk.meta
    public_inputs = zk.public_inputs
    if _present(zk.poseidon_hash):
        if not _present(statement):
            statement = default_zk_statement()
        if not _present(meta):
            meta = dict(DEFAULT_ZK_META)
        if not _present(public_inputs):
            public_inputs = build_zk_public_inputs(zk.poseidon_hash)

    proof = zk.proof
    if _present(proof) or _present(meta):
        reconciled = reconcile_zk_curves(
            proof if _present(proof) else None,
            meta if _present(meta) else None,
        )
        if _present(proof):
            proof = reconciled.zk_proof
        if _present(meta):
            meta = reconciled.zk_meta

    root = {
        "v": BUNDLE_VERSION,
        "hashAlg": PROOF_HASH_ALG,
        "canon": PROOF_CANON,
        "bindings": dict(PROOF_BINDINGS),
        "zkStatement": statement,
        "proofCapsule": capsule_obj,
        "capsuleHash": c_hash,
        "svgHash": str(artifact_hash).lower(),
        "zkPoseidonHash": zk.poseidon_hash,
        "zkProof": proof,
        "zkPublicInputs": public_inputs,
        "zkMeta": meta,
    }
    return drop_undefined(root)


def bundle_root_of(bundle: Dict[str, Any], fields: Iterable[str] = ROOT_FIELDS) -> Dict[str, Any]:
    """Project the root fields out of any bundle-like object (absent fields stay absent)."""

    return {k: copy.deepcopy(bundle[k]) for k in fields if k in bundle}


def build_bundle_unsigned(bundle: Dict[str, Any]) -> Dict[str, Any]:
    """The hash input of a bundle: its root fields with ``authorSig`` forced to ``None``."""

    unsigned = {k: v for k, v in bundle_root_of(bundle).items() if k not in UNSIGNED_EXCLUDED}
    unsigned["authorSig"] = None
    return unsigned


def hash_bundle(unsigned: Dict[str, Any]) -> str:
    return hash_canonical(unsigned)


def compute_bundle_hash(bundle: Dict[str, Any]) -> str:
    return hash_bundle(build_bundle_unsigned(bundle))


def assert_bundle_hash(bundle: Dict[str, Any], claimed: Optional[str] = None) -> str:
    """Recompute the bundle hash and compare it with ``claimed`` (default: ``bundle["bundleHash"]``)."""

    expected = claimed if claimed is not None else bundle.get("bundleHash")
    actual = compute_bundle_hash(bundle)
    if not isinstance(expected, str) or actual != expected.lower():
        raise BundleHashMismatch(
            "bundleHash does not match the recomputed unsigned bundle",
            expected=expected,
            actual=actual,
        )
    return actual


def assert_bundle_root_consistent(bundle: Dict[str, Any]) -> None:
    """A nested ``bundleRoot`` copy, when present, must hash like the top-level root."""

    nested = bundle.get("bundleRoot")
    if not isinstance(nested, dict):
        return
    top = compute_bundle_hash(bundle)
    inner = compute_bundle_hash(nested)
    if top != inner:
        raise BundleHashMismatch(
            "nested bundleRoot disagrees with the bundle's root fields",
            expected=top,
            actual=inner,
        )


def seal_bundle(
    root: Dict[str, Any],
    author_sig: Optional[Dict[str, Any]] = None,
    transport: Optional[Dict[str, Any]] = None,
    bundle_hash: Optional[str] = None,
) -> Dict[str, Any]:
    """Assemble the signed bundle document that is embedded in the artifact."""

    b_hash = bundle_hash or compute_bundle_hash(root)
    sealed: Dict[str, Any] = dict(copy.deepcopy(root))
    sealed["bundleRoot"] = copy.deepcopy(root)
    sealed["bundleHash"] = b_hash
    sealed["authorSig"] = copy.deepcopy(author_sig)
    if transport:
        sealed["transport"] = dict(transport)
    log.debug("sealed bundle", operation="seal", bundle_hash=b_hash, signed=author_sig is not None)
    return sealed


def verify_bundle_hashes(bundle: Dict[str, Any]) -> str:
    """Check capsuleHash, the nested root copy and bundleHash; return the bundle hash."""

    assert_capsule_hash(bundle.get("proofCapsule") or {}, bundle.get("capsuleHash") or "")
    assert_bundle_root_consistent(bundle)
    return assert_bundle_hash(bundle)


def _check_embedded_capsule(obj: Dict[str, Any]) -> Dict[str, Any]:
    capsule = parse_capsule(obj["proofCapsule"])
    if isinstance(capsule, Malformed):
        raise ValueError(f"proofCapsule: {capsule.reason}")
    return obj


def parse_bundle(obj: Any) -> ParseResult[Dict[str, Any]]:
    """Validate bundle shape, including the day label and version of the embedded capsule."""

    return parse_with_schema(obj, "bundle", _check_embedded_capsule)
