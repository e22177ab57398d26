"""kaiproof.zk

Zero-knowledge statement binding and curve-metadata reconciliation.

The ZK statement proves knowledge of a Poseidon preimage over three field
elements: the capsule hash, the artifact hash and a fixed domain tag, each
mapped into the BN254 scalar field. Proof *generation* is done by an external
prover; this module only binds inputs and checks metadata. Pairing
verification lives in :mod:`kaiproof.groth16`.

Curve metadata can appear in three places (``zkProof.curve``,
``zkMeta.curve`` and a nested ``bundleRoot.zkMeta.curve``). The reconciler:

- fails with :class:`CurveMismatch` if two explicit values name different
  curve families
- copies an explicit value into the places that lack one, never rewriting an
  explicit value
- infers ``bn128`` only when no curve is given anywhere, the proof carries
  Groth16 point fields and the (protocol, scheme, circuitId) recipe is known

Running it on its own output returns the same output.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from kaiproof.digest import hex_to_bytes, sha256_bytes
from kaiproof.errors import CurveMismatch, PublicInputsContractViolated

logger = logging.getLogger(__name__)

# BN254 scalar field order (Fr)
BN254_FIELD_MODULUS = 0x30644E72E131A029B85045B68181585D2833E84879B9709143E1F593F0000001

ZK_STATEMENT_BINDING = "Poseidon(capsuleHash, svgHash, domainTag)"
ZK_STATEMENT_DOMAIN = "kai.sigil.proof.v1"
ZK_PUBLIC_INPUTS_CONTRACT = "zkPublicInputs[0] == zkPublicInputs[1] == zkPoseidonHash"
ZK_STATEMENT_ENCODING = "sha256-hex mod r (BN254), decimal string"

DEFAULT_ZK_META: Dict[str, str] = {
    "protocol": "groth16",
    "scheme": "groth16-poseidon",
    "circuitId": "sigil_proof",
}

# (protocol, scheme, circuitId) -> curve the circuit is compiled for
KNOWN_RECIPES: Dict[tuple, str] = {
    ("groth16", "groth16-poseidon", "sigil_proof"): "bn128",
}

CURVE_ALIASES: Dict[str, List[str]] = {
    "bn128": ["bn254", "altbn128"],
}

_CURVE_FAMILIES: Dict[str, str] = {
    "bn128": "bn254",
    "bn254": "bn254",
    "altbn128": "bn254",
    "altbn254": "bn254",
    "bls12381": "bls12-381",
}

INFERRED_CURVE_NOTE = "curve inferred from groth16 recipe (no explicit curve in proof or metadata)"


def default_zk_statement() -> Dict[str, str]:
    return {
        "publicInputOf": ZK_STATEMENT_BINDING,
        "domainTag": ZK_STATEMENT_DOMAIN,
        "publicInputsContract": ZK_PUBLIC_INPUTS_CONTRACT,
        "encoding": ZK_STATEMENT_ENCODING,
    }


def curve_family(name: Any) -> Optional[str]:
    """Family of a curve name; ``bn128``, ``bn254`` and ``alt_bn128`` are one family."""

    if not isinstance(name, str) or not name.strip():
        return None
    key = name.strip().lower().replace("_", "").replace("-", "")
    return _CURVE_FAMILIES.get(key, key)


# ---------------------------------------------------------------------------
# Curve reconciliation
# ---------------------------------------------------------------------------


@dataclass
class ZkCurveResult:
    zk_proof: Any
    zk_meta: Any
    curve: Optional[str] = None
    inferred: bool = False
    notes: List[str] = field(default_factory=list)


def _explicit_curve(obj: Any) -> Optional[str]:
    if isinstance(obj, dict):
        c = obj.get("curve")
        if isinstance(c, str) and c.strip():
            return c.strip()
    return None


def _has_groth16_points(proof: Any) -> bool:
    return isinstance(proof, dict) and all(k in proof for k in ("pi_a", "pi_b", "pi_c"))


def _recipe_curve(proof: Any, meta: Any) -> Optional[str]:
    meta_d = meta if isinstance(meta, dict) else {}
    proof_d = proof if isinstance(proof, dict) else {}
    protocol = meta_d.get("protocol") or proof_d.get("protocol")
    key = (protocol, meta_d.get("scheme"), meta_d.get("circuitId"))
    return KNOWN_RECIPES.get(key)


def reconcile_zk_curves(
    zk_proof: Any,
    zk_meta: Any,
    bundle_root: Optional[Dict[str, Any]] = None,
) -> ZkCurveResult:
    """Reconcile curve metadata across proof, metadata and nested bundle root.

    Inputs are not mutated; the result carries reconciled copies.
    """

    proof = copy.deepcopy(zk_proof)
    meta = copy.deepcopy(zk_meta)
    root_meta = bundle_root.get("zkMeta") if isinstance(bundle_root, dict) else None

    sources = [
        ("zkProof.curve", _explicit_curve(proof)),
        ("zkMeta.curve", _explicit_curve(meta)),
        ("bundleRoot.zkMeta.curve", _explicit_curve(root_meta)),
    ]
    explicit = [(where, c) for where, c in sources if c is not None]

    if explicit:
        first_where, first = explicit[0]
        family = curve_family(first)
        for where, c in explicit[1:]:
            if curve_family(c) != family:
                raise CurveMismatch(
                    f"{where}={c!r} conflicts with {first_where}={first!r}",
                    curves={w: v for w, v in explicit},
                )
        if isinstance(proof, dict) and _explicit_curve(proof) is None:
            proof["curve"] = first
        if isinstance(meta, dict) and _explicit_curve(meta) is None:
            meta["curve"] = first
        return ZkCurveResult(zk_proof=proof, zk_meta=meta, curve=first)

    if not _has_groth16_points(proof):
        return ZkCurveResult(zk_proof=proof, zk_meta=meta)

    curve = _recipe_curve(proof, meta)
    if curve is None:
        return ZkCurveResult(zk_proof=proof, zk_meta=meta)

    proof["curve"] = curve
    if isinstance(meta, dict):
        meta["curve"] = curve
        meta["curveAliases"] = list(CURVE_ALIASES.get(curve, []))
        meta["curveNote"] = INFERRED_CURVE_NOTE
    logger.warning("zk curve inferred as %s from groth16 recipe", curve)
    return ZkCurveResult(zk_proof=proof, zk_meta=meta, curve=curve, inferred=True, notes=[INFERRED_CURVE_NOTE])


# ---------------------------------------------------------------------------
# Public inputs
# ---------------------------------------------------------------------------


def build_zk_public_inputs(zk_poseidon_hash: Any) -> List[str]:
    h = str(zk_poseidon_hash)
    return [h, h]


def assert_zk_public_inputs_contract(zk_public_inputs: Any, zk_poseidon_hash: Any) -> None:
    """Require exactly two public inputs, both stringwise equal to ``zkPoseidonHash``."""

    if zk_poseidon_hash is None or str(zk_poseidon_hash) == "":
        raise PublicInputsContractViolated("zkPoseidonHash is missing")
    if not isinstance(zk_public_inputs, (list, tuple)):
        raise PublicInputsContractViolated("zkPublicInputs must be an array")
    if len(zk_public_inputs) != 2:
        raise PublicInputsContractViolated(
            f"zkPublicInputs must have exactly 2 entries, got {len(zk_public_inputs)}"
        )
    a, b = (str(x) for x in zk_public_inputs)
    if a != b:
        raise PublicInputsContractViolated("zkPublicInputs[0] != zkPublicInputs[1]")
    if a != str(zk_poseidon_hash):
        raise PublicInputsContractViolated("zkPublicInputs do not equal zkPoseidonHash")


# ---------------------------------------------------------------------------
# Field mapping
# ---------------------------------------------------------------------------


def hex_to_field(value: str) -> int:
    """Map a hex digest into the BN254 scalar field."""

    return int.from_bytes(hex_to_bytes(value), "big") % BN254_FIELD_MODULUS


def domain_tag_field(domain: str = ZK_STATEMENT_DOMAIN) -> int:
    return int.from_bytes(sha256_bytes(domain), "big") % BN254_FIELD_MODULUS


def zk_statement_field_inputs(capsule_hash: str, svg_hash: str, domain: str = ZK_STATEMENT_DOMAIN) -> List[int]:
    """The three Poseidon inputs of the ZK statement, in circuit order."""

    return [hex_to_field(capsule_hash), hex_to_field(svg_hash), domain_tag_field(domain)]


PoseidonFn = Callable[[Sequence[int]], int]


def compute_zk_poseidon_hash(
    capsule_hash: str,
    svg_hash: str,
    poseidon: PoseidonFn,
    domain: str = ZK_STATEMENT_DOMAIN,
) -> str:
    """Compute ``zkPoseidonHash`` with a caller-supplied Poseidon permutation.

    The permutation must match the prover's circuit parameters; it is passed
    in rather than bundled so one implementation serves both prover and verifier.
    """

    out = int(poseidon(zk_statement_field_inputs(capsule_hash, svg_hash, domain)))
    if not 0 <= out < BN254_FIELD_MODULUS:
        raise ValueError("Poseidon output is not a BN254 field element")
    return str(out)
