"""kaiproof.groth16

Groth16 verification over BN254 (``bn128`` in snarkjs naming).

Verification keys and proofs use the snarkjs JSON layout:

    vkey:  {protocol, curve, nPublic, vk_alpha_1, vk_beta_2, vk_gamma_2, vk_delta_2, IC}
    proof: {pi_a, pi_b, pi_c, protocol, curve}

G1 points are ``[x, y, z]`` decimal strings (affine, ``z == "1"``), G2 points are
``[[x.c0, x.c1], [y.c0, y.c1], [z.c0, z.c1]]``. The pairing check is

    e(-A, B) * e(alpha, beta) * e(vk_x, gamma) * e(C, delta) == 1

with ``vk_x = IC[0] + sum(x_i * IC[i + 1])``.
"""

from __future__ import annotations

import json
import logging
import pathlib
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple, Union

from py_ecc.optimized_bn128 import (
    FQ,
    FQ2,
    FQ12,
    add,
    b,
    b2,
    curve_order,
    field_modulus,
    is_on_curve,
    multiply,
    neg,
    pairing,
)

from kaiproof.errors import CurveMismatch, MalformedPayload, ZkProofInvalid
from kaiproof.observability import KaiproofLayer, get_logger, timed_operation
from kaiproof.zk import assert_zk_public_inputs_contract, curve_family

logger = logging.getLogger(__name__)
zk_log = get_logger("groth16", KaiproofLayer.ZK)

G1Point = Tuple[FQ, FQ, FQ]
G2Point = Tuple[FQ2, FQ2, FQ2]

SUPPORTED_CURVE_FAMILY = "bn254"


def _int(value: Any, modulus: int, what: str) -> int:
    try:
        n = int(str(value), 10)
    except (TypeError, ValueError):
        raise MalformedPayload(f"{what} is not a decimal integer") from None
    if not 0 <= n < modulus:
        raise MalformedPayload(f"{what} is out of range")
    return n


def parse_g1(coords: Any, what: str = "G1 point") -> G1Point:
    if not isinstance(coords, (list, tuple)) or len(coords) not in (2, 3):
        raise MalformedPayload(f"{what} must be [x, y, z]")
    x = _int(coords[0], field_modulus, f"{what}.x")
    y = _int(coords[1], field_modulus, f"{what}.y")
    z = _int(coords[2], field_modulus, f"{what}.z") if len(coords) == 3 else 1
    if z == 0:
        point = (FQ(1), FQ(1), FQ(0))
    else:
        zi = pow(z, -1, field_modulus)
        point = (FQ(x * zi), FQ(y * zi), FQ(1))
    if not is_on_curve(point, b):
        raise ZkProofInvalid(f"{what} is not on the curve")
    return point


def parse_g2(coords: Any, what: str = "G2 point") -> G2Point:
    if not isinstance(coords, (list, tuple)) or len(coords) not in (2, 3):
        raise MalformedPayload(f"{what} must be [[x0, x1], [y0, y1], [z0, z1]]")
    parts = []
    for i, pair in enumerate(coords):
        if not isinstance(pair, (list, tuple)) or len(pair) != 2:
            raise MalformedPayload(f"{what}[{i}] must be a pair")
        parts.append(FQ2([_int(pair[0], field_modulus, what), _int(pair[1], field_modulus, what)]))
    if len(parts) == 2:
        parts.append(FQ2.one())
    point = (parts[0], parts[1], parts[2])
    if not is_on_curve(point, b2):
        raise ZkProofInvalid(f"{what} is not on the twist curve")
    return point


def _fq_int(value: Any) -> int:
    return value.n if hasattr(value, "n") else int(value)


def g1_to_json(point: G1Point) -> List[str]:
    x, y, z = point
    if z == FQ(0):
        return ["0", "1", "0"]
    return [str(_fq_int(x / z)), str(_fq_int(y / z)), "1"]


def g2_to_json(point: G2Point) -> List[List[str]]:
    x, y, z = point
    ax, ay = x / z, y / z
    return [
        [str(_fq_int(ax.coeffs[0])), str(_fq_int(ax.coeffs[1]))],
        [str(_fq_int(ay.coeffs[0])), str(_fq_int(ay.coeffs[1]))],
        ["1", "0"],
    ]


# ---------------------------------------------------------------------------
# Verification key
# ---------------------------------------------------------------------------


@dataclass
class VerificationKey:
    alpha_1: G1Point
    beta_2: G2Point
    gamma_2: G2Point
    delta_2: G2Point
    ic: List[G1Point]
    n_public: int
    curve: str = "bn128"
    protocol: str = "groth16"

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "VerificationKey":
        if not isinstance(obj, dict):
            raise MalformedPayload("verification key must be a JSON object")
        protocol = str(obj.get("protocol") or "groth16")
        if protocol != "groth16":
            raise MalformedPayload(f"unsupported proof protocol {protocol!r}")
        curve = str(obj.get("curve") or "bn128")
        if curve_family(curve) != SUPPORTED_CURVE_FAMILY:
            raise CurveMismatch(f"verification key curve {curve!r} is not supported")
        ic_raw = obj.get("IC")
        if not isinstance(ic_raw, list) or not ic_raw:
            raise MalformedPayload("verification key IC must be a non-empty array")
        ic = [parse_g1(p, f"IC[{i}]") for i, p in enumerate(ic_raw)]
        n_public = int(obj.get("nPublic", len(ic) - 1))
        if n_public != len(ic) - 1:
            raise MalformedPayload("nPublic does not match the IC length")
        return cls(
            alpha_1=parse_g1(obj.get("vk_alpha_1"), "vk_alpha_1"),
            beta_2=parse_g2(obj.get("vk_beta_2"), "vk_beta_2"),
            gamma_2=parse_g2(obj.get("vk_gamma_2"), "vk_gamma_2"),
            delta_2=parse_g2(obj.get("vk_delta_2"), "vk_delta_2"),
            ic=ic,
            n_public=n_public,
            curve=curve,
            protocol=protocol,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "curve": self.curve,
            "nPublic": self.n_public,
            "vk_alpha_1": g1_to_json(self.alpha_1),
            "vk_beta_2": g2_to_json(self.beta_2),
            "vk_gamma_2": g2_to_json(self.gamma_2),
            "vk_delta_2": g2_to_json(self.delta_2),
            "IC": [g1_to_json(p) for p in self.ic],
        }


def load_verification_key(path: Union[str, pathlib.Path]) -> VerificationKey:
    p = pathlib.Path(path)
    try:
        obj = json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as ex:
        raise MalformedPayload(f"verification key {p} is not JSON: {ex.msg}") from ex
    return VerificationKey.from_dict(obj)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


@timed_operation(zk_log, "groth16_pairing")
def groth16_verify(vkey: VerificationKey, proof: Dict[str, Any], public_signals: Sequence[Any]) -> bool:
    """Run the pairing check. Malformed input raises; a failed check returns False."""

    if not isinstance(proof, dict):
        raise MalformedPayload("zkProof must be a JSON object")
    if len(public_signals) != vkey.n_public:
        raise MalformedPayload(
            f"expected {vkey.n_public} public signals, got {len(public_signals)}"
        )

    a = parse_g1(proof.get("pi_a"), "pi_a")
    b_pt = parse_g2(proof.get("pi_b"), "pi_b")
    c = parse_g1(proof.get("pi_c"), "pi_c")

    vk_x = vkey.ic[0]
    for i, signal in enumerate(public_signals):
        x = _int(signal, curve_order, f"publicSignals[{i}]")
        vk_x = add(vk_x, multiply(vkey.ic[i + 1], x))

    acc = FQ12.one()
    acc = acc * pairing(b_pt, neg(a))
    acc = acc * pairing(vkey.beta_2, vkey.alpha_1)
    acc = acc * pairing(vkey.gamma_2, vk_x)
    acc = acc * pairing(vkey.delta_2, c)
    return acc == FQ12.one()


def check_proof_curve(vkey: VerificationKey, zk_proof: Any, zk_meta: Any = None) -> None:
    for where, obj in (("zkProof", zk_proof), ("zkMeta", zk_meta)):
        curve = obj.get("curve") if isinstance(obj, dict) else None
        if curve and curve_family(curve) != curve_family(vkey.curve):
            raise CurveMismatch(
                f"{where}.curve={curve!r} does not match verification key curve {vkey.curve!r}"
            )


def verify_zk_bundle(
    vkey: VerificationKey,
    zk_proof: Any,
    zk_public_inputs: Any,
    zk_poseidon_hash: Any,
    zk_meta: Any = None,
) -> None:
    """Verify a bundle's ZK seal; the public-input contract is checked before any pairing."""

    assert_zk_public_inputs_contract(zk_public_inputs, zk_poseidon_hash)
    check_proof_curve(vkey, zk_proof, zk_meta)
    if not groth16_verify(vkey, zk_proof, list(zk_public_inputs)):
        raise ZkProofInvalid("Groth16 pairing check failed")
    logger.debug("groth16 proof verified for %s", zk_poseidon_hash)


__all__ = [
    "VerificationKey",
    "check_proof_curve",
    "g1_to_json",
    "g2_to_json",
    "groth16_verify",
    "load_verification_key",
    "parse_g1",
    "parse_g2",
    "verify_zk_bundle",
]
