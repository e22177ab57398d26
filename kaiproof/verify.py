"""kaiproof.verify

Offline verification of a sealed proof bundle (or an SVG carrying one).

The pipeline re-derives every value from canonical inputs and compares it
with what the bundle claims:

    1. shape            (JSON Schema)
    2. capsuleHash      sha256(JCS(proofCapsule))
    3. svgHash          when the artifact text is available
    4. bundleHash       over the unsigned projection, and any nested root copy
    5. author seal      KAS-1 assertion over the bundle-hash challenge
    6. ZK seal          public-input contract, curve agreement, Groth16 pairing

Integrity failures raise. Seals that are simply not there are reported as
``SealStatus.NA``; a ZK proof that cannot be checked because no verification
key is configured is ``SealStatus.UNAVAILABLE``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from kaiproof.artifact import assert_svg_hash, extract_proof_metadata
from kaiproof.bundle import assert_bundle_hash, assert_bundle_root_consistent, compute_bundle_hash, parse_bundle
from kaiproof.cache import DEFAULT_VERIFICATION_VERSION, VerificationCache
from kaiproof.capsule import assert_capsule_hash
from kaiproof.errors import MalformedPayload, MissingAuthorSignature
from kaiproof.groth16 import VerificationKey, verify_zk_bundle
from kaiproof.kas import ChallengeScheme, verify_author_sig
from kaiproof.observability import KaiproofLayer, correlation_scope, get_correlation_id, get_logger
from kaiproof.result import unwrap
from kaiproof.zk import assert_zk_public_inputs_contract, reconcile_zk_curves

log = get_logger("pipeline", KaiproofLayer.VERIFY)


class SealStatus(Enum):
    """Outcome of one seal check."""
    VALID = "valid"
    NA = "na"
    UNAVAILABLE = "unavailable"


@dataclass
class SealResult:
    """Result of checking a single seal."""
    name: str
    status: SealStatus
    message: str = ""
    cached: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name, "status": self.status.value}
        if self.message:
            out["message"] = self.message
        if self.cached:
            out["cached"] = True
        if self.metadata:
            out["metadata"] = self.metadata
        return out


@dataclass
class VerificationReport:
    """Everything a verifier established about one bundle."""
    bundle_hash: str
    capsule_hash: str
    svg_hash: str
    svg_checked: bool
    author: SealResult
    zk: SealResult
    verifier_slug: str = ""
    pulse: Optional[int] = None
    zk_poseidon_hash: Optional[str] = None
    notes: List[str] = field(default_factory=list)
    correlation_id: str = ""
    duration_ms: float = 0.0

    @property
    def sealed(self) -> bool:
        """True when both seals verified (not merely absent)."""
        return self.author.status is SealStatus.VALID and self.zk.status is SealStatus.VALID

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bundleHash": self.bundle_hash,
            "capsuleHash": self.capsule_hash,
            "svgHash": self.svg_hash,
            "svgChecked": self.svg_checked,
            "verifierSlug": self.verifier_slug,
            "pulse": self.pulse,
            "zkPoseidonHash": self.zk_poseidon_hash,
            "author": self.author.to_dict(),
            "zk": self.zk.to_dict(),
            "sealed": self.sealed,
            "notes": list(self.notes),
            "correlationId": self.correlation_id,
            "durationMs": round(self.duration_ms, 2),
        }


@dataclass
class VerifyOptions:
    """Per-call verification policy."""
    rp_id: Optional[Union[str, Sequence[str]]] = None
    scheme: ChallengeScheme = ChallengeScheme.BUNDLE_HASH
    require_author_sig: bool = False
    require_user_verified: bool = False
    expected_cred_id: Optional[str] = None
    current_pulse: Optional[int] = None
    verifier: Optional[str] = None


class BundleVerifier:
    """
    Verifies bundles against an optional verification key and cache.

    Example:
        verifier = BundleVerifier(verification_key=load_verification_key(path))
        report = verifier.verify_svg(svg_text, VerifyOptions(rp_id="phi.network"))
    """

    def __init__(
        self,
        verification_key: Optional[VerificationKey] = None,
        cache: Optional[VerificationCache] = None,
        verification_version: str = DEFAULT_VERIFICATION_VERSION,
    ):
        self.verification_key = verification_key
        self.cache = cache
        self.verification_version = verification_version

    # -- seals -------------------------------------------------------------

    def _verify_author(self, bundle: Dict[str, Any], bundle_hash: str, options: VerifyOptions) -> SealResult:
        author_sig = bundle.get("authorSig")
        if author_sig is None:
            if options.require_author_sig:
                raise MissingAuthorSignature("bundle carries no author signature")
            return SealResult("author", SealStatus.NA, "no author signature")
        verify_author_sig(
            bundle_hash,
            author_sig,
            rp_id=options.rp_id,
            scheme=options.scheme,
            expected_cred_id=options.expected_cred_id,
            require_user_verified=options.require_user_verified,
        )
        return SealResult("author", SealStatus.VALID, metadata={"credId": author_sig.get("credId")})

    def _verify_zk(self, bundle: Dict[str, Any], bundle_hash: str, options: VerifyOptions, notes: List[str]) -> SealResult:
        poseidon = bundle.get("zkPoseidonHash")
        if all(bundle.get(k) is None for k in ("zkPoseidonHash", "zkProof", "zkPublicInputs")):
            return SealResult("zk", SealStatus.NA, "no ZK statement")

        assert_zk_public_inputs_contract(bundle.get("zkPublicInputs"), poseidon)
        reconciled = reconcile_zk_curves(bundle.get("zkProof"), bundle.get("zkMeta"), bundle.get("bundleRoot"))
        notes.extend(reconciled.notes)
        meta = {"curve": reconciled.curve} if reconciled.curve else {}

        if reconciled.zk_proof is None:
            return SealResult("zk", SealStatus.NA, "ZK statement carries no proof", metadata=meta)

        if self.cache is not None:
            hit = self.cache.get(bundle_hash, poseidon, self.verification_version, options.current_pulse)
            if hit is not None and hit.get("zkVerifiedCached"):
                log.debug("zk verification served from cache", operation="zk", bundle_hash=bundle_hash)
                return SealResult("zk", SealStatus.VALID, cached=True, metadata=meta)

        if self.verification_key is None:
            return SealResult("zk", SealStatus.UNAVAILABLE, "no verification key configured", metadata=meta)

        verify_zk_bundle(
            self.verification_key,
            reconciled.zk_proof,
            bundle.get("zkPublicInputs"),
            poseidon,
            reconciled.zk_meta,
        )
        if self.cache is not None:
            self.cache.record_verified(
                bundle_hash,
                poseidon,
                version=self.verification_version,
                verified_at_pulse=options.current_pulse,
                verifier=options.verifier,
            )
        return SealResult("zk", SealStatus.VALID, metadata=meta)

    # -- entry points ------------------------------------------------------

    def verify_bundle(
        self,
        bundle: Any,
        svg_text: Optional[str] = None,
        options: Optional[VerifyOptions] = None,
    ) -> VerificationReport:
        """Verify a bundle dict, optionally against the artifact text it came from.

        Runs under the caller's correlation id when one is set, otherwise
        under a fresh one per call.
        """

        with correlation_scope(get_correlation_id() or None) as correlation_id:
            return self._verify_bundle(bundle, svg_text, options or VerifyOptions(), correlation_id)

    def _verify_bundle(
        self,
        bundle: Any,
        svg_text: Optional[str],
        options: VerifyOptions,
        correlation_id: str,
    ) -> VerificationReport:
        start = time.monotonic()
        try:
            bundle = unwrap(parse_bundle(bundle))
            notes: List[str] = []

            capsule_hash = assert_capsule_hash(bundle["proofCapsule"], bundle["capsuleHash"])
            svg_hash = bundle["svgHash"]
            if svg_text is not None:
                assert_svg_hash(svg_text, svg_hash)

            assert_bundle_root_consistent(bundle)
            if "bundleHash" in bundle:
                bundle_hash = assert_bundle_hash(bundle)
            else:
                bundle_hash = compute_bundle_hash(bundle)
                notes.append("bundleHash absent; computed from the unsigned bundle")

            author = self._verify_author(bundle, bundle_hash, options)
            zk = self._verify_zk(bundle, bundle_hash, options, notes)
        except Exception as ex:
            log.warning(
                "bundle verification failed",
                operation="verify",
                error_code=getattr(ex, "code", type(ex).__name__),
                duration_ms=(time.monotonic() - start) * 1000,
            )
            raise

        capsule = bundle["proofCapsule"]
        report = VerificationReport(
            bundle_hash=bundle_hash,
            capsule_hash=capsule_hash,
            svg_hash=svg_hash,
            svg_checked=svg_text is not None,
            author=author,
            zk=zk,
            verifier_slug=capsule.get("verifierSlug", ""),
            pulse=capsule.get("pulse"),
            zk_poseidon_hash=bundle.get("zkPoseidonHash"),
            notes=notes,
            correlation_id=correlation_id,
            duration_ms=(time.monotonic() - start) * 1000,
        )
        log.info(
            "bundle verified",
            operation="verify",
            duration_ms=report.duration_ms,
            bundle_hash=bundle_hash,
            author=author.status.value,
            zk=zk.status.value,
            zk_cached=zk.cached,
        )
        return report

    def verify_svg(self, svg_text: str, options: Optional[VerifyOptions] = None) -> VerificationReport:
        """Extract the embedded bundle from an SVG and verify it, including svgHash."""

        bundle = extract_proof_metadata(svg_text)
        if not bundle.ok:
            raise MalformedPayload(f"SVG carries no readable proof bundle: {bundle}")
        return self.verify_bundle(unwrap(bundle), svg_text=svg_text, options=options)


def verify_bundle(
    bundle: Any,
    svg_text: Optional[str] = None,
    verification_key: Optional[VerificationKey] = None,
    cache: Optional[VerificationCache] = None,
    **options: Any,
) -> VerificationReport:
    return BundleVerifier(verification_key, cache).verify_bundle(bundle, svg_text, VerifyOptions(**options))


def verify_svg(
    svg_text: str,
    verification_key: Optional[VerificationKey] = None,
    cache: Optional[VerificationCache] = None,
    **options: Any,
) -> VerificationReport:
    return BundleVerifier(verification_key, cache).verify_svg(svg_text, VerifyOptions(**options))


__all__ = [
    "BundleVerifier",
    "SealResult",
    "SealStatus",
    "VerificationReport",
    "VerifyOptions",
    "verify_bundle",
    "verify_svg",
]
