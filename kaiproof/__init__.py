"""
kaiproof: offline proof of authorship for sigil artifacts

A sigil is sealed by hashing a proof capsule (who, when), binding it to the
artifact hash and an optional zero-knowledge statement, and signing the
resulting bundle hash with a WebAuthn passkey. Anyone holding the artifact
can verify every link without a server.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │  SEALING                                                                │
    │    session.py      Staged sealing with cancellation on input change     │
    │    kas.py          Passkey registry and KAS-1 author signatures         │
    │    signers.py      Software and FIDO2 authenticators                    │
    │                                                                         │
    │  PROOF OBJECTS                                                          │
    │    capsule.py      KPV-1 proof capsule and verifier slugs               │
    │    bundle.py       KPB-1 bundle root, unsigned projection, bundle hash  │
    │    zk.py           ZK statement binding and curve reconciliation        │
    │    owner.py        OPK-1 owner keys and receive bundles                 │
    │    attestation.py  KAS-ATT-1 attestations and KVR-1 receipts            │
    │                                                                         │
    │  VERIFICATION                                                           │
    │    verify.py       End-to-end bundle / SVG verification                 │
    │    groth16.py      BN254 Groth16 pairing check                          │
    │    webauthn.py     Authenticator data, client data, ES256               │
    │    cache.py        KVC-1 verification cache                             │
    │                                                                         │
    │  FOUNDATIONS                                                            │
    │    canonical.py    RFC 8785 canonical JSON                              │
    │    digest.py       SHA-256, hex, base64url, Base58Check                 │
    │    artifact.py     SVG proof metadata and artifact hashing              │
    │    receipt.py      Share-link codec                                     │
    └─────────────────────────────────────────────────────────────────────────┘
"""

__version__ = "1.0.0"


def __getattr__(name):
    """Lazy import of the public API on first access."""

    if name in ("canonicalize", "canonicalize_str", "UNDEFINED"):
        from kaiproof import canonical
        return getattr(canonical, name)

    if name in ("ProofCapsule", "build_capsule", "hash_proof_capsule", "parse_capsule"):
        from kaiproof import capsule
        return getattr(capsule, name)

    if name in ("ZkInputs", "build_bundle_root", "build_bundle_unsigned", "compute_bundle_hash",
                "seal_bundle", "assert_bundle_hash"):
        from kaiproof import bundle
        return getattr(bundle, name)

    if name in ("KasEngine", "ChallengeScheme", "verify_author_sig"):
        from kaiproof import kas
        return getattr(kas, name)

    if name in ("SoftwareSigner", "Fido2Signer", "Signer"):
        from kaiproof import signers
        return getattr(signers, name)

    if name in ("derive_owner_key", "receive_bundle", "verify_owner_key"):
        from kaiproof import owner
        return getattr(owner, name)

    if name in ("BundleVerifier", "VerificationReport", "SealStatus", "verify_bundle", "verify_svg"):
        from kaiproof import verify
        return getattr(verify, name)

    if name in ("SealSession", "SealedArtifact"):
        from kaiproof import session
        return getattr(session, name)

    if name in ("VerificationCache",):
        from kaiproof import cache
        return getattr(cache, name)

    raise AttributeError(f"module 'kaiproof' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Canonical JSON
    "UNDEFINED",
    "canonicalize",
    "canonicalize_str",
    # Capsule
    "ProofCapsule",
    "build_capsule",
    "hash_proof_capsule",
    "parse_capsule",
    # Bundle
    "ZkInputs",
    "assert_bundle_hash",
    "build_bundle_root",
    "build_bundle_unsigned",
    "compute_bundle_hash",
    "seal_bundle",
    # Author signatures
    "ChallengeScheme",
    "Fido2Signer",
    "KasEngine",
    "Signer",
    "SoftwareSigner",
    "verify_author_sig",
    # Ownership
    "derive_owner_key",
    "receive_bundle",
    "verify_owner_key",
    # Verification
    "BundleVerifier",
    "SealStatus",
    "VerificationCache",
    "VerificationReport",
    "verify_bundle",
    "verify_svg",
    # Sealing
    "SealSession",
    "SealedArtifact",
]
