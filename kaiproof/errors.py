"""kaiproof.errors

Error kinds raised by the proof pipeline.

Integrity violations (hash, signature and contract mismatches) are hard
failures and derive from :class:`IntegrityError`. Authenticator-level
outcomes (user cancelled, prompt already open, no authenticator) are a
separate branch so callers can tell "retry the prompt" apart from "this
bundle is forged".
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class KaiproofError(Exception):
    """Base class for every error raised by kaiproof."""

    code = "KAIPROOF_ERROR"
    retryable = False

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = dict(self.details)
        return out


class CanonicalizationError(KaiproofError, ValueError):
    """A value has no canonical JSON form (NaN, non-string key, bytes, ...)."""

    code = "CANONICALIZATION_ERROR"


class MalformedPayload(KaiproofError, ValueError):
    """A payload could not be decoded into the expected shape."""

    code = "MALFORMED_PAYLOAD"


class ReceiptDecodeError(MalformedPayload):
    """A shared receipt query parameter is unreadable or exceeds size limits."""

    code = "RECEIPT_DECODE_ERROR"


# ---------------------------------------------------------------------------
# Integrity failures
# ---------------------------------------------------------------------------


class IntegrityError(KaiproofError):
    """A recomputed value disagrees with the embedded one."""

    code = "INTEGRITY_ERROR"


class CapsuleHashMismatch(IntegrityError):
    code = "CAPSULE_HASH_MISMATCH"


class BundleHashMismatch(IntegrityError):
    code = "BUNDLE_HASH_MISMATCH"


class ArtifactHashMismatch(IntegrityError):
    code = "ARTIFACT_HASH_MISMATCH"


class SignatureInvalid(IntegrityError):
    code = "SIGNATURE_INVALID"


class CredentialMismatch(IntegrityError):
    """The assertion was produced by a credential other than the expected one."""

    code = "CREDENTIAL_MISMATCH"


class ClientDataMismatch(IntegrityError):
    """clientDataJSON carries the wrong type or challenge."""

    code = "CLIENT_DATA_MISMATCH"


class RpIdMismatch(IntegrityError):
    code = "RP_ID_MISMATCH"


class CurveMismatch(IntegrityError):
    code = "CURVE_MISMATCH"


class PublicInputsContractViolated(IntegrityError):
    code = "PUBLIC_INPUTS_CONTRACT_VIOLATED"


class ZkProofInvalid(IntegrityError):
    code = "ZK_PROOF_INVALID"


class OwnerIdentityMismatch(IntegrityError):
    code = "OWNER_IDENTITY_MISMATCH"


class AttestationInconsistent(IntegrityError):
    """An attestation record does not agree with the bundle it references."""

    code = "ATTESTATION_INCONSISTENT"


class MissingAuthorSignature(KaiproofError):
    """A caller required an author signature and the bundle carries none."""

    code = "MISSING_AUTHOR_SIGNATURE"


# ---------------------------------------------------------------------------
# Authenticator outcomes
# ---------------------------------------------------------------------------


class CredentialUnavailable(KaiproofError):
    """The user or device declined, cancelled or timed out a credential prompt."""

    code = "CREDENTIAL_UNAVAILABLE"
    retryable = True

    def __init__(self, message: str = "", reason: Optional[str] = None, **details: Any):
        super().__init__(message, **details)
        self.reason = reason


class PromptBusy(CredentialUnavailable):
    """Another credential prompt for the same identity is still open."""

    code = "PROMPT_BUSY"


class WebAuthnUnavailable(KaiproofError):
    """No usable authenticator exists in this environment."""

    code = "WEBAUTHN_UNAVAILABLE"


class StageSuperseded(CredentialUnavailable):
    """A sealing stage was cancelled because its inputs changed."""

    code = "STAGE_SUPERSEDED"
