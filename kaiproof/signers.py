"""kaiproof.signers

The ``Signer`` capability: anything that can create a resident ES256
credential and produce WebAuthn assertions.

- :class:`Fido2Signer` drives a real authenticator through ``python-fido2``
  (installed with the ``webauthn`` extra).
- :class:`SoftwareSigner` keeps P-256 keys in memory and emits byte-exact
  WebAuthn structures (authenticator data, clientDataJSON, CBOR attestation
  object), so the protocol can be exercised without hardware.

Failures are reported with the WebAuthn DOMException names browsers use
(``NotAllowedError``, ``NotFoundError``, ``InvalidStateError``,
``SecurityError``) as :attr:`CredentialUnavailable.reason`.
"""

from __future__ import annotations

import asyncio
import os
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import cbor2
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from kaiproof.digest import b64url_encode, sha256_bytes
from kaiproof.errors import CredentialUnavailable, WebAuthnUnavailable
from kaiproof.webauthn import (
    FLAG_AT,
    FLAG_UP,
    FLAG_UV,
    WEBAUTHN_CREATE,
    WEBAUTHN_GET,
    build_client_data_json,
    der_to_raw,
    public_key_to_cose,
)


NOT_ALLOWED = "NotAllowedError"
NOT_FOUND = "NotFoundError"
INVALID_STATE = "InvalidStateError"
SECURITY = "SecurityError"


@dataclass
class RegistrationOptions:
    rp_id: str
    rp_name: str
    user_id: bytes
    user_name: str
    challenge: bytes
    timeout_ms: int = 60_000
    alg: int = -7
    user_verification: str = "required"
    resident_key: str = "required"
    attestation: str = "none"


@dataclass
class AssertionOptions:
    rp_id: str
    challenge: bytes
    allow_credentials: List[bytes] = field(default_factory=list)
    user_verification: str = "required"
    timeout_ms: int = 60_000


@dataclass
class CreatedCredential:
    credential_id: bytes
    attestation_object: bytes
    client_data_json: bytes


@dataclass
class Assertion:
    credential_id: bytes
    authenticator_data: bytes
    client_data_json: bytes
    signature: bytes
    user_handle: Optional[bytes] = None


class Signer(ABC):
    """Authenticator capability used by :class:`kaiproof.kas.KasEngine`."""

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    async def create_credential(self, options: RegistrationOptions) -> CreatedCredential:
        pass

    @abstractmethod
    async def get_assertion(self, options: AssertionOptions) -> Assertion:
        pass


# ════════════════════════════════════════════════════════════════════════════
# SOFTWARE SIGNER
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class _SoftwareCredential:
    private_key: ec.EllipticCurvePrivateKey
    user_id: bytes
    rp_id: str
    sign_count: int = 0


class SoftwareSigner(Signer):
    """
    In-memory ES256 authenticator.

    Args:
        origin: origin written into clientDataJSON (default ``https://<rpId>``)
        raw_signatures: emit ``r || s`` signatures instead of DER
        user_verified: set the UV flag in authenticator data
    """

    AAGUID = b"\x00" * 16

    def __init__(self, origin: Optional[str] = None, raw_signatures: bool = False, user_verified: bool = True):
        self.origin = origin
        self.raw_signatures = raw_signatures
        self.user_verified = user_verified
        self._credentials: Dict[bytes, _SoftwareCredential] = {}
        self._deny_next: Optional[str] = None
        self.prompts = 0

    def deny_next(self, reason: str = NOT_ALLOWED) -> None:
        """Make the next prompt fail the way a cancelled or stale browser prompt does."""

        self._deny_next = reason

    def forget(self, credential_id: bytes) -> None:
        self._credentials.pop(credential_id, None)

    def _origin(self, rp_id: str) -> str:
        return self.origin or f"https://{rp_id}"

    def _flags(self, attested: bool) -> int:
        flags = FLAG_UP | (FLAG_UV if self.user_verified else 0)
        return flags | FLAG_AT if attested else flags

    def _check_denied(self) -> None:
        self.prompts += 1
        if self._deny_next:
            reason, self._deny_next = self._deny_next, None
            raise CredentialUnavailable(f"authenticator refused the request ({reason})", reason=reason)

    async def create_credential(self, options: RegistrationOptions) -> CreatedCredential:
        self._check_denied()
        if options.alg != -7:
            raise CredentialUnavailable("only ES256 is supported", reason=NOT_ALLOWED)

        private_key = ec.generate_private_key(ec.SECP256R1())
        credential_id = os.urandom(16)
        self._credentials[credential_id] = _SoftwareCredential(private_key, options.user_id, options.rp_id)

        cose = cbor2.dumps(public_key_to_cose(private_key.public_key()))
        auth_data = (
            sha256_bytes(options.rp_id)
            + bytes([self._flags(attested=True)])
            + struct.pack(">I", 0)
            + self.AAGUID
            + struct.pack(">H", len(credential_id))
            + credential_id
            + cose
        )
        attestation_object = cbor2.dumps({"fmt": "none", "attStmt": {}, "authData": auth_data})
        client_data = build_client_data_json(
            b64url_encode(options.challenge), self._origin(options.rp_id), WEBAUTHN_CREATE
        )
        return CreatedCredential(credential_id, attestation_object, client_data)

    async def get_assertion(self, options: AssertionOptions) -> Assertion:
        self._check_denied()
        candidates = [c for c in options.allow_credentials if c in self._credentials]
        if options.allow_credentials and not candidates:
            raise CredentialUnavailable("no matching credential on this authenticator", reason=NOT_FOUND)
        if not candidates:
            candidates = [cid for cid, c in self._credentials.items() if c.rp_id == options.rp_id]
        if not candidates:
            raise CredentialUnavailable("no credential registered for this relying party", reason=NOT_FOUND)

        credential_id = candidates[0]
        cred = self._credentials[credential_id]
        cred.sign_count += 1
        auth_data = (
            sha256_bytes(options.rp_id)
            + bytes([self._flags(attested=False)])
            + struct.pack(">I", cred.sign_count)
        )
        client_data = build_client_data_json(
            b64url_encode(options.challenge), self._origin(options.rp_id), WEBAUTHN_GET
        )
        signature = cred.private_key.sign(auth_data + sha256_bytes(client_data), ec.ECDSA(hashes.SHA256()))
        if self.raw_signatures:
            signature = der_to_raw(signature)
        return Assertion(credential_id, auth_data, client_data, signature, cred.user_id)


# ════════════════════════════════════════════════════════════════════════════
# FIDO2 SIGNER
# ════════════════════════════════════════════════════════════════════════════


def _load_fido2() -> Any:
    try:
        import fido2.client as fido2_client  # type: ignore
        import fido2.hid as fido2_hid  # type: ignore
        import fido2.webauthn as fido2_webauthn  # type: ignore
    except ImportError as ex:  # pragma: no cover - depends on optional extra
        raise WebAuthnUnavailable(
            "python-fido2 is required for hardware authenticators. Install: pip install 'kaiproof[webauthn]'"
        ) from ex
    return fido2_client, fido2_hid, fido2_webauthn


class Fido2Signer(Signer):
    """
    Authenticator backed by a USB/NFC security key via ``python-fido2``.

    The fido2 client API is blocking, so each call runs in a worker thread.
    """

    def __init__(self, origin: str, device: Any = None):
        self.origin = origin
        self._device = device

    @property
    def available(self) -> bool:
        try:
            self._client()
        except WebAuthnUnavailable:
            return False
        return True

    def _client(self) -> Any:
        fido2_client, fido2_hid, _ = _load_fido2()
        device = self._device
        if device is None:
            device = next(iter(fido2_hid.CtapHidDevice.list_devices()), None)
        if device is None:
            raise WebAuthnUnavailable("no FIDO2 authenticator is connected")
        self._device = device
        return fido2_client.Fido2Client(device, self.origin)

    def _map_error(self, ex: Exception) -> CredentialUnavailable:
        fido2_client, _, _ = _load_fido2()
        code = getattr(ex, "code", None)
        err = fido2_client.ClientError.ERR
        if code == err.TIMEOUT:
            return CredentialUnavailable("authenticator prompt timed out", reason="timeout")
        if code == err.DEVICE_INELIGIBLE:
            return CredentialUnavailable("credential is not present on the authenticator", reason=NOT_FOUND)
        if code == err.BAD_REQUEST:
            return CredentialUnavailable(str(ex), reason=SECURITY)
        return CredentialUnavailable(str(ex), reason=NOT_ALLOWED)

    async def create_credential(self, options: RegistrationOptions) -> CreatedCredential:
        fido2_client, _, w = _load_fido2()
        client = self._client()
        pk_options = w.PublicKeyCredentialCreationOptions(
            rp=w.PublicKeyCredentialRpEntity(id=options.rp_id, name=options.rp_name),
            user=w.PublicKeyCredentialUserEntity(
                id=options.user_id, name=options.user_name, display_name=options.user_name
            ),
            challenge=options.challenge,
            pub_key_cred_params=[
                w.PublicKeyCredentialParameters(type=w.PublicKeyCredentialType.PUBLIC_KEY, alg=options.alg)
            ],
            timeout=options.timeout_ms,
            authenticator_selection=w.AuthenticatorSelectionCriteria(
                resident_key=w.ResidentKeyRequirement(options.resident_key),
                user_verification=w.UserVerificationRequirement(options.user_verification),
            ),
            attestation=w.AttestationConveyancePreference(options.attestation),
        )
        try:
            result = await asyncio.to_thread(client.make_credential, pk_options)
        except fido2_client.ClientError as ex:
            raise self._map_error(ex) from ex
        att_obj = result.attestation_object
        credential_id = att_obj.auth_data.credential_data.credential_id
        return CreatedCredential(bytes(credential_id), bytes(att_obj), bytes(result.client_data))

    async def get_assertion(self, options: AssertionOptions) -> Assertion:
        fido2_client, _, w = _load_fido2()
        client = self._client()
        pk_options = w.PublicKeyCredentialRequestOptions(
            challenge=options.challenge,
            timeout=options.timeout_ms,
            rp_id=options.rp_id,
            allow_credentials=[
                w.PublicKeyCredentialDescriptor(type=w.PublicKeyCredentialType.PUBLIC_KEY, id=cid)
                for cid in options.allow_credentials
            ],
            user_verification=w.UserVerificationRequirement(options.user_verification),
        )
        try:
            selection = await asyncio.to_thread(client.get_assertion, pk_options)
        except fido2_client.ClientError as ex:
            raise self._map_error(ex) from ex
        response = selection.get_response(0)
        return Assertion(
            credential_id=bytes(response.credential_id),
            authenticator_data=bytes(response.authenticator_data),
            client_data_json=bytes(response.client_data),
            signature=bytes(response.signature),
            user_handle=bytes(response.user_handle) if response.user_handle else None,
        )
