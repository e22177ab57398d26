"""kaiproof.kas

KAS-1 author signatures: a WebAuthn ES256 assertion over a challenge bound to
the bundle hash.

Challenge derivation
    The canonical challenge is the raw bundle-hash bytes,
    ``base64url(bytes.fromhex(bundleHash))``. This is the form attestation
    records check. The domain-separated form
    ``SHA-256("KAS-1|bundleHash|" + bundleHash)`` is supported only when a
    caller selects :attr:`ChallengeScheme.DOMAIN_HASH` explicitly; verifiers
    never fall back from one form to the other on their own.

Passkeys are kept in an injected :class:`~kaiproof.store.KeyValueStore`
keyed by identity key. At most one credential prompt per identity is in
flight; a second concurrent request fails fast with :class:`PromptBusy`.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional, Sequence, Set, Union

from kaiproof.digest import b64url_decode, b64url_encode, hex_to_bytes, sha256_bytes
from kaiproof.errors import (
    ClientDataMismatch,
    CredentialMismatch,
    CredentialUnavailable,
    KaiproofError,
    MissingAuthorSignature,
    PromptBusy,
    WebAuthnUnavailable,
)
from kaiproof.observability import KaiproofLayer, get_logger
from kaiproof.result import ParseResult, parse_with_schema, unwrap
from kaiproof.signers import (
    INVALID_STATE,
    NOT_FOUND,
    AssertionOptions,
    RegistrationOptions,
    Signer,
)
from kaiproof.store import KeyValueStore, MemoryStore
from kaiproof.webauthn import parse_attestation_object, verify_assertion

log = get_logger("engine", KaiproofLayer.KAS)

KAS_VERSION = "KAS-1"
KAS_ALG = "webauthn-es256"
PASSKEY_STORE_PREFIX = "kai:kas1:passkey:"
CANONICAL_RP_ID = "phi.network"
DEFAULT_PROMPT_TIMEOUT = 60.0

# Cached credential ids that the authenticator no longer recognises.
_STALE_REASONS = frozenset({NOT_FOUND, INVALID_STATE})


class ChallengeScheme(Enum):
    BUNDLE_HASH = "bundle-hash"
    DOMAIN_HASH = "kas1-domain"


def challenge_bytes(bundle_hash: str, scheme: ChallengeScheme = ChallengeScheme.BUNDLE_HASH) -> bytes:
    if scheme is ChallengeScheme.DOMAIN_HASH:
        return sha256_bytes(f"KAS-1|bundleHash|{bundle_hash}")
    return hex_to_bytes(bundle_hash)


def expected_challenge(bundle_hash: str, scheme: ChallengeScheme = ChallengeScheme.BUNDLE_HASH) -> str:
    return b64url_encode(challenge_bytes(bundle_hash, scheme))


def user_handle(identity_key: str) -> bytes:
    """16-byte resident-credential user handle for an identity key."""

    return sha256_bytes(f"KAS-1|identityKey|{identity_key}")[:16]


# ---------------------------------------------------------------------------
# Passkey registry
# ---------------------------------------------------------------------------


@dataclass
class StoredPasskey:
    cred_id: str
    pub_key_jwk: Dict[str, str]
    rp_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"credId": self.cred_id, "pubKeyJwk": dict(self.pub_key_jwk)}
        if self.rp_id:
            out["rpId"] = self.rp_id
        return out


class PasskeyStore:
    """Passkey records keyed by identity key; unreadable records read as absent."""

    def __init__(self, store: KeyValueStore, prefix: str = PASSKEY_STORE_PREFIX):
        self.store = store
        self.prefix = prefix

    def load(self, identity_key: str) -> Optional[StoredPasskey]:
        obj = self.store.get_json(self.prefix + identity_key)
        if not isinstance(obj, dict):
            return None
        cred_id, jwk = obj.get("credId"), obj.get("pubKeyJwk")
        if not isinstance(cred_id, str) or not cred_id or not isinstance(jwk, dict):
            log.warning("ignoring malformed passkey record", operation="load_passkey", identity_key=identity_key)
            return None
        if jwk.get("kty") != "EC" or jwk.get("crv") != "P-256":
            return None
        return StoredPasskey(cred_id=cred_id, pub_key_jwk=jwk, rp_id=str(obj.get("rpId") or ""))

    def save(self, identity_key: str, passkey: StoredPasskey) -> None:
        self.store.set_json(self.prefix + identity_key, passkey.to_dict())

    def clear(self, identity_key: str) -> bool:
        return self.store.delete(self.prefix + identity_key)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class KasEngine:
    """Registers passkeys and produces KAS-1 author signatures."""

    def __init__(
        self,
        signer: Signer,
        store: Optional[KeyValueStore] = None,
        rp_id: str = CANONICAL_RP_ID,
        rp_name: str = "Kai-Voh",
        timeout: float = DEFAULT_PROMPT_TIMEOUT,
        scheme: ChallengeScheme = ChallengeScheme.BUNDLE_HASH,
    ):
        self.signer = signer
        self.passkeys = PasskeyStore(store if store is not None else MemoryStore())
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.timeout = timeout
        self.scheme = scheme
        self._prompting: Set[str] = set()

    @contextlib.asynccontextmanager
    async def _prompt_slot(self, identity_key: str) -> AsyncIterator[None]:
        if identity_key in self._prompting:
            raise PromptBusy(f"a credential prompt for {identity_key} is already open", reason="busy")
        self._prompting.add(identity_key)
        try:
            yield
        finally:
            self._prompting.discard(identity_key)

    async def _bounded(self, awaitable: Any) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise CredentialUnavailable("credential prompt timed out", reason="timeout") from None

    def _require_signer(self) -> None:
        if not self.signer.available:
            raise WebAuthnUnavailable("no authenticator is available")

    async def _register(self, identity_key: str) -> StoredPasskey:
        options = RegistrationOptions(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user_handle(identity_key),
            user_name=identity_key,
            challenge=os.urandom(32),
            timeout_ms=int(self.timeout * 1000),
        )
        created = await self._bounded(self.signer.create_credential(options))
        attested = parse_attestation_object(created.attestation_object)
        if attested.credential_id != created.credential_id:
            raise CredentialMismatch("attested credential id differs from the returned credential id")
        passkey = StoredPasskey(
            cred_id=b64url_encode(created.credential_id),
            pub_key_jwk=attested.public_key_jwk,
            rp_id=self.rp_id,
        )
        self.passkeys.save(identity_key, passkey)
        log.info("registered passkey", operation="register", identity_key=identity_key)
        return passkey

    async def ensure_passkey(self, identity_key: str) -> StoredPasskey:
        """Return the stored passkey for ``identity_key``, registering one if needed."""

        self._require_signer()
        existing = self.passkeys.load(identity_key)
        if existing is not None:
            return existing
        async with self._prompt_slot(identity_key):
            return await self._register(identity_key)

    async def _assert(self, passkey: StoredPasskey, challenge: bytes) -> Dict[str, Any]:
        options = AssertionOptions(
            rp_id=self.rp_id,
            challenge=challenge,
            allow_credentials=[b64url_decode(passkey.cred_id)],
            timeout_ms=int(self.timeout * 1000),
        )
        assertion = await self._bounded(self.signer.get_assertion(options))
        if b64url_encode(assertion.credential_id) != passkey.cred_id:
            raise CredentialMismatch("authenticator answered with a different credential")
        return {
            "v": KAS_VERSION,
            "alg": KAS_ALG,
            "credId": passkey.cred_id,
            "pubKeyJwk": dict(passkey.pub_key_jwk),
            "challenge": b64url_encode(challenge),
            "signature": b64url_encode(assertion.signature),
            "authenticatorData": b64url_encode(assertion.authenticator_data),
            "clientDataJSON": b64url_encode(assertion.client_data_json),
        }

    async def sign_bundle_hash(self, identity_key: str, bundle_hash: str) -> Dict[str, Any]:
        """Produce a KAS-1 author signature over ``bundle_hash``."""

        return await self.sign_challenge(identity_key, challenge_bytes(bundle_hash, self.scheme))

    async def sign_challenge(self, identity_key: str, challenge: bytes) -> Dict[str, Any]:
        """Assert over raw ``challenge`` bytes with the identity's passkey.

        A cached credential the authenticator reports as unknown is dropped,
        re-registered and used once more. Cancellation is not retried.
        """

        passkey = await self.ensure_passkey(identity_key)
        async with self._prompt_slot(identity_key):
            try:
                return await self._assert(passkey, challenge)
            except CredentialUnavailable as ex:
                if ex.reason not in _STALE_REASONS:
                    raise
                log.warning("stored passkey is stale; re-registering", operation="sign", identity_key=identity_key, reason=ex.reason)
                self.passkeys.clear(identity_key)
                refreshed = await self._register(identity_key)
                return await self._assert(refreshed, challenge)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def parse_author_sig(obj: Any) -> ParseResult[Dict[str, Any]]:
    return parse_with_schema(obj, "author-sig")


def verify_author_sig(
    bundle_hash: str,
    author_sig: Any,
    rp_id: Optional[Union[str, Sequence[str]]] = None,
    scheme: ChallengeScheme = ChallengeScheme.BUNDLE_HASH,
    expected_cred_id: Optional[str] = None,
    require_user_verified: bool = False,
) -> None:
    """Verify a KAS-1 author signature against ``bundle_hash``.

    Raises :class:`MissingAuthorSignature` for ``None``, ``MalformedPayload``
    for a signature object of the wrong shape, and the specific integrity
    error for the first failing check.
    """

    if author_sig is None:
        raise MissingAuthorSignature("bundle carries no author signature")
    sig = unwrap(parse_author_sig(author_sig))

    challenge = expected_challenge(bundle_hash, scheme)
    if sig["challenge"] != challenge:
        raise ClientDataMismatch("authorSig.challenge is not derived from the bundle hash")
    if expected_cred_id is not None and sig["credId"] != expected_cred_id:
        raise CredentialMismatch("authorSig was produced by an unexpected credential")

    verify_assertion(
        public_key_jwk=sig["pubKeyJwk"],
        authenticator_data=b64url_decode(sig["authenticatorData"]),
        client_data_json=b64url_decode(sig["clientDataJSON"]),
        signature=b64url_decode(sig["signature"]),
        expected_challenge=challenge,
        rp_id=rp_id,
        require_user_verified=require_user_verified,
    )


def is_valid_author_sig(bundle_hash: str, author_sig: Any, **kwargs: Any) -> bool:
    try:
        verify_author_sig(bundle_hash, author_sig, **kwargs)
    except (KaiproofError, ValueError):
        return False
    return True


__all__ = [
    "CANONICAL_RP_ID",
    "ChallengeScheme",
    "KasEngine",
    "PasskeyStore",
    "StoredPasskey",
    "challenge_bytes",
    "expected_challenge",
    "is_valid_author_sig",
    "parse_author_sig",
    "user_handle",
    "verify_author_sig",
]
