"""kaiproof.cache

Verification cache (KVC-1): content-addressed memo of "this bundle with this
ZK hash already verified under this verification version".

Entries are advisory. Every hit is re-validated against the lookup
parameters (not just the storage key), and anything unreadable is a miss.
Writes are last-write-wins; two verifiers writing the same record for the
same key race benignly, so no lock is taken around get/put.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from kaiproof.digest import sha256_hex
from kaiproof.observability import KaiproofLayer, get_logger
from kaiproof.result import Ok, parse_with_schema
from kaiproof.store import KeyValueStore, MemoryStore

log = get_logger("verification", KaiproofLayer.CACHE)

CACHE_RECORD_VERSION = "KVC-1"
DEFAULT_VERIFICATION_VERSION = "KVB-1.0"
CACHE_KEY_PREFIX = "kvb:"


def build_cache_key(bundle_hash: str, zk_poseidon_hash: str, version: str = DEFAULT_VERIFICATION_VERSION) -> str:
    return CACHE_KEY_PREFIX + sha256_hex(f"{bundle_hash}|{zk_poseidon_hash}|{version}")


@dataclass
class CacheMetrics:
    hits: int = 0
    misses: int = 0
    rejected: int = 0
    expired: int = 0
    writes: int = 0

    @property
    def hit_ratio(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "rejected": self.rejected,
            "expired": self.expired,
            "writes": self.writes,
            "hit_ratio": round(self.hit_ratio, 4),
        }


def build_cache_record(
    bundle_hash: str,
    zk_poseidon_hash: str,
    version: str = DEFAULT_VERIFICATION_VERSION,
    verified_at_pulse: Optional[int] = None,
    verifier: Optional[str] = None,
    expires_at_pulse: Optional[int] = None,
    zk_verified: Optional[bool] = None,
    created_at_ms: Optional[int] = None,
) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "v": CACHE_RECORD_VERSION,
        "cacheKey": build_cache_key(bundle_hash, zk_poseidon_hash, version),
        "bundleHash": bundle_hash,
        "zkPoseidonHash": zk_poseidon_hash,
        "verificationVersion": version,
        "createdAtMs": created_at_ms if created_at_ms is not None else int(time.time() * 1000),
        "expiresAtPulse": expires_at_pulse,
    }
    if verified_at_pulse is not None:
        record["verifiedAtPulse"] = verified_at_pulse
    if verifier is not None:
        record["verifier"] = verifier
    if zk_verified is not None:
        record["zkVerifiedCached"] = zk_verified
    return record


class VerificationCache:
    """KVC-1 cache over an injected :class:`KeyValueStore`."""

    def __init__(self, store: Optional[KeyValueStore] = None, version: str = DEFAULT_VERIFICATION_VERSION):
        self.store = store if store is not None else MemoryStore(max_entries=1024)
        self.version = version
        self.metrics = CacheMetrics()

    def _valid_record(
        self,
        record: Any,
        key: str,
        bundle_hash: str,
        zk_poseidon_hash: str,
        version: str,
    ) -> bool:
        if not isinstance(parse_with_schema(record, "cache-record"), Ok):
            return False
        return (
            record["cacheKey"] == key
            and record["bundleHash"] == bundle_hash
            and record["zkPoseidonHash"] == zk_poseidon_hash
            and record["verificationVersion"] == version
        )

    def get(
        self,
        bundle_hash: str,
        zk_poseidon_hash: str,
        version: Optional[str] = None,
        current_pulse: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """Return a re-validated record, or None.

        With ``current_pulse`` given, a record whose ``expiresAtPulse`` is at
        or before that pulse is a miss.
        """

        version = version or self.version
        key = build_cache_key(bundle_hash, zk_poseidon_hash, version)
        record = self.store.get_json(key)
        if record is None:
            self.metrics.misses += 1
            return None
        if not self._valid_record(record, key, bundle_hash, zk_poseidon_hash, version):
            log.warning("discarding inconsistent verification cache record", operation="get", cache_key=key)
            self.metrics.rejected += 1
            self.metrics.misses += 1
            return None
        expires = record.get("expiresAtPulse")
        if expires is not None and current_pulse is not None and current_pulse >= expires:
            self.metrics.expired += 1
            self.metrics.misses += 1
            return None
        self.metrics.hits += 1
        return record

    def put(self, record: Dict[str, Any]) -> None:
        """Store ``record`` under its own cacheKey (last write wins)."""

        expected = build_cache_key(
            record["bundleHash"], record["zkPoseidonHash"], record["verificationVersion"]
        )
        if record.get("cacheKey") != expected:
            raise ValueError("cache record cacheKey does not match its fields")
        self.store.set_json(expected, record)
        self.metrics.writes += 1

    def record_verified(
        self,
        bundle_hash: str,
        zk_poseidon_hash: str,
        verified_at_pulse: Optional[int] = None,
        verifier: Optional[str] = None,
        expires_at_pulse: Optional[int] = None,
        zk_verified: Optional[bool] = True,
        version: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = build_cache_record(
            bundle_hash,
            zk_poseidon_hash,
            version or self.version,
            verified_at_pulse=verified_at_pulse,
            verifier=verifier,
            expires_at_pulse=expires_at_pulse,
            zk_verified=zk_verified,
        )
        self.put(record)
        return record

    def invalidate(self, bundle_hash: str, zk_poseidon_hash: str, version: Optional[str] = None) -> bool:
        return self.store.delete(build_cache_key(bundle_hash, zk_poseidon_hash, version or self.version))

    def clear(self) -> int:
        return self.store.clear(CACHE_KEY_PREFIX)
