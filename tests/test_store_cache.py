import json

import pytest

from kaiproof.cache import (
    CACHE_RECORD_VERSION,
    VerificationCache,
    build_cache_key,
    build_cache_record,
)
from kaiproof.digest import sha256_hex
from kaiproof.store import JsonFileStore, MemoryStore

BUNDLE_HASH = sha256_hex("bundle")
POSEIDON = "12345"


class TestMemoryStore:

    def test_get_set_delete(self):
        store = MemoryStore()
        store.set("a", "1")
        assert store.get("a") == "1"
        assert store.delete("a")
        assert not store.delete("a")
        assert store.get("a") is None

    def test_lru_eviction(self):
        store = MemoryStore(max_entries=2)
        store.set("a", "1")
        store.set("b", "2")
        store.get("a")
        store.set("c", "3")
        assert store.keys() == ["a", "c"]
        assert store.evictions == 1
        assert len(store) == 2

    def test_values_must_be_strings(self):
        with pytest.raises(TypeError):
            MemoryStore().set("a", 1)

    def test_json_helpers(self):
        store = MemoryStore()
        store.set_json("k", {"b": 1, "a": [1, 2]})
        assert store.get("k") == '{"a":[1,2],"b":1}'
        assert store.get_json("k") == {"a": [1, 2], "b": 1}
        store.set("bad", "{oops")
        assert store.get_json("bad") is None

    def test_clear_by_prefix(self):
        store = MemoryStore()
        for key in ("x:1", "x:2", "y:1"):
            store.set(key, "v")
        assert store.clear("x:") == 2
        assert list(store) == ["y:1"]


class TestJsonFileStore:

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "nested" / "store.json"
        JsonFileStore(path).set("a", "1")
        assert JsonFileStore(path).get("a") == "1"
        assert json.loads(path.read_text(encoding="utf-8")) == {"a": "1"}

    def test_missing_file_is_empty(self, tmp_path):
        store = JsonFileStore(tmp_path / "absent.json")
        assert store.get("a") is None
        assert store.keys() == []
        assert not store.delete("a")

    @pytest.mark.parametrize("content", ["{truncated", "[1, 2]", '"text"'])
    def test_unreadable_file_treated_as_empty(self, tmp_path, content):
        path = tmp_path / "store.json"
        path.write_text(content, encoding="utf-8")
        store = JsonFileStore(path)
        assert store.get("a") is None
        store.set("a", "1")
        assert JsonFileStore(path).get("a") == "1"

    def test_non_string_values_dropped_on_read(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text(json.dumps({"a": "1", "b": 2}), encoding="utf-8")
        assert JsonFileStore(path).keys() == ["a"]

    def test_no_temp_files_left_behind(self, tmp_path):
        store = JsonFileStore(tmp_path / "store.json")
        store.set("a", "1")
        store.set("b", "2")
        store.delete("a")
        assert [p.name for p in tmp_path.iterdir()] == ["store.json"]


class TestVerificationCache:

    def test_cache_key(self):
        key = build_cache_key(BUNDLE_HASH, POSEIDON, "KVB-1.0")
        assert key == "kvb:" + sha256_hex(f"{BUNDLE_HASH}|{POSEIDON}|KVB-1.0")
        assert build_cache_key(BUNDLE_HASH, POSEIDON, "KVB-2.0") != key

    def test_record_shape(self):
        record = build_cache_record(BUNDLE_HASH, POSEIDON, verified_at_pulse=10, verifier="v1", zk_verified=True)
        assert record["v"] == CACHE_RECORD_VERSION
        assert record["cacheKey"] == build_cache_key(BUNDLE_HASH, POSEIDON)
        assert record["verifiedAtPulse"] == 10
        assert record["verifier"] == "v1"
        assert record["zkVerifiedCached"] is True
        assert record["expiresAtPulse"] is None

    def test_miss_then_hit(self):
        cache = VerificationCache()
        assert cache.get(BUNDLE_HASH, POSEIDON) is None
        cache.record_verified(BUNDLE_HASH, POSEIDON, verified_at_pulse=10)
        hit = cache.get(BUNDLE_HASH, POSEIDON)
        assert hit["bundleHash"] == BUNDLE_HASH
        assert hit["zkVerifiedCached"] is True
        assert cache.metrics.hits == 1 and cache.metrics.misses == 1
        assert cache.metrics.to_dict()["hit_ratio"] == 0.5

    def test_version_is_part_of_the_key(self):
        cache = VerificationCache(version="KVB-1.0")
        cache.record_verified(BUNDLE_HASH, POSEIDON)
        assert cache.get(BUNDLE_HASH, POSEIDON, version="KVB-2.0") is None
        assert VerificationCache(cache.store, version="KVB-2.0").get(BUNDLE_HASH, POSEIDON) is None

    def test_record_under_explicit_version(self):
        cache = VerificationCache(version="KVB-1.0")
        record = cache.record_verified(BUNDLE_HASH, POSEIDON, version="KVB-2.0")
        assert record["verificationVersion"] == "KVB-2.0"
        assert cache.get(BUNDLE_HASH, POSEIDON) is None
        assert cache.get(BUNDLE_HASH, POSEIDON, version="KVB-2.0")["cacheKey"] == record["cacheKey"]

    def test_hit_revalidated_against_lookup(self, caplog):
        """A record stored under the right key but describing another bundle is a miss."""
        store = MemoryStore()
        cache = VerificationCache(store)
        key = build_cache_key(BUNDLE_HASH, POSEIDON)
        forged = build_cache_record(sha256_hex("other"), POSEIDON)
        forged["cacheKey"] = key
        store.set_json(key, forged)

        with caplog.at_level("WARNING", logger="kaiproof"):
            assert cache.get(BUNDLE_HASH, POSEIDON) is None
        assert cache.metrics.rejected == 1
        (record,) = caplog.records
        assert record.name == "kaiproof.cache.verification"
        assert record.layer == "cache"
        assert record.context == {"cache_key": key}

    @pytest.mark.parametrize("raw", ["{oops", "[]", '{"v": "KVC-1"}'])
    def test_unreadable_records_are_misses(self, raw):
        store = MemoryStore()
        store.set(build_cache_key(BUNDLE_HASH, POSEIDON), raw)
        assert VerificationCache(store).get(BUNDLE_HASH, POSEIDON) is None

    def test_expiry_by_pulse(self):
        cache = VerificationCache()
        cache.record_verified(BUNDLE_HASH, POSEIDON, expires_at_pulse=100)
        assert cache.get(BUNDLE_HASH, POSEIDON, current_pulse=99) is not None
        assert cache.get(BUNDLE_HASH, POSEIDON, current_pulse=100) is None
        assert cache.get(BUNDLE_HASH, POSEIDON) is not None
        assert cache.metrics.expired == 1

    def test_put_rejects_inconsistent_key(self):
        record = build_cache_record(BUNDLE_HASH, POSEIDON)
        record["cacheKey"] = "kvb:" + "0" * 64
        with pytest.raises(ValueError):
            VerificationCache().put(record)

    def test_last_write_wins(self):
        cache = VerificationCache()
        cache.record_verified(BUNDLE_HASH, POSEIDON, verifier="first")
        cache.record_verified(BUNDLE_HASH, POSEIDON, verifier="second")
        assert cache.get(BUNDLE_HASH, POSEIDON)["verifier"] == "second"
        assert cache.metrics.writes == 2

    def test_invalidate_and_clear(self):
        store = MemoryStore()
        store.set("unrelated", "keep")
        cache = VerificationCache(store)
        cache.record_verified(BUNDLE_HASH, POSEIDON)
        cache.record_verified(sha256_hex("b2"), POSEIDON)

        assert cache.invalidate(BUNDLE_HASH, POSEIDON)
        assert cache.get(BUNDLE_HASH, POSEIDON) is None
        assert cache.clear() == 1
        assert store.get("unrelated") == "keep"

    def test_file_backed_cache(self, tmp_path):
        path = tmp_path / "cache.json"
        VerificationCache(JsonFileStore(path)).record_verified(BUNDLE_HASH, POSEIDON)
        assert VerificationCache(JsonFileStore(path)).get(BUNDLE_HASH, POSEIDON) is not None
