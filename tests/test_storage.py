"""Tests for cachet.storage: challenge lifecycle and one-time binding.

Every test in the store-parametrised classes runs against both the
in-memory backend and the SQLAlchemy (sqlite file) backend.
"""

from __future__ import annotations

import os
import threading

import pytest

from cachet.storage import (
    BindResult,
    ChallengeState,
    InMemoryStore,
    SqlStore,
    StoreUnavailable,
    build_store,
)

TTL = 300


class TestLifecycle:
    def test_create_is_pending(self, store):
        cid = store.create()
        assert len(cid) == 32
        lk = store.lookup(cid)
        assert lk.state == ChallengeState.PENDING
        assert lk.pubkey is None
        assert not lk.is_bound

    def test_ids_are_unique(self, store):
        assert len({store.create() for _ in range(20)}) == 20

    def test_bind_then_lookup(self, store, wallet):
        cid = store.create()
        assert store.try_bind(cid, wallet.pubkey) == BindResult.BOUND
        lk = store.lookup(cid)
        assert lk.state == ChallengeState.BOUND
        assert lk.pubkey == wallet.pubkey

    def test_second_bind_does_not_overwrite(self, store, wallet, other_wallet):
        cid = store.create()
        store.try_bind(cid, wallet.pubkey)
        assert store.try_bind(cid, other_wallet.pubkey) == BindResult.ALREADY_BOUND
        assert store.try_bind(cid, wallet.pubkey) == BindResult.ALREADY_BOUND
        assert store.lookup(cid).pubkey == wallet.pubkey

    def test_unknown(self, store, wallet):
        cid = os.urandom(32)
        assert store.lookup(cid).state == ChallengeState.NOT_FOUND
        assert store.try_bind(cid, wallet.pubkey) == BindResult.NOT_FOUND


class TestExpiry:
    def test_pending_until_ttl(self, store, clock):
        cid = store.create()
        clock.advance(TTL - 1)
        assert store.lookup(cid).state == ChallengeState.PENDING
        clock.advance(1)
        assert store.lookup(cid).state == ChallengeState.EXPIRED

    def test_expired_cannot_be_bound(self, store, clock, wallet):
        cid = store.create()
        clock.advance(TTL)
        assert store.try_bind(cid, wallet.pubkey) == BindResult.EXPIRED
        assert store.lookup(cid).pubkey is None

    def test_bound_challenge_expires_too(self, store, clock, wallet):
        cid = store.create()
        store.try_bind(cid, wallet.pubkey)
        clock.advance(TTL)
        assert store.lookup(cid).state == ChallengeState.EXPIRED

    def test_purge(self, store, clock):
        old = store.create()
        clock.advance(TTL - 10)
        fresh = store.create()
        clock.advance(10)

        assert store.purge_expired() == 1
        assert store.lookup(old).state == ChallengeState.NOT_FOUND
        assert store.lookup(fresh).state == ChallengeState.PENDING
        assert store.purge_expired() == 0


class TestConcurrentBind:
    def test_single_consumption(self, store, make_wallet):
        cid = store.create()
        wallets = [make_wallet() for _ in range(8)]
        barrier = threading.Barrier(len(wallets))
        results = {}

        def bind(w):
            barrier.wait()
            results[w.pubkey] = store.try_bind(cid, w.pubkey)

        threads = [threading.Thread(target=bind, args=(w,)) for w in wallets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [pk for pk, r in results.items() if r == BindResult.BOUND]
        assert len(winners) == 1
        assert sorted(r.value for r in results.values() if r != BindResult.BOUND) == [
            BindResult.ALREADY_BOUND.value
        ] * (len(wallets) - 1)
        assert store.lookup(cid).pubkey == winners[0]

    @pytest.mark.parametrize("url", ["sqlite://", "sqlite:///:memory:"])
    def test_shared_connection_sqlite(self, url, make_wallet):
        store = build_store(url, TTL)
        try:
            assert store._serial is not None
            ids = [store.create() for _ in range(4)]
            wallets = [make_wallet() for _ in range(8)]
            barrier = threading.Barrier(len(wallets))
            results = []
            errors = []

            def bind(w):
                barrier.wait()
                try:
                    for cid in ids:
                        results.append((cid, store.try_bind(cid, w.pubkey)))
                        store.lookup(cid)
                except Exception as e:  # collected and asserted below
                    errors.append(e)

            threads = [threading.Thread(target=bind, args=(w,)) for w in wallets]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert errors == []
            for cid in ids:
                bound = [r for c, r in results if c == cid and r == BindResult.BOUND]
                assert len(bound) == 1
                assert store.lookup(cid).is_bound
        finally:
            store.close()

    def test_file_sqlite_is_not_serialized(self, tmp_path):
        store = build_store(f"sqlite:///{tmp_path / 'p.db'}", TTL)
        try:
            assert store._serial is None
        finally:
            store.close()


class TestUsers:
    def test_upsert_is_idempotent(self, store, clock, wallet):
        assert store.get_user(wallet.pubkey) is None
        assert store.upsert_user(wallet.pubkey) is True
        clock.advance(60)
        assert store.upsert_user(wallet.pubkey) is False

        user = store.get_user(wallet.pubkey)
        assert user.pubkey == wallet.pubkey
        assert user.created_at == int(clock.now) - 60


class TestBackends:
    def test_memory_url(self):
        assert isinstance(build_store("memory://", TTL), InMemoryStore)

    def test_sql_url(self, tmp_path):
        store = build_store(f"sqlite:///{tmp_path / 'b.db'}", TTL)
        try:
            assert isinstance(store, SqlStore)
            assert store.lookup(store.create()).state == ChallengeState.PENDING
        finally:
            store.close()

    def test_unreachable_database_fails_at_boot(self, tmp_path):
        with pytest.raises(StoreUnavailable):
            build_store(f"sqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}", TTL)

    def test_request_time_failure_is_store_unavailable(self, tmp_path):
        store = SqlStore(f"sqlite:///{tmp_path / 'c.db'}", ttl_seconds=TTL)
        # schema never created: every query fails
        with pytest.raises(StoreUnavailable):
            store.create()
        store.close()
