"""
Tests for the SQLAlchemy key store.
"""

import re
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import text, update

from e2ee.config import E2EEConfig
from e2ee.errors import (
    InvalidKeyError,
    KeyIntegrityError,
    PreKeyExhaustedError,
    PreKeyReuseError,
    StorageError,
    UnknownSessionError,
    UnknownUserError,
)
from e2ee.primitives import deserialize_private_key, verify_signature
from e2ee.ratchet import ChainCounters
from server.database import E2EEKeys, E2EESession, KeyStore

POOL = 5


def make_store(tmp_path, scheduled=None, **overrides):
    settings = dict(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'keys.db'}",
        one_time_pre_key_count=POOL,
        low_water_mark=2,
    )
    settings.update(overrides)
    scheduler = scheduled.append if scheduled is not None else None
    return KeyStore(config=E2EEConfig(**settings), replenish_scheduler=scheduler)


def run(store, scenario):
    async def main():
        await store.create_tables()
        try:
            return await scenario(store)
        finally:
            await store.close()
    return asyncio.run(main())


def test_initialise_is_idempotent(tmp_path):
    async def scenario(store):
        first = await store.initialise_user_keys("alice")
        second = await store.initialise_user_keys("alice")

        assert first.identity_public == second.identity_public
        assert first.signed_pre_key_public == second.signed_pre_key_public
        assert first.one_time_pre_key_public is None
        assert await store.one_time_pre_key_count("alice") == POOL
        verify_signature(first.identity_signing_public, first.signed_pre_key_signature,
                         first.signed_pre_key_public)

    run(make_store(tmp_path), scenario)


def test_get_bundle_consumes_one_time_keys(tmp_path):
    scheduled = []

    async def scenario(store):
        await store.initialise_user_keys("alice")
        seen = set()
        for taken in range(1, POOL + 1):
            bundle = await store.get_bundle("alice")
            assert bundle.one_time_pre_key_public is not None
            assert bundle.one_time_pre_key_public not in seen
            seen.add(bundle.one_time_pre_key_public)
            assert await store.one_time_pre_key_count("alice") == POOL - taken

        assert scheduled, "replenish is scheduled below the low-water mark"
        scheduled.clear()

        weak = await store.get_bundle("alice")
        assert weak.one_time_pre_key_public is None
        assert weak.to_dict()['oneTimePreKeyPublic'] is None
        assert scheduled == ["alice"]

    run(make_store(tmp_path, scheduled), scenario)


def test_concurrent_bundles_get_distinct_keys(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        bundles = await asyncio.gather(*[store.get_bundle("alice") for _ in range(POOL + 2)])
        keys = [b.one_time_pre_key_public for b in bundles if b.one_time_pre_key_public]

        assert len(keys) == POOL
        assert len(set(keys)) == POOL
        assert await store.one_time_pre_key_count("alice") == 0

    run(make_store(tmp_path, []), scenario)


def test_empty_pool_raises_when_weak_bundles_are_forbidden(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        for _ in range(POOL):
            await store.get_bundle("alice")
        with pytest.raises(PreKeyExhaustedError):
            await store.get_bundle("alice")

    run(make_store(tmp_path, [], allow_weak_bundles=False), scenario)


def test_replenish_tops_up_with_fresh_ids(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        handed_out = {(await store.get_bundle("alice")).one_time_pre_key_id for _ in range(3)}

        assert await store.replenish_one_time_pre_keys("alice") == 3
        assert await store.replenish_one_time_pre_keys("alice") == 0
        assert await store.one_time_pre_key_count("alice") == POOL

        later = {(await store.get_bundle("alice")).one_time_pre_key_id for _ in range(POOL)}
        assert not handed_out & later

    run(make_store(tmp_path, []), scenario)


def test_default_scheduler_replenishes_in_background(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        # The last hand-out drops the pool below the low-water mark
        for _ in range(POOL - 1):
            await store.get_bundle("alice")
        for _ in range(200):
            if await store.one_time_pre_key_count("alice") == POOL:
                break
            await asyncio.sleep(0.01)
        assert await store.one_time_pre_key_count("alice") == POOL

    run(make_store(tmp_path), scenario)


def test_unknown_user(tmp_path):
    async def scenario(store):
        with pytest.raises(UnknownUserError):
            await store.get_bundle("ghost")
        with pytest.raises(UnknownUserError):
            await store.get_identity_public("ghost")
        with pytest.raises(UnknownUserError):
            await store.get_or_create_session("ghost", "alice")

    run(make_store(tmp_path, []), scenario)


def test_rotate_signed_pre_key_keeps_previous_for_grace(tmp_path):
    async def scenario(store):
        original = await store.initialise_user_keys("bob")
        rotated = await store.rotate_signed_pre_key("bob")

        assert rotated.key_id == original.signed_pre_key_id + 1
        assert rotated.public_key != original.signed_pre_key_public
        verify_signature(original.identity_signing_public, rotated.signature, rotated.public_key)

        bundle = await store.get_bundle("bob")
        assert bundle.signed_pre_key_id == rotated.key_id
        assert bundle.identity_public == original.identity_public

        material = await store._read_material("bob")
        grace = store.config.signed_pre_key_grace
        assert material.signed_pre_key_private_for(rotated.key_id, grace) is not None
        assert material.signed_pre_key_private_for(original.signed_pre_key_id, grace) is not None
        with pytest.raises(InvalidKeyError):
            material.signed_pre_key_private_for(original.signed_pre_key_id, timedelta(seconds=-1))
        with pytest.raises(InvalidKeyError):
            material.signed_pre_key_private_for(99, grace)

        assert await store.signed_pre_key_age("bob") < timedelta(minutes=1)

    run(make_store(tmp_path, []), scenario)


def test_corrupted_key_record_is_quarantined(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        async with store.async_session() as session:
            async with session.begin():
                await session.execute(
                    update(E2EEKeys).where(E2EEKeys.user_id == "alice").values(identity_public="c2hvcnQ=")
                )

        with pytest.raises(KeyIntegrityError):
            await store.get_bundle("alice")

        async with store.async_session() as session:
            row = await session.get(E2EEKeys, "alice")
            assert row.quarantined is True

        # Never silently repaired
        with pytest.raises(KeyIntegrityError):
            await store.initialise_user_keys("alice")

    run(make_store(tmp_path, []), scenario)


def test_session_creation_consumes_one_time_key(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        await store.initialise_user_keys("bob")

        handle = await store.get_or_create_session("bob", "alice")
        assert re.match(r"^session_\d+_[0-9a-f]{16}$", handle.session_id)
        assert (handle.owner_id, handle.peer_id) == ("bob", "alice")
        assert (handle.user_a, handle.user_b) == ("alice", "bob")
        assert await store.one_time_pre_key_count("alice") == POOL - 1

        material = await store._read_material("alice")
        assert material.issued_one_time_pre_keys == []

        again = await store.get_or_create_session("alice", "bob")
        assert again.session_id == handle.session_id
        assert await store.one_time_pre_key_count("alice") == POOL - 1

        mine = await store.get_session(handle.session_id, "bob")
        theirs = await store.get_session(handle.session_id, "alice")
        assert mine.state.sending_chain == theirs.state.receiving_chain
        assert mine.state.receiving_chain == theirs.state.sending_chain

    run(make_store(tmp_path, []), scenario)


def test_concurrent_session_creation_yields_one_session(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        await store.initialise_user_keys("bob")
        first, second = await asyncio.gather(
            store.get_or_create_session("alice", "bob"),
            store.get_or_create_session("bob", "alice"),
        )
        assert first.session_id == second.session_id

    run(make_store(tmp_path, []), scenario)


def test_one_time_key_cannot_be_consumed_twice(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        await store.initialise_user_keys("bob")
        alice = await store._read_material("alice")
        bundle = await store.get_bundle("bob")
        result = store.key_agreement.initiate_session(deserialize_private_key(alice.identity_private), bundle)

        args = ("bob", alice.identity_public, result.ephemeral_public,
                result.signed_pre_key_id, result.one_time_pre_key_id)
        root_key, chain_key = await store._complete_as_responder(*args)
        assert root_key == result.root_key and chain_key == result.chain_key
        with pytest.raises(PreKeyReuseError):
            await store._complete_as_responder(*args)

    run(make_store(tmp_path, []), scenario)


def test_update_session_chains_is_persisted(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        await store.initialise_user_keys("bob")
        handle = await store.get_or_create_session("alice", "bob")

        counters = ChainCounters(send_count=3, recv_count=1, delivered_high=0, delivered_bitmap=1)
        new_sending = bytearray(b"s" * 32)
        await store.update_session_chains(handle, new_sending, bytearray(b"r" * 32), counters)

        reloaded = await store.get_session(handle.session_id, "alice")
        assert reloaded.state.sending_chain == bytearray(b"s" * 32)
        assert reloaded.state.counters == counters

        other = await store.get_session(handle.session_id, "bob")
        assert other.state.counters.send_count == 0

    run(make_store(tmp_path, []), scenario)


def test_get_session_rejects_unknown_and_outsiders(tmp_path):
    async def scenario(store):
        for user in ("alice", "bob", "carol"):
            await store.initialise_user_keys(user)
        handle = await store.get_or_create_session("alice", "bob")

        with pytest.raises(UnknownSessionError):
            await store.get_session("session_0_0000000000000000", "alice")
        with pytest.raises(UnknownSessionError):
            await store.get_session(handle.session_id, "carol")

    run(make_store(tmp_path, []), scenario)


def test_corrupted_session_is_quarantined(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        await store.initialise_user_keys("bob")
        handle = await store.get_or_create_session("alice", "bob")
        async with store.async_session() as session:
            async with session.begin():
                await session.execute(
                    update(E2EESession).where(E2EESession.id == handle.session_id).values(state_a="{broken")
                )

        with pytest.raises(KeyIntegrityError):
            await store.get_session(handle.session_id, "alice")
        # The other participant's view is intact, but the session as a whole is quarantined
        with pytest.raises(KeyIntegrityError):
            await store.get_session(handle.session_id, "bob")

    run(make_store(tmp_path, []), scenario)


def test_reset_session(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        await store.initialise_user_keys("bob")
        handle = await store.get_or_create_session("alice", "bob")

        assert await store.reset_session("bob", "alice") == handle.session_id
        assert await store.find_session("alice", "bob") is None
        assert await store.reset_session("alice", "bob") is None

        fresh = await store.get_or_create_session("alice", "bob")
        assert fresh.session_id != handle.session_id

    run(make_store(tmp_path, []), scenario)


def test_delete_user_keys_keeps_sessions_until_both_are_gone(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        await store.initialise_user_keys("bob")
        handle = await store.get_or_create_session("alice", "bob")

        assert await store.delete_user_keys("alice") is True
        assert await store.delete_user_keys("alice") is False
        with pytest.raises(UnknownUserError):
            await store.get_bundle("alice")
        assert (await store.get_session(handle.session_id, "bob")).session_id == handle.session_id

        assert await store.delete_user_keys("bob") is True
        with pytest.raises(UnknownSessionError):
            await store.get_session(handle.session_id, "bob")

    run(make_store(tmp_path, []), scenario)


def test_issued_one_time_keys_expire(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        await store.initialise_user_keys("bob")
        alice = await store._read_material("alice")
        stale = await store.get_bundle("bob")
        assert len((await store._read_material("bob")).issued_one_time_pre_keys) == 1

        await asyncio.sleep(0.01)
        assert await store.replenish_one_time_pre_keys("bob") == 1
        assert (await store._read_material("bob")).issued_one_time_pre_keys == []

        result = store.key_agreement.initiate_session(deserialize_private_key(alice.identity_private), stale)
        with pytest.raises(PreKeyReuseError):
            await store._complete_as_responder(
                "bob", alice.identity_public, result.ephemeral_public,
                result.signed_pre_key_id, result.one_time_pre_key_id,
            )

    run(make_store(tmp_path, [], signed_pre_key_grace=timedelta(0)), scenario)


def test_issued_set_stays_bounded_across_hand_outs(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("bob")
        sizes = []
        for _ in range(3):
            for _ in range(POOL):
                await store.get_bundle("bob")
            await store.replenish_one_time_pre_keys("bob")
            sizes.append(len((await store._read_material("bob")).issued_one_time_pre_keys))
        assert sizes == [POOL, POOL, POOL]

        issued = (await store._read_material("bob")).issued_one_time_pre_keys
        assert [k.key_id for k in issued] == list(range(2 * POOL + 1, 3 * POOL + 1))
        assert all(k.issued_at is not None for k in issued)

    run(make_store(tmp_path, []), scenario)


def test_session_with_oneself_is_refused(tmp_path):
    async def scenario(store):
        await store.initialise_user_keys("alice")
        with pytest.raises(UnknownSessionError):
            await store.get_or_create_session("alice", "alice")
        assert await store.one_time_pre_key_count("alice") == POOL

    run(make_store(tmp_path, []), scenario)


def test_store_failure_is_a_storage_error(tmp_path):
    async def scenario(store):
        async with store.engine.begin() as conn:
            await conn.execute(text("DROP TABLE e2ee_keys"))
        with pytest.raises(StorageError):
            await store.initialise_user_keys("alice")

    run(make_store(tmp_path), scenario)
