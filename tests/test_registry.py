"""
Tests for ConnectionRegistry membership bookkeeping.
"""

import asyncio

import pytest

from registry import ConnectionRegistry, DuplicatePeerError, PeerNotFoundError


class TestRegister:

    @pytest.mark.asyncio
    async def test_first_join_creates_room(self):
        registry = ConnectionRegistry()
        others = await registry.register("R1", "p1", "ch1")

        assert others == []
        assert registry.has_room("R1")
        assert registry.room_of("p1") == "R1"

    @pytest.mark.asyncio
    async def test_returns_existing_members_in_join_order(self):
        registry = ConnectionRegistry()
        await registry.register("R1", "p1", "ch1")
        await registry.register("R1", "p2", "ch2")
        others = await registry.register("R1", "p3", "ch3")

        assert others == [("p1", "ch1"), ("p2", "ch2")]
        assert await registry.list_peers("R1") == ["p1", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_duplicate_peer_rejected_in_same_room(self):
        registry = ConnectionRegistry()
        await registry.register("R1", "p1", "ch1")

        with pytest.raises(DuplicatePeerError):
            await registry.register("R1", "p1", "other")

        # Original entry untouched
        assert await registry.lookup("R1", "p1") == "ch1"

    @pytest.mark.asyncio
    async def test_duplicate_peer_rejected_across_rooms(self):
        registry = ConnectionRegistry()
        await registry.register("R1", "p1", "ch1")

        with pytest.raises(DuplicatePeerError) as exc_info:
            await registry.register("R2", "p1", "ch1b")

        assert exc_info.value.room_id == "R1"
        assert not registry.has_room("R2")

    @pytest.mark.asyncio
    async def test_concurrent_registers_all_land(self):
        registry = ConnectionRegistry()
        ids = [f"p{i}" for i in range(50)]

        results = await asyncio.gather(*(registry.register("R1", pid, pid) for pid in ids))

        assert registry.peer_count() == 50
        sizes = sorted(len(others) for others in results)
        assert sizes == list(range(50))


class TestUnregister:

    @pytest.mark.asyncio
    async def test_returns_remaining_members(self):
        registry = ConnectionRegistry()
        await registry.register("R1", "p1", "ch1")
        await registry.register("R1", "p2", "ch2")
        await registry.register("R1", "p3", "ch3")

        remaining = await registry.unregister("R1", "p2")

        assert remaining == [("p1", "ch1"), ("p3", "ch3")]
        assert await registry.list_peers("R1") == ["p1", "p3"]
        assert registry.room_of("p2") is None

    @pytest.mark.asyncio
    async def test_last_member_deletes_room(self):
        registry = ConnectionRegistry()
        await registry.register("R1", "p1", "ch1")

        remaining = await registry.unregister("R1", "p1")

        assert remaining == []
        assert not registry.has_room("R1")
        assert registry.room_count() == 0

    @pytest.mark.asyncio
    async def test_absent_peer_is_noop(self):
        registry = ConnectionRegistry()
        await registry.register("R1", "p1", "ch1")

        assert await registry.unregister("R1", "ghost") == []
        assert await registry.unregister("nowhere", "p1") == []
        assert await registry.list_peers("R1") == ["p1"]

    @pytest.mark.asyncio
    async def test_double_unregister_is_harmless(self):
        registry = ConnectionRegistry()
        await registry.register("R1", "p1", "ch1")
        await registry.register("R1", "p2", "ch2")

        await registry.unregister("R1", "p1")
        assert await registry.unregister("R1", "p1") == []
        assert await registry.list_peers("R1") == ["p2"]

    @pytest.mark.asyncio
    async def test_peer_id_reusable_after_unregister(self):
        registry = ConnectionRegistry()
        await registry.register("R1", "p1", "ch1")
        await registry.unregister("R1", "p1")

        await registry.register("R2", "p1", "ch1")
        assert registry.room_of("p1") == "R2"


class TestLookups:

    @pytest.mark.asyncio
    async def test_list_peers_excluding(self):
        registry = ConnectionRegistry()
        for pid in ("p1", "p2", "p3"):
            await registry.register("R1", pid, pid)

        assert await registry.list_peers("R1", excluding="p2") == ["p1", "p3"]
        assert await registry.list_peers("unknown") == []

    @pytest.mark.asyncio
    async def test_lookup_missing_raises(self):
        registry = ConnectionRegistry()
        await registry.register("R1", "p1", "ch1")

        with pytest.raises(PeerNotFoundError):
            await registry.lookup("R1", "p2")
        with pytest.raises(PeerNotFoundError):
            await registry.lookup("R2", "p1")

    @pytest.mark.asyncio
    async def test_snapshot_excludes_sender(self):
        registry = ConnectionRegistry()
        for pid in ("p1", "p2", "p3"):
            await registry.register("R1", pid, f"ch-{pid}")

        assert await registry.snapshot("R1", excluding="p1") == [("p2", "ch-p2"), ("p3", "ch-p3")]


class TestSweep:

    @pytest.mark.asyncio
    async def test_sweep_is_noop_in_steady_state(self):
        registry = ConnectionRegistry()
        await registry.register("R1", "p1", "ch1")

        assert await registry.sweep() == 0
        assert registry.has_room("R1")

    @pytest.mark.asyncio
    async def test_sweep_removes_leaked_empty_rooms(self):
        registry = ConnectionRegistry()
        await registry.register("R1", "p1", "ch1")
        # Simulate a leak from a partial failure
        registry._rooms["leaked"] = {}

        assert await registry.sweep() == 1
        assert not registry.has_room("leaked")
        assert registry.has_room("R1")
        assert await registry.sweep() == 0
