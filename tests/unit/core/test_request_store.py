"""
DurableRequestStore tests.
"""

import pytest

from core.persistence import DurableRequestStore, StoreNotInitialized


class TestDurableRequestStore:

    @pytest.mark.asyncio
    async def test_set_get(self, store):
        await store.set("pendingAddressRequest", {"requestId": "r1", "status": "awaiting-decision"})

        assert await store.get("pendingAddressRequest") == {"requestId": "r1", "status": "awaiting-decision"}
        assert await store.get("missing") is None
        assert await store.get("missing", []) == []

    @pytest.mark.asyncio
    async def test_overwrite(self, store):
        await store.set("walletLocked", False)
        await store.set("walletLocked", True)

        assert await store.get("walletLocked") is True

    @pytest.mark.asyncio
    async def test_get_many_skips_missing(self, store):
        await store.set("a", 1)

        assert await store.get_many(["a", "b"]) == {"a": 1}

    @pytest.mark.asyncio
    async def test_remove_counts(self, store):
        await store.set("a", 1)
        await store.set("b", 2)

        assert await store.remove("a", "b", "c") == 2
        assert await store.keys() == []
        assert await store.remove() == 0

    @pytest.mark.asyncio
    async def test_remove_if(self, store):
        await store.set("slot", {"requestId": "new"})

        assert await store.remove_if("slot", lambda v: v["requestId"] == "old") is False
        assert await store.contains("slot")
        assert await store.remove_if("slot", lambda v: v["requestId"] == "new") is True
        assert not await store.contains("slot")
        assert await store.remove_if("slot", lambda v: True) is False

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await store.set("a", 1)
        await store.clear()

        assert await store.keys() == []

    @pytest.mark.asyncio
    async def test_not_initialized(self):
        with pytest.raises(StoreNotInitialized):
            await DurableRequestStore().get("a")

    @pytest.mark.asyncio
    async def test_survives_reopen(self, temp_dir):
        """State written by one context is visible after a restart."""
        path = str(temp_dir / "state" / "wallet.db")

        first = DurableRequestStore(path)
        await first.initialize()
        await first.set("savedVCs", [{"id": "urn:1"}])
        await first.close()
        assert not first.is_open

        second = DurableRequestStore(path)
        await second.initialize()
        try:
            assert await second.get("savedVCs") == [{"id": "urn:1"}]
        finally:
            await second.close()
