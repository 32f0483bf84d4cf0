"""Tests for the versioned in-memory store."""

import pytest

from swarmplane.errors import AlreadyExistsError, ConflictError, NotFoundError
from swarmplane.models import Cluster, ClusterPhase, ClusterSpec, ObjectMeta
from swarmplane.store import ADDED, DELETED, MODIFIED


def cluster(name="demo", **spec):
    return Cluster(metadata=ObjectMeta(name=name), spec=ClusterSpec(**spec))


# ── Create / get ─────────────────────────────────────────────────────────────


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_stamps_metadata(self, store, clock):
        created = await store.create(cluster())
        assert created.metadata.resource_version == 1
        assert created.metadata.generation == 1
        assert created.metadata.creation_timestamp == clock()
        assert store.write_count == 1

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, store):
        await store.create(cluster())
        with pytest.raises(AlreadyExistsError):
            await store.create(cluster())

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.get(Cluster, "missing")

    @pytest.mark.asyncio
    async def test_returned_objects_are_copies(self, store):
        created = await store.create(cluster())
        created.spec.max_agents = 99
        assert (await store.get(Cluster, "demo")).spec.max_agents == 5


# ── Optimistic concurrency ───────────────────────────────────────────────────


class TestUpdate:
    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, store):
        first = await store.create(cluster())
        second = await store.get(Cluster, "demo")

        first.spec.max_agents = 8
        await store.update(first)

        second.spec.max_agents = 9
        with pytest.raises(ConflictError):
            await store.update(second)
        assert (await store.get(Cluster, "demo")).spec.max_agents == 8

    @pytest.mark.asyncio
    async def test_spec_change_bumps_generation(self, store):
        obj = await store.create(cluster())
        obj.metadata.labels["team"] = "infra"
        obj = await store.update(obj)
        assert obj.metadata.generation == 1

        obj.spec.min_agents = 2
        obj = await store.update(obj)
        assert obj.metadata.generation == 2

    @pytest.mark.asyncio
    async def test_update_preserves_status(self, store):
        obj = await store.create(cluster())
        obj.status.phase = ClusterPhase.RUNNING
        obj = await store.update_status(obj)

        obj.status.phase = ClusterPhase.FAILED
        obj.spec.max_agents = 7
        updated = await store.update(obj)
        assert updated.status.phase == ClusterPhase.RUNNING

    @pytest.mark.asyncio
    async def test_update_status_keeps_spec(self, store):
        obj = await store.create(cluster())
        obj.spec.max_agents = 50
        obj.status.message = "hello"
        updated = await store.update_status(obj)
        assert updated.spec.max_agents == 5
        assert updated.status.message == "hello"
        assert updated.metadata.generation == 1

    @pytest.mark.asyncio
    async def test_patch_merges_without_version(self, store):
        await store.create(cluster(max_agents=5))
        stale = await store.get(Cluster, "demo")
        await store.patch(Cluster, "demo", {"spec": {"autoscaling": {"enabled": True}}})
        patched = await store.patch(Cluster, "demo", {"spec": {"max_agents": 6}})

        assert patched.spec.max_agents == 6
        assert patched.spec.autoscaling.enabled is True
        assert patched.metadata.generation == 3
        assert patched.metadata.resource_version > stale.metadata.resource_version


# ── Two-phase delete ─────────────────────────────────────────────────────────


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_without_finalizers_removes(self, store):
        await store.create(cluster())
        await store.delete(Cluster, "demo")
        with pytest.raises(NotFoundError):
            await store.get(Cluster, "demo")

    @pytest.mark.asyncio
    async def test_finalizers_hold_deletion(self, store, clock):
        await store.create(Cluster(metadata=ObjectMeta(name="demo", finalizers=["keep"])))
        await store.delete(Cluster, "demo")

        held = await store.get(Cluster, "demo")
        assert held.metadata.deletion_timestamp == clock()

        held.metadata.finalizers.remove("keep")
        await store.update(held)
        with pytest.raises(NotFoundError):
            await store.get(Cluster, "demo")

    @pytest.mark.asyncio
    async def test_repeated_delete_is_noop(self, store):
        await store.create(Cluster(metadata=ObjectMeta(name="demo", finalizers=["keep"])))
        await store.delete(Cluster, "demo")
        writes = store.write_count
        await store.delete(Cluster, "demo")
        assert store.write_count == writes

    @pytest.mark.asyncio
    async def test_delete_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.delete(Cluster, "missing")


# ── List / watch ─────────────────────────────────────────────────────────────


class TestListAndWatch:
    @pytest.mark.asyncio
    async def test_list_filters(self, store):
        await store.create(Cluster(metadata=ObjectMeta(name="b", owner="x", labels={"tier": "gold"})))
        await store.create(Cluster(metadata=ObjectMeta(name="a", owner="x")))
        await store.create(Cluster(metadata=ObjectMeta(name="c", owner="y", labels={"tier": "gold"})))

        assert [c.metadata.name for c in await store.list(Cluster)] == ["a", "b", "c"]
        assert [c.metadata.name for c in await store.list(Cluster, owner="x")] == ["a", "b"]
        assert [c.metadata.name for c in await store.list(Cluster, labels={"tier": "gold"})] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_watch_sees_ordered_events(self, store):
        watch = store.watch(Cluster)
        obj = await store.create(cluster())
        obj.status.message = "up"
        await store.update_status(obj)
        await store.delete(Cluster, "demo")

        assert watch.pending() == 3
        kinds = [(await watch.next()).type for _ in range(3)]
        assert kinds == [ADDED, MODIFIED, DELETED]

    @pytest.mark.asyncio
    async def test_closed_watch_ends_iteration(self, store):
        watch = store.watch(Cluster)
        await store.create(cluster())
        watch.close()
        await store.create(cluster("other"))

        seen = [event.name async for event in watch]
        assert seen == ["demo"]
