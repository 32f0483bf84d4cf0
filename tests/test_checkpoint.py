"""Tests for swarmplane.checkpoint module."""

import json

import pytest

from swarmplane.checkpoint import FileCheckpointStore, InMemoryCheckpointStore


@pytest.fixture
def store(tmp_path):
    return FileCheckpointStore(checkpoint_dir=str(tmp_path))


def payload(*names):
    return {"completed": {n: {"result": {"n": n}, "artifact_available": False} for n in names}}


@pytest.mark.asyncio
async def test_save_load_roundtrip(store):
    await store.save("build", 1, payload("a"))
    checkpoint = await store.load("build")
    assert checkpoint is not None
    assert checkpoint.step == 1
    assert checkpoint.completed == {"a": {"result": {"n": "a"}, "artifact_available": False}}
    assert checkpoint.saved_at


@pytest.mark.asyncio
async def test_atomic_write(store):
    path = await store.save("build", 2, payload("a", "b"))
    assert path.exists()
    assert list(path.parent.glob("*.tmp")) == []
    with open(path) as f:
        data = json.load(f)
    assert data["__checkpoint_version__"] == 1
    assert data["__step__"] == 2


@pytest.mark.asyncio
async def test_load_returns_highest_step(store):
    await store.save("build", 1, payload("a"))
    await store.save("build", 3, payload("a", "b", "c"))
    await store.save("build", 2, payload("a", "b"))
    checkpoint = await store.load("build")
    assert checkpoint.step == 3
    assert set(checkpoint.completed) == {"a", "b", "c"}


@pytest.mark.asyncio
async def test_corrupt_checkpoint_is_skipped(store):
    await store.save("build", 1, payload("a"))
    path = await store.save("build", 2, payload("a", "b"))
    path.write_text("{not json", encoding="utf-8")
    checkpoint = await store.load("build")
    assert checkpoint.step == 1


@pytest.mark.asyncio
async def test_load_without_checkpoints(store):
    assert await store.load("missing") is None


@pytest.mark.asyncio
async def test_delete(store, tmp_path):
    await store.save("build", 1, payload("a"))
    await store.delete("build")
    assert not (tmp_path / "build").exists()
    assert await store.load("build") is None
    await store.delete("build")  # idempotent


@pytest.mark.asyncio
async def test_in_memory_store_keeps_highest_step():
    store = InMemoryCheckpointStore()
    await store.save("build", 2, payload("a", "b"))
    await store.save("build", 1, payload("a"))
    checkpoint = await store.load("build")
    assert checkpoint.step == 2
    assert store.saves == [("build", 2)]
