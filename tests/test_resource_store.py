import pytest

from connectors.resource_store import InMemoryResourceStore, merge_patch
from domain.operations.errors import ResourceNotFoundError, VersionConflictError


def test_merge_patch_nested_and_delete():
    target = {"a": {"b": 1, "c": 2}, "d": 3}
    merge_patch(target, {"a": {"b": 9, "c": None}, "e": [1]})
    assert target == {"a": {"b": 9}, "d": 3, "e": [1]}


@pytest.mark.asyncio
async def test_create_get_patch_versions():
    store = InMemoryResourceStore()
    created = await store.create("Backup", "b1", options={"x": 1}, status={"state": "in_progress"})
    v1 = created["metadata"]["version"]

    patched = await store.patch("Backup", "b1", status={"response": {"stage": "s1"}}, version=v1)
    assert patched["metadata"]["version"] != v1
    assert patched["status"] == {"state": "in_progress", "response": {"stage": "s1"}, "error": None}

    with pytest.raises(VersionConflictError):
        await store.patch("Backup", "b1", status={"state": "failed"}, version=v1)

    with pytest.raises(VersionConflictError):
        await store.create("Backup", "b1")

    # unconditional patch ignores versions
    final = await store.patch("Backup", "b1", status={"state": "failed"})
    assert final["status"]["state"] == "failed"


@pytest.mark.asyncio
async def test_missing_resources_raise_not_found():
    store = InMemoryResourceStore()
    with pytest.raises(ResourceNotFoundError):
        await store.get("Backup", "nope")
    with pytest.raises(ResourceNotFoundError):
        await store.patch("Backup", "nope", status={"state": "failed"})
    with pytest.raises(ResourceNotFoundError):
        await store.delete("Backup", "nope")


@pytest.mark.asyncio
async def test_watch_replays_then_streams_matching_events():
    store = InMemoryResourceStore()
    await store.create("Backup", "old", status={"state": "in_progress"})
    await store.create("Backup", "done", status={"state": "succeeded"})
    await store.create("Restore", "other", status={"state": "in_progress"})

    sub = store.watch("Backup", ["in_progress", "aborting"])
    replayed = await sub.next_event(timeout=0.1)
    assert (replayed.type, replayed.name) == ("ADDED", "old")

    await store.patch("Backup", "old", status={"state": "aborting"})
    modified = await sub.next_event(timeout=0.1)
    assert (modified.type, modified.state) == ("MODIFIED", "aborting")

    # leaves the filter: not delivered
    await store.patch("Backup", "old", status={"state": "aborted"})
    assert await sub.next_event(timeout=0.05) is None

    sub.close()
    assert await sub.next_event(timeout=0.05) is None
    await store.create("Backup", "late", status={"state": "in_progress"})
    assert await sub.next_event(timeout=0.05) is None


@pytest.mark.asyncio
async def test_list_filters_by_state():
    store = InMemoryResourceStore()
    await store.create("Backup", "a", status={"state": "in_progress"})
    await store.create("Backup", "b", status={"state": "failed"})

    names = [r["metadata"]["name"] for r in await store.list("Backup", ["in_progress"])]
    assert names == ["a"]
