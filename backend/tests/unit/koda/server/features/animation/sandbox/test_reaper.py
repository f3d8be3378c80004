import time
from datetime import timedelta
from typing import Any

import pytest

from koda.db.enums import SandboxStatus
from koda.db.enums import SandboxTemplate
from koda.server.features.animation.configs import SANDBOX_IDLE_AFTER_SECONDS
from koda.server.features.animation.configs import SANDBOX_IDLE_TTL_SECONDS
from koda.server.features.animation.configs import (
    SANDBOX_TOMBSTONE_RETENTION_SECONDS,
)
from koda.server.features.animation.errors import SandboxNotFoundError
from koda.server.features.animation.sandbox.base import ExecutionProviderError
from koda.server.features.animation.sandbox.manager import SandboxService
from koda.server.features.animation.sandbox.models import SandboxHandle


def test_running_within_ttl_is_never_destroyed(service: SandboxService) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)

    for offset in (0, SANDBOX_IDLE_AFTER_SECONDS - 1, SANDBOX_IDLE_TTL_SECONDS - 1):
        now = instance.last_accessed_at + timedelta(seconds=offset)
        result = service.reaper.run_once(now)
        assert instance.id not in result.destroyed

    after = service.registry.get(instance.id)
    assert after is not None
    assert after.status.is_live()


def test_inactive_sandbox_is_marked_idle(service: SandboxService) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)
    now = instance.last_accessed_at + timedelta(seconds=SANDBOX_IDLE_AFTER_SECONDS + 1)

    result = service.reaper.run_once(now)

    assert result.idled == [instance.id]
    after = service.registry.get(instance.id)
    assert after is not None
    assert after.status == SandboxStatus.IDLE


def test_idle_beyond_ttl_is_destroyed_and_then_not_found(
    service: SandboxService, fake_provider: Any
) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)
    service.registry.update_status(
        instance.id, SandboxStatus.RUNNING, SandboxStatus.IDLE
    )
    now = instance.last_accessed_at + timedelta(seconds=SANDBOX_IDLE_TTL_SECONDS + 1)

    result = service.reaper.run_once(now)

    assert result.destroyed == [instance.id]
    assert fake_provider.destroy_calls == [instance.id]
    with pytest.raises(SandboxNotFoundError):
        service.read_file(instance.id, "src/index.ts")


def test_errored_sandbox_is_destroyed(
    service: SandboxService, fake_provider: Any
) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)
    service.registry.update_status(
        instance.id, SandboxStatus.RUNNING, SandboxStatus.ERROR
    )

    result = service.reaper.run_once()

    assert result.destroyed == [instance.id]
    after = service.registry.get(instance.id)
    assert after is not None
    assert after.status == SandboxStatus.DESTROYED


def test_failed_teardown_is_retried_next_sweep(
    service: SandboxService, fake_provider: Any
) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)
    service.registry.update_status(
        instance.id, SandboxStatus.RUNNING, SandboxStatus.ERROR
    )
    fake_provider.destroy_error = ExecutionProviderError("api down")

    assert service.reaper.run_once().destroyed == []
    errored = service.registry.get(instance.id)
    assert errored is not None
    assert errored.status == SandboxStatus.ERROR

    fake_provider.destroy_error = None
    assert service.reaper.run_once().destroyed == [instance.id]


def test_orphaned_substrate_resources_are_destroyed(
    service: SandboxService, fake_provider: Any
) -> None:
    live = service.provision("n1", SandboxTemplate.REMOTION)
    orphan = fake_provider.create("orphan-sandbox", SandboxTemplate.REMOTION)

    result = service.reaper.run_once()

    assert result.orphans_destroyed == [orphan.sandbox_id]
    assert live.id in fake_provider.sandboxes
    assert orphan.sandbox_id not in fake_provider.sandboxes


def test_orphan_already_gone_counts_as_destroyed(
    service: SandboxService, fake_provider: Any
) -> None:
    ghost = SandboxHandle(sandbox_id="ghost", substrate_id="fake-ghost", work_root="/app")
    fake_provider.list_resources = lambda: [ghost]

    result = service.reaper.run_once()

    assert result.orphans_destroyed == ["ghost"]


def test_tombstones_are_pruned_after_retention(service: SandboxService) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)
    service.destroy(instance.id)
    destroyed = service.registry.get(instance.id)
    assert destroyed is not None

    early = destroyed.status_changed_at + timedelta(seconds=1)
    assert service.reaper.run_once(early).tombstones_removed == []

    late = destroyed.status_changed_at + timedelta(
        seconds=SANDBOX_TOMBSTONE_RETENTION_SECONDS + 1
    )
    assert service.reaper.run_once(late).tombstones_removed == [instance.id]
    assert service.registry.get(instance.id) is None


def test_reaper_keeps_recorded_snapshots(
    service: SandboxService, blob_store: Any
) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)
    record = service.save_snapshot("n1", instance.id)
    now = instance.last_accessed_at + timedelta(seconds=SANDBOX_IDLE_TTL_SECONDS * 2)

    service.reaper.run_once(now)

    metadata = service.get_snapshot_metadata("n1")
    assert metadata is not None
    assert metadata.storage_key == record.storage_key
    assert blob_store.get(record.storage_key)


def test_background_thread_sweeps_until_stopped(
    service: SandboxService, fake_provider: Any
) -> None:
    from koda.server.features.animation.sandbox.reaper import start_sandbox_reaper
    from koda.server.features.animation.sandbox.reaper import stop_sandbox_reaper

    orphan = fake_provider.create("orphan-sandbox", SandboxTemplate.REMOTION)

    start_sandbox_reaper(service.reaper, interval_seconds=0.05)
    try:
        deadline = time.monotonic() + 5
        while orphan.sandbox_id in fake_provider.sandboxes:
            assert time.monotonic() < deadline
            time.sleep(0.05)
    finally:
        stop_sandbox_reaper()


def test_unreferenced_snapshot_blobs_are_removed(
    service: SandboxService, blob_store: Any
) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)
    record = service.save_snapshot("n1", instance.id)
    node_dir = record.storage_key.rsplit("/", 1)[0]
    prefix = node_dir.rsplit("/", 1)[0]
    stray = f"{node_dir}/left-over.tar.gz"
    other_node = f"{prefix}/n2/never-recorded.tar.gz"
    unrelated = "exports/n1/render.mp4"
    for key in (stray, other_node, unrelated):
        blob_store.put(key, b"x")

    result = service.reaper.run_once()

    assert sorted(result.orphan_blobs_removed) == sorted([stray, other_node])
    assert blob_store.get(record.storage_key)
    assert blob_store.get(unrelated) == b"x"
    assert sorted(blob_store.list_keys("")) == sorted([record.storage_key, unrelated])
