"""Unit tests for KubernetesExecutionProvider.

The Kubernetes config, client and exec stream are mocked; these tests cover
how the provider drives the API and parses what comes back from exec.
"""

import base64
import io
import tarfile
from collections.abc import Generator
from datetime import datetime
from datetime import timezone
from typing import Any
from unittest.mock import MagicMock
from unittest.mock import patch

import pytest
from kubernetes.client.rest import ApiException  # type: ignore

from koda.db.enums import SandboxTemplate
from koda.server.features.animation.sandbox.base import ExecutionFileNotFoundError
from koda.server.features.animation.sandbox.base import ExecutionProviderError
from koda.server.features.animation.sandbox.base import (
    ExecutionResourceNotFoundError,
)
from koda.server.features.animation.sandbox.models import SandboxArchive
from koda.server.features.animation.sandbox.models import SandboxHandle

_K8S_MODULE = "koda.server.features.animation.sandbox.kubernetes.provider"

SANDBOX_ID = "abcdef12-3456-7890-abcd-ef1234567890"
POD_NAME = f"sandbox-{SANDBOX_ID}"


def _ready_pod() -> MagicMock:
    condition = MagicMock()
    condition.type = "Ready"
    condition.status = "True"
    pod = MagicMock()
    pod.status.phase = "Running"
    pod.status.conditions = [condition]
    return pod


def _tarball(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


@pytest.fixture()
def mocks() -> Generator[dict[str, Any], None, None]:
    with (
        patch(f"{_K8S_MODULE}.config") as mock_config,
        patch(f"{_K8S_MODULE}.client") as mock_client,
        patch(f"{_K8S_MODULE}.k8s_stream") as mock_stream,
        patch(f"{_K8S_MODULE}.time.sleep"),
    ):
        mock_config.load_incluster_config.return_value = None
        mock_config.ConfigException = Exception

        from koda.server.features.animation.sandbox.kubernetes.provider import (
            KubernetesExecutionProvider,
        )

        provider = KubernetesExecutionProvider()
        yield {
            "provider": provider,
            "core_api": mock_client.CoreV1Api.return_value,
            "stream": mock_stream,
        }


@pytest.fixture()
def handle() -> SandboxHandle:
    return SandboxHandle(
        sandbox_id=SANDBOX_ID, substrate_id=POD_NAME, work_root="/app"
    )


def test_create_makes_pod_and_service(mocks: dict[str, Any]) -> None:
    handle = mocks["provider"].create(SANDBOX_ID, SandboxTemplate.REMOTION)

    assert handle.substrate_id == POD_NAME
    assert handle.work_root == "/app"
    mocks["core_api"].create_namespaced_pod.assert_called_once()
    mocks["core_api"].create_namespaced_service.assert_called_once()


def test_create_failure_cleans_up(mocks: dict[str, Any]) -> None:
    core_api = mocks["core_api"]
    core_api.create_namespaced_service.side_effect = ApiException(status=500)

    with pytest.raises(ExecutionProviderError):
        mocks["provider"].create(SANDBOX_ID, SandboxTemplate.REMOTION)

    core_api.delete_namespaced_pod.assert_called_once()


def test_sandboxes_sharing_an_id_prefix_get_distinct_names(
    mocks: dict[str, Any],
) -> None:
    first = mocks["provider"].create(SANDBOX_ID, SandboxTemplate.REMOTION)
    second = mocks["provider"].create(
        "abcdef12-0000-0000-0000-000000000000", SandboxTemplate.REMOTION
    )

    assert first.substrate_id != second.substrate_id
    assert len(first.substrate_id) <= 63


def test_create_conflict_leaves_existing_resources_alone(
    mocks: dict[str, Any],
) -> None:
    core_api = mocks["core_api"]
    core_api.create_namespaced_pod.side_effect = ApiException(status=409)

    with pytest.raises(ExecutionProviderError):
        mocks["provider"].create(SANDBOX_ID, SandboxTemplate.REMOTION)

    core_api.delete_namespaced_pod.assert_not_called()
    core_api.delete_namespaced_service.assert_not_called()


def test_create_connection_error_is_provider_error(mocks: dict[str, Any]) -> None:
    mocks["core_api"].create_namespaced_pod.side_effect = ConnectionError(
        "connection refused"
    )

    with pytest.raises(ExecutionProviderError):
        mocks["provider"].create(SANDBOX_ID, SandboxTemplate.REMOTION)


def test_start_keeps_polling_through_connection_errors(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    mocks["core_api"].read_namespaced_pod.side_effect = [
        ConnectionError("connection reset"),
        _ready_pod(),
    ]

    assert mocks["provider"].start(handle, timeout=5)


def test_start_times_out_when_api_unreachable(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    mocks["core_api"].read_namespaced_pod.side_effect = ConnectionError("down")

    assert not mocks["provider"].start(handle, timeout=0.05)


def test_start_restore_stream_failure_is_provider_error(
    mocks: dict[str, Any],
) -> None:
    provider = mocks["provider"]
    mocks["core_api"].read_namespaced_pod.return_value = _ready_pod()
    mocks["stream"].side_effect = OSError("websocket closed")
    archive = SandboxArchive(data=_tarball({"src/a.ts": b"a"}), file_count=1)
    handle = provider.create(SANDBOX_ID, SandboxTemplate.REMOTION, archive)

    with pytest.raises(ExecutionProviderError):
        provider.start(handle, timeout=5)


def test_start_applies_pending_restore_after_ready(
    mocks: dict[str, Any],
) -> None:
    from koda.server.features.animation.sandbox.kubernetes.provider import OK_MARKER

    provider = mocks["provider"]
    mocks["core_api"].read_namespaced_pod.return_value = _ready_pod()
    mocks["stream"].return_value = f"{OK_MARKER}\n"
    archive = SandboxArchive(data=_tarball({"src/a.ts": b"a"}), file_count=1)

    handle = provider.create(SANDBOX_ID, SandboxTemplate.REMOTION, archive)
    assert mocks["stream"].call_count == 0

    assert provider.start(handle, timeout=5)

    scripts = [c.kwargs["command"][2] for c in mocks["stream"].call_args_list]
    assert any("tar -xzf - -C /app" in s for s in scripts)

    # restore is applied once only
    mocks["stream"].reset_mock()
    assert provider.start(handle, timeout=5)
    assert mocks["stream"].call_count == 0


def test_start_failed_pod_raises(mocks: dict[str, Any], handle: SandboxHandle) -> None:
    pod = MagicMock()
    pod.status.phase = "Failed"
    mocks["core_api"].read_namespaced_pod.return_value = pod

    with pytest.raises(ExecutionProviderError):
        mocks["provider"].start(handle, timeout=5)


def test_start_deleted_pod_is_not_found(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    mocks["core_api"].read_namespaced_pod.side_effect = ApiException(status=404)

    with pytest.raises(ExecutionResourceNotFoundError):
        mocks["provider"].start(handle, timeout=5)


def test_read_file_decodes_base64(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    from koda.server.features.animation.sandbox.kubernetes.provider import OK_MARKER

    payload = bytes(range(256))
    encoded = base64.encodebytes(payload).decode("ascii")
    mocks["stream"].return_value = f"{OK_MARKER}\n{encoded}"

    assert mocks["provider"].read_file(handle, "/app/output/preview.mp4") == payload


def test_read_file_missing(mocks: dict[str, Any], handle: SandboxHandle) -> None:
    from koda.server.features.animation.sandbox.kubernetes.provider import (
        NOT_FOUND_MARKER,
    )

    mocks["stream"].return_value = f"{NOT_FOUND_MARKER}\n"

    with pytest.raises(ExecutionFileNotFoundError):
        mocks["provider"].read_file(handle, "/app/output/missing.mp4")


def test_exec_on_deleted_pod_is_resource_not_found(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    mocks["stream"].side_effect = ApiException(status=404)

    with pytest.raises(ExecutionResourceNotFoundError):
        mocks["provider"].read_file(handle, "/app/src/index.ts")


def test_exec_other_api_error_is_provider_error(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    mocks["stream"].side_effect = ApiException(status=500)

    with pytest.raises(ExecutionProviderError) as exc_info:
        mocks["provider"].read_file(handle, "/app/src/index.ts")
    assert not isinstance(exc_info.value, ExecutionResourceNotFoundError)


def test_list_directory_parses_ls(mocks: dict[str, Any], handle: SandboxHandle) -> None:
    mocks["stream"].return_value = (
        "total 12\n"
        "drwxr-xr-x 3 node node 4096 1700000000 .\n"
        "drwxr-xr-x 1 root root 4096 1700000000 ..\n"
        "-rw-r--r-- 1 node node 2048 1700000100 preview.mp4\n"
        "drwxr-xr-x 2 node node 4096 1700000200 frames\n"
        "lrwxrwxrwx 1 node node   11 1700000300 latest -> preview.mp4\n"
    )

    entries = mocks["provider"].list_directory(handle, "/app/output")

    assert [(e.name, e.path, e.is_directory) for e in entries] == [
        ("frames", "output/frames", True),
        ("latest", "output/latest", False),
        ("preview.mp4", "output/preview.mp4", False),
    ]
    assert entries[2].size_bytes == 2048


def test_list_work_root_uses_bare_names(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    mocks["stream"].return_value = "-rw-r--r-- 1 node node 10 1700000000 package.json\n"

    entries = mocks["provider"].list_directory(handle, "/app")

    assert entries[0].path == "package.json"


def test_copy_out_reads_count_and_archive(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    from koda.server.features.animation.sandbox.kubernetes.provider import OK_MARKER

    data = _tarball({"src/a.ts": b"a", "src/b.ts": b"b"})
    encoded = base64.encodebytes(data).decode("ascii")
    mocks["stream"].return_value = f"{OK_MARKER} 2\n{encoded}"

    archive = mocks["provider"].copy_out(handle, "src")

    assert archive.file_count == 2
    assert archive.data == data


def test_copy_out_missing_subtree(mocks: dict[str, Any], handle: SandboxHandle) -> None:
    from koda.server.features.animation.sandbox.kubernetes.provider import (
        NOT_FOUND_MARKER,
    )

    mocks["stream"].return_value = f"{NOT_FOUND_MARKER}\n"

    with pytest.raises(ExecutionFileNotFoundError):
        mocks["provider"].copy_out(handle, "src")


def test_run_command_reports_exit_code(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    resp = MagicMock()
    resp.read_stdout.return_value = "rendered\n"
    resp.read_stderr.return_value = ""
    resp.returncode = 0
    mocks["stream"].return_value = resp

    result = mocks["provider"].run_command(handle, "npx remotion render", 30)

    assert result.success
    assert result.stdout == "rendered\n"
    resp.run_forever.assert_called_once_with(timeout=30)


def test_run_command_timeout(mocks: dict[str, Any], handle: SandboxHandle) -> None:
    resp = MagicMock()
    resp.read_stdout.return_value = ""
    resp.read_stderr.return_value = ""
    resp.returncode = None
    mocks["stream"].return_value = resp

    result = mocks["provider"].run_command(handle, "sleep 600", 1)

    assert not result.success
    assert result.exit_code == 124


def test_destroy_deletes_service_and_pod(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    mocks["provider"].destroy(handle)

    mocks["core_api"].delete_namespaced_service.assert_called_once()
    mocks["core_api"].delete_namespaced_pod.assert_called_once()


def test_destroy_when_nothing_exists_is_not_found(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    mocks["core_api"].delete_namespaced_service.side_effect = ApiException(status=404)
    mocks["core_api"].delete_namespaced_pod.side_effect = ApiException(status=404)

    with pytest.raises(ExecutionResourceNotFoundError):
        mocks["provider"].destroy(handle)


def test_destroy_api_failure_is_provider_error(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    mocks["core_api"].delete_namespaced_pod.side_effect = ApiException(status=500)

    with pytest.raises(ExecutionProviderError):
        mocks["provider"].destroy(handle)


def test_list_resources_reads_sandbox_labels(mocks: dict[str, Any]) -> None:
    from koda.server.features.animation.sandbox.kubernetes.provider import (
        SANDBOX_ID_LABEL,
    )

    labelled = MagicMock()
    labelled.metadata.name = POD_NAME
    labelled.metadata.labels = {SANDBOX_ID_LABEL: SANDBOX_ID}
    unlabelled = MagicMock()
    unlabelled.metadata.labels = {}
    mocks["core_api"].list_namespaced_pod.return_value.items = [labelled, unlabelled]

    handles = mocks["provider"].list_resources()

    assert [(h.sandbox_id, h.substrate_id) for h in handles] == [
        (SANDBOX_ID, POD_NAME)
    ]


def test_list_directory_timestamps_are_utc(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    mocks["stream"].return_value = "-rw-r--r-- 1 node node 10 1700000000 package.json\n"

    entries = mocks["provider"].list_directory(handle, "/app")

    assert entries[0].modified_at == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)


def test_dev_server_url_targets_the_sandbox_service(
    mocks: dict[str, Any], handle: SandboxHandle
) -> None:
    from koda.server.features.animation.configs import SANDBOX_DEV_SERVER_PORT

    url = mocks["provider"].get_dev_server_url(handle)

    assert url.startswith(f"http://{POD_NAME}.")
    assert url.endswith(f".svc.cluster.local:{SANDBOX_DEV_SERVER_PORT}")
