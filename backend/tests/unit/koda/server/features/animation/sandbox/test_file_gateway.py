from typing import Any

import pytest

from koda.db.enums import SandboxStatus
from koda.db.enums import SandboxTemplate
from koda.server.features.animation.errors import InvalidPathError
from koda.server.features.animation.errors import SandboxFileNotFoundError
from koda.server.features.animation.errors import SandboxNotFoundError
from koda.server.features.animation.errors import SubstrateError
from koda.server.features.animation.sandbox.base import ExecutionProviderError
from koda.server.features.animation.sandbox.file_gateway import get_content_type
from koda.server.features.animation.sandbox.manager import SandboxService


@pytest.mark.parametrize(
    "path,content_type",
    [
        ("output/preview.mp4", "video/mp4"),
        ("clip.WEBM", "video/webm"),
        ("a.jpg", "image/jpeg"),
        ("a.jpeg", "image/jpeg"),
        ("a.png", "image/png"),
        ("a.gif", "image/gif"),
        ("a.svg", "image/svg+xml"),
        ("data.json", "application/json"),
        ("main.js", "text/javascript"),
        ("main.ts", "text/typescript"),
        ("Scene.tsx", "text/typescript"),
        ("style.css", "text/css"),
        ("index.html", "text/html"),
        ("notes.txt", "text/plain"),
        ("archive.tar.gz", "application/octet-stream"),
        ("Makefile", "application/octet-stream"),
    ],
)
def test_content_type_table(path: str, content_type: str) -> None:
    assert get_content_type(path) == content_type


def test_read_preview_file(service: SandboxService, fake_provider: Any) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)
    fake_provider.sandboxes[instance.id]["output/preview.mp4"] = b"\x00\x00\x00 ftypisom"

    sandbox_file = service.read_file(instance.id, "output/preview.mp4")

    assert sandbox_file.content == b"\x00\x00\x00 ftypisom"
    assert sandbox_file.content_type == "video/mp4"


def test_invalid_path_rejected_before_lookup(
    service: SandboxService, fake_provider: Any
) -> None:
    # unknown sandbox id, but the path check comes first
    with pytest.raises(InvalidPathError):
        service.read_file("xyz-unknown", "../../etc/passwd")
    assert fake_provider.read_calls == 0


def test_unknown_sandbox_is_not_found(service: SandboxService) -> None:
    with pytest.raises(SandboxNotFoundError):
        service.read_file("xyz-unknown", "output/preview.mp4")


@pytest.mark.parametrize("status", [SandboxStatus.ERROR, SandboxStatus.DESTROYED])
def test_non_live_sandbox_is_not_found(
    service: SandboxService, fake_provider: Any, status: SandboxStatus
) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)
    service.registry.update_status(instance.id, SandboxStatus.RUNNING, status)

    with pytest.raises(SandboxNotFoundError):
        service.read_file(instance.id, "src/index.ts")
    assert fake_provider.read_calls == 0


def test_missing_file_leaves_instance_unchanged(service: SandboxService) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)

    with pytest.raises(SandboxFileNotFoundError):
        service.read_file(instance.id, "output/missing.mp4")

    after = service.registry.get(instance.id)
    assert after is not None
    assert after.status == SandboxStatus.RUNNING
    assert after.last_accessed_at == instance.last_accessed_at


def test_substrate_failure_marks_instance_error(
    service: SandboxService, fake_provider: Any
) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)
    fake_provider.read_error = ExecutionProviderError("exec stream closed")

    with pytest.raises(SubstrateError):
        service.read_file(instance.id, "src/index.ts")

    after = service.registry.get(instance.id)
    assert after is not None
    assert after.status == SandboxStatus.ERROR
    assert after.error_detail == "exec stream closed"


def test_read_bumps_access_and_wakes_idle(service: SandboxService) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)
    service.registry.update_status(
        instance.id, SandboxStatus.RUNNING, SandboxStatus.IDLE
    )

    service.read_file(instance.id, "src/index.ts")

    after = service.registry.get(instance.id)
    assert after is not None
    assert after.status == SandboxStatus.RUNNING
    assert after.last_accessed_at > instance.last_accessed_at


def test_list_directory_at_work_root(
    service: SandboxService, fake_provider: Any
) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)
    fake_provider.sandboxes[instance.id]["output/preview.mp4"] = b"x"

    entries = service.list_directory(instance.id)

    assert [(e.name, e.is_directory) for e in entries] == [
        ("output", True),
        ("src", True),
    ]
    assert [e.name for e in service.list_directory(instance.id, "output")] == [
        "preview.mp4"
    ]


def test_write_then_read(service: SandboxService) -> None:
    instance = service.provision("n1", SandboxTemplate.THEATRE)

    service.write_file(instance.id, "src/scene.tsx", b"<Scene />")

    assert service.read_file(instance.id, "src/scene.tsx").content == b"<Scene />"


def test_run_command(service: SandboxService) -> None:
    instance = service.provision("n1", SandboxTemplate.THEATRE)

    result = service.run_command(instance.id, "npx remotion render")

    assert result.success
    assert result.stdout == "npx remotion render"


def test_dev_server_url_only_for_live_sandboxes(
    service: SandboxService, fake_provider: Any
) -> None:
    instance = service.provision("n1", SandboxTemplate.REMOTION)

    assert service.get_dev_server_url(instance.id) == fake_provider.dev_server_url

    service.destroy(instance.id)
    with pytest.raises(SandboxNotFoundError):
        service.get_dev_server_url(instance.id)
