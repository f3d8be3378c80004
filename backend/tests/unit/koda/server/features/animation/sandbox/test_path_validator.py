import pytest

from koda.server.features.animation.errors import InvalidPathError
from koda.server.features.animation.sandbox.path_validator import (
    resolve_in_work_root,
)
from koda.server.features.animation.sandbox.path_validator import (
    validate_sandbox_path,
)


@pytest.mark.parametrize(
    "path,expected",
    [
        ("output/preview.mp4", "output/preview.mp4"),
        ("./src/index.ts", "src/index.ts"),
        ("public//media/clip.webm", "public/media/clip.webm"),
        ("src\\scene.tsx", "src/scene.tsx"),
        ("a:b.txt", "a:b.txt"),
        ("output/take:2.mp4", "output/take:2.mp4"),
    ],
)
def test_valid_paths_are_normalized(path: str, expected: str) -> None:
    assert validate_sandbox_path(path) == expected


@pytest.mark.parametrize(
    "path",
    [
        "../../etc/passwd",
        "output/../../secret",
        "output/../preview.mp4",
        "..",
        "/etc/passwd",
        "\\\\server\\share",
        "C:\\Windows\\system32",
        "c:/x",
        "C:",
        "src\\..\\..\\x",
        "out\0put.mp4",
    ],
)
def test_traversal_and_absolute_paths_are_rejected(path: str) -> None:
    with pytest.raises(InvalidPathError):
        validate_sandbox_path(path)


@pytest.mark.parametrize("path", [None, "", "   ", "."])
def test_empty_paths_are_rejected_by_default(path: str | None) -> None:
    with pytest.raises(InvalidPathError):
        validate_sandbox_path(path)


def test_allow_root_maps_empty_to_work_root() -> None:
    assert validate_sandbox_path(None, allow_root=True) == "."
    assert validate_sandbox_path("./", allow_root=True) == "."


def test_invalid_path_error_is_a_value_error() -> None:
    """Callers that only know ValueError still catch it."""
    with pytest.raises(ValueError):
        validate_sandbox_path("../x")


def test_resolve_in_work_root() -> None:
    assert resolve_in_work_root("/app", "output/preview.mp4") == "/app/output/preview.mp4"
