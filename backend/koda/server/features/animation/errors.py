"""Error types raised by the animation sandbox feature.

The API layer maps each family to an HTTP status:

- InvalidPathError -> 400 (client error, never retried)
- SandboxNotFoundError, SnapshotNotFoundError, SandboxFileNotFoundError -> 404
- SandboxConflictError -> 409
- ProvisionFailureError, SubstrateError -> 502 (retryable from the UI)
- StorageFailureError -> 503
"""


class SandboxError(Exception):
    """Base class for animation sandbox errors."""


class InvalidPathError(SandboxError, ValueError):
    """Requested path is absolute or tries to traverse out of the work root."""

    def __init__(self, path: str, reason: str = "Invalid path") -> None:
        super().__init__(f"{reason}: {path!r}")
        self.path = path
        self.reason = reason


class NotFoundError(SandboxError):
    """Base for every not-found condition."""


class SandboxNotFoundError(NotFoundError):
    def __init__(self, sandbox_id: str) -> None:
        super().__init__(f"Sandbox {sandbox_id} not found or not running")
        self.sandbox_id = sandbox_id


class SandboxFileNotFoundError(NotFoundError):
    def __init__(self, sandbox_id: str, path: str) -> None:
        super().__init__(f"File not found in sandbox {sandbox_id}: {path}")
        self.sandbox_id = sandbox_id
        self.path = path


class SnapshotNotFoundError(NotFoundError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f"No snapshot for node {node_id}")
        self.node_id = node_id


class SandboxConflictError(SandboxError):
    def __init__(self, node_id: str, existing_sandbox_id: str) -> None:
        super().__init__(
            f"Node {node_id} already has an active sandbox {existing_sandbox_id}"
        )
        self.node_id = node_id
        self.existing_sandbox_id = existing_sandbox_id


class ProvisionFailureError(SandboxError):
    """The substrate failed to create or start a sandbox in time."""

    def __init__(
        self, sandbox_id: str, cause: str, substrate_id: str | None = None
    ) -> None:
        message = f"Failed to provision sandbox {sandbox_id}: {cause}"
        if substrate_id:
            message += f" (substrate resource {substrate_id})"
        super().__init__(message)
        self.sandbox_id = sandbox_id
        self.cause = cause
        self.substrate_id = substrate_id


class StorageFailureError(SandboxError):
    """Durable snapshot storage (blob store or record table) failed."""


class SubstrateError(SandboxError):
    """A live sandbox failed while serving a file or running a command."""

    def __init__(self, sandbox_id: str, cause: str) -> None:
        super().__init__(f"Sandbox {sandbox_id} failed: {cause}")
        self.sandbox_id = sandbox_id
        self.cause = cause
