from enum import Enum as PyEnum


class SandboxStatus(str, PyEnum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    IDLE = "idle"
    ERROR = "error"
    DESTROYED = "destroyed"

    def is_active(self) -> bool:
        """Active instances count against the one-per-node limit."""
        return self in (
            SandboxStatus.PROVISIONING,
            SandboxStatus.RUNNING,
            SandboxStatus.IDLE,
        )

    def is_live(self) -> bool:
        """Live instances can serve files and run commands."""
        return self in (SandboxStatus.RUNNING, SandboxStatus.IDLE)


class SandboxTemplate(str, PyEnum):
    REMOTION = "remotion"
    THEATRE = "theatre"
