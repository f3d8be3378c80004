"""In-memory registry of sandbox instances.

The registry is the only component that mutates instance status. Every
status change is a compare-and-swap against the caller's expected status,
so two callers racing on the same instance cannot both win.
"""

import threading
from datetime import datetime
from datetime import timezone

from koda.db.enums import SandboxStatus
from koda.server.features.animation.errors import SandboxConflictError
from koda.server.features.animation.sandbox.models import SandboxHandle
from koda.server.features.animation.sandbox.models import SandboxInstance
from koda.utils.logger import setup_logger

logger = setup_logger()

ALLOWED_TRANSITIONS: dict[SandboxStatus, frozenset[SandboxStatus]] = {
    SandboxStatus.PROVISIONING: frozenset(
        {SandboxStatus.RUNNING, SandboxStatus.ERROR}
    ),
    SandboxStatus.RUNNING: frozenset(
        {SandboxStatus.IDLE, SandboxStatus.ERROR, SandboxStatus.DESTROYED}
    ),
    SandboxStatus.IDLE: frozenset(
        {SandboxStatus.RUNNING, SandboxStatus.ERROR, SandboxStatus.DESTROYED}
    ),
    SandboxStatus.ERROR: frozenset({SandboxStatus.DESTROYED}),
    SandboxStatus.DESTROYED: frozenset(),
}


def is_transition_allowed(current: SandboxStatus, new: SandboxStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SandboxRegistry:
    """Authoritative map from sandbox id to instance state.

    Process-lifetime only. get() and list_instances() hand out copies.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._instances: dict[str, SandboxInstance] = {}

    def _active_for_node(self, node_id: str) -> SandboxInstance | None:
        for instance in self._instances.values():
            if instance.node_id == node_id and instance.status.is_active():
                return instance
        return None

    def register(self, instance: SandboxInstance) -> None:
        """Add a new instance.

        Raises:
            SandboxConflictError: If the node already has an active instance
            ValueError: If the id was used before
        """
        with self._lock:
            if instance.id in self._instances:
                raise ValueError(f"Sandbox id {instance.id} is already registered")
            existing = self._active_for_node(instance.node_id)
            if existing is not None:
                raise SandboxConflictError(instance.node_id, existing.id)
            self._instances[instance.id] = instance.model_copy(deep=True)

        logger.debug(
            f"Registered sandbox {instance.id} for node {instance.node_id} "
            f"as {instance.status.value}"
        )

    def get(self, sandbox_id: str) -> SandboxInstance | None:
        with self._lock:
            instance = self._instances.get(sandbox_id)
            return instance.model_copy(deep=True) if instance else None

    def get_active_for_node(self, node_id: str) -> SandboxInstance | None:
        with self._lock:
            instance = self._active_for_node(node_id)
            return instance.model_copy(deep=True) if instance else None

    def list_instances(self) -> list[SandboxInstance]:
        with self._lock:
            return [i.model_copy(deep=True) for i in self._instances.values()]

    def update_status(
        self,
        sandbox_id: str,
        expected: SandboxStatus,
        new: SandboxStatus,
    ) -> bool:
        """Compare-and-swap the status of an instance.

        Returns:
            True if the swap happened, False if the instance is missing or
            its status is no longer ``expected``

        Raises:
            ValueError: If ``expected -> new`` is not a legal transition
        """
        if not is_transition_allowed(expected, new):
            raise ValueError(
                f"Illegal sandbox transition {expected.value} -> {new.value}"
            )

        with self._lock:
            instance = self._instances.get(sandbox_id)
            if instance is None or instance.status != expected:
                return False
            instance.status = new
            instance.status_changed_at = _utcnow()

        logger.info(f"Sandbox {sandbox_id}: {expected.value} -> {new.value}")
        return True

    def touch(self, sandbox_id: str) -> bool:
        """Record an access: bump last_accessed_at and wake an idle instance.

        Returns:
            False if the instance is missing or not live
        """
        with self._lock:
            instance = self._instances.get(sandbox_id)
            if instance is None or not instance.status.is_live():
                return False
            now = _utcnow()
            instance.last_accessed_at = now
            if instance.status == SandboxStatus.IDLE:
                instance.status = SandboxStatus.RUNNING
                instance.status_changed_at = now
                logger.debug(f"Sandbox {sandbox_id}: idle -> running on access")
            return True

    def set_execution_ref(self, sandbox_id: str, handle: SandboxHandle) -> None:
        with self._lock:
            instance = self._instances.get(sandbox_id)
            if instance is None:
                raise KeyError(sandbox_id)
            instance.execution_ref = handle
            instance.work_root = handle.work_root

    def record_failure(self, sandbox_id: str, detail: str) -> None:
        with self._lock:
            instance = self._instances.get(sandbox_id)
            if instance is not None:
                instance.error_detail = detail

    def remove(self, sandbox_id: str) -> None:
        with self._lock:
            self._instances.pop(sandbox_id, None)
