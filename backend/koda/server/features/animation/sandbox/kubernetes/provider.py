"""Kubernetes-based execution provider for production deployments.

KubernetesExecutionProvider runs each sandbox as a pod (plus a ClusterIP
service for the template's dev server) built from the template's image.

Key features:
- Pod-based isolation, one pod per sandbox
- File access and snapshots via exec into the sandbox container
- Snapshot restore is applied once the pod is ready, before start() returns
- Pods are labelled so orphans can be found with list_resources()

Directory Structure (inside pod):
    /app/                 # work root, SANDBOX_WORK_ROOT
    ├── src/              # captured by snapshots by default
    ├── public/media/
    └── ...

IMPORTANT: This provider does NOT touch the sandbox registry or the
snapshot record table. Use get_execution_provider() from base.py.
"""

import base64
import posixpath
import shlex
import threading
import time
from datetime import datetime
from datetime import timezone

from kubernetes import client  # type: ignore
from kubernetes import config
from kubernetes.client.rest import ApiException  # type: ignore
from kubernetes.stream import stream as k8s_stream  # type: ignore

from koda.db.enums import SandboxTemplate
from koda.server.features.animation.configs import SANDBOX_CPU_LIMIT
from koda.server.features.animation.configs import SANDBOX_DEV_SERVER_PORT
from koda.server.features.animation.configs import SANDBOX_IMAGE_REMOTION
from koda.server.features.animation.configs import SANDBOX_IMAGE_THEATRE
from koda.server.features.animation.configs import SANDBOX_MEMORY_LIMIT
from koda.server.features.animation.configs import SANDBOX_NAMESPACE
from koda.server.features.animation.configs import SANDBOX_SERVICE_ACCOUNT_NAME
from koda.server.features.animation.configs import SANDBOX_WORK_ROOT
from koda.server.features.animation.sandbox.base import ExecutionFileNotFoundError
from koda.server.features.animation.sandbox.base import ExecutionProvider
from koda.server.features.animation.sandbox.base import ExecutionProviderError
from koda.server.features.animation.sandbox.base import (
    ExecutionResourceNotFoundError,
)
from koda.server.features.animation.sandbox.models import CommandResult
from koda.server.features.animation.sandbox.models import FilesystemEntry
from koda.server.features.animation.sandbox.models import SandboxArchive
from koda.server.features.animation.sandbox.models import SandboxHandle
from koda.utils.logger import setup_logger

logger = setup_logger()

SANDBOX_CONTAINER_NAME = "sandbox"
POD_READY_POLL_INTERVAL_SECONDS = 2

SANDBOX_ID_LABEL = "koda.dev/sandbox-id"
MANAGED_BY_LABELS = {
    "app.kubernetes.io/component": "animation-sandbox",
    "app.kubernetes.io/managed-by": "koda",
}

# Each exec argument stays well under the kernel's per-argument limit
UPLOAD_CHUNK_SIZE = 64 * 1024

OK_MARKER = "__KODA_OK__"
NOT_FOUND_MARKER = "__KODA_NOT_FOUND__"


def _image_for_template(template: SandboxTemplate) -> str:
    if template == SandboxTemplate.REMOTION:
        return SANDBOX_IMAGE_REMOTION
    return SANDBOX_IMAGE_THEATRE


class KubernetesExecutionProvider(ExecutionProvider):
    """Pod-per-sandbox execution provider.

    Restore archives handed to create() are held in memory until start()
    sees the pod become ready, then streamed into the work root via exec.
    """

    def __init__(self) -> None:
        # Load Kubernetes config (in-cluster or kubeconfig)
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                config.load_kube_config()
                logger.info("Loaded kubeconfig from default location")
            except config.ConfigException as e:
                raise RuntimeError(
                    f"Failed to load Kubernetes configuration: {e}"
                ) from e

        self._core_api = client.CoreV1Api()
        self._namespace = SANDBOX_NAMESPACE
        self._service_account = SANDBOX_SERVICE_ACCOUNT_NAME or None

        # sandbox_id -> archive to extract once the pod is ready
        self._pending_restores: dict[str, SandboxArchive] = {}
        self._pending_lock = threading.Lock()

        logger.info(
            f"KubernetesExecutionProvider initialized: namespace={self._namespace}"
        )

    def _get_pod_name(self, sandbox_id: str) -> str:
        # "sandbox-" plus a uuid stays under the 63 character DNS label limit
        return f"sandbox-{sandbox_id}"

    def _get_service_name(self, sandbox_id: str) -> str:
        return self._get_pod_name(sandbox_id)

    def _labels(self, sandbox_id: str) -> dict[str, str]:
        return {**MANAGED_BY_LABELS, SANDBOX_ID_LABEL: sandbox_id}

    def _create_sandbox_pod(
        self, sandbox_id: str, template: SandboxTemplate
    ) -> client.V1Pod:
        pod_name = self._get_pod_name(sandbox_id)

        sandbox_container = client.V1Container(
            name=SANDBOX_CONTAINER_NAME,
            image=_image_for_template(template),
            image_pull_policy="IfNotPresent",
            working_dir=SANDBOX_WORK_ROOT,
            ports=[
                client.V1ContainerPort(
                    name="dev-server", container_port=SANDBOX_DEV_SERVER_PORT
                ),
            ],
            env=[
                client.V1EnvVar(name="SANDBOX_ID", value=sandbox_id),
                client.V1EnvVar(name="SANDBOX_TEMPLATE", value=template.value),
            ],
            resources=client.V1ResourceRequirements(
                requests={"cpu": "250m", "memory": "512Mi"},
                limits={"cpu": SANDBOX_CPU_LIMIT, "memory": SANDBOX_MEMORY_LIMIT},
            ),
            security_context=client.V1SecurityContext(
                allow_privilege_escalation=False,
                privileged=False,
                capabilities=client.V1Capabilities(drop=["ALL"]),
            ),
        )

        pod_spec = client.V1PodSpec(
            service_account_name=self._service_account,
            automount_service_account_token=False,
            containers=[sandbox_container],
            restart_policy="Never",
            termination_grace_period_seconds=10,
            host_network=False,
            host_pid=False,
            host_ipc=False,
        )

        return client.V1Pod(
            api_version="v1",
            kind="Pod",
            metadata=client.V1ObjectMeta(
                name=pod_name,
                namespace=self._namespace,
                labels=self._labels(sandbox_id),
            ),
            spec=pod_spec,
        )

    def _create_sandbox_service(self, sandbox_id: str) -> client.V1Service:
        """Create ClusterIP Service exposing the sandbox dev server."""
        return client.V1Service(
            api_version="v1",
            kind="Service",
            metadata=client.V1ObjectMeta(
                name=self._get_service_name(sandbox_id),
                namespace=self._namespace,
                labels=self._labels(sandbox_id),
            ),
            spec=client.V1ServiceSpec(
                type="ClusterIP",
                selector={SANDBOX_ID_LABEL: sandbox_id},
                ports=[
                    client.V1ServicePort(
                        name="dev-server",
                        port=SANDBOX_DEV_SERVER_PORT,
                        target_port=SANDBOX_DEV_SERVER_PORT,
                    ),
                ],
            ),
        )

    def _exec(self, handle: SandboxHandle, script: str) -> str:
        """Run a shell script in the sandbox container and return its stdout."""
        try:
            return k8s_stream(
                self._core_api.connect_get_namespaced_pod_exec,
                name=handle.substrate_id,
                namespace=self._namespace,
                container=SANDBOX_CONTAINER_NAME,
                command=["/bin/sh", "-c", script],
                stderr=False,
                stdin=False,
                stdout=True,
                tty=False,
            )
        except ApiException as e:
            if e.status == 404:
                raise ExecutionResourceNotFoundError(
                    f"Pod {handle.substrate_id} not found"
                ) from e
            raise ExecutionProviderError(
                f"Exec in pod {handle.substrate_id} failed: {e}"
            ) from e
        except Exception as e:
            raise ExecutionProviderError(
                f"Exec in pod {handle.substrate_id} failed: {e}"
            ) from e

    def _upload(self, handle: SandboxHandle, data: bytes, remote_path: str) -> None:
        """Stage ``data`` as a base64 file inside the container."""
        encoded = base64.b64encode(data).decode("ascii")
        quoted_path = shlex.quote(remote_path)
        self._exec(handle, f": > {quoted_path}")
        for offset in range(0, len(encoded), UPLOAD_CHUNK_SIZE):
            chunk = encoded[offset : offset + UPLOAD_CHUNK_SIZE]
            self._exec(handle, f"printf '%s' {shlex.quote(chunk)} >> {quoted_path}")

    def _restore_archive(self, handle: SandboxHandle, archive: SandboxArchive) -> None:
        staged = f"/tmp/koda-restore-{handle.sandbox_id}.b64"
        self._upload(handle, archive.data, staged)
        output = self._exec(
            handle,
            f"base64 -d {shlex.quote(staged)} "
            f"| tar -xzf - -C {shlex.quote(handle.work_root)} "
            f"&& rm -f {shlex.quote(staged)} && echo {OK_MARKER}",
        )
        if OK_MARKER not in output:
            raise ExecutionProviderError(
                f"Failed to restore archive into pod {handle.substrate_id}: {output}"
            )
        logger.info(
            f"Restored {archive.file_count} files into sandbox {handle.sandbox_id}"
        )

    def create(
        self,
        sandbox_id: str,
        template: SandboxTemplate,
        restore_archive: SandboxArchive | None = None,
    ) -> SandboxHandle:
        pod_name = self._get_pod_name(sandbox_id)
        logger.info(
            f"Creating Kubernetes sandbox {sandbox_id} (pod {pod_name}, "
            f"template {template.value})"
        )

        try:
            self._core_api.create_namespaced_pod(
                namespace=self._namespace,
                body=self._create_sandbox_pod(sandbox_id, template),
            )
            self._core_api.create_namespaced_service(
                namespace=self._namespace,
                body=self._create_sandbox_service(sandbox_id),
            )
        except ApiException as e:
            logger.error(
                f"Kubernetes sandbox creation failed for {sandbox_id}: {e}",
                exc_info=True,
            )
            if e.status != 409:
                # on 409 the existing resources are not ours to delete
                self._cleanup_kubernetes_resources(sandbox_id)
            raise ExecutionProviderError(
                f"Failed to create pod {pod_name}: {e}"
            ) from e
        except Exception as e:
            logger.error(
                f"Kubernetes sandbox creation failed for {sandbox_id}: {e}",
                exc_info=True,
            )
            raise ExecutionProviderError(
                f"Failed to create pod {pod_name}: {e}"
            ) from e

        if restore_archive is not None:
            with self._pending_lock:
                self._pending_restores[sandbox_id] = restore_archive

        return SandboxHandle(
            sandbox_id=sandbox_id,
            substrate_id=pod_name,
            work_root=SANDBOX_WORK_ROOT,
        )

    def _wait_for_pod_ready(self, pod_name: str, timeout: float) -> bool:
        """Wait for pod to become ready.

        Returns:
            True if pod is ready, False if timeout

        Raises:
            ExecutionResourceNotFoundError: If the pod is deleted while waiting
            ExecutionProviderError: If the pod fails or exits
        """
        start_time = time.monotonic()

        while time.monotonic() - start_time < timeout:
            try:
                pod = self._core_api.read_namespaced_pod(
                    name=pod_name,
                    namespace=self._namespace,
                )
            except ApiException as e:
                if e.status == 404:
                    raise ExecutionResourceNotFoundError(
                        f"Pod {pod_name} was deleted"
                    ) from e
                logger.warning(f"Error checking pod status: {e}")
            except Exception as e:
                logger.warning(f"Error reaching Kubernetes API for pod {pod_name}: {e}")
            else:
                phase = pod.status.phase if pod.status else None

                if phase == "Failed":
                    raise ExecutionProviderError(f"Pod {pod_name} failed to start")
                if phase == "Succeeded":
                    raise ExecutionProviderError(
                        f"Pod {pod_name} completed unexpectedly "
                        "(sandbox pods should run indefinitely)"
                    )
                if phase == "Running":
                    for condition in pod.status.conditions or []:
                        if condition.type == "Ready" and condition.status == "True":
                            logger.info(f"Pod {pod_name} is ready")
                            return True

                logger.debug(f"Pod {pod_name} status: {phase}, waiting...")

            time.sleep(POD_READY_POLL_INTERVAL_SECONDS)

        logger.warning(f"Timeout waiting for pod {pod_name} to become ready")
        return False

    def start(self, handle: SandboxHandle, timeout: float) -> bool:
        if not self._wait_for_pod_ready(handle.substrate_id, timeout):
            return False

        with self._pending_lock:
            archive = self._pending_restores.pop(handle.sandbox_id, None)
        if archive is not None:
            self._restore_archive(handle, archive)

        return True

    def read_file(self, handle: SandboxHandle, path: str) -> bytes:
        quoted = shlex.quote(path)
        output = self._exec(
            handle,
            f"if [ -f {quoted} ]; then echo {OK_MARKER}; base64 {quoted}; "
            f"else echo {NOT_FOUND_MARKER}; fi",
        )
        marker, _, body = output.partition("\n")
        if marker.strip() == NOT_FOUND_MARKER:
            raise ExecutionFileNotFoundError(f"File not found: {path}")
        if marker.strip() != OK_MARKER:
            raise ExecutionProviderError(f"Unexpected output reading {path}")

        try:
            return base64.b64decode("".join(body.split()), validate=True)
        except ValueError as e:
            raise ExecutionProviderError(f"Corrupt file read for {path}: {e}") from e

    def write_file(self, handle: SandboxHandle, path: str, content: bytes) -> None:
        staged = f"/tmp/koda-write-{handle.sandbox_id}.b64"
        self._upload(handle, content, staged)
        quoted = shlex.quote(path)
        output = self._exec(
            handle,
            f'mkdir -p "$(dirname {quoted})" '
            f"&& base64 -d {shlex.quote(staged)} > {quoted} "
            f"&& rm -f {shlex.quote(staged)} && echo {OK_MARKER}",
        )
        if OK_MARKER not in output:
            raise ExecutionProviderError(f"Failed to write {path}: {output}")

    def list_directory(
        self, handle: SandboxHandle, path: str
    ) -> list[FilesystemEntry]:
        quoted = shlex.quote(path)
        output = self._exec(
            handle,
            f"if [ -d {quoted} ]; then ls -la --time-style=+%s {quoted}; "
            f"else echo {NOT_FOUND_MARKER}; fi",
        )
        if NOT_FOUND_MARKER in output:
            raise ExecutionFileNotFoundError(f"Not a directory: {path}")

        relative = posixpath.relpath(path, handle.work_root)
        if relative == ".":
            relative = ""
        entries = self._parse_ls_output(output, relative)
        return sorted(entries, key=lambda e: (not e.is_directory, e.name.lower()))

    def _parse_ls_output(self, ls_output: str, base_path: str) -> list[FilesystemEntry]:
        """Parse ls -la output into FilesystemEntry objects."""
        entries = []
        for line in ls_output.strip().split("\n"):
            # Skip header line and . / .. entries
            if line.startswith("total") or not line:
                continue

            parts = line.split(maxsplit=6)
            if len(parts) < 7:
                continue

            name = parts[6]
            if name in (".", ".."):
                continue
            # symlinks render as "name -> target"
            if line.startswith("l"):
                name = name.split(" -> ", 1)[0]

            is_directory = line.startswith("d")
            try:
                size_bytes = int(parts[4]) if not is_directory else None
            except ValueError:
                size_bytes = None
            try:
                modified_at: datetime | None = datetime.fromtimestamp(
                    int(parts[5]), tz=timezone.utc
                )
            except (ValueError, OSError):
                modified_at = None

            entries.append(
                FilesystemEntry(
                    name=name,
                    path=f"{base_path}/{name}".lstrip("/"),
                    is_directory=is_directory,
                    size_bytes=size_bytes,
                    modified_at=modified_at,
                )
            )

        return entries

    def run_command(
        self, handle: SandboxHandle, command: str, timeout: float
    ) -> CommandResult:
        try:
            resp = k8s_stream(
                self._core_api.connect_get_namespaced_pod_exec,
                name=handle.substrate_id,
                namespace=self._namespace,
                container=SANDBOX_CONTAINER_NAME,
                command=[
                    "/bin/sh",
                    "-c",
                    f"cd {shlex.quote(handle.work_root)} && {command}",
                ],
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
            )
            resp.run_forever(timeout=timeout)
            stdout = resp.read_stdout() or ""
            stderr = resp.read_stderr() or ""
            exit_code = resp.returncode
            resp.close()
        except ApiException as e:
            if e.status == 404:
                raise ExecutionResourceNotFoundError(
                    f"Pod {handle.substrate_id} not found"
                ) from e
            raise ExecutionProviderError(f"Failed to run command: {e}") from e
        except Exception as e:
            raise ExecutionProviderError(f"Failed to run command: {e}") from e

        if exit_code is None:
            return CommandResult(
                success=False,
                stdout=stdout,
                stderr=stderr or f"Command timed out after {timeout}s",
                exit_code=124,
            )

        return CommandResult(
            success=exit_code == 0,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
        )

    def copy_out(self, handle: SandboxHandle, subpath: str) -> SandboxArchive:
        work_root = shlex.quote(handle.work_root)
        quoted_subpath = shlex.quote(subpath)
        output = self._exec(
            handle,
            f"cd {work_root} && if [ -e {quoted_subpath} ]; then "
            f"echo \"{OK_MARKER} $(find {quoted_subpath} -type f | wc -l)\"; "
            f"tar -czf - {quoted_subpath} | base64; "
            f"else echo {NOT_FOUND_MARKER}; fi",
        )
        header, _, body = output.partition("\n")
        if header.strip() == NOT_FOUND_MARKER:
            raise ExecutionFileNotFoundError(f"Snapshot source does not exist: {subpath}")
        if not header.startswith(OK_MARKER):
            raise ExecutionProviderError(
                f"Unexpected output archiving {subpath} in pod {handle.substrate_id}"
            )

        try:
            file_count = int(header[len(OK_MARKER) :].strip())
            data = base64.b64decode("".join(body.split()), validate=True)
        except ValueError as e:
            raise ExecutionProviderError(
                f"Corrupt archive from pod {handle.substrate_id}: {e}"
            ) from e

        return SandboxArchive(data=data, file_count=file_count)

    def get_dev_server_url(self, handle: SandboxHandle) -> str:
        service_name = self._get_service_name(handle.sandbox_id)
        return (
            f"http://{service_name}.{self._namespace}.svc.cluster.local"
            f":{SANDBOX_DEV_SERVER_PORT}"
        )

    def _cleanup_kubernetes_resources(self, sandbox_id: str) -> bool:
        """Delete the Service and Pod. Returns True if anything existed."""
        pod_name = self._get_pod_name(sandbox_id)
        service_name = self._get_service_name(sandbox_id)
        found = False

        # Delete in reverse order of creation
        try:
            self._core_api.delete_namespaced_service(
                name=service_name,
                namespace=self._namespace,
            )
            found = True
            logger.debug(f"Deleted Service {service_name}")
        except ApiException as e:
            if e.status != 404:
                raise ExecutionProviderError(
                    f"Error deleting Service {service_name}: {e}"
                ) from e

        try:
            self._core_api.delete_namespaced_pod(
                name=pod_name,
                namespace=self._namespace,
            )
            found = True
            logger.debug(f"Deleted Pod {pod_name}")
        except ApiException as e:
            if e.status != 404:
                raise ExecutionProviderError(
                    f"Error deleting Pod {pod_name}: {e}"
                ) from e

        return found

    def destroy(self, handle: SandboxHandle) -> None:
        with self._pending_lock:
            self._pending_restores.pop(handle.sandbox_id, None)

        if not self._cleanup_kubernetes_resources(handle.sandbox_id):
            raise ExecutionResourceNotFoundError(
                f"No pod or service for sandbox {handle.sandbox_id}"
            )

        logger.info(f"Destroyed Kubernetes sandbox {handle.sandbox_id}")

    def list_resources(self) -> list[SandboxHandle]:
        selector = ",".join(f"{k}={v}" for k, v in MANAGED_BY_LABELS.items())
        try:
            pods = self._core_api.list_namespaced_pod(
                namespace=self._namespace,
                label_selector=selector,
            )
        except ApiException as e:
            raise ExecutionProviderError(f"Failed to list sandbox pods: {e}") from e

        handles = []
        for pod in pods.items:
            sandbox_id = (pod.metadata.labels or {}).get(SANDBOX_ID_LABEL)
            if not sandbox_id:
                continue
            handles.append(
                SandboxHandle(
                    sandbox_id=sandbox_id,
                    substrate_id=pod.metadata.name,
                    work_root=SANDBOX_WORK_ROOT,
                )
            )
        return handles
