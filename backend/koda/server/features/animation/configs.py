import os
from enum import Enum


class SandboxBackend(str, Enum):
    """Execution substrate used for animation sandboxes.

    LOCAL: Development mode - one directory (and optional process) per sandbox
    KUBERNETES: Production mode - one pod + service per sandbox
    """

    LOCAL = "local"
    KUBERNETES = "kubernetes"


class SnapshotStorageBackend(str, Enum):
    """Durable storage for snapshot archives.

    LOCAL: files under SNAPSHOT_LOCAL_PATH
    S3: any S3-compatible bucket (AWS S3, Cloudflare R2, MinIO)
    """

    LOCAL = "local"
    S3 = "s3"


SANDBOX_BACKEND = SandboxBackend(os.environ.get("SANDBOX_BACKEND", "local"))

# Sandbox filesystem paths (local backend)
SANDBOX_BASE_PATH = os.environ.get("SANDBOX_BASE_PATH", "/tmp/koda-sandboxes")
SANDBOX_TEMPLATES_PATH = os.environ.get(
    "SANDBOX_TEMPLATES_PATH", "./templates/animation-sandbox"
)
# Optional command started inside the sandbox directory, e.g. "npm run dev"
SANDBOX_LOCAL_START_COMMAND = os.environ.get("SANDBOX_LOCAL_START_COMMAND", "").split()

# Root all served paths resolve against, inside the sandbox
SANDBOX_WORK_ROOT = os.environ.get("SANDBOX_WORK_ROOT", "/app")

# Kubernetes backend
SANDBOX_NAMESPACE = os.environ.get("SANDBOX_NAMESPACE", "koda-sandboxes")
SANDBOX_SERVICE_ACCOUNT_NAME = os.environ.get("SANDBOX_SERVICE_ACCOUNT_NAME", "")
SANDBOX_IMAGE_REMOTION = os.environ.get(
    "SANDBOX_IMAGE_REMOTION", "koda/remotion-sandbox"
)
SANDBOX_IMAGE_THEATRE = os.environ.get(
    "SANDBOX_IMAGE_THEATRE", "koda/animation-sandbox"
)
SANDBOX_DEV_SERVER_PORT = int(os.environ.get("SANDBOX_DEV_SERVER_PORT", "5173"))
SANDBOX_MEMORY_LIMIT = os.environ.get("SANDBOX_MEMORY_LIMIT", "2Gi")
SANDBOX_CPU_LIMIT = os.environ.get("SANDBOX_CPU_LIMIT", "2")

# Sandbox lifecycle configuration
SANDBOX_PROVISION_TIMEOUT_SECONDS = float(
    os.environ.get("SANDBOX_PROVISION_TIMEOUT_SECONDS", "120")
)
# running -> idle after this much inactivity
SANDBOX_IDLE_AFTER_SECONDS = int(os.environ.get("SANDBOX_IDLE_AFTER_SECONDS", "300"))
# running/idle sandboxes are reclaimed after this much inactivity
SANDBOX_IDLE_TTL_SECONDS = int(os.environ.get("SANDBOX_IDLE_TTL_SECONDS", "1800"))
SANDBOX_REAPER_INTERVAL_SECONDS = int(
    os.environ.get("SANDBOX_REAPER_INTERVAL_SECONDS", "300")
)
# How long destroyed instances stay visible in the registry
SANDBOX_TOMBSTONE_RETENTION_SECONDS = int(
    os.environ.get("SANDBOX_TOMBSTONE_RETENTION_SECONDS", "3600")
)
SANDBOX_COMMAND_TIMEOUT_SECONDS = float(
    os.environ.get("SANDBOX_COMMAND_TIMEOUT_SECONDS", "30")
)
SANDBOX_MAX_COMMAND_TIMEOUT_SECONDS = float(
    os.environ.get("SANDBOX_MAX_COMMAND_TIMEOUT_SECONDS", "300")
)

# Snapshot configuration
SNAPSHOT_STORAGE_BACKEND = SnapshotStorageBackend(
    os.environ.get("SNAPSHOT_STORAGE_BACKEND", "local")
)
# Subtree (relative to the work root) captured when a save does not name one
SANDBOX_SNAPSHOT_SUBPATH = os.environ.get("SANDBOX_SNAPSHOT_SUBPATH", "src")
SNAPSHOT_LOCAL_PATH = os.environ.get("SNAPSHOT_LOCAL_PATH", "./data/snapshots")
SNAPSHOT_KEY_PREFIX = os.environ.get("SNAPSHOT_KEY_PREFIX", "snapshots")
SNAPSHOT_S3_BUCKET = os.environ.get("SNAPSHOT_S3_BUCKET", "sandbox-snapshots")
# Set for R2 / MinIO, e.g. https://<account>.r2.cloudflarestorage.com
SNAPSHOT_S3_ENDPOINT_URL = os.environ.get("SNAPSHOT_S3_ENDPOINT_URL") or None
SNAPSHOT_S3_REGION = os.environ.get("SNAPSHOT_S3_REGION", "auto")
