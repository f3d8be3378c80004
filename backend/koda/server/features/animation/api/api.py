from collections.abc import Iterator

import httpx
from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import Query
from fastapi import Request
from fastapi import Response
from fastapi.responses import StreamingResponse

from koda.server.features.animation.api.models import DirectoryListingResponse
from koda.server.features.animation.api.models import SandboxCreateRequest
from koda.server.features.animation.api.models import SandboxResponse
from koda.server.features.animation.api.models import SnapshotMetadata
from koda.server.features.animation.api.models import SnapshotSaveRequest
from koda.server.features.animation.api.models import SnapshotStatusResponse
from koda.server.features.animation.api.models import SuccessResponse
from koda.server.features.animation.configs import SANDBOX_DEV_SERVER_PORT
from koda.server.features.animation.errors import InvalidPathError
from koda.server.features.animation.errors import NotFoundError
from koda.server.features.animation.errors import ProvisionFailureError
from koda.server.features.animation.errors import SandboxConflictError
from koda.server.features.animation.errors import SandboxError
from koda.server.features.animation.errors import StorageFailureError
from koda.server.features.animation.errors import SubstrateError
from koda.server.features.animation.sandbox.manager import get_sandbox_service
from koda.server.features.animation.sandbox.manager import SandboxService
from koda.utils.logger import setup_logger

logger = setup_logger()

router = APIRouter(prefix="/plugins/animation", tags=["animation"])


def _to_http_exception(e: SandboxError) -> HTTPException:
    if isinstance(e, InvalidPathError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SandboxConflictError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (ProvisionFailureError, SubstrateError)):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, StorageFailureError):
        return HTTPException(status_code=503, detail=str(e))

    logger.error(f"Unmapped sandbox error: {e}", exc_info=True)
    return HTTPException(status_code=500, detail="Internal sandbox error")


# ===== Sandboxes =====


@router.post("/sandbox", response_model=SandboxResponse)
def create_sandbox(
    request: SandboxCreateRequest,
    service: SandboxService = Depends(get_sandbox_service),
) -> SandboxResponse:
    try:
        instance = service.provision(
            request.node_id,
            request.template,
            restore_snapshot=request.restore_snapshot,
        )
    except SandboxError as e:
        raise _to_http_exception(e) from e

    return SandboxResponse.from_instance(instance)


@router.get("/sandbox/{sandbox_id}", response_model=SandboxResponse)
def get_sandbox(
    sandbox_id: str,
    service: SandboxService = Depends(get_sandbox_service),
) -> SandboxResponse:
    try:
        instance = service.get_instance(sandbox_id)
    except SandboxError as e:
        raise _to_http_exception(e) from e

    return SandboxResponse.from_instance(instance)


@router.delete("/sandbox/{sandbox_id}", response_model=SuccessResponse)
def delete_sandbox(
    sandbox_id: str,
    service: SandboxService = Depends(get_sandbox_service),
) -> SuccessResponse:
    try:
        service.destroy(sandbox_id)
    except SandboxError as e:
        raise _to_http_exception(e) from e

    return SuccessResponse()


@router.get("/sandbox/{sandbox_id}/file")
def get_sandbox_file(
    sandbox_id: str,
    path: str | None = Query(default=None),
    service: SandboxService = Depends(get_sandbox_service),
) -> Response:
    """Serve a file from a running sandbox, e.g. a rendered preview."""
    if not path:
        raise HTTPException(status_code=400, detail="Missing path parameter")

    try:
        sandbox_file = service.read_file(sandbox_id, path)
    except SandboxError as e:
        raise _to_http_exception(e) from e

    return Response(
        content=sandbox_file.content,
        media_type=sandbox_file.content_type,
        headers={
            "Cache-Control": "no-cache",
            "Content-Length": str(len(sandbox_file.content)),
        },
    )


@router.get("/sandbox/{sandbox_id}/files", response_model=DirectoryListingResponse)
def list_sandbox_files(
    sandbox_id: str,
    path: str | None = Query(default=None),
    service: SandboxService = Depends(get_sandbox_service),
) -> DirectoryListingResponse:
    try:
        entries = service.list_directory(sandbox_id, path)
    except SandboxError as e:
        raise _to_http_exception(e) from e

    return DirectoryListingResponse(path=path or "", entries=entries)


# ===== Dev server preview =====


EXCLUDED_HEADERS = {
    "content-encoding",
    "content-length",
    "transfer-encoding",
    "connection",
    "x-frame-options",
}

# Content types that may reference the dev server origin
REWRITABLE_CONTENT_TYPES = {
    "text/html",
    "text/css",
    "application/javascript",
    "text/javascript",
}


def _upstream_client() -> httpx.Client:
    return httpx.Client(timeout=30.0, follow_redirects=True)


def _stream_response(response: httpx.Response) -> Iterator[bytes]:
    """Stream the response content in chunks."""
    for chunk in response.iter_bytes(chunk_size=8192):
        yield chunk


def _rewrite_dev_server_urls(
    content: bytes, base_url: str, proxy_base: str, inject_base_tag: bool
) -> bytes:
    """Point dev server URLs back through the proxy.

    HTML also gets a <base> tag so root-relative module paths such as
    /@vite/client resolve under the proxy.
    """
    text = content.decode("utf-8", errors="replace")
    for origin in (base_url, f"http://localhost:{SANDBOX_DEV_SERVER_PORT}"):
        text = text.replace(origin, proxy_base)

    if inject_base_tag:
        base_tag = f'<base href="{proxy_base}/">'
        if "<head>" in text:
            text = text.replace("<head>", f"<head>{base_tag}", 1)
        else:
            text = f"{base_tag}\n{text}"
    return text.encode("utf-8")


def _proxy_request(
    path: str, request: Request, sandbox_id: str, service: SandboxService
) -> StreamingResponse | Response:
    """Proxy a GET to the sandbox's dev server."""
    try:
        base_url = service.get_dev_server_url(sandbox_id)
    except SandboxError as e:
        raise _to_http_exception(e) from e

    target_url = f"{base_url}/{path.lstrip('/')}"
    if request.query_params:
        target_url = f"{target_url}?{request.query_params}"
    proxy_base = f"{router.prefix}/sandbox/{sandbox_id}/proxy"

    logger.debug(f"Proxying request to: {target_url}")

    try:
        with _upstream_client() as client:
            response = client.get(
                target_url,
                headers={
                    key: value
                    for key, value in request.headers.items()
                    if key.lower() not in ("host", "content-length")
                },
            )

            response_headers = {
                key: value
                for key, value in response.headers.items()
                if key.lower() not in EXCLUDED_HEADERS
            }
            response_headers["Cache-Control"] = "no-cache"

            content_type = response.headers.get("content-type", "")

            if any(ct in content_type for ct in REWRITABLE_CONTENT_TYPES):
                content = _rewrite_dev_server_urls(
                    response.content,
                    base_url,
                    proxy_base,
                    inject_base_tag="text/html" in content_type,
                )
                return Response(
                    content=content,
                    status_code=response.status_code,
                    headers=response_headers,
                    media_type=content_type,
                )

            return StreamingResponse(
                content=_stream_response(response),
                status_code=response.status_code,
                headers=response_headers,
                media_type=content_type or None,
            )

    except httpx.TimeoutException:
        logger.error(f"Timeout while proxying request to {target_url}")
        raise HTTPException(status_code=504, detail="Gateway timeout")
    except httpx.RequestError as e:
        logger.error(f"Error proxying request to {target_url}: {e}")
        raise HTTPException(status_code=502, detail="Bad gateway")


@router.get("/sandbox/{sandbox_id}/proxy", response_model=None)
def get_sandbox_preview_root(
    sandbox_id: str,
    request: Request,
    service: SandboxService = Depends(get_sandbox_service),
) -> StreamingResponse | Response:
    """Proxy the root of the sandbox's dev server."""
    return _proxy_request("", request, sandbox_id, service)


@router.get("/sandbox/{sandbox_id}/proxy/{path:path}", response_model=None)
def get_sandbox_preview_path(
    sandbox_id: str,
    path: str,
    request: Request,
    service: SandboxService = Depends(get_sandbox_service),
) -> StreamingResponse | Response:
    return _proxy_request(path, request, sandbox_id, service)


# ===== Snapshots =====


@router.get("/snapshot/{node_id}", response_model=SnapshotStatusResponse)
def get_snapshot(
    node_id: str,
    service: SandboxService = Depends(get_sandbox_service),
) -> SnapshotStatusResponse:
    try:
        record = service.get_snapshot_metadata(node_id)
    except SandboxError as e:
        raise _to_http_exception(e) from e

    if record is None:
        return SnapshotStatusResponse(exists=False, metadata=None)
    return SnapshotStatusResponse(
        exists=True, metadata=SnapshotMetadata.from_record(record)
    )


@router.post("/snapshot/{node_id}", response_model=SnapshotMetadata)
def save_snapshot(
    node_id: str,
    request: SnapshotSaveRequest,
    service: SandboxService = Depends(get_sandbox_service),
) -> SnapshotMetadata:
    try:
        record = service.save_snapshot(
            node_id, request.sandbox_id, subpath=request.subpath
        )
    except SandboxError as e:
        raise _to_http_exception(e) from e

    return SnapshotMetadata.from_record(record)


@router.delete("/snapshot/{node_id}", response_model=SuccessResponse)
def delete_snapshot(
    node_id: str,
    service: SandboxService = Depends(get_sandbox_service),
) -> SuccessResponse:
    try:
        service.delete_snapshot(node_id)
    except SandboxError as e:
        raise _to_http_exception(e) from e

    return SuccessResponse()
