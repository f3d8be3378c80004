"""
Sandbox lifecycle for the animation plugin.

Each canvas node gets at most one active sandbox: an isolated environment
(a local directory or a Kubernetes pod) running the node's rendering code.

Usage:
    from koda.server.features.animation.sandbox.manager import get_sandbox_service

    service = get_sandbox_service()
    instance = service.provision("node-1", SandboxTemplate.REMOTION)
    preview = service.read_file(instance.id, "output/preview.mp4")
"""
