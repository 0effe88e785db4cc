"""Sandbox backends and the factory that picks one per project."""

from __future__ import annotations

from taskforge.config import SandboxSettings
from taskforge.sandbox.base import (
    DEFAULT_EXEC_TIMEOUT_MS,
    TIMEOUT_EXIT_CODE,
    WORKSPACE_PLACEHOLDER,
    CommandResult,
    FileOperationResult,
    SandboxBackend,
)
from taskforge.sandbox.cloud import CloudSyncedSandbox
from taskforge.sandbox.local import LocalSandbox
from taskforge.sandbox.remote_store import RemoteFileStore

__all__ = [
    "DEFAULT_EXEC_TIMEOUT_MS",
    "TIMEOUT_EXIT_CODE",
    "WORKSPACE_PLACEHOLDER",
    "CloudSyncedSandbox",
    "CommandResult",
    "FileOperationResult",
    "LocalSandbox",
    "SandboxBackend",
    "create_sandbox_backend",
]


def create_sandbox_backend(settings: SandboxSettings, project_id: str) -> SandboxBackend:
    """Build the configured sandbox variant for one project session."""

    if settings.backend == "local":
        return LocalSandbox(project_id, workspaces_root=settings.workspaces_root)
    if settings.backend == "cloud":
        return CloudSyncedSandbox(
            project_id,
            store=RemoteFileStore(
                settings.remote_store_url,
                output_max_chars=settings.job_output_max_chars,
            ),
            scratch_root=settings.scratch_root,
            max_sync_file_bytes=settings.max_sync_file_bytes,
        )
    if settings.backend == "container":
        from taskforge.sandbox.container import ContainerSandbox

        return ContainerSandbox(
            project_id,
            image=settings.container_image,
            memory_limit=settings.container_memory_limit,
            cpu_quota=settings.container_cpu_quota,
            network=settings.container_network,
        )
    raise ValueError(f"Unknown sandbox backend: {settings.backend!r}")
