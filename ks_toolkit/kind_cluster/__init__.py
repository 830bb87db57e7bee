"""Local kind cluster automation for KubeSphere workflows."""

from .bootstrap import (
    ImageCatalog,
    InstallError,
    InstallOptions,
    InstallProfile,
    InstallReport,
    load_install_config,
    parse_port_mappings,
    render_kind_config,
    resolve_nightly_tag,
    run_install,
)
from .sync import BatchResult, ParallelSyncBatch, SyncJob, SyncResult, run_sync_job

__all__ = [
    "BatchResult",
    "ImageCatalog",
    "InstallError",
    "InstallOptions",
    "InstallProfile",
    "InstallReport",
    "ParallelSyncBatch",
    "SyncJob",
    "SyncResult",
    "load_install_config",
    "parse_port_mappings",
    "render_kind_config",
    "resolve_nightly_tag",
    "run_install",
    "run_sync_job",
]
