"""
kubeplane/daemon.py

The control-plane daemon:
  1) Reads ControlPlaneSettings from KUBEPLANE_* variables and sets up logging.
  2) Loads the script templates (defaults plus KUBEPLANE_TEMPLATE_DIR) and
     builds the step and pipeline registries once; both are read-only after.
  3) Opens the configured KV store.
  4) Serves the HTTP API until interrupted, then cancels running tasks
     (each records `cancelled`) and closes the store.
"""

from __future__ import annotations

import logging
from typing import Optional

from aiohttp import web

from kubeplane.api.server import create_app
from kubeplane.clouds.registry import ProviderRegistry, default_registry
from kubeplane.models.settings import ControlPlaneSettings
from kubeplane.provisioner.orchestrator import ClusterProvisioner
from kubeplane.storage.factory import build_store
from kubeplane.storage.kv import KVStore
from kubeplane.templates.manager import TemplateManager
from kubeplane.workflows.services import Services
from kubeplane.workflows.steps.catalog import default_pipeline_registry

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: ControlPlaneSettings) -> None:
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)


async def build_provisioner(
    settings: ControlPlaneSettings,
    *,
    store: Optional[KVStore] = None,
    providers: Optional[ProviderRegistry] = None,
) -> ClusterProvisioner:
    templates = await TemplateManager.init(settings.template_dir)
    registry = providers or default_registry()
    services = Services(templates=templates, providers=registry)
    pipelines = default_pipeline_registry(registry.names())
    logger.info(
        "Loaded %d templates, pipelines: %s",
        len(templates.names()),
        ", ".join(pipelines.names()),
    )
    return ClusterProvisioner(services, pipelines, store or build_store(settings), settings)


async def make_app(settings: ControlPlaneSettings) -> web.Application:
    prov = await build_provisioner(settings)
    app = create_app(prov)

    async def _close_store(_app: web.Application) -> None:
        await prov.store.close()

    app.on_cleanup.append(_close_store)
    return app


def serve(settings: ControlPlaneSettings) -> None:
    logger.info(
        "kubeplane listening on %s:%d (storage=%s, dry_run=%s)",
        settings.listen_host,
        settings.listen_port,
        settings.storage_backend.value,
        settings.dry_run,
    )
    web.run_app(
        make_app(settings),
        host=settings.listen_host,
        port=settings.listen_port,
        print=None,
    )


def main() -> None:
    settings = ControlPlaneSettings()
    configure_logging(settings)
    serve(settings)


if __name__ == "__main__":
    main()
