"""
kubeplane/api/server.py

aiohttp.web routes over ClusterProvisioner. Handlers only translate between
HTTP and the provisioner; long-running work is answered with 202 and task
ids that callers poll under /workflows/{id}.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

from aiohttp import web

from kubeplane.errors import KubeplaneError, error_category
from kubeplane.models.requests import ProvisionRequest, UpgradeRequest
from kubeplane.models.validator import validate_json
from kubeplane.provisioner.orchestrator import ClusterProvisioner

logger = logging.getLogger(__name__)

PROVISIONER_KEY = web.AppKey("provisioner", ClusterProvisioner)

ERROR_STATUS: Dict[str, int] = {
    "validation": 400,
    "not_found": 404,
    "conflict": 409,
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def error_response(exc: BaseException) -> web.Response:
    category = error_category(exc)
    status = ERROR_STATUS.get(category, 500)
    return web.json_response({"error": str(exc), "category": category}, status=status)


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except KubeplaneError as exc:
        if ERROR_STATUS.get(error_category(exc), 500) >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, exc)
        return error_response(exc)
    except Exception as exc:
        logger.exception("%s %s: unexpected error", request.method, request.path)
        return error_response(exc)


def provisioner(request: web.Request) -> ClusterProvisioner:
    return request.app[PROVISIONER_KEY]


def flag(request: web.Request, name: str) -> bool:
    return request.query.get(name, "").lower() in ("1", "true", "yes")


def wire(data: Any) -> Dict[str, Any]:
    return data.to_wire()


async def provision(request: web.Request) -> web.Response:
    body = validate_json(await request.read(), ProvisionRequest)
    result = await provisioner(request).provision(
        body.cluster_name, body.profile, body.cloud_account_name
    )
    return web.json_response(wire(result), status=202)


async def get_workflow(request: web.Request) -> web.Response:
    snapshot = await provisioner(request).get_task(request.match_info["id"])
    return web.json_response(wire(snapshot))


async def restart_workflow(request: web.Request) -> web.Response:
    snapshot = await provisioner(request).restart_task(
        request.match_info["id"], skip_failed=flag(request, "skipFailed")
    )
    return web.json_response(wire(snapshot), status=202)


async def cancel_workflow(request: web.Request) -> web.Response:
    snapshot = await provisioner(request).cancel_task(request.match_info["id"])
    return web.json_response(wire(snapshot), status=202)


async def workflow_logs(request: web.Request) -> web.Response:
    text = await provisioner(request).task_logs(request.match_info["id"])
    return web.Response(text=text, content_type="text/plain")


async def list_kubes(request: web.Request) -> web.Response:
    kubes = await provisioner(request).list_kubes()
    return web.json_response([wire(k) for k in kubes])


async def get_kube(request: web.Request) -> web.Response:
    kube = await provisioner(request).get_kube(request.match_info["id"])
    return web.json_response(wire(kube))


async def delete_kube(request: web.Request) -> web.Response:
    result = await provisioner(request).delete_cluster(request.match_info["id"])
    return web.json_response(wire(result), status=202)


async def upgrade_kube(request: web.Request) -> web.Response:
    body = validate_json(await request.read(), UpgradeRequest)
    result = await provisioner(request).upgrade_cluster(request.match_info["id"], body.version)
    return web.json_response(wire(result), status=202)


def create_app(prov: ClusterProvisioner) -> web.Application:
    app = web.Application(middlewares=[error_middleware])
    app[PROVISIONER_KEY] = prov
    app.add_routes(
        [
            web.post("/provision", provision),
            web.get("/workflows/{id}", get_workflow),
            web.post("/workflows/{id}/restart", restart_workflow),
            web.post("/workflows/{id}/cancel", cancel_workflow),
            web.get("/workflows/{id}/logs", workflow_logs),
            web.get("/kubes", list_kubes),
            web.get("/kubes/{id}", get_kube),
            web.delete("/kubes/{id}", delete_kube),
            web.post("/kubes/{id}/upgrade", upgrade_kube),
        ]
    )

    async def _on_shutdown(app: web.Application) -> None:
        await app[PROVISIONER_KEY].shutdown()

    app.on_shutdown.append(_on_shutdown)
    return app
