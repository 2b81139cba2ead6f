"""
kubeplane/clouds/digitalocean.py

DigitalOcean adapter over the public REST API (v2) using aiohttp.

Status mapping:
  429, 5xx, connection errors -> TransientProviderError
  404                         -> MachineNotFoundError (where a machine is addressed)
  other 4xx                   -> PermanentProviderError
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiohttp

from kubeplane.clouds.base import ClusterSpec, CloudProvider
from kubeplane.errors import (
    InvalidRequestError,
    MachineNotFoundError,
    PermanentProviderError,
    TransientProviderError,
)
from kubeplane.models.account import CloudAccount
from kubeplane.models.machine import Machine, MachineRequest, MachineRole, MachineState
from kubeplane.models.providers import DigitalOceanCredentials, ProviderName

logger = logging.getLogger(__name__)

API_URL = "https://api.digitalocean.com/v2"
DEFAULT_IMAGE = "ubuntu-18-04-x64"

_STATE_MAP = {
    "new": MachineState.creating,
    "active": MachineState.active,
    "off": MachineState.error,
    "archive": MachineState.deleted,
}


def tag_strings(tags: Dict[str, str]) -> List[str]:
    """DO tags are flat strings: `key:value`, or just `key` when the value is empty."""
    return [f"{k}:{v}" if v else k for k, v in sorted(tags.items())]


def _parse_tags(raw: List[str]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for tag in raw:
        key, _, value = tag.partition(":")
        out[key] = value
    return out


def droplet_to_machine(droplet: Dict[str, Any], region: str) -> Machine:
    networks = droplet.get("networks", {}).get("v4", [])
    public_ip = next((n["ip_address"] for n in networks if n.get("type") == "public"), None)
    private_ip = next((n["ip_address"] for n in networks if n.get("type") == "private"), None)
    tags = _parse_tags(droplet.get("tags", []))
    created_raw = droplet.get("created_at")
    created_at = (
        datetime.fromisoformat(created_raw.replace("Z", "+00:00"))
        if created_raw
        else datetime.now(timezone.utc)
    )
    return Machine(
        id=str(droplet["id"]),
        name=droplet.get("name", ""),
        role=MachineRole(tags.get("kubeplane-role", "worker")),
        provider=ProviderName.digitalocean,
        region=droplet.get("region", {}).get("slug", region),
        size=droplet.get("size_slug", ""),
        public_ip=public_ip,
        private_ip=private_ip,
        state=_STATE_MAP.get(droplet.get("status", ""), MachineState.creating),
        created_at=created_at,
        task_id=tags.get("kubeplane-task-id"),
        tags=tags,
    )


class DigitalOceanProvider(CloudProvider):
    name = ProviderName.digitalocean

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = API_URL,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._token = access_token
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_account(cls, account: CloudAccount) -> DigitalOceanProvider:
        creds = account.parsed_credentials()
        if not isinstance(creds, DigitalOceanCredentials):
            raise InvalidRequestError(
                f"account {account.name!r} is a {account.provider.value} account, not digitalocean"
            )
        return cls(creds.access_token)

    async def ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=60),
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        not_found: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        One API call. Returns the decoded body ({} for 204).

        Args:
            not_found: When set, a 404 raises MachineNotFoundError with this text.
        """
        session = await self.ensure_session()
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        url = f"{self._base_url}{path}"
        try:
            async with session.request(
                method, url, json=json, params=params, headers=headers
            ) as resp:
                if resp.status == 204:
                    return {}
                try:
                    body = await resp.json()
                except aiohttp.ContentTypeError:
                    body = {"message": await resp.text()}
                if resp.status < 300:
                    return body or {}
                message = f"DigitalOcean {method} {path}: {resp.status} {body.get('message', '')}"
                if resp.status == 404 and not_found is not None:
                    raise MachineNotFoundError(not_found)
                if resp.status == 429 or resp.status >= 500:
                    raise TransientProviderError(message, resp.status)
                raise PermanentProviderError(message, resp.status)
        except aiohttp.ClientError as exc:
            raise TransientProviderError(f"DigitalOcean {method} {path}: {exc}") from exc

    async def create_machine(self, request: MachineRequest) -> Machine:
        tags = dict(request.tags)
        tags["kubeplane-role"] = request.role.value
        payload: Dict[str, Any] = {
            "name": request.name,
            "region": request.region,
            "size": request.size,
            "image": request.image or DEFAULT_IMAGE,
            "tags": tag_strings(tags),
            "private_networking": True,
            "monitoring": True,
        }
        if request.extra.get("ssh_key_fingerprint"):
            payload["ssh_keys"] = [request.extra["ssh_key_fingerprint"]]
        if request.extra.get("vpc_uuid"):
            payload["vpc_uuid"] = request.extra["vpc_uuid"]
        body = await self._request("POST", "/droplets", json=payload)
        machine = droplet_to_machine(body["droplet"], request.region)
        logger.info("Requested droplet %s (%s) in %s", machine.id, machine.name, request.region)
        return machine

    async def delete_machine(self, region: str, machine_id: str) -> None:
        try:
            await self._request("DELETE", f"/droplets/{machine_id}", not_found=machine_id)
        except MachineNotFoundError:
            logger.info("Droplet %s already gone", machine_id)

    async def get_machine(self, region: str, machine_id: str) -> Machine:
        body = await self._request(
            "GET", f"/droplets/{machine_id}", not_found=f"droplet {machine_id} not found"
        )
        return droplet_to_machine(body["droplet"], region)

    async def find_machine(self, region: str, tag: str) -> Optional[Machine]:
        body = await self._request("GET", "/droplets", params={"tag_name": tag})
        for droplet in body.get("droplets", []):
            machine = droplet_to_machine(droplet, region)
            if machine.state not in (MachineState.deleted, MachineState.deleting):
                return machine
        return None

    async def create_cluster(self, spec: ClusterSpec) -> Dict[str, str]:
        outputs: Dict[str, str] = {}
        cluster_tag = f"kubeplane-cluster:{spec.cluster_id}"
        try:
            await self._request("POST", "/tags", json={"name": cluster_tag})
        except PermanentProviderError as exc:
            # 422 when the tag already exists
            if exc.status != 422:
                raise
        outputs["cluster_tag"] = cluster_tag

        if spec.ssh_public_key:
            key_name = f"kubeplane-{spec.cluster_id}"
            existing = await self._request("GET", "/account/keys", params={"per_page": "200"})
            match = next(
                (
                    k
                    for k in existing.get("ssh_keys", [])
                    if k.get("public_key", "").strip() == spec.ssh_public_key.strip()
                ),
                None,
            )
            if match is None:
                created = await self._request(
                    "POST",
                    "/account/keys",
                    json={"name": key_name, "public_key": spec.ssh_public_key.strip()},
                )
                match = created["ssh_key"]
            # only a key under this cluster's name belongs to the cluster
            outputs["ssh_key_created"] = "true" if match.get("name") == key_name else "false"
            outputs["ssh_key_id"] = str(match["id"])
            outputs["ssh_key_fingerprint"] = match["fingerprint"]
        return outputs

    async def delete_cluster(
        self, cluster_id: str, region: str, resources: Dict[str, str]
    ) -> None:
        # a key matched by public key belongs to the account, not the cluster
        if resources.get("ssh_key_id") and resources.get("ssh_key_created") == "true":
            try:
                await self._request(
                    "DELETE",
                    f"/account/keys/{resources['ssh_key_id']}",
                    not_found="ssh key",
                )
            except MachineNotFoundError:
                pass
        tag = resources.get("cluster_tag", f"kubeplane-cluster:{cluster_id}")
        try:
            await self._request("DELETE", f"/tags/{tag}", not_found="tag")
        except MachineNotFoundError:
            pass
