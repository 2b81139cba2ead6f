"""
kubeplane/clouds/aws.py

AWS EC2 adapter. boto3 is blocking, so every call runs in a worker thread
via asyncio.to_thread.

Cluster scaffolding is an imported key pair plus a security group that opens
SSH and the API server port and lets cluster members talk to each other.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

import boto3
from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError

from kubeplane.clouds.base import ClusterSpec, CloudProvider
from kubeplane.errors import (
    InvalidRequestError,
    KubeplaneError,
    MachineNotFoundError,
    PermanentProviderError,
    TransientProviderError,
)
from kubeplane.models.account import CloudAccount
from kubeplane.models.machine import Machine, MachineRequest, MachineRole, MachineState
from kubeplane.models.providers import AWSCredentials, ProviderName
from kubeplane.utils.async_retry import async_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

GROUP_DELETE_RETRIES = 8

_TRANSIENT_CODES = {
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "InternalError",
    "ServiceUnavailable",
    "Unavailable",
    "InsufficientInstanceCapacity",
    # security group still referenced by terminating instances
    "DependencyViolation",
}
_NOT_FOUND_CODES = {
    "InvalidInstanceID.NotFound",
    "InvalidInstanceID.Malformed",
    "InvalidKeyPair.NotFound",
    "InvalidGroup.NotFound",
}
_DUPLICATE_CODES = {"InvalidKeyPair.Duplicate", "InvalidGroup.Duplicate"}

_STATE_MAP = {
    "pending": MachineState.creating,
    "running": MachineState.active,
    "shutting-down": MachineState.deleting,
    "terminated": MachineState.deleted,
    "stopping": MachineState.error,
    "stopped": MachineState.error,
}


def client_error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def map_boto_error(exc: Exception, what: str) -> KubeplaneError:
    if isinstance(exc, ClientError):
        code = client_error_code(exc)
        message = f"AWS {what}: {code} {exc}"
        if code in _NOT_FOUND_CODES:
            return MachineNotFoundError(message)
        if code in _TRANSIENT_CODES:
            return TransientProviderError(message)
        return PermanentProviderError(message)
    if isinstance(exc, EndpointConnectionError):
        return TransientProviderError(f"AWS {what}: {exc}")
    return PermanentProviderError(f"AWS {what}: {exc}")


def instance_to_machine(inst: Dict[str, Any], region: str) -> Machine:
    tags = {t["Key"]: t.get("Value", "") for t in inst.get("Tags", [])}
    return Machine(
        id=inst["InstanceId"],
        name=tags.get("Name", inst["InstanceId"]),
        role=MachineRole(tags.get("kubeplane-role", "worker")),
        provider=ProviderName.aws,
        region=region,
        size=inst.get("InstanceType", ""),
        public_ip=inst.get("PublicIpAddress"),
        private_ip=inst.get("PrivateIpAddress"),
        state=_STATE_MAP.get(inst.get("State", {}).get("Name", ""), MachineState.creating),
        created_at=inst["LaunchTime"],
        task_id=tags.get("kubeplane-task-id"),
        tags=tags,
    )


class AWSProvider(CloudProvider):
    name = ProviderName.aws
    retry_delay = 5.0

    def __init__(self, credentials: AWSCredentials, *, session: Optional[Any] = None) -> None:
        self._session = session or boto3.session.Session(
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            aws_session_token=credentials.session_token,
        )
        self._clients: Dict[str, Any] = {}

    @classmethod
    def from_account(cls, account: CloudAccount) -> AWSProvider:
        creds = account.parsed_credentials()
        if not isinstance(creds, AWSCredentials):
            raise InvalidRequestError(
                f"account {account.name!r} is a {account.provider.value} account, not aws"
            )
        return cls(creds)

    def _ec2(self, region: str) -> Any:
        if region not in self._clients:
            self._clients[region] = self._session.client("ec2", region_name=region)
        return self._clients[region]

    async def _call(self, what: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except (ClientError, BotoCoreError) as exc:
            raise map_boto_error(exc, what) from exc

    async def create_machine(self, request: MachineRequest) -> Machine:
        ec2 = self._ec2(request.region)
        tags = dict(request.tags)
        tags["Name"] = request.name
        tags["kubeplane-role"] = request.role.value
        params: Dict[str, Any] = {
            "ImageId": request.image,
            "InstanceType": request.size,
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [{"Key": k, "Value": v} for k, v in sorted(tags.items())],
                }
            ],
        }
        if request.extra.get("key_name"):
            params["KeyName"] = request.extra["key_name"]
        if request.extra.get("security_group_id"):
            params["SecurityGroupIds"] = [request.extra["security_group_id"]]
        if request.extra.get("subnet_id"):
            params["SubnetId"] = request.extra["subnet_id"]
        if request.volume_size:
            params["BlockDeviceMappings"] = [
                {"DeviceName": "/dev/sda1", "Ebs": {"VolumeSize": request.volume_size}}
            ]

        resp = await self._call("RunInstances", lambda: ec2.run_instances(**params))
        machine = instance_to_machine(resp["Instances"][0], request.region)
        logger.info("Requested EC2 instance %s (%s) in %s", machine.id, machine.name, request.region)
        return machine

    async def delete_machine(self, region: str, machine_id: str) -> None:
        ec2 = self._ec2(region)
        try:
            await self._call(
                "TerminateInstances", lambda: ec2.terminate_instances(InstanceIds=[machine_id])
            )
        except MachineNotFoundError:
            logger.info("Instance %s already gone", machine_id)

    async def get_machine(self, region: str, machine_id: str) -> Machine:
        ec2 = self._ec2(region)
        resp = await self._call(
            "DescribeInstances", lambda: ec2.describe_instances(InstanceIds=[machine_id])
        )
        instances = [i for r in resp.get("Reservations", []) for i in r.get("Instances", [])]
        if not instances:
            raise MachineNotFoundError(f"instance {machine_id} not found")
        return instance_to_machine(instances[0], region)

    async def find_machine(self, region: str, tag: str) -> Optional[Machine]:
        ec2 = self._ec2(region)
        filters = [
            {"Name": "tag-key", "Values": [tag]},
            {"Name": "instance-state-name", "Values": ["pending", "running"]},
        ]
        resp = await self._call(
            "DescribeInstances", lambda: ec2.describe_instances(Filters=filters)
        )
        instances: List[Dict[str, Any]] = [
            i for r in resp.get("Reservations", []) for i in r.get("Instances", [])
        ]
        return instance_to_machine(instances[0], region) if instances else None

    async def create_cluster(self, spec: ClusterSpec) -> Dict[str, str]:
        ec2 = self._ec2(spec.region)
        outputs: Dict[str, str] = {}

        if spec.ssh_public_key:
            key_name = f"kubeplane-{spec.cluster_id}"
            try:
                await self._call(
                    "ImportKeyPair",
                    lambda: ec2.import_key_pair(
                        KeyName=key_name,
                        PublicKeyMaterial=spec.ssh_public_key.strip().encode("utf-8"),
                    ),
                )
            except PermanentProviderError as exc:
                if not any(code in str(exc) for code in _DUPLICATE_CODES):
                    raise
            outputs["key_name"] = key_name

        group_name = f"kubeplane-{spec.cluster_id}"
        existing = await self._call(
            "DescribeSecurityGroups",
            lambda: ec2.describe_security_groups(
                Filters=[{"Name": "group-name", "Values": [group_name]}]
            ),
        )
        groups = existing.get("SecurityGroups", [])
        if groups:
            group_id = groups[0]["GroupId"]
        else:
            created = await self._call(
                "CreateSecurityGroup",
                lambda: ec2.create_security_group(
                    GroupName=group_name,
                    Description=f"kubeplane cluster {spec.name}",
                ),
            )
            group_id = created["GroupId"]
            await self._call(
                "AuthorizeSecurityGroupIngress",
                lambda: ec2.authorize_security_group_ingress(
                    GroupId=group_id,
                    IpPermissions=[
                        {
                            "IpProtocol": "tcp",
                            "FromPort": port,
                            "ToPort": port,
                            "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
                        }
                        for port in (22, 443)
                    ]
                    + [
                        {
                            "IpProtocol": "-1",
                            "UserIdGroupPairs": [{"GroupId": group_id}],
                        }
                    ],
                ),
            )
        outputs["security_group_id"] = group_id
        return outputs

    async def delete_cluster(
        self, cluster_id: str, region: str, resources: Dict[str, str]
    ) -> None:
        ec2 = self._ec2(region)
        if resources.get("key_name"):
            await self._call(
                "DeleteKeyPair", lambda: ec2.delete_key_pair(KeyName=resources["key_name"])
            )
        if resources.get("security_group_id"):
            await self._delete_security_group(ec2, resources["security_group_id"])

    async def _delete_security_group(self, ec2: Any, group_id: str) -> None:
        @async_retry(
            retries=GROUP_DELETE_RETRIES,
            delay=self.retry_delay,
            backoff=2.0,
            max_delay=30.0,
            retry_on=(TransientProviderError,),
            noisy=True,
        )
        async def _attempt() -> None:
            await self._call(
                "DeleteSecurityGroup", lambda: ec2.delete_security_group(GroupId=group_id)
            )

        try:
            await _attempt()
        except MachineNotFoundError:
            logger.info("Security group %s already gone", group_id)
