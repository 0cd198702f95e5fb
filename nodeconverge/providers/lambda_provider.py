"""Lambda Labs node provider.

Maps Lambda Labs instances onto nodes. Instances are launched with the
group name as their instance name, so the group of a listed instance is its
name.

API Documentation: https://cloud.lambdalabs.com/api/v1/docs

Environment variables:
    LAMBDA_API_KEY: API key (required)
    LAMBDA_INSTANCE_TYPE: Instance type to launch (default: gpu_1x_a10)
    LAMBDA_REGION: Region to launch in (default: first region with capacity)
    LAMBDA_SSH_KEY_NAME: Registered ssh key installed on launched instances
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import aiohttp

from nodeconverge.coordination.models import Node
from nodeconverge.providers.base import NodeProvider
from nodeconverge.utils.exceptions import (
    NETWORK_ERRORS,
    PARSE_ERRORS,
    NodeCreationError,
    ProviderError,
)

if TYPE_CHECKING:
    from nodeconverge.config.converge_config import AdminUser
    from nodeconverge.coordination.models import GroupSpec

logger = logging.getLogger(__name__)

RUNNING_STATUSES = frozenset({"active"})
TERMINATED_STATUSES = frozenset({"terminating", "terminated"})


@dataclass
class LambdaConfig:
    """Configuration for the Lambda Labs provider."""
    api_key: str | None = None
    api_base: str = "https://cloud.lambdalabs.com/api/v1"
    timeout_seconds: float = 30.0
    instance_type: str = "gpu_1x_a10"
    region: str | None = None
    ssh_key_name: str | None = None
    launch_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "LambdaConfig":
        """Load configuration from environment variables."""
        return cls(
            api_key=os.environ.get("LAMBDA_API_KEY"),
            instance_type=os.environ.get("LAMBDA_INSTANCE_TYPE", "gpu_1x_a10"),
            region=os.environ.get("LAMBDA_REGION"),
            ssh_key_name=os.environ.get("LAMBDA_SSH_KEY_NAME"),
        )


class LambdaNodeProvider(NodeProvider):
    """Lambda Labs node provider.

    Requires LAMBDA_API_KEY environment variable to be set.

    Example:
        provider = LambdaNodeProvider()
        nodes = await provider.list_nodes()
        await provider.close()
    """

    def __init__(self, config: LambdaConfig | None = None):
        self.config = config or LambdaConfig.from_env()
        self._session: aiohttp.ClientSession | None = None

    @property
    def name(self) -> str:
        return "Lambda Labs"

    def is_configured(self) -> bool:
        """Check if API key is set."""
        return bool(self.config.api_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def _api_request(
        self,
        method: str,
        endpoint: str,
        json: dict | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated API request.

        Raises:
            ProviderError: when unconfigured, on HTTP errors or on transport errors.
        """
        if not self.config.api_key:
            raise ProviderError("Lambda API key not configured")

        url = f"{self.config.api_base}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }

        session = await self._get_session()

        try:
            async with session.request(
                method,
                url,
                headers=headers,
                json=json,
            ) as resp:
                try:
                    data = await resp.json(content_type=None)
                except PARSE_ERRORS as e:
                    raise ProviderError(
                        f"Lambda API returned invalid JSON ({resp.status}): {e}",
                        status=resp.status,
                    ) from e

                if resp.status >= 400:
                    error_msg = data.get("error", {}).get("message", str(data))
                    raise ProviderError(
                        f"Lambda API error ({resp.status}): {error_msg}",
                        status=resp.status,
                    )

                return data

        except (aiohttp.ClientError, *NETWORK_ERRORS) as e:
            raise ProviderError(f"Lambda API request failed: {e}") from e

    def _parse_node(self, inst: dict[str, Any]) -> Node:
        status = inst.get("status", "unknown")
        name = inst.get("name") or inst["id"]
        return Node(
            id=inst["id"],
            group_name=name,
            primary_ip=inst.get("ip"),
            private_ip=inst.get("private_ip"),
            ssh_port=22,
            hostname=inst.get("hostname"),
            os_family="ubuntu",
            running=status in RUNNING_STATUSES,
            terminated=status in TERMINATED_STATUSES,
            tags={
                "instance_type": inst.get("instance_type", {}).get("name", ""),
                "region": inst.get("region", {}).get("name", ""),
                "status": status,
            },
        )

    async def list_nodes(self) -> list[Node]:
        """List all Lambda instances as nodes."""
        data = await self._api_request("GET", "/instances")
        return [self._parse_node(inst) for inst in data.get("data", [])]

    async def get_node(self, instance_id: str) -> Node | None:
        """Get a specific instance by ID."""
        data = await self._api_request("GET", f"/instances/{instance_id}")
        inst = data.get("data")
        if not inst:
            return None
        return self._parse_node(inst)

    async def create_nodes(
        self,
        group: "GroupSpec",
        admin_user: "AdminUser",
        count: int,
        options: Mapping[str, Any] | None = None,
    ) -> list[Node]:
        """Launch ``count`` instances named after ``group`` and wait until they run."""
        options = dict(options or {})
        instance_type = (
            options.get("instance_type")
            or group.node_spec.get("instance_type")
            or self.config.instance_type
        )
        region = options.get("region") or group.node_spec.get("region") or self.config.region
        if not region:
            region = await self._get_best_region(instance_type)
            if not region:
                raise NodeCreationError(f"No available regions for {instance_type}")

        payload: dict[str, Any] = {
            "instance_type_name": instance_type,
            "region_name": region,
            "quantity": count,
            "name": group.group_name,
            "file_system_names": [],
        }
        ssh_key_name = options.get("ssh_key_name") or self.config.ssh_key_name
        if ssh_key_name:
            payload["ssh_key_names"] = [ssh_key_name]

        try:
            data = await self._api_request(
                "POST", "/instance-operations/launch", json=payload
            )
        except ProviderError as e:
            raise NodeCreationError(f"Failed to launch Lambda instances: {e}") from e

        instance_ids = data.get("data", {}).get("instance_ids", [])
        logger.info(
            f"Launched {len(instance_ids)} Lambda instance(s) for {group.group_name}: "
            f"{instance_ids}"
        )

        nodes = []
        poll_error: ProviderError | None = None
        for inst_id in instance_ids:
            try:
                node = await self._wait_for_node(inst_id)
            except ProviderError as e:
                logger.warning(f"Polling Lambda instance {inst_id} failed: {e}")
                poll_error = poll_error or e
                continue
            if node is not None and node.running:
                nodes.append(node)

        if len(nodes) < count:
            raise NodeCreationError(
                f"Only {len(nodes)} of {count} Lambda instances became active "
                f"for {group.group_name}",
                nodes=nodes,
            ) from poll_error
        return nodes

    async def destroy_nodes(self, nodes: Sequence[Node]) -> bool:
        """Terminate the instances backing ``nodes``."""
        instance_ids = [n.id for n in nodes]
        if not instance_ids:
            return True

        data = await self._api_request(
            "POST",
            "/instance-operations/terminate",
            json={"instance_ids": instance_ids},
        )
        terminated = data.get("data", {}).get("terminated_instances", [])
        terminated_ids = {
            t.get("id") if isinstance(t, dict) else t for t in terminated
        }
        missing = [i for i in instance_ids if i not in terminated_ids]
        if missing:
            raise ProviderError(f"Lambda did not terminate instances: {missing}")

        logger.info(f"Terminated Lambda instances: {instance_ids}")
        return True

    async def _get_best_region(self, instance_type: str) -> str | None:
        """Get the best available region for an instance type."""
        data = await self._api_request("GET", "/instance-types")
        type_info = data.get("data", {}).get(instance_type)
        if not type_info:
            return None
        regions = type_info.get("regions_with_capacity_available", [])
        # Prefer US regions
        for region in regions:
            region_name = region.get("name", "")
            if "us-" in region_name:
                return region_name
        return regions[0].get("name") if regions else None

    async def _wait_for_node(self, instance_id: str) -> Node | None:
        """Wait for an instance to become active."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.launch_timeout_seconds

        while loop.time() < deadline:
            node = await self.get_node(instance_id)
            if node is not None and (node.running or node.terminated):
                return node
            await asyncio.sleep(self.config.poll_interval_seconds)

        logger.warning(f"Timeout waiting for Lambda instance {instance_id}")
        return await self.get_node(instance_id)

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
