"""
kubeplane/tests/test_cluster_state.py
"""

from __future__ import annotations

import asyncio

import pytest

from kubeplane.errors import BootstrapTimeout, ConflictError, NotFoundError
from kubeplane.models.machine import Machine, MachineRole
from kubeplane.models.providers import ProviderName
from kubeplane.workflows.cluster_state import (
    BootstrapAborted,
    ClusterRegistry,
    ClusterState,
    JoinMaterial,
    NodeMap,
)


def machine(machine_id: str, role: MachineRole = MachineRole.master, **kw) -> Machine:
    return Machine(
        id=machine_id,
        name=f"node-{machine_id}",
        role=role,
        provider=ProviderName.digitalocean,
        region="nyc1",
        public_ip="203.0.113.9",
        **kw,
    )


def material(master: Machine, token: str = "abcdef.0123456789abcdef") -> JoinMaterial:
    return JoinMaterial(bootstrap_master=master, bootstrap_token=token, internal_dns="10.0.0.1")


def test_node_map_first_write_wins() -> None:
    nodes = NodeMap()
    assert nodes.add(machine("a", size="small"))
    assert not nodes.add(machine("a", size="large"))

    assert len(nodes) == 1
    assert nodes.get("a").size == "small"
    assert "a" in nodes
    assert nodes.get("b") is None


def test_node_map_capacity() -> None:
    nodes = NodeMap(capacity=2)
    nodes.add(machine("a"))
    nodes.add(machine("b"))
    # re-adding a present id is not an overflow
    assert not nodes.add(machine("b"))
    with pytest.raises(ConflictError):
        nodes.add(machine("c"))
    assert [m.id for m in nodes.range()] == ["a", "b"]


async def test_node_map_concurrent_adds_keep_every_entry() -> None:
    nodes = NodeMap()

    async def add(i: int) -> bool:
        await asyncio.sleep(0)
        return nodes.add(machine(f"m{i % 10}"))

    results = await asyncio.gather(*(add(i) for i in range(50)))

    assert sum(results) == 10
    assert sorted(nodes.as_dict()) == sorted(f"m{i}" for i in range(10))


def test_node_map_snapshot_is_detached() -> None:
    nodes = NodeMap()
    nodes.add(machine("a"))
    snap = nodes.range()
    nodes.add(machine("b"))
    assert len(snap) == 1
    assert len(nodes.range()) == 2


async def test_wait_for_first() -> None:
    nodes = NodeMap()
    waiter = asyncio.ensure_future(nodes.wait_for_first(1.0))
    await asyncio.sleep(0)
    nodes.seed([machine("a")])
    assert (await waiter).id == "a"


async def test_barrier_releases_every_waiter() -> None:
    state = ClusterState("c1")
    master = machine("boot")

    waiters = [asyncio.ensure_future(state.wait_bootstrap(1.0)) for _ in range(3)]
    await asyncio.sleep(0)
    assert state.publish_join_material(material(master))

    results = await asyncio.gather(*waiters)
    assert all(r.bootstrap_master.id == "boot" for r in results)
    assert state.bootstrapped


async def test_barrier_publishes_once() -> None:
    state = ClusterState("c1")
    assert state.publish_join_material(material(machine("boot")))
    assert not state.publish_join_material(material(machine("other"), "zzzzzz.zzzzzzzzzzzzzzzz"))

    joined = await state.wait_bootstrap(0.1)
    assert joined.bootstrap_master.id == "boot"
    assert joined.bootstrap_token == "abcdef.0123456789abcdef"


async def test_barrier_timeout() -> None:
    state = ClusterState("c1")
    with pytest.raises(BootstrapTimeout, match="not ready"):
        await state.wait_bootstrap(0.05)


async def test_barrier_abort_and_rearm() -> None:
    state = ClusterState("c1")
    waiter = asyncio.ensure_future(state.wait_bootstrap(1.0))
    await asyncio.sleep(0)
    state.abort_bootstrap("kubeadm init failed")

    with pytest.raises(BootstrapAborted, match="kubeadm init failed"):
        await waiter

    state.reset_abort()
    with pytest.raises(BootstrapTimeout):
        await state.wait_bootstrap(0.05)

    state.publish_join_material(material(machine("boot")))
    state.abort_bootstrap("late failure")
    assert (await state.wait_bootstrap(0.1)).bootstrap_master.id == "boot"


def test_cluster_registry() -> None:
    clusters = ClusterRegistry()
    first = clusters.ensure("c1", master_capacity=3)
    assert clusters.ensure("c1") is first
    assert clusters.get("c1") is first
    assert "c1" in clusters

    clusters.drop("c1")
    assert "c1" not in clusters
    with pytest.raises(NotFoundError):
        clusters.get("c1")
