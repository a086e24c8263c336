from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor

import pytest

from fleetward.allocator import PortAndTunnelAllocator
from fleetward.constants import BASE_MANAGEMENT_PORT, InstanceState
from fleetward.exceptions import TransportError, TunnelError
from fleetward.types import CloudInstance

from tests.conftest import CREDENTIALS, FakeOpener

pytestmark = [pytest.mark.xdist_group("unit"), pytest.mark.timeout(30)]

BASE = BASE_MANAGEMENT_PORT


def instance(instance_id: str = "i-1") -> CloudInstance:
    return CloudInstance(id=instance_id, state=InstanceState.RUNNING, private_addresses=("10.0.0.1",))


class TestPorts:
    def test_first_allocation_skips_base(self, allocator: PortAndTunnelAllocator):
        assert allocator.next_management_port("i-1") == BASE + 1
        assert allocator.next_management_port("i-1") == BASE + 2

    def test_instances_are_independent(self, allocator: PortAndTunnelAllocator):
        assert allocator.next_management_port("i-1") == BASE + 1
        assert allocator.next_management_port("i-2") == BASE + 1

    def test_custom_base(self):
        assert PortAndTunnelAllocator(base_port=20000).next_management_port("i-1") == 20001

    def test_concurrent_allocations_are_unique(self, allocator: PortAndTunnelAllocator):
        with ThreadPoolExecutor(max_workers=16) as pool:
            ports = list(pool.map(lambda _: allocator.next_management_port("i-1"), range(200)))

        assert len(set(ports)) == 200
        assert sorted(ports) == list(range(BASE + 1, BASE + 201))

    def test_release_all_removes_record(self, allocator: PortAndTunnelAllocator):
        ports = [allocator.next_management_port("i-1") for _ in range(5)]
        for port in ports:
            allocator.release_port("i-1", port)

        assert not allocator.has_allocations("i-1")
        assert allocator.held_ports("i-1") == ()

    def test_release_without_port_releases_highest(self, allocator: PortAndTunnelAllocator):
        for _ in range(3):
            allocator.next_management_port("i-1")
        allocator.release_port("i-1")
        assert allocator.held_ports("i-1") == (BASE + 1, BASE + 2)
        allocator.release_port("i-1")
        allocator.release_port("i-1")
        assert not allocator.has_allocations("i-1")

    def test_out_of_order_release_never_reuses_held_port(self, allocator: PortAndTunnelAllocator):
        first = allocator.next_management_port("i-1")
        second = allocator.next_management_port("i-1")
        allocator.release_port("i-1", first)

        third = allocator.next_management_port("i-1")

        assert third == BASE + 3
        assert allocator.held_ports("i-1") == (second, third)

    def test_released_top_port_is_reused(self, allocator: PortAndTunnelAllocator):
        allocator.next_management_port("i-1")
        top = allocator.next_management_port("i-1")
        allocator.release_port("i-1", top)
        assert allocator.next_management_port("i-1") == top

    def test_release_unknown_is_noop(self, allocator: PortAndTunnelAllocator):
        allocator.release_port("i-unknown")
        allocator.next_management_port("i-1")
        allocator.release_port("i-1", 1)
        assert allocator.held_ports("i-1") == (BASE + 1,)

    def test_churn_leaves_no_records(self, allocator: PortAndTunnelAllocator):
        def churn(n: int) -> None:
            instance_id = f"i-{n % 4}"
            port = allocator.next_management_port(instance_id)
            allocator.release_port(instance_id, port)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(churn, range(400)))

        assert not any(allocator.has_allocations(f"i-{n}") for n in range(4))


class TestTunnels:
    def test_open_returns_handle_and_registers_it(self, allocator: PortAndTunnelAllocator, opener: FakeOpener):
        handle = allocator.open_reverse_tunnel(instance(), CREDENTIALS, local_port=11111, remote_port=11111)

        assert allocator.tunnel_for("i-1") is handle
        assert opener.calls == [("i-1", "localhost", 11111, 11111)]

    def test_second_open_reuses_handle(self, allocator: PortAndTunnelAllocator, opener: FakeOpener):
        first = allocator.open_reverse_tunnel(instance(), CREDENTIALS, 11111, 11111)
        second = allocator.open_reverse_tunnel(instance(), CREDENTIALS, 11111, 11111)

        assert first is second
        assert len(opener.opened) == 1

    def test_concurrent_opens_establish_one_tunnel(self, allocator: PortAndTunnelAllocator, opener: FakeOpener):
        opener.gate.clear()
        start = threading.Barrier(8)

        def open_tunnel(_: int):
            start.wait()
            return allocator.open_reverse_tunnel(instance(), CREDENTIALS, 11111, 11111)

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(open_tunnel, n) for n in range(8)]
            threading.Timer(0.2, opener.gate.set).start()
            handles = [f.result() for f in futures]

        assert len(opener.opened) == 1
        assert all(h is handles[0] for h in handles)

    def test_ports_are_not_blocked_while_tunnel_opens(
        self, allocator: PortAndTunnelAllocator, opener: FakeOpener,
    ):
        opener.gate.clear()
        with ThreadPoolExecutor(max_workers=1) as pool:
            pending = pool.submit(allocator.open_reverse_tunnel, instance(), CREDENTIALS, 11111, 11111)
            assert allocator.next_management_port("i-1") == BASE + 1
            assert allocator.tunnel_for("i-1") is None
            opener.gate.set()
            pending.result()

    def test_failure_raises_tunnel_error_and_allows_retry(self, allocator: PortAndTunnelAllocator, opener: FakeOpener):
        opener.error = TransportError("remote port forward rejected", "10.0.0.1")

        with pytest.raises(TunnelError, match="i-1"):
            allocator.open_reverse_tunnel(instance(), CREDENTIALS, 11111, 11111)
        assert allocator.tunnel_for("i-1") is None

        opener.error = None
        assert allocator.open_reverse_tunnel(instance(), CREDENTIALS, 11111, 11111).is_open

    def test_close_tunnel(self, allocator: PortAndTunnelAllocator, opener: FakeOpener):
        allocator.open_reverse_tunnel(instance(), CREDENTIALS, 11111, 11111)

        allocator.close_tunnel("i-1")
        allocator.close_tunnel("i-1")

        assert opener.opened[0].closed == 1
        assert allocator.tunnel_for("i-1") is None

    def test_close_unknown_is_noop(self, allocator: PortAndTunnelAllocator):
        allocator.close_tunnel("i-unknown")

    def test_close_all(self, allocator: PortAndTunnelAllocator, opener: FakeOpener):
        for n in range(3):
            allocator.open_reverse_tunnel(instance(f"i-{n}"), CREDENTIALS, 11111, 11111)

        allocator.close_all()

        assert all(t.closed == 1 for t in opener.opened)
        assert all(allocator.tunnel_for(f"i-{n}") is None for n in range(3))

    def test_dropped_tunnel_is_reopened(self, allocator: PortAndTunnelAllocator, opener: FakeOpener):
        first = allocator.open_reverse_tunnel(instance(), CREDENTIALS, 11111, 11111)
        first.close()

        second = allocator.open_reverse_tunnel(instance(), CREDENTIALS, 11111, 11111)

        assert second is not first
        assert allocator.tunnel_for("i-1") is second

    def test_close_during_open_closes_new_handle(self, allocator: PortAndTunnelAllocator, opener: FakeOpener):
        opened = opener.__call__

        def close_while_opening(*args):
            handle = opened(*args)
            allocator.close_tunnel("i-1")
            return handle

        allocator._opener = close_while_opening

        with pytest.raises(TunnelError, match="closed while it was being opened"):
            allocator.open_reverse_tunnel(instance(), CREDENTIALS, 11111, 11111)
        assert opener.opened[0].closed == 1
        assert allocator.tunnel_for("i-1") is None

    def test_close_racing_publication_closes_handle(
        self, allocator: PortAndTunnelAllocator, opener: FakeOpener, monkeypatch: pytest.MonkeyPatch,
    ):
        closers: list[threading.Thread] = []

        class CloseRacingFuture(Future):
            def set_result(self, result):
                closer = threading.Thread(target=allocator.close_tunnel, args=("i-1",))
                closer.start()
                closer.join(timeout=0.2)
                closers.append(closer)
                super().set_result(result)

        monkeypatch.setattr("fleetward.allocator.Future", CloseRacingFuture)

        handle = allocator.open_reverse_tunnel(instance(), CREDENTIALS, 11111, 11111)
        closers[0].join(timeout=5)

        assert handle is opener.opened[0]
        assert opener.opened[0].closed == 1
        assert allocator.tunnel_for("i-1") is None
