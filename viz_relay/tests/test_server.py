"""
Transport tests for the relay server.

Tests cover:
- Registration and unregistration over a socket lifecycle
- Fan-out, resync and metrics routing through real handler tasks
- Isolation from failing or slow receivers
- Periodic status publishing
- End-to-end relay with real websockets clients

Run with: pytest viz_relay/tests/test_server.py -v
"""

import asyncio

import pytest
from websockets.asyncio.server import serve as ws_serve

from viz_relay.client import RelayClient
from viz_relay.config import RelayConfig
from viz_relay.server import RelayServer

# Mark entire module as async tests
pytestmark = pytest.mark.asyncio


async def open_client(relay, ws, settle, role=None):
    task = asyncio.create_task(relay._handle_client(ws))
    await settle()
    if role is not None:
        ws.push("client:ready", {"clientId": f"client_{role}", "type": role, "timestamp": 1})
        await settle()
    return task


async def close_client(ws, task):
    await ws.close()
    await task


class TestLifecycle:
    async def test_connect_registers_and_publishes_status(self, relay, make_ws, settle):
        ws = make_ws()
        task = await open_client(relay, ws, settle)

        assert str(ws.id) in relay.state.connections
        assert ws.events("server:status")[0][1]["connectedClients"] == 0

        await close_client(ws, task)
        assert relay.state.connections == {}
        assert relay._sockets == {}

    async def test_announce_updates_status_for_everyone(self, relay, make_ws, settle):
        admin, viz = make_ws(), make_ws()
        t1 = await open_client(relay, admin, settle, "admin")
        t2 = await open_client(relay, viz, settle, "visualization")

        latest = admin.events("server:status")[-1][1]
        assert latest["connectedClients"] == 1
        assert latest["adminConnected"] is True

        await close_client(admin, t1)
        latest = viz.events("server:status")[-1][1]
        assert latest["adminConnected"] is False
        await close_client(viz, t2)

    async def test_invalid_frames_keep_connection(self, relay, make_ws, settle):
        a, b = make_ws(), make_ws()
        t1 = await open_client(relay, a, settle, "admin")
        t2 = await open_client(relay, b, settle, "visualization")

        a.push_raw("{not json")
        a.push_raw('["no", "envelope"]')
        a.push("audio:data", {"amplitude": 0.3})
        await settle()

        assert b.events("audio:data") == [("audio:data", {"amplitude": 0.3})]
        assert str(a.id) in relay.state.connections

        await close_client(a, t1)
        await close_client(b, t2)


class TestRouting:
    async def test_play_scenario_with_late_joiner(self, relay, make_ws, settle):
        a, b, c = make_ws(), make_ws(), make_ws()
        ta = await open_client(relay, a, settle, "admin")
        tb = await open_client(relay, b, settle, "visualization")

        a.push("audio:play", {"audioId": "track1", "timestamp": 1000})
        await settle()
        assert b.events("audio:play") == [("audio:play", {"audioId": "track1", "timestamp": 1000})]
        assert a.events("audio:play") == []

        tc = await open_client(relay, c, settle, "visualization")
        plays = c.events("audio:play")
        assert plays == [("audio:play", {"isPlaying": True, "audioId": "track1", "timestamp": 1000})]
        # b does not get the synthetic resync
        assert len(b.events("audio:play")) == 1

        for ws, task in ((a, ta), (b, tb), (c, tc)):
            await close_client(ws, task)

    async def test_audio_data_not_echoed(self, relay, make_ws, settle):
        sockets = [make_ws() for _ in range(3)]
        tasks = [await open_client(relay, ws, settle, "visualization") for ws in sockets]

        sockets[0].push("audio:data", {"frequencyData": [1, 2, 3], "amplitude": 0.9})
        await settle()

        assert sockets[0].events("audio:data") == []
        for ws in sockets[1:]:
            assert ws.events("audio:data") == [
                ("audio:data", {"frequencyData": [1, 2, 3], "amplitude": 0.9})
            ]

        for ws, task in zip(sockets, tasks):
            await close_client(ws, task)

    async def test_binary_frames_relayed_as_binary(self, relay, make_ws, settle):
        a, b = make_ws(), make_ws()
        ta = await open_client(relay, a, settle, "admin")
        tb = await open_client(relay, b, settle, "visualization")

        a.push_raw(b"\x00\x7f\xff")
        await settle()

        assert b"\x00\x7f\xff" in b.sent
        assert b"\x00\x7f\xff" not in a.sent

        await close_client(a, ta)
        await close_client(b, tb)

    async def test_metrics_routed_to_admin(self, relay, make_ws, settle):
        admin, viz = make_ws(), make_ws()
        ta = await open_client(relay, admin, settle, "admin")
        tv = await open_client(relay, viz, settle, "visualization")

        viz.push("performance:metrics", {"clientId": "client_v", "fps": 60, "latency": 4})
        await settle()

        assert admin.events("client:metrics") == [
            (
                "client:metrics",
                {"clientId": "client_v", "fps": 60, "latency": 4, "socketId": str(viz.id)},
            )
        ]
        assert viz.events("client:metrics") == []

        await close_client(admin, ta)
        await close_client(viz, tv)


class TestDeliveryIsolation:
    async def test_failing_receiver_does_not_block_others(self, relay, make_ws, settle):
        admin, dead, viz = make_ws(), make_ws(fail_send=True), make_ws()
        ta = await open_client(relay, admin, settle, "admin")
        td = await open_client(relay, dead, settle, "visualization")
        tv = await open_client(relay, viz, settle, "visualization")

        admin.push("audio:data", {"amplitude": 1.0})
        await settle()

        assert viz.events("audio:data") == [("audio:data", {"amplitude": 1.0})]
        assert relay._send_failures > 0

        for ws, task in ((admin, ta), (dead, td), (viz, tv)):
            await close_client(ws, task)

    async def test_slow_receiver_times_out(self, relay, make_ws, settle):
        admin, slow, viz = make_ws(), make_ws(), make_ws()
        ta = await open_client(relay, admin, settle, "admin")
        ts = await open_client(relay, slow, settle, "visualization")
        tv = await open_client(relay, viz, settle, "visualization")

        slow.send_delay = 1.0
        failures = relay._send_failures
        admin.push("audio:data", {"amplitude": 0.1})
        await settle(0.3)

        assert viz.events("audio:data") == [("audio:data", {"amplitude": 0.1})]
        assert slow.events("audio:data") == []
        assert relay._send_failures == failures + 1

        slow.send_delay = 0.0
        for ws, task in ((admin, ta), (slow, ts), (viz, tv)):
            await close_client(ws, task)

    async def test_unexpected_send_error_is_contained(self, relay, make_ws, settle):
        admin, broken, viz = make_ws(), make_ws(), make_ws()
        ta = await open_client(relay, admin, settle, "admin")
        tb = await open_client(relay, broken, settle, "visualization")
        tv = await open_client(relay, viz, settle, "visualization")

        async def explode(message):
            raise RuntimeError("encoder failure")

        broken.send = explode
        failures = relay._send_failures
        admin.push("audio:data", {"amplitude": 0.2})
        await settle()

        assert viz.events("audio:data") == [("audio:data", {"amplitude": 0.2})]
        assert relay._send_failures == failures + 1

        for ws, task in ((admin, ta), (broken, tb), (viz, tv)):
            await close_client(ws, task)

    async def test_cancel_during_first_status_send_unregisters(self, relay, make_ws, settle):
        ws = make_ws(send_delay=0.05)
        task = asyncio.create_task(relay._handle_client(ws))
        await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert relay.state.connections == {}
        assert relay._sockets == {}


class TestStatusPublisher:
    async def test_periodic_status(self, make_ws, settle):
        relay = RelayServer(RelayConfig(http_port=0, metrics_port=None, status_interval=0.05))
        ws = make_ws()
        task = await open_client(relay, ws, settle, "visualization")
        before = len(ws.events("server:status"))

        relay._running = True
        loop_task = asyncio.create_task(relay._status_loop())
        await asyncio.sleep(0.22)
        relay.stop()
        loop_task.cancel()
        await asyncio.gather(loop_task, return_exceptions=True)

        assert len(ws.events("server:status")) - before >= 2
        await close_client(ws, task)

    async def test_periodic_status_with_no_clients(self):
        relay = RelayServer(RelayConfig(http_port=0, metrics_port=None, status_interval=0.01))
        relay._running = True
        loop_task = asyncio.create_task(relay._status_loop())
        await asyncio.sleep(0.05)

        assert not loop_task.done()
        relay.stop()
        loop_task.cancel()
        await asyncio.gather(loop_task, return_exceptions=True)

    async def test_run_and_stop(self):
        relay = RelayServer(RelayConfig(host="127.0.0.1", ws_port=0, http_port=0, metrics_port=None))
        run_task = asyncio.create_task(relay.run())
        await asyncio.sleep(0.1)

        assert relay._status_task is not None
        relay.stop()
        await asyncio.wait_for(run_task, timeout=2.0)
        await relay.cleanup()

        assert relay._status_task.done()

    async def test_health_stats(self, relay, make_ws, settle):
        admin = make_ws()
        task = await open_client(relay, admin, settle, "admin")
        admin.push("audio:play", {"audioId": "track9", "timestamp": 3})
        await settle()

        stats = relay.get_health_stats()

        assert stats["connections"] == 1
        assert stats["visualizers"] == 0
        assert stats["admin_connected"] is True
        assert stats["is_playing"] is True
        assert stats["audio_id"] == "track9"

        await close_client(admin, task)


class TestEndToEnd:
    async def test_admin_to_visualizer_over_websockets(self, relay):
        server = await ws_serve(relay._handle_client, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]

        admin = RelayClient(host="127.0.0.1", port=port, role="admin", auto_reconnect=False)
        viz = RelayClient(host="127.0.0.1", port=port, auto_reconnect=False)
        frames = []
        metrics = []
        viz.on("audio:data", frames.append)
        admin.on("client:metrics", metrics.append)

        try:
            assert await admin.connect() is True
            assert await viz.connect() is True
            await asyncio.sleep(0.1)

            assert await admin.send_audio_data([0.1, 0.2], [0.0], amplitude=0.7) is True
            assert await viz.send_metrics(fps=60, latency=5) is True
            await asyncio.sleep(0.1)

            assert len(frames) == 1
            assert frames[0]["amplitude"] == 0.7
            assert metrics[0]["fps"] == 60
            assert viz.last_status["adminConnected"] is True
            assert viz.last_status["connectedClients"] == 1
        finally:
            await admin.disconnect()
            await viz.disconnect()
            server.close()
            await server.wait_closed()
