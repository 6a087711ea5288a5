import unittest

from aiohttp.test_utils import TestClient, TestServer

from fakes import FakeStack

from blehid.bt_le.engine import PeripheralEngine
from blehid.bt_le.mouse import MouseProfile
from blehid.health import HealthServer


class TestHealthSnapshot(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.stack = FakeStack()
        self.engine = PeripheralEngine(self.stack, MouseProfile(), device_name="Mouse", report_interval_ms=60000)
        await self.engine.open()
        self.health = HealthServer(host="127.0.0.1", port=0, engine=self.engine)

    async def asyncTearDown(self) -> None:
        await self.engine.close()

    async def test_snapshot_shape_defaults(self) -> None:
        snap = self.health.snapshot()

        self.assertEqual(set(snap.keys()), {"status", "degraded_reasons", "profile", "ble"})
        self.assertEqual(
            set(snap["ble"].keys()),
            {
                "state",
                "server_open",
                "advertising",
                "connected",
                "devices",
                "pending_services",
                "queued_reports",
                "last_advertise_error",
            },
        )
        self.assertEqual(snap["status"], "degraded")
        self.assertEqual(snap["degraded_reasons"], ["ble.server_closed", "ble.not_advertising"])
        self.assertEqual(snap["profile"], "mouse")

    async def test_snapshot_ok_while_advertising(self) -> None:
        self.assertTrue(await self.engine.start())
        await self.engine.wait_idle()

        snap = self.health.snapshot()
        self.assertEqual(snap["status"], "ok")
        self.assertEqual(snap["degraded_reasons"], [])
        self.assertTrue(snap["ble"]["advertising"])

    async def test_snapshot_reports_advertise_failure(self) -> None:
        self.stack.advertise_error = 2
        self.assertTrue(await self.engine.start())
        await self.engine.wait_idle()

        snap = self.health.snapshot()
        self.assertIn("ble.advertise_failed", snap["degraded_reasons"])
        self.assertEqual(snap["ble"]["last_advertise_error"], 2)

    async def test_endpoint_status_code(self) -> None:
        async with TestClient(TestServer(self.health.make_app())) as client:
            resp = await client.get("/health")
            self.assertEqual(resp.status, 503)
            body = await resp.json()
            self.assertEqual(body["status"], "degraded")

            self.assertTrue(await self.engine.start())
            await self.engine.wait_idle()

            resp = await client.get("/health")
            self.assertEqual(resp.status, 200)


if __name__ == "__main__":
    unittest.main()
