import asyncio
import shutil
import subprocess
import unittest
from types import SimpleNamespace
from unittest import mock

from dbus_fast import Message, Variant
from dbus_fast.aio import MessageBus
from dbus_fast.constants import MessageType
from dbus_fast.errors import DBusError

from blehid.bt_le.advertising import AdvertiseError
from blehid.bt_le.bluez import (
    BluezStack,
    address_from_path,
    advertise_error_for,
    characteristic_flags,
    connected_devices_from,
    descriptor_flags,
)
from blehid.bt_le.events import AdvertiseStarted, ConnectionEvent, MtuChanged, NotificationSent, ReadRequest, WriteRequest
from blehid.bt_le.gatt import (
    CHARACTERISTIC_HID_INFORMATION,
    CHARACTERISTIC_REPORT,
    DESCRIPTOR_CLIENT_CHARACTERISTIC_CONFIGURATION,
    DESCRIPTOR_REPORT_REFERENCE,
    DISABLE_NOTIFICATION_VALUE,
    ENABLE_NOTIFICATION_VALUE,
    GattCharacteristic,
    GattDescriptor,
    GattStatus,
    Permission,
    Property,
    SERVICE_BLE_HID,
)
from blehid.bt_le.services import build_battery_service
from blehid.bt_le.stack import AdvertiseData, AdvertiseSettings, ConnectionState
from blehid.errors import StackOperationError

DEV_PATH = "/org/bluez/hci0/dev_AA_BB_CC_DD_EE_FF"
OTHER_PATH = "/org/bluez/hci0/dev_11_22_33_44_55_66"


def _signal(path: str, member: str, body: list) -> SimpleNamespace:
    return SimpleNamespace(message_type=MessageType.SIGNAL, member=member, path=path, body=body)


class TestBluezHelpers(unittest.TestCase):
    def test_address_from_path(self) -> None:
        self.assertEqual(address_from_path(DEV_PATH), "AA:BB:CC:DD:EE:FF")

    def test_characteristic_flags(self) -> None:
        ch = GattCharacteristic(
            CHARACTERISTIC_REPORT,
            Property.READ | Property.WRITE | Property.WRITE_NO_RESPONSE,
            Permission.READ | Permission.WRITE_ENCRYPTED,
        )
        self.assertEqual(characteristic_flags(ch), ["read", "write-without-response", "encrypt-write"])
        ch = GattCharacteristic(CHARACTERISTIC_REPORT, Property.READ | Property.NOTIFY, Permission.READ)
        self.assertEqual(characteristic_flags(ch), ["read", "notify"])

    def test_descriptor_flags(self) -> None:
        self.assertEqual(descriptor_flags(GattDescriptor(DESCRIPTOR_REPORT_REFERENCE, Permission.READ)), ["read"])

    def test_advertise_error_mapping(self) -> None:
        err = DBusError("org.bluez.Error.NotPermitted", "Maximum advertisements reached")
        self.assertEqual(advertise_error_for(err), AdvertiseError.TOO_MANY_ADVERTISERS)
        self.assertEqual(advertise_error_for(DBusError("org.bluez.Error.Weird", "")), 0)


class TestBluezRequests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.stack = BluezStack(request_timeout_s=1.0)
        self.events = []
        self.stack.bind(self.events.append)
        self.ch = GattCharacteristic(CHARACTERISTIC_HID_INFORMATION, Property.READ, Permission.READ)

    def _answer(self, status: int, value=None) -> None:
        def listener(event) -> None:
            self.events.append(event)
            if isinstance(event, (ReadRequest, WriteRequest)):
                asyncio.get_running_loop().create_task(
                    self.stack.send_response(event.device, event.request_id, status, event.offset, value)
                )

        self.stack.bind(listener)

    async def test_read_round_trip(self) -> None:
        self._answer(0, b"\x00\x03")
        value = await self.stack._handle_read(
            self.ch, {"offset": Variant("q", 2), "device": Variant("o", DEV_PATH)}
        )

        self.assertEqual(value, b"\x00\x03")
        up, req = self.events
        self.assertEqual(up.new_state, ConnectionState.CONNECTED)
        self.assertIsInstance(req, ReadRequest)
        self.assertEqual(req.offset, 2)
        self.assertEqual(req.device.address, "AA:BB:CC:DD:EE:FF")
        self.assertEqual(self.stack._pending, {})

    async def test_read_error_status_becomes_dbus_error(self) -> None:
        self._answer(int(GattStatus.READ_NOT_PERMITTED))
        with self.assertRaises(DBusError) as cm:
            await self.stack._handle_read(self.ch, {})
        self.assertEqual(cm.exception.type, "org.bluez.Error.NotPermitted")

    async def test_unanswered_read_times_out(self) -> None:
        self.stack._request_timeout_s = 0.01
        with self.assertRaises(DBusError) as cm:
            await self.stack._handle_read(self.ch, {})
        self.assertEqual(cm.exception.type, "org.bluez.Error.Failed")
        self.assertEqual(self.stack._pending, {})

    async def test_write_command_needs_no_response(self) -> None:
        await self.stack._handle_write(self.ch, b"\x01", {"type": Variant("s", "command")})
        self.assertFalse(self.events[0].response_needed)
        self.assertEqual(self.stack._pending, {})

    async def test_write_request_waits_for_response(self) -> None:
        self._answer(0, b"\x01")
        await self.stack._handle_write(self.ch, b"\x01", {"type": Variant("s", "request")})
        self.assertTrue(self.events[0].response_needed)

    async def test_mtu_is_reported_once(self) -> None:
        self._answer(0, b"")
        opts = {"device": Variant("o", DEV_PATH), "mtu": Variant("q", 185)}
        await self.stack._handle_read(self.ch, opts)
        await self.stack._handle_read(self.ch, opts)
        mtus = [e for e in self.events if isinstance(e, MtuChanged)]
        self.assertEqual(len(mtus), 1)
        self.assertEqual(mtus[0].mtu, 185)

    async def test_subscription_becomes_cccd_write(self) -> None:
        ch = GattCharacteristic(CHARACTERISTIC_REPORT, Property.READ | Property.NOTIFY, Permission.READ)
        cccd = ch.add_descriptor(
            GattDescriptor(DESCRIPTOR_CLIENT_CHARACTERISTIC_CONFIGURATION, Permission.READ | Permission.WRITE)
        )
        self.stack._handle_subscription(ch, True)
        self.stack._handle_subscription(ch, False)

        self.assertEqual([e.attribute for e in self.events], [cccd, cccd])
        self.assertEqual([e.value for e in self.events], [ENABLE_NOTIFICATION_VALUE, DISABLE_NOTIFICATION_VALUE])

    async def test_close_fails_outstanding_requests(self) -> None:
        task = asyncio.get_running_loop().create_task(self.stack._handle_read(self.ch, {}))
        await asyncio.sleep(0)
        await self.stack.close_gatt_server()
        with self.assertRaises(DBusError):
            await task

    async def test_add_service_requires_open_server(self) -> None:
        with self.assertRaises(StackOperationError):
            await self.stack.add_service(build_battery_service())

    async def test_notify_unknown_characteristic(self) -> None:
        self.assertFalse(await self.stack.notify_characteristic_changed(None, self.ch))
        self.assertEqual(self.events, [NotificationSent(None, int(GattStatus.FAILURE))])


def _connected_signal(path: str, connected: bool, **props) -> SimpleNamespace:
    changed = {"Connected": Variant("b", connected)}
    changed.update({k: Variant("s", v) for k, v in props.items()})
    return _signal(path, "PropertiesChanged", ["org.bluez.Device1", changed, []])


class TestBluezConnectionSignals(unittest.TestCase):
    def setUp(self) -> None:
        self.stack = BluezStack()
        self.events = []
        self.stack.bind(self.events.append)

    def test_link_becomes_host_on_first_gatt_request(self) -> None:
        self.stack._on_bus_message(_connected_signal(DEV_PATH, True, Alias="Laptop"))
        self.assertEqual(self.events, [])

        self.stack._device_from_options({"device": Variant("o", DEV_PATH)})
        self.stack._device_from_options({"device": Variant("o", DEV_PATH)})
        self.stack._on_bus_message(_connected_signal(DEV_PATH, False))

        self.assertEqual(len(self.events), 2)
        up, down = self.events
        self.assertIsInstance(up, ConnectionEvent)
        self.assertEqual(up.new_state, ConnectionState.CONNECTED)
        self.assertEqual(up.device.name, "Laptop")
        self.assertEqual(up.device.address, "AA:BB:CC:DD:EE:FF")
        self.assertEqual(down.new_state, ConnectionState.DISCONNECTED)
        self.assertEqual(down.device, up.device)

    def test_link_without_gatt_traffic_is_not_a_host(self) -> None:
        self.stack._on_bus_message(_connected_signal(OTHER_PATH, True, Alias="Headset"))
        self.stack._on_bus_message(_connected_signal(OTHER_PATH, False))
        self.assertEqual(self.events, [])
        self.assertEqual(self.stack._links, {})

    def test_subscription_credits_the_newest_link(self) -> None:
        ch = GattCharacteristic(CHARACTERISTIC_REPORT, Property.READ | Property.NOTIFY, Permission.READ)
        ch.add_descriptor(
            GattDescriptor(DESCRIPTOR_CLIENT_CHARACTERISTIC_CONFIGURATION, Permission.READ | Permission.WRITE)
        )
        self.stack._on_bus_message(_connected_signal(OTHER_PATH, True))
        self.stack._on_bus_message(_connected_signal(DEV_PATH, True))
        self.stack._handle_subscription(ch, True)

        up, write = self.events
        self.assertEqual(up.device.path, DEV_PATH)
        self.assertEqual(write.device, up.device)
        self.assertIn(OTHER_PATH, self.stack._links)

    def test_unrelated_signals_are_ignored(self) -> None:
        self.stack._on_bus_message(
            _signal(DEV_PATH, "PropertiesChanged", ["org.bluez.Device1", {"RSSI": Variant("n", -40)}, []])
        )
        self.stack._on_bus_message(
            _signal("/org/bluez/hci0", "PropertiesChanged", ["org.bluez.Adapter1", {"Powered": Variant("b", True)}, []])
        )
        self.stack._on_bus_message(SimpleNamespace(message_type=MessageType.METHOD_CALL, member="X", path=DEV_PATH))
        self.assertEqual(self.events, [])
        self.assertEqual(self.stack._links, {})

    def test_device_removed_while_connected(self) -> None:
        self.stack._on_bus_message(_connected_signal(DEV_PATH, True))
        self.stack._device_from_options({"device": Variant("o", DEV_PATH)})
        self.stack._on_bus_message(_signal("/", "InterfacesRemoved", [DEV_PATH, ["org.bluez.Device1"]]))
        self.assertEqual(self.events[-1].new_state, ConnectionState.DISCONNECTED)
        self.assertEqual(self.stack._devices, {})


def _managed(*connected_paths: str) -> dict:
    return {
        path: {
            "org.bluez.Device1": {
                "Adapter": Variant("o", "/org/bluez/hci0"),
                "Address": Variant("s", address_from_path(path)),
                "Connected": Variant("b", True),
            }
        }
        for path in connected_paths
    }


class TestBluezReconcile(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.stack = BluezStack()
        self.events = []
        self.stack.bind(self.events.append)
        patcher = mock.patch("blehid.bt_le.bluez.get_managed_objects", new_callable=mock.AsyncMock)
        self.managed = patcher.start()
        self.addCleanup(patcher.stop)

    def test_connected_devices_from_filters_adapter(self) -> None:
        managed = _managed(DEV_PATH)
        managed["/org/bluez/hci1/dev_11_22_33_44_55_66"] = {
            "org.bluez.Device1": {"Adapter": Variant("o", "/org/bluez/hci1"), "Connected": Variant("b", True)}
        }
        managed["/org/bluez/hci0"] = {"org.bluez.Adapter1": {}}
        self.assertEqual(list(connected_devices_from(managed, "/org/bluez/hci0")), [DEV_PATH])

    async def test_existing_connection_is_seeded(self) -> None:
        self.managed.return_value = _managed(DEV_PATH)
        await self.stack._reconcile()

        self.assertEqual(self.stack._links[DEV_PATH].address, "AA:BB:CC:DD:EE:FF")
        self.assertEqual(self.events, [])

    async def test_vanished_host_is_disconnected(self) -> None:
        self.managed.return_value = _managed(DEV_PATH, OTHER_PATH)
        await self.stack._reconcile()
        self.stack._device_from_options({"device": Variant("o", DEV_PATH)})

        self.managed.return_value = {}
        await self.stack._reconcile()

        self.assertEqual([e.new_state for e in self.events], [ConnectionState.CONNECTED, ConnectionState.DISCONNECTED])
        self.assertEqual(self.stack._links, {})
        self.assertEqual(self.stack._devices, {})


class TestBluezAdvertising(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.stack = BluezStack()
        self.events = []
        self.stack.bind(self.events.append)
        self.stack._bus = object()
        self.stack._adapter = object()
        patcher = mock.patch("blehid.bt_le.bluez.Advertisement")
        self.advert = patcher.start().return_value
        self.addCleanup(patcher.stop)
        self.advert.register = mock.AsyncMock()
        self.advert.unregister = mock.AsyncMock()

    async def _start(self) -> None:
        await self.stack.start_advertising(
            AdvertiseSettings(), AdvertiseData(service_uuids=[SERVICE_BLE_HID]), AdvertiseData()
        )

    async def test_started_is_reported(self) -> None:
        await self._start()
        await self.stack._advert_task
        self.assertEqual(self.events, [AdvertiseStarted()])

        await self.stack.stop_advertising()
        self.advert.unregister.assert_awaited_once()

    async def test_stop_before_registration_skips_it(self) -> None:
        await self._start()
        await self.stack.stop_advertising()

        self.advert.register.assert_not_called()
        self.assertEqual(self.events, [])
        self.assertFalse(self.stack._advertising)

    async def test_stop_during_registration_unregisters(self) -> None:
        gate = asyncio.Event()

        async def slow_register(*args, **kwargs) -> None:
            await gate.wait()

        self.advert.register = mock.AsyncMock(side_effect=slow_register)
        await self._start()
        for _ in range(10):
            if self.advert.register.called:
                break
            await asyncio.sleep(0)

        stopping = asyncio.get_running_loop().create_task(self.stack.stop_advertising())
        await asyncio.sleep(0)
        gate.set()
        await stopping

        self.advert.unregister.assert_awaited_once()
        self.assertEqual(self.events, [])
        self.assertFalse(self.stack._advertising)


@unittest.skipUnless(shutil.which("dbus-daemon"), "dbus-daemon not installed")
class TestBluezSignalDelivery(unittest.IsolatedAsyncioTestCase):
    """Device signals routed by a private bus daemon."""

    async def asyncSetUp(self) -> None:
        daemon = subprocess.Popen(
            ["dbus-daemon", "--session", "--nofork", "--print-address"],
            stdout=subprocess.PIPE,
            text=True,
        )
        self.addCleanup(daemon.stdout.close)
        self.addCleanup(daemon.wait)
        self.addCleanup(daemon.terminate)
        address = daemon.stdout.readline().strip()

        self.bus = await MessageBus(bus_address=address).connect()
        self.bluez = await MessageBus(bus_address=address).connect()
        await self.bluez.request_name("org.bluez")

        self.stack = BluezStack()
        self.events = []
        self.stack.bind(self.events.append)
        with mock.patch("blehid.bt_le.bluez.get_message_bus", mock.AsyncMock(return_value=self.bus)):
            await self.stack._ensure_bus()

    async def asyncTearDown(self) -> None:
        self.bluez.disconnect()
        self.bus.disconnect()

    async def _emit_connected(self, connected: bool) -> None:
        await self.bluez.send(
            Message.new_signal(
                DEV_PATH,
                "org.freedesktop.DBus.Properties",
                "PropertiesChanged",
                "sa{sv}as",
                ["org.bluez.Device1", {"Connected": Variant("b", connected)}, []],
            )
        )

    async def _until(self, predicate) -> bool:
        for _ in range(200):
            if predicate():
                return True
            await asyncio.sleep(0.01)
        return False

    async def test_connect_and_disconnect_signals_arrive(self) -> None:
        await self._emit_connected(True)
        self.assertTrue(await self._until(lambda: DEV_PATH in self.stack._links))

        self.stack._device_from_options({"device": Variant("o", DEV_PATH)})
        await self._emit_connected(False)
        self.assertTrue(await self._until(lambda: len(self.events) == 2))

        self.assertEqual(
            [(e.device.address, e.new_state) for e in self.events],
            [("AA:BB:CC:DD:EE:FF", ConnectionState.CONNECTED), ("AA:BB:CC:DD:EE:FF", ConnectionState.DISCONNECTED)],
        )


if __name__ == "__main__":
    unittest.main()
