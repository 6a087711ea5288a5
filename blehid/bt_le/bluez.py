#!/usr/bin/env python3
"""BleStack implementation for BlueZ over the system D-Bus.

Every GATT service is exported as its own application and registered through
org.bluez.GattManager1, so BlueZ acknowledges services one at a time. Read and
write method calls from bluetoothd are turned into engine events and answered
when the engine calls send_response(). BlueZ owns the real CCCD, so
StartNotify/StopNotify are reported to the engine as CCCD writes.
"""

import asyncio
import contextlib
import itertools
import logging
from typing import Callable, Dict, List, Optional, Tuple

from bluez_peripheral.util import get_message_bus, Adapter, is_bluez_available
from bluez_peripheral.advert import Advertisement
from bluez_peripheral.agent import NoIoAgent

from dbus_fast import Message, Variant
from dbus_fast.constants import MessageType, PropertyAccess
from dbus_fast.errors import DBusError
from dbus_fast.service import ServiceInterface, dbus_property, method

from ..errors import StackOperationError, StackPermissionError
from .advertising import AdvertiseError
from .events import (
    AdvertiseFailed,
    AdvertiseStarted,
    ConnectionEvent,
    MtuChanged,
    NotificationSent,
    ReadRequest,
    ServiceAdded,
    WriteRequest,
)
from .gatt import (
    DESCRIPTOR_CLIENT_CHARACTERISTIC_CONFIGURATION,
    DISABLE_NOTIFICATION_VALUE,
    ENABLE_NOTIFICATION_VALUE,
    GattCharacteristic,
    GattDescriptor,
    GattService,
    GattStatus,
    Permission,
    Property,
    describe_uuid,
)
from .stack import (
    STATUS_SUCCESS,
    AdapterStatus,
    AdvertiseData,
    AdvertiseSettings,
    BondState,
    ConnectionState,
    RemoteDevice,
)

logger = logging.getLogger(__name__)

APPEARANCE_KEYBOARD = 0x03C1
APPEARANCE_MOUSE = 0x03C2

_PERMISSION_ERRORS = {
    "org.freedesktop.DBus.Error.AccessDenied",
    "org.bluez.Error.NotAuthorized",
}

_STATUS_ERRORS = {
    GattStatus.READ_NOT_PERMITTED: "org.bluez.Error.NotPermitted",
    GattStatus.WRITE_NOT_PERMITTED: "org.bluez.Error.NotPermitted",
    GattStatus.INVALID_OFFSET: "org.bluez.Error.InvalidOffset",
    GattStatus.INVALID_ATTRIBUTE_LENGTH: "org.bluez.Error.InvalidValueLength",
    GattStatus.FAILURE: "org.bluez.Error.Failed",
}

_ADVERTISE_ERRORS = {
    "org.bluez.Error.InvalidLength": AdvertiseError.DATA_TOO_LARGE,
    "org.bluez.Error.NotPermitted": AdvertiseError.TOO_MANY_ADVERTISERS,
    "org.bluez.Error.AlreadyExists": AdvertiseError.ALREADY_STARTED,
    "org.bluez.Error.Failed": AdvertiseError.INTERNAL_ERROR,
    "org.bluez.Error.NotSupported": AdvertiseError.FEATURE_UNSUPPORTED,
}

# dbus-daemon only routes broadcast signals that some match rule asks for
_DEVICE_MATCH_RULES = (
    "type='signal',sender='org.bluez',interface='org.freedesktop.DBus.Properties',"
    "member='PropertiesChanged',arg0='org.bluez.Device1'",
    "type='signal',sender='org.bluez',interface='org.freedesktop.DBus.ObjectManager',"
    "member='InterfacesRemoved'",
)


def _get_bool(v):  # unwrap dbus_fast.Variant or use raw bool
    return bool(v.value) if isinstance(v, Variant) else bool(v)


def _get_str(v):  # unwrap dbus_fast.Variant or use raw str
    if v is None:
        return ""
    return str(v.value) if isinstance(v, Variant) else str(v)


def _opt(options: dict, key: str, default=None):
    v = (options or {}).get(key)
    if v is None:
        return default
    return v.value if isinstance(v, Variant) else v


def _translate(exc: DBusError, what: str) -> Exception:
    if exc.type in _PERMISSION_ERRORS:
        return StackPermissionError(f"{what}: {exc.text}")
    return StackOperationError(f"{what}: {exc.type} {exc.text}")


def advertise_error_for(exc: DBusError) -> int:
    return int(_ADVERTISE_ERRORS.get(exc.type, 0))


def address_from_path(path: str) -> str:
    """/org/bluez/hci0/dev_AA_BB_CC_DD_EE_FF -> AA:BB:CC:DD:EE:FF"""
    leaf = path.rsplit("/", 1)[-1]
    if leaf.startswith("dev_"):
        leaf = leaf[4:]
    return leaf.replace("_", ":")


def characteristic_flags(ch: GattCharacteristic) -> List[str]:
    flags = []
    if ch.properties & Property.BROADCAST:
        flags.append("broadcast")
    if ch.properties & Property.READ:
        flags.append("encrypt-read" if ch.permissions & Permission.READ_ENCRYPTED else "read")
    if ch.properties & Property.WRITE_NO_RESPONSE:
        flags.append("write-without-response")
    if ch.properties & Property.WRITE:
        flags.append("encrypt-write" if ch.permissions & Permission.WRITE_ENCRYPTED else "write")
    if ch.properties & Property.NOTIFY:
        flags.append("notify")
    if ch.properties & Property.INDICATE:
        flags.append("indicate")
    return flags


def descriptor_flags(desc: GattDescriptor) -> List[str]:
    flags = []
    if desc.permissions & (Permission.READ | Permission.READ_ENCRYPTED):
        flags.append("read")
    if desc.permissions & (Permission.WRITE | Permission.WRITE_ENCRYPTED):
        flags.append("write")
    return flags


async def ensure_controller_baseline(bus, adapter_name: str, *, adapter_proxy=None) -> None:
    """Re-apply the controller state a peripheral needs (powered, pairable, no timeouts)."""
    path = f"/org/bluez/{adapter_name}"
    if adapter_proxy is None:
        try:
            xml = await bus.introspect("org.bluez", path)
            adapter_proxy = bus.get_proxy_object("org.bluez", path, xml)
        except Exception as exc:
            logger.warning("[bluez] baseline: couldn't introspect %s: %s", path, exc)
            return

    props = adapter_proxy.get_interface("org.freedesktop.DBus.Properties")

    async def _set(prop: str, sig: str, val):
        try:
            await props.call_set("org.bluez.Adapter1", prop, Variant(sig, val))
        except Exception as exc:
            # some properties are read-only depending on the controller
            logger.debug("[bluez] baseline: set %s=%r failed: %s", prop, val, exc)

    await _set("PairableTimeout", "u", 0)
    await _set("DiscoverableTimeout", "u", 0)
    await _set("Pairable", "b", True)


async def add_match_rules(bus, rules=_DEVICE_MATCH_RULES) -> None:
    for rule in rules:
        reply = await bus.call(
            Message(
                destination="org.freedesktop.DBus",
                path="/org/freedesktop/DBus",
                interface="org.freedesktop.DBus",
                member="AddMatch",
                signature="s",
                body=[rule],
            )
        )
        if reply.message_type == MessageType.ERROR:
            raise DBusError(reply.error_name, reply.body[0] if reply.body else "")


async def get_managed_objects(bus) -> dict:
    root_xml = await bus.introspect("org.bluez", "/")
    root = bus.get_proxy_object("org.bluez", "/", root_xml)
    om = root.get_interface("org.freedesktop.DBus.ObjectManager")
    return await om.call_get_managed_objects()


def connected_devices_from(managed: dict, adapter_path: str) -> Dict[str, dict]:
    """Device1 properties of every connected device on one adapter, by object path."""
    connected = {}
    for path, ifaces in managed.items():
        dev = ifaces.get("org.bluez.Device1")
        if not dev or _get_str(dev.get("Adapter")) != adapter_path:
            continue
        if _get_bool(dev.get("Connected", False)):
            connected[path] = dev
    return connected


# --------------------------
# Exported GATT objects
# --------------------------
class _ServiceIface(ServiceInterface):
    def __init__(self, node: GattService):
        super().__init__("org.bluez.GattService1")
        self._node = node

    @dbus_property(access=PropertyAccess.READ)
    def UUID(self) -> "s":
        return self._node.uuid

    @dbus_property(access=PropertyAccess.READ)
    def Primary(self) -> "b":
        return self._node.primary


class _CharacteristicIface(ServiceInterface):
    def __init__(self, stack: "BluezStack", node: GattCharacteristic, service_path: str):
        super().__init__("org.bluez.GattCharacteristic1")
        self._stack = stack
        self._node = node
        self._service_path = service_path
        self.notifying = False

    @method()
    async def ReadValue(self, options: "a{sv}") -> "ay":
        return await self._stack._handle_read(self._node, options)

    @method()
    async def WriteValue(self, value: "ay", options: "a{sv}"):
        await self._stack._handle_write(self._node, bytes(value), options)

    @method()
    def StartNotify(self):
        if self.notifying:
            return
        self.notifying = True
        self._stack._handle_subscription(self._node, True)
        self.emit_properties_changed({"Notifying": True})

    @method()
    def StopNotify(self):
        if not self.notifying:
            return
        self.notifying = False
        self._stack._handle_subscription(self._node, False)
        self.emit_properties_changed({"Notifying": False})

    @dbus_property(access=PropertyAccess.READ)
    def UUID(self) -> "s":
        return self._node.uuid

    @dbus_property(access=PropertyAccess.READ)
    def Service(self) -> "o":
        return self._service_path

    @dbus_property(access=PropertyAccess.READ)
    def Flags(self) -> "as":
        return characteristic_flags(self._node)

    @dbus_property(access=PropertyAccess.READ)
    def Notifying(self) -> "b":
        return self.notifying

    @dbus_property(access=PropertyAccess.READ)
    def Value(self) -> "ay":
        return bytes(self._node.value or b"")


class _DescriptorIface(ServiceInterface):
    def __init__(self, stack: "BluezStack", node: GattDescriptor, characteristic_path: str):
        super().__init__("org.bluez.GattDescriptor1")
        self._stack = stack
        self._node = node
        self._characteristic_path = characteristic_path

    @method()
    async def ReadValue(self, options: "a{sv}") -> "ay":
        return await self._stack._handle_read(self._node, options)

    @method()
    async def WriteValue(self, value: "ay", options: "a{sv}"):
        await self._stack._handle_write(self._node, bytes(value), options)

    @dbus_property(access=PropertyAccess.READ)
    def UUID(self) -> "s":
        return self._node.uuid

    @dbus_property(access=PropertyAccess.READ)
    def Characteristic(self) -> "o":
        return self._characteristic_path

    @dbus_property(access=PropertyAccess.READ)
    def Flags(self) -> "as":
        return descriptor_flags(self._node)


class _Application:
    """One exported service tree under its own ObjectManager root."""

    def __init__(self, path: str, service: GattService):
        self.path = path
        self.service = service
        self.exported: List[Tuple[str, ServiceInterface]] = []
        self.registered = False


# --------------------------
# Stack
# --------------------------
class BluezStack:
    """BleStack backed by bluetoothd.

    A connected Device1 is only reported to the engine once it touches the
    exported GATT objects (a read, a write or a subscription). Until then it
    is just a link: a headset or a device we are the central of never
    becomes a HID host.
    """

    def __init__(
        self,
        adapter_name: str = "hci0",
        *,
        appearance: int = APPEARANCE_KEYBOARD,
        base_path: str = "/com/blehid",
        request_timeout_s: float = 5.0,
        reconcile_interval_s: float = 15.0,
    ) -> None:
        self.adapter_name = adapter_name
        self.appearance = appearance
        self._adapter_path = f"/org/bluez/{adapter_name}"
        self._base_path = base_path
        self._request_timeout_s = request_timeout_s
        self._reconcile_interval_s = reconcile_interval_s

        self._listener: Optional[Callable[[object], None]] = None
        self._bus = None
        self._adapter_proxy = None
        self._adapter: Optional[Adapter] = None
        self._agent: Optional[NoIoAgent] = None

        self._apps: List[_Application] = []
        self._app_ids = itertools.count()
        self._char_ifaces: Dict[GattCharacteristic, _CharacteristicIface] = {}

        self._advert: Optional[Advertisement] = None
        self._advert_path = f"{base_path}/advert0"
        self._advertising = False
        self._advert_lock = asyncio.Lock()
        self._advert_task: Optional[asyncio.Task] = None
        self._advert_generation = 0

        self._request_ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._links: Dict[str, RemoteDevice] = {}    # connected, no GATT traffic yet
        self._devices: Dict[str, RemoteDevice] = {}  # reported to the engine
        self._reconcile_task: Optional[asyncio.Task] = None
        self._mtu: Dict[str, int] = {}
        self._tasks: set = set()
        self._server_open = False

    def bind(self, listener: Callable[[object], None]) -> None:
        self._listener = listener

    # ---------- environment ----------
    async def probe(self) -> AdapterStatus:
        try:
            bus = await self._ensure_bus()
            if not await is_bluez_available(bus):
                logger.warning("[bluez] BlueZ not available on system D-Bus")
                return AdapterStatus()
            xml = await bus.introspect("org.bluez", self._adapter_path)
        except DBusError as exc:
            if exc.type in _PERMISSION_ERRORS:
                raise _translate(exc, "probe adapter") from exc
            logger.warning("[bluez] adapter %s not found: %s", self.adapter_name, exc.text)
            return AdapterStatus()

        advertiser = any(i.name == "org.bluez.LEAdvertisingManager1" for i in xml.interfaces)
        adapter = await self._ensure_adapter(xml)
        try:
            powered = bool(await adapter.get_powered())
        except DBusError as exc:
            raise _translate(exc, "read Powered") from exc
        return AdapterStatus(present=True, enabled=powered, advertiser=advertiser)

    async def get_adapter_name(self) -> Optional[str]:
        adapter = await self._ensure_adapter()
        try:
            return await adapter.get_alias()
        except DBusError as exc:
            raise _translate(exc, "read Alias") from exc

    async def set_adapter_name(self, name: str) -> bool:
        adapter = await self._ensure_adapter()
        try:
            await adapter.set_alias(name)
        except DBusError as exc:
            if exc.type in _PERMISSION_ERRORS:
                raise _translate(exc, "set Alias") from exc
            logger.warning("[bluez] set alias %r failed: %s", name, exc.text)
            return False
        return True

    # ---------- GATT server ----------
    async def open_gatt_server(self) -> bool:
        bus = await self._ensure_bus()
        await self._ensure_adapter()
        await ensure_controller_baseline(bus, self.adapter_name, adapter_proxy=self._adapter_proxy)
        if self._agent is None:
            agent = NoIoAgent()
            try:
                await agent.register(bus, default=True)
                self._agent = agent
            except DBusError as exc:
                logger.warning("[bluez] pairing agent not registered: %s", exc.text)
        # a central that connected before we subscribed sends no Connected signal
        try:
            await self._reconcile()
        except DBusError as exc:
            logger.warning("[bluez] couldn't read existing connections: %s", exc.text)
        if self._reconcile_task is None:
            self._reconcile_task = asyncio.get_running_loop().create_task(self._reconcile_loop())
        self._server_open = True
        return True

    async def close_gatt_server(self) -> None:
        self._server_open = False
        task, self._reconcile_task = self._reconcile_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        apps, self._apps = self._apps, []
        for app in apps:
            if app.registered:
                try:
                    mgr = self._adapter_proxy.get_interface("org.bluez.GattManager1")
                    await mgr.call_unregister_application(app.path)
                except DBusError as exc:
                    logger.debug("[bluez] unregister %s: %s", app.path, exc.text)
            self._unexport(app)
        self._char_ifaces.clear()
        for fut in self._pending.values():
            if not fut.done():
                fut.set_result((int(GattStatus.FAILURE), None))
        self._pending.clear()

    async def add_service(self, service: GattService) -> None:
        if not self._server_open:
            raise StackOperationError("GATT server is not open")
        app = _Application(f"{self._base_path}/app{next(self._app_ids)}", service)
        self._export(app)
        self._apps.append(app)
        self._spawn(self._register_application(app))

    async def _register_application(self, app: _Application) -> None:
        status = int(GattStatus.FAILURE)
        try:
            mgr = self._adapter_proxy.get_interface("org.bluez.GattManager1")
            await mgr.call_register_application(app.path, {})
            app.registered = True
            status = STATUS_SUCCESS
        except DBusError as exc:
            logger.error("[bluez] register %s failed: %s %s", describe_uuid(app.service.uuid), exc.type, exc.text)
        self._post(ServiceAdded(status=status, service=app.service))

    def _export(self, app: _Application) -> None:
        service_path = f"{app.path}/service0"
        self._export_iface(app, service_path, _ServiceIface(app.service))
        for i, ch in enumerate(app.service.characteristics):
            char_path = f"{service_path}/char{i}"
            iface = _CharacteristicIface(self, ch, service_path)
            self._char_ifaces[ch] = iface
            self._export_iface(app, char_path, iface)
            for j, desc in enumerate(ch.descriptors):
                if desc.uuid == DESCRIPTOR_CLIENT_CHARACTERISTIC_CONFIGURATION:
                    continue  # bluetoothd provides the CCCD
                self._export_iface(app, f"{char_path}/desc{j}", _DescriptorIface(self, desc, char_path))

    def _export_iface(self, app: _Application, path: str, iface: ServiceInterface) -> None:
        self._bus.export(path, iface)
        app.exported.append((path, iface))

    def _unexport(self, app: _Application) -> None:
        for path, iface in reversed(app.exported):
            with contextlib.suppress(Exception):
                self._bus.unexport(path, iface)
        app.exported.clear()

    # ---------- advertising ----------
    async def start_advertising(
        self,
        settings: AdvertiseSettings,
        data: AdvertiseData,
        scan_response: AdvertiseData,
    ) -> None:
        await self._ensure_adapter()
        local_name = (await self.get_adapter_name() or "") if data.include_device_name else ""
        advert = Advertisement(
            localName=local_name,
            serviceUUIDs=list(data.service_uuids),
            appearance=self.appearance,
            timeout=settings.timeout_ms // 1000,
        )
        self._advert_task = self._spawn(self._register_advert(advert, self._advert_generation))

    async def _register_advert(self, advert: Advertisement, generation: int) -> None:
        async with self._advert_lock:
            if generation != self._advert_generation:
                return  # stopped before registration began
            if self._advertising:
                self._post(AdvertiseFailed(error_code=int(AdvertiseError.ALREADY_STARTED)))
                return
            try:
                await advert.register(self._bus, adapter=self._adapter, path=self._advert_path)
            except DBusError as exc:
                logger.debug("[bluez] advert register: %s %s", exc.type, exc.text)
                self._post(AdvertiseFailed(error_code=advertise_error_for(exc)))
                return
            self._advert = advert
            self._advertising = True
            if generation != self._advert_generation:
                return  # stop_advertising is waiting to unregister it
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("[bluez] advertisement registered at %s", self._advert_path)
        self._post(AdvertiseStarted())

    async def stop_advertising(self) -> None:
        self._advert_generation += 1
        task, self._advert_task = self._advert_task, None
        if task is not None and not task.done():
            await asyncio.wait({task})
        async with self._advert_lock:
            if not self._advertising:
                return
            try:
                if self._advert is not None:
                    await self._advert.unregister()
            except DBusError as exc:
                if "does not exist" not in (exc.text or "").lower():
                    raise _translate(exc, "unregister advertisement") from exc
            finally:
                self._advertising = False
                self._advert = None

    # ---------- requests ----------
    async def send_response(
        self,
        device: RemoteDevice,
        request_id: int,
        status: int,
        offset: int,
        value: Optional[bytes],
    ) -> bool:
        fut = self._pending.get(request_id)
        if fut is None or fut.done():
            logger.debug("[bluez] response for unknown request %d", request_id)
            return False
        fut.set_result((status, value))
        return True

    async def _handle_read(self, attr, options: dict) -> bytes:
        device = self._device_from_options(options)
        offset = int(_opt(options, "offset", 0))
        rid, fut = self._new_request()
        self._post(ReadRequest(device=device, request_id=rid, offset=offset, attribute=attr))
        status, value = await self._await_response(rid, fut)
        if status != STATUS_SUCCESS:
            raise DBusError(_STATUS_ERRORS.get(status, "org.bluez.Error.Failed"), f"ATT status 0x{status:02X}")
        return bytes(value or b"")

    async def _handle_write(self, attr, value: bytes, options: dict) -> None:
        device = self._device_from_options(options)
        offset = int(_opt(options, "offset", 0))
        kind = _opt(options, "type", "request")
        response_needed = kind != "command"
        rid, fut = self._new_request()
        self._post(
            WriteRequest(
                device=device,
                request_id=rid,
                attribute=attr,
                value=value,
                response_needed=response_needed,
                offset=offset,
            )
        )
        if not response_needed:
            self._pending.pop(rid, None)
            return
        status, _ = await self._await_response(rid, fut)
        if status != STATUS_SUCCESS:
            raise DBusError(_STATUS_ERRORS.get(status, "org.bluez.Error.Failed"), f"ATT status 0x{status:02X}")

    def _handle_subscription(self, ch: GattCharacteristic, enabled: bool) -> None:
        cccd = ch.get_descriptor(DESCRIPTOR_CLIENT_CHARACTERISTIC_CONFIGURATION)
        if cccd is None:
            return
        # StartNotify carries no device; credit the newest link
        if self._links:
            device = self._host_for_path(list(self._links)[-1])
        elif self._devices:
            device = list(self._devices.values())[-1]
        else:
            device = RemoteDevice(address="")
        self._post(
            WriteRequest(
                device=device,
                request_id=next(self._request_ids),
                attribute=cccd,
                value=ENABLE_NOTIFICATION_VALUE if enabled else DISABLE_NOTIFICATION_VALUE,
            )
        )

    def _new_request(self) -> Tuple[int, asyncio.Future]:
        rid = next(self._request_ids)
        fut = asyncio.get_running_loop().create_future()
        self._pending[rid] = fut
        return rid, fut

    async def _await_response(self, rid: int, fut: asyncio.Future):
        try:
            return await asyncio.wait_for(fut, self._request_timeout_s)
        except asyncio.TimeoutError:
            raise DBusError("org.bluez.Error.Failed", "no response from peripheral engine")
        finally:
            self._pending.pop(rid, None)

    # ---------- notifications ----------
    async def notify_characteristic_changed(
        self,
        device: RemoteDevice,
        characteristic: GattCharacteristic,
        confirm: bool = False,
    ) -> bool:
        # bluetoothd fans one PropertiesChanged out to every subscribed central
        iface = self._char_ifaces.get(characteristic)
        if iface is None:
            self._post(NotificationSent(device, int(GattStatus.FAILURE)))
            return False
        iface.emit_properties_changed({"Value": bytes(characteristic.value or b"")})
        self._post(NotificationSent(device, STATUS_SUCCESS))
        return True

    # ---------- devices ----------
    async def get_bond_state(self, device: RemoteDevice) -> BondState:
        props = await self._device_props(device)
        try:
            values = await props.call_get_all("org.bluez.Device1")
        except DBusError as exc:
            raise _translate(exc, "read device properties") from exc
        if _get_bool(values.get("Paired", False)) or _get_bool(values.get("Bonded", False)):
            return BondState.BONDED
        return BondState.NONE

    async def create_bond(self, device: RemoteDevice) -> bool:
        iface = await self._device_iface(device)
        self._spawn(self._pair(device, iface))
        return True

    async def _pair(self, device: RemoteDevice, iface) -> None:
        try:
            await iface.call_pair()
            logger.info("[bluez] paired with %s", device)
        except DBusError as exc:
            logger.warning("[bluez] pairing with %s failed: %s", device, exc.text)

    async def disconnect(self, device: RemoteDevice) -> None:
        iface = await self._device_iface(device)
        try:
            await iface.call_disconnect()
        except DBusError as exc:
            raise _translate(exc, "disconnect") from exc

    def _device_path(self, device: RemoteDevice) -> str:
        if device.path:
            return device.path
        return f"{self._adapter_path}/dev_{device.address.replace(':', '_')}"

    async def _device_props(self, device: RemoteDevice):
        path = self._device_path(device)
        xml = await self._bus.introspect("org.bluez", path)
        return self._bus.get_proxy_object("org.bluez", path, xml).get_interface("org.freedesktop.DBus.Properties")

    async def _device_iface(self, device: RemoteDevice):
        path = self._device_path(device)
        try:
            xml = await self._bus.introspect("org.bluez", path)
        except DBusError as exc:
            raise _translate(exc, "introspect device") from exc
        return self._bus.get_proxy_object("org.bluez", path, xml).get_interface("org.bluez.Device1")

    def _note_link_up(self, path: str, props: Optional[dict] = None) -> None:
        if path in self._devices or path in self._links:
            return
        props = props or {}
        name = _get_str(props.get("Alias")) or _get_str(props.get("Name"))
        address = _get_str(props.get("Address")) or address_from_path(path)
        self._links[path] = RemoteDevice(address=address, name=name or None, path=path)
        logger.debug("[bluez] link up %s", path)

    def _note_link_down(self, path: str) -> None:
        self._links.pop(path, None)
        device = self._devices.pop(path, None)
        if device is None:
            return
        self._mtu.pop(device.address, None)
        self._post(ConnectionEvent(device, STATUS_SUCCESS, int(ConnectionState.DISCONNECTED)))

    def _host_for_path(self, path: str) -> RemoteDevice:
        """The device behind a GATT request, reported as connected on first use."""
        device = self._devices.get(path)
        if device is None:
            device = self._links.pop(path, None) or RemoteDevice(address=address_from_path(path), path=path)
            self._devices[path] = device
            logger.info("[bluez] %s is using the HID service", device)
            self._post(ConnectionEvent(device, STATUS_SUCCESS, int(ConnectionState.CONNECTED)))
        return device

    async def _reconcile(self) -> None:
        managed = await get_managed_objects(self._bus)
        connected = connected_devices_from(managed, self._adapter_path)
        for path in list(self._links) + list(self._devices):
            if path not in connected:
                self._note_link_down(path)
        for path, props in connected.items():
            self._note_link_up(path, props)

    async def _reconcile_loop(self) -> None:
        while True:
            await asyncio.sleep(self._reconcile_interval_s)
            try:
                await self._reconcile()
            except Exception as exc:
                logger.debug("[bluez] reconcile failed: %s", exc)

    def _device_from_options(self, options: dict) -> RemoteDevice:
        path = _opt(options, "device", "")
        device = self._host_for_path(path) if path else RemoteDevice(address="")
        mtu = _opt(options, "mtu")
        if mtu and self._mtu.get(device.address) != mtu:
            self._mtu[device.address] = mtu
            self._post(MtuChanged(device=device, mtu=int(mtu)))
        return device

    # ---------- D-Bus plumbing ----------
    async def _ensure_bus(self):
        if self._bus is None:
            try:
                bus = await get_message_bus()
            except Exception as exc:
                raise StackOperationError(f"system D-Bus unavailable: {exc}") from exc
            try:
                await add_match_rules(bus)
            except DBusError as exc:
                raise _translate(exc, "subscribe to device signals") from exc
            bus.add_message_handler(self._on_bus_message)
            self._bus = bus
        return self._bus

    async def _ensure_adapter(self, xml=None) -> Adapter:
        if self._adapter is None:
            bus = await self._ensure_bus()
            try:
                if xml is None:
                    xml = await bus.introspect("org.bluez", self._adapter_path)
            except DBusError as exc:
                raise _translate(exc, f"adapter {self.adapter_name}") from exc
            self._adapter_proxy = bus.get_proxy_object("org.bluez", self._adapter_path, xml)
            self._adapter = Adapter(self._adapter_proxy)
        return self._adapter

    def _on_bus_message(self, msg) -> None:
        if msg.message_type is not MessageType.SIGNAL:
            return
        dev_prefix = f"{self._adapter_path}/dev_"
        if msg.member == "InterfacesRemoved":
            path, ifaces = msg.body
            if path.startswith(dev_prefix) and "org.bluez.Device1" in ifaces:
                self._note_link_down(path)
            return
        if msg.member != "PropertiesChanged" or not (msg.path or "").startswith(dev_prefix):
            return
        iface, changed, _ = msg.body
        if iface != "org.bluez.Device1" or "Connected" not in changed:
            return
        if _get_bool(changed["Connected"]):
            self._note_link_up(msg.path, changed)
        else:
            self._note_link_down(msg.path)

    def _post(self, event: object) -> None:
        if self._listener is None:
            logger.debug("[bluez] no listener for %s", type(event).__name__)
            return
        self._listener(event)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
