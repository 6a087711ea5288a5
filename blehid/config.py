"""Configuration helpers for environment-driven settings."""

from __future__ import annotations

import os
from dataclasses import dataclass

from .bt_le import keyboard, mouse
from .validation import parse_flag, parse_ms

PROFILES = {
    "keyboard": keyboard.REPORT_INTERVAL_MS,
    "mouse": mouse.REPORT_INTERVAL_MS,
}


@dataclass(frozen=True)
class Config:
    # HID profile
    profile: str
    report_interval_ms: int
    require_cccd: bool

    # Identity
    device_name: str
    manufacturer: str
    serial_number: str

    # Adapter
    adapter: str

    # Health endpoint
    health_host: str
    health_port: int

    @staticmethod
    def load() -> "Config":
        """Build a Config from environment."""
        profile = os.getenv("BLEHID_PROFILE", "keyboard").strip().lower()
        if profile not in PROFILES:
            raise RuntimeError(f"Unknown BLEHID_PROFILE {profile!r} (expected one of {sorted(PROFILES)})")

        report_interval_ms = parse_ms(
            os.getenv("BLEHID_REPORT_INTERVAL_MS"),
            default=PROFILES[profile],
            min=1,
            max=1000,
            context="BLEHID_REPORT_INTERVAL_MS",
        )
        require_cccd = parse_flag(os.getenv("BLEHID_REQUIRE_CCCD"), default=True, context="BLEHID_REQUIRE_CCCD")

        device_name = os.getenv("BLEHID_DEVICE_NAME", "BLE HID")
        manufacturer = os.getenv("BLEHID_MANUFACTURER", "blehid")
        serial_number = os.getenv("BLEHID_SERIAL_NUMBER", "00000000")
        adapter = os.getenv("BLEHID_ADAPTER", "hci0")

        health_host = os.getenv("HEALTH_HOST", "0.0.0.0")
        try:
            health_port = int(os.getenv("HEALTH_PORT", "9124"))
        except ValueError:
            health_port = 9124

        return Config(
            profile=profile,
            report_interval_ms=report_interval_ms,
            require_cccd=require_cccd,
            device_name=device_name,
            manufacturer=manufacturer,
            serial_number=serial_number,
            adapter=adapter,
            health_host=health_host,
            health_port=health_port,
        )
