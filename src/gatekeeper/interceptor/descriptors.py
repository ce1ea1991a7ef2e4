"""
USB device descriptors and identity keys.

A DeviceDescriptor is an immutable snapshot of a device taken when an event
is observed. Its DeviceKey tells identical VID:PID devices apart by serial
number and physical port.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from gatekeeper.errors import InvalidPattern


CLASS_NAMES = {
    0x00: "Defined at Interface",
    0x01: "Audio",
    0x02: "Communications",
    0x03: "HID",
    0x05: "Physical",
    0x06: "Image",
    0x07: "Printer",
    0x08: "Mass Storage",
    0x09: "Hub",
    0x0A: "CDC-Data",
    0x0B: "Smart Card",
    0x0E: "Video",
    0xE0: "Wireless",
    0xEF: "Miscellaneous",
    0xFE: "Application Specific",
    0xFF: "Vendor Specific",
}

# sysfs names of real devices: "<bus>-<port>[.<port>...]"
_PORT_RE = re.compile(r"^\d+-\d+(\.\d+)*$")


def class_name(class_code: int) -> str:
    """Get human-readable class name."""
    return CLASS_NAMES.get(class_code, f"Unknown (0x{class_code:02X})")


def is_port_path(name: str) -> bool:
    """Check whether a sysfs name is a device port path (not a hub or interface)."""
    return bool(_PORT_RE.match(name))


@dataclass(frozen=True)
class DeviceKey:
    """Identity of a physical device: (vid, pid, serial, port)."""

    vid: str
    pid: str
    serial: str | None
    port: str

    def __str__(self) -> str:
        return f"{self.vid}:{self.pid}:{self.serial or ''}@{self.port}"

    @classmethod
    def parse(cls, text: str) -> DeviceKey:
        """
        Parse the textual form ``vid:pid:serial@port``.

        Raises:
            InvalidPattern: If the text is not a device key.
        """
        head, sep, port = text.strip().rpartition("@")
        parts = head.split(":", 2)
        if not sep or len(parts) != 3 or not is_port_path(port):
            raise InvalidPattern(
                f"Malformed device key: {text!r} (expected vid:pid:serial@port)",
                device=text,
            )
        vid, pid, serial = parts
        try:
            return cls(
                vid=normalize_id(vid),
                pid=normalize_id(pid),
                serial=serial or None,
                port=port,
            )
        except ValueError as e:
            raise InvalidPattern(f"Malformed device key: {text!r}: {e}", device=text) from e


def normalize_id(value: str | int) -> str:
    """
    Normalize a vendor or product ID to four lowercase hex digits.

    Raises:
        ValueError: If the value is not a 16-bit hex number.
    """
    if isinstance(value, int):
        number = value
    else:
        text = str(value).strip().lower()
        if text.startswith("0x"):
            text = text[2:]
        if not text or len(text) > 4 or not all(c in "0123456789abcdef" for c in text):
            raise ValueError(f"not a 16-bit hex id: {value!r}")
        number = int(text, 16)
    if not 0 <= number <= 0xFFFF:
        raise ValueError(f"not a 16-bit hex id: {value!r}")
    return f"{number:04x}"


@dataclass(frozen=True)
class DeviceDescriptor:
    """USB device snapshot taken at the moment of an event."""

    vid: str  # Vendor ID (hex string)
    pid: str  # Product ID (hex string)
    port: str  # sysfs port path, e.g. "1-1.2"
    serial: str | None = None
    interface_classes: tuple[int, ...] = ()
    name: str | None = None
    manufacturer: str | None = None
    device_class: int = 0
    sys_path: str | None = field(default=None, compare=False)

    @property
    def key(self) -> DeviceKey:
        """Get the identity key of this device."""
        return DeviceKey(self.vid, self.pid, self.serial, self.port)

    @property
    def vid_pid(self) -> str:
        return f"{self.vid}:{self.pid}"

    @property
    def class_names(self) -> list[str]:
        """Get human-readable names of the declared interface classes."""
        return [class_name(code) for code in self.interface_classes]

    def has_class(self, class_code: int) -> bool:
        """Check if device or any interface has the given class."""
        return self.device_class == class_code or class_code in self.interface_classes

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "key": str(self.key),
            "vid": self.vid,
            "pid": self.pid,
            "serial": self.serial,
            "port": self.port,
            "name": self.name,
            "manufacturer": self.manufacturer,
            "device_class": self.device_class,
            "interface_classes": list(self.interface_classes),
            "class_names": self.class_names,
        }


def _attribute(device: Any, name: str) -> str | None:
    """Read a sysfs attribute of a pyudev device, None if unavailable."""
    try:
        value = device.attributes.asstring(name)
    except (KeyError, OSError, UnicodeDecodeError):
        return None
    value = value.strip()
    return value or None


def _parse_interfaces(value: str | None) -> tuple[int, ...]:
    """Parse udev ID_USB_INTERFACES (":030102:080650:") into class codes."""
    if not value:
        return ()
    classes: list[int] = []
    for chunk in value.strip(":").split(":"):
        if len(chunk) < 2:
            continue
        try:
            code = int(chunk[:2], 16)
        except ValueError:
            continue
        if code not in classes:
            classes.append(code)
    return tuple(classes)


def descriptor_from_udev(device: Any) -> DeviceDescriptor | None:
    """
    Build a DeviceDescriptor from a pyudev device.

    Attributes are read from sysfs when the device is present and fall back
    to udev properties, which are still carried by remove events.

    Args:
        device: pyudev.Device of subsystem usb, devtype usb_device

    Returns:
        DeviceDescriptor, or None for root hubs and unparseable devices.
    """
    port = device.sys_name
    if not is_port_path(port):
        return None

    props = device.properties
    vid = _attribute(device, "idVendor") or props.get("ID_VENDOR_ID")
    pid = _attribute(device, "idProduct") or props.get("ID_MODEL_ID")
    if (vid is None or pid is None) and props.get("PRODUCT"):
        # Kernel uevent PRODUCT is "vid/pid/bcdDevice" without padding
        product_parts = props.get("PRODUCT").split("/")
        if len(product_parts) >= 2:
            vid, pid = vid or product_parts[0], pid or product_parts[1]
    if vid is None or pid is None:
        return None

    try:
        vid, pid = normalize_id(vid), normalize_id(pid)
    except ValueError:
        return None

    device_class_text = _attribute(device, "bDeviceClass")
    try:
        device_class = int(device_class_text, 16) if device_class_text else 0
    except ValueError:
        device_class = 0

    interface_classes = _parse_interfaces(props.get("ID_USB_INTERFACES"))
    if not interface_classes and device_class:
        interface_classes = (device_class,)

    return DeviceDescriptor(
        vid=vid,
        pid=pid,
        port=port,
        serial=_attribute(device, "serial") or props.get("ID_SERIAL_SHORT"),
        interface_classes=interface_classes,
        name=(
            _attribute(device, "product")
            or props.get("ID_MODEL_FROM_DATABASE")
            or props.get("ID_MODEL")
        ),
        manufacturer=(
            _attribute(device, "manufacturer")
            or props.get("ID_VENDOR_FROM_DATABASE")
            or props.get("ID_VENDOR")
        ),
        device_class=device_class,
        sys_path=device.sys_path,
    )


def create_test_descriptor(
    vid: str = "1234",
    pid: str = "0001",
    port: str = "1-1",
    serial: str | None = None,
    interface_classes: tuple[int, ...] = (0x08,),
    name: str | None = "Test Device",
    manufacturer: str | None = None,
) -> DeviceDescriptor:
    """Create a descriptor for tests and policy dry runs."""
    return DeviceDescriptor(
        vid=normalize_id(vid),
        pid=normalize_id(pid),
        port=port,
        serial=serial,
        interface_classes=tuple(interface_classes),
        name=name,
        manufacturer=manufacturer,
    )
