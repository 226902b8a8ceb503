# src/dahdi_lifecycle/hardware/discovery.py
"""
Hardware discovery for DAHDI telephony cards.
Runs the hardware inventory tool, parses each record into a HardwareDevice and
resolves the ordered list of drivers able to serve it from its PCI/USB signature.
No hardware is a valid answer (VoIP-only hosts); a missing or crashing tool is
reported separately so the caller can fall back to software-only operation.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from ..utils.logger import DAHDILogger, log_function_call
from ..core.interfaces import (
    CommandExecutor,
    CommandResult,
    DiscoveryToolError,
    HostContext,
    ToolMissingError,
)

logger = DAHDILogger().get_logger(__name__)

# vendor:product (or bare vendor) -> drivers to try, most specific first
DRIVER_SIGNATURES: Dict[str, List[str]] = {
    "d161:0205": ["wct4xxp"],
    "d161:0210": ["wct4xxp"],
    "d161:0220": ["wct4xxp"],
    "d161:0405": ["wct4xxp"],
    "d161:0410": ["wct4xxp"],
    "d161:0420": ["wct4xxp"],
    "d161:8000": ["wcte12xp"],
    "d161:8001": ["wcte12xp"],
    "d161:8005": ["wctdm24xxp"],
    "d161:8006": ["wctdm24xxp"],
    "d161:800b": ["wcte13xp"],
    # Tiger Jet based boards share one id between FXS and FXO designs
    "e159:0001": ["wctdm", "wcfxo"],
    "e4e4:1150": ["xpp_usb"],
    "e4e4:1151": ["xpp_usb"],
    "e4e4:1152": ["xpp_usb"],
    "e4e4:1160": ["xpp_usb"],
    "e4e4:1162": ["xpp_usb"],
    "1923": ["wanpipe"],
}

WAN_DRIVERS = frozenset({"wanpipe"})

_RECORD = re.compile(
    r"^(?P<bus>\S+)\s+"
    r"(?P<driver>\S+?)(?P<state>[+-]?)\s+"
    r"(?P<ident>[0-9A-Fa-f]{4}:[0-9A-Fa-f]{4})"
    r"(?:\s+(?P<description>.*))?$"
)


@dataclass
class HardwareDevice:
    """A physical card found by one discovery pass"""
    bus_address: str
    driver_candidates: List[str]
    vendor_product: str = ""
    description: str = ""
    driver_loaded: bool = False
    span: Optional[int] = None

    @property
    def primary_driver(self) -> Optional[str]:
        return self.driver_candidates[0] if self.driver_candidates else None

    @property
    def is_wan(self) -> bool:
        return any(driver in WAN_DRIVERS for driver in self.driver_candidates)


def resolve_candidates(
    vendor_product: str,
    reported_driver: Optional[str] = None,
    extra_signatures: Optional[Mapping[str, List[str]]] = None,
) -> List[str]:
    """
    Ordered drivers for a hardware signature.
    Site signatures win over built-in ones; the driver reported by the inventory
    tool is appended last when not already listed.
    """
    ident = vendor_product.lower()
    vendor = ident.split(":", 1)[0]
    candidates: List[str] = []
    for table in (extra_signatures or {}, DRIVER_SIGNATURES):
        for key in (ident, vendor):
            for driver in table.get(key, []):
                if driver not in candidates:
                    candidates.append(driver)
        if candidates:
            break
    if reported_driver and reported_driver not in candidates:
        candidates.append(reported_driver)
    return candidates


def parse_hardware_listing(
    output: str,
    extra_signatures: Optional[Mapping[str, List[str]]] = None,
) -> List[HardwareDevice]:
    """
    Parse dahdi_hardware output, one device per non-empty line.

    Args:
        output: Raw tool stdout
        extra_signatures: Site-specific signature table

    Returns:
        Devices in listing order
    """
    devices: List[HardwareDevice] = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        match = _RECORD.match(line)
        if match is None:
            logger.warning("hardware_record_unparsed", record=line)
            continue
        reported = match.group("driver")
        devices.append(HardwareDevice(
            bus_address=match.group("bus"),
            driver_candidates=resolve_candidates(match.group("ident"), reported, extra_signatures),
            vendor_product=match.group("ident").lower(),
            description=(match.group("description") or "").strip(),
            driver_loaded=match.group("state") == "+",
        ))
    return devices


class HardwareDiscovery:
    """
    Enumerates attached telephony hardware through the inventory tool.
    """
    def __init__(
        self,
        runner: CommandExecutor,
        context: HostContext,
        extra_signatures: Optional[Mapping[str, List[str]]] = None,
        timeout: Optional[float] = 60.0,
    ):
        self.runner = runner
        self.context = context
        self.extra_signatures = dict(extra_signatures or {})
        self.timeout = timeout
        self.last_command: Optional[CommandResult] = None
        self.log = logger.bind(component="HardwareDiscovery", tool=context.tools.hardware)

    @log_function_call(level="DEBUG")
    async def discover(self) -> List[HardwareDevice]:
        """
        List attached devices with their candidate drivers.

        Returns:
            Devices in discovery order; empty when no telephony hardware is present

        Raises:
            DiscoveryToolError: If the inventory tool is missing, hangs or fails
        """
        tool = self.context.tools.hardware
        try:
            result = await self.runner.run(tool, timeout=self.timeout)
        except ToolMissingError as e:
            raise DiscoveryToolError(f"Hardware inventory tool not available: {tool}") from e

        self.last_command = result
        if result.timed_out:
            raise DiscoveryToolError(f"{tool} did not finish within {self.timeout}s", result)
        if not result.ok:
            raise DiscoveryToolError(f"{tool} exited with status {result.exit_code}", result)

        devices = parse_hardware_listing(result.stdout, self.extra_signatures)
        self.log.info("hardware_discovered",
                      device_count=len(devices),
                      devices=[d.bus_address for d in devices])
        for device in devices:
            if not device.driver_candidates:
                self.log.warning("no_driver_candidates",
                                 bus_address=device.bus_address,
                                 vendor_product=device.vendor_product)
        return devices
