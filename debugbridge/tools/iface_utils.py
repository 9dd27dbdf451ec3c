from __future__ import annotations

import ipaddress
import logging
import socket
from dataclasses import dataclass

import psutil

logger = logging.getLogger(__name__)

MAX_INTERFACES = 32


@dataclass
class InterfaceAddress:
    name: str
    address: str
    is_up: bool
    is_loopback: bool


def _is_loopback(name: str, address: str) -> bool:
    try:
        if ipaddress.IPv4Address(address).is_loopback:
            return True
    except ValueError:
        return True
    return name == "lo" or name.lower().startswith("loopback")


def list_interfaces() -> list[InterfaceAddress]:
    """All IPv4 unicast addresses with their interface state, in OS order."""
    try:
        addrs = psutil.net_if_addrs()
        stats = psutil.net_if_stats()
    except (psutil.Error, OSError) as exc:
        logger.warning("Interface enumeration failed: %s", exc)
        return []

    result: list[InterfaceAddress] = []
    for name, entries in addrs.items():
        st = stats.get(name)
        for entry in entries:
            if entry.family != socket.AF_INET or not entry.address:
                continue
            result.append(
                InterfaceAddress(
                    name=name,
                    address=entry.address,
                    is_up=bool(st and st.isup),
                    is_loopback=_is_loopback(name, entry.address),
                )
            )
    return result


def list_non_loopback_ipv4(limit: int = MAX_INTERFACES) -> list[str]:
    """Unicast IPv4 addresses of interfaces that are up and not loopback.

    An empty list is a valid answer (no usable interfaces).
    """
    addresses: list[str] = []
    for iface in list_interfaces():
        if not iface.is_up or iface.is_loopback:
            continue
        if iface.address in addresses:
            continue
        addresses.append(iface.address)
        if len(addresses) >= limit:
            break
    logger.debug("Non-loopback IPv4 addresses: %s", addresses)
    return addresses
