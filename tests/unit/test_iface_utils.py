"""Unit tests for interface enumeration."""

import socket
from collections import namedtuple

import psutil

from debugbridge.tools import iface_utils
from debugbridge.tools.iface_utils import list_interfaces, list_non_loopback_ipv4

Addr = namedtuple("Addr", "family address netmask broadcast ptp")
Stats = namedtuple("Stats", "isup duplex speed mtu flags")


def _addr(address, family=socket.AF_INET):
    return Addr(family, address, "255.255.255.0", None, None)


def _patch(monkeypatch, addrs, stats):
    monkeypatch.setattr(iface_utils.psutil, "net_if_addrs", lambda: addrs)
    monkeypatch.setattr(iface_utils.psutil, "net_if_stats", lambda: stats)


def test_filters_loopback_down_and_ipv6(monkeypatch):
    _patch(
        monkeypatch,
        {
            "lo": [_addr("127.0.0.1")],
            "eth0": [_addr("10.0.0.5"), _addr("fe80::1", socket.AF_INET6)],
            "wlan0": [_addr("192.168.1.7")],
            "docker0": [_addr("172.17.0.1")],
        },
        {
            "lo": Stats(True, 0, 0, 65536, ""),
            "eth0": Stats(True, 2, 1000, 1500, ""),
            "wlan0": Stats(True, 2, 0, 1500, ""),
            "docker0": Stats(False, 0, 0, 1500, ""),
        },
    )

    assert list_non_loopback_ipv4() == ["10.0.0.5", "192.168.1.7"]


def test_duplicates_and_limit(monkeypatch):
    _patch(
        monkeypatch,
        {"a": [_addr("10.0.0.1"), _addr("10.0.0.1")], "b": [_addr("10.0.0.2")], "c": [_addr("10.0.0.3")]},
        {name: Stats(True, 0, 0, 1500, "") for name in "abc"},
    )

    assert list_non_loopback_ipv4() == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
    assert list_non_loopback_ipv4(limit=2) == ["10.0.0.1", "10.0.0.2"]


def test_interface_without_stats_counts_as_down(monkeypatch):
    _patch(monkeypatch, {"tun0": [_addr("10.8.0.2")]}, {})

    ifaces = list_interfaces()
    assert len(ifaces) == 1
    assert ifaces[0].is_up is False
    assert list_non_loopback_ipv4() == []


def test_enumeration_failure_is_empty(monkeypatch):
    def boom():
        raise psutil.AccessDenied()

    monkeypatch.setattr(iface_utils.psutil, "net_if_addrs", boom)

    assert list_interfaces() == []
    assert list_non_loopback_ipv4() == []
