"""Probe transports — the only code that touches the network.

A transport is any callable ``(kind, target, timeout) -> latency_ms`` that
raises ``ProbeFailure`` when the target was not reached. ``default_transport``
dispatches to the HTTP and ICMP implementations below; tests inject fakes
through the executor instead.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import time
from collections.abc import Callable

import httpx
from icmplib import ping as icmp_ping
from icmplib import (
    DestinationUnreachable,
    ICMPLibError,
    NameLookupError,
    SocketPermissionError,
)

from netpulse.errors import ProbeFailure
from netpulse.records import CheckKind, FailureCause

logger = logging.getLogger(__name__)

Transport = Callable[[CheckKind, str, float], int]

# Raw ICMP sockets need root; otherwise fall back to datagram sockets
_PRIVILEGED = hasattr(os, "geteuid") and os.geteuid() == 0


def http_url(target: str) -> str:
    """Plain-HTTP URL for a literal IP address (IPv6 gets brackets)."""
    if ipaddress.ip_address(target).version == 6:
        return f"http://[{target}]/"
    return f"http://{target}/"


def http_probe(target: str, timeout: float) -> int:
    """HEAD request against the target. Any HTTP response counts as reachable."""
    url = http_url(target)
    t0 = time.perf_counter()
    try:
        with httpx.Client(timeout=timeout, follow_redirects=False) as client:
            resp = client.head(url)
    except httpx.TimeoutException as e:
        raise ProbeFailure(FailureCause.TIMEOUT, f"HTTP timed out after {timeout}s: {e}") from e
    except httpx.NetworkError as e:
        raise ProbeFailure(FailureCause.UNREACHABLE, f"Connection error: {e}") from e
    except httpx.HTTPError as e:
        raise ProbeFailure(FailureCause.ERROR, f"HTTP error: {type(e).__name__}: {e}") from e
    latency = (time.perf_counter() - t0) * 1000
    logger.debug("HEAD %s -> %d in %.1f ms", url, resp.status_code, latency)
    return round(latency)


def icmp_probe(target: str, timeout: float) -> int:
    """Single echo request. No reply within ``timeout`` is a timeout."""
    try:
        try:
            host = icmp_ping(target, count=1, timeout=timeout, privileged=_PRIVILEGED)
        except SocketPermissionError:
            # Raw sockets unavailable; retry unprivileged
            host = icmp_ping(target, count=1, timeout=timeout, privileged=False)
    except (DestinationUnreachable, NameLookupError) as e:
        raise ProbeFailure(FailureCause.UNREACHABLE, f"ICMP unreachable: {e}") from e
    except ICMPLibError as e:
        raise ProbeFailure(FailureCause.ERROR, f"ICMP error: {type(e).__name__}: {e}") from e

    if not host.is_alive:
        raise ProbeFailure(FailureCause.TIMEOUT, f"No echo reply within {timeout}s")
    logger.debug("ping %s -> %.1f ms", target, host.avg_rtt)
    return round(host.avg_rtt)


def default_transport(kind: CheckKind, target: str, timeout: float) -> int:
    if kind is CheckKind.HTTP:
        return http_probe(target, timeout)
    return icmp_probe(target, timeout)
