"""Client address resolution and provider IP allowlists."""

import ipaddress
import logging
from typing import Iterable, Optional

from ..schemas import Provider
from .request import ValidationResult, WebhookRequest

logger = logging.getLogger(__name__)

# Published webhook source ranges. Providers not listed are not IP-restricted.
PROVIDER_IP_RANGES: dict[Provider, list[str]] = {
    Provider.GOOGLE: [
        "64.233.160.0/19",
        "66.102.0.0/20",
        "66.249.80.0/20",
        "72.14.192.0/18",
        "74.125.0.0/16",
        "108.177.8.0/21",
        "173.194.0.0/16",
        "207.126.144.0/20",
        "209.85.128.0/17",
        "216.58.192.0/19",
        "216.239.32.0/19",
    ],
    Provider.MICROSOFT: [
        "13.107.42.14/32",
        "13.107.6.171/32",
        "2620:1ec:4::14/128",
        "2620:1ec:c11::171/128",
    ],
    Provider.ZOOM: [
        "3.7.35.0/25",
        "3.21.137.128/25",
        "3.22.11.0/24",
        "3.23.93.0/24",
        "3.25.41.128/25",
        "3.25.42.0/25",
        "52.61.100.128/25",
    ],
}


def client_ip(request: WebhookRequest) -> Optional[str]:
    """First ``X-Forwarded-For`` hop, else ``X-Real-IP``, else the socket peer."""
    forwarded = request.header("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.header("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.remote_addr


def ip_in_ranges(ip: Optional[str], ranges: Iterable[str]) -> bool:
    """CIDR membership for IPv4 and IPv6. Unparseable addresses never match."""
    if not ip:
        return False
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False

    for cidr in ranges:
        network = ipaddress.ip_network(cidr, strict=False)
        if address.version == network.version and address in network:
            return True
    return False


def check_ip_allowlist(
    request: WebhookRequest,
    ip: Optional[str],
    ranges: Optional[dict[Provider, list[str]]] = None,
) -> ValidationResult:
    allowed_ranges = (ranges if ranges is not None else PROVIDER_IP_RANGES).get(request.provider)
    if not allowed_ranges:
        return ValidationResult.ok()

    if ip_in_ranges(ip, allowed_ranges):
        return ValidationResult.ok()
    return ValidationResult.reject("IP address not in allowlist", client_ip=ip)
