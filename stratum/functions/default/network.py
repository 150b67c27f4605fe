"""
IP network functions
"""

import ipaddress

from stratum.functions.api import AritySpec, function
from stratum.functions.default._coerce import require_number, require_str


@function("cidrsubnet", AritySpec.fixed(3))
def cidrsubnet(prefix: str, newbits: int, netnum: int) -> str:
    """Subnet number netnum of prefix, extended by newbits bits"""
    network = ipaddress.ip_network(require_str("cidrsubnet", prefix), strict=False)
    new_prefix = network.prefixlen + int(require_number("cidrsubnet", newbits))
    if new_prefix > network.max_prefixlen:
        raise ValueError(f"cidrsubnet: not enough bits in {prefix} for {newbits} more")
    count = 2 ** (new_prefix - network.prefixlen)
    index = int(require_number("cidrsubnet", netnum))
    if not 0 <= index < count:
        raise ValueError(f"cidrsubnet: netnum {index} out of range for {count} subnets")
    size = 2 ** (network.max_prefixlen - new_prefix)
    first = int(network.network_address) + index * size
    return str(ipaddress.ip_network((first, new_prefix)))


@function("cidrhost", AritySpec.fixed(2))
def cidrhost(prefix: str, hostnum: int) -> str:
    """Address of host number hostnum within prefix"""
    network = ipaddress.ip_network(require_str("cidrhost", prefix), strict=False)
    index = int(require_number("cidrhost", hostnum))
    if index < 0:
        index += network.num_addresses
    if not 0 <= index < network.num_addresses:
        raise ValueError(f"cidrhost: host {hostnum} out of range for {prefix}")
    return str(network.network_address + index)


@function("cidrnetmask", AritySpec.fixed(1))
def cidrnetmask(prefix: str) -> str:
    """Dotted netmask of an IPv4 prefix"""
    network = ipaddress.ip_network(require_str("cidrnetmask", prefix), strict=False)
    if network.version != 4:
        raise ValueError("cidrnetmask only supports IPv4 prefixes")
    return str(network.netmask)
