#!/usr/bin/env python3
#
# Contains utility functions that don't fit anywhere else.

import ipaddress
import typing


def merge_complex_dictionaries(*args) -> dict:
    """
    Given a list of dictionaries, merge the dictionaries from left to right:

    - dictionaries are merged recursively
    - lists with the same key are appended
    - conflicting keys are overwritten by the value on the right side

    Returns the resulting merged dictionary
    """
    result: dict = {}

    def merge(left: dict, right: dict) -> None:
        for key in right:
            if key in left:
                if isinstance(left[key], dict) and isinstance(right[key], dict):
                    merge(left[key], right[key])
                elif isinstance(left[key], list) and isinstance(right[key], list):
                    left[key].extend(right[key])
                else:
                    left[key] = right[key]
            else:
                left[key] = right[key]

    for d in args:
        if not isinstance(d, dict):
            raise TypeError(f"cannot merge {type(d).__name__}, expected dict")
        merge(result, d)

    return result


def parse_ip_address(
    address: str,
) -> typing.Optional[typing.Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    "Returns the parsed IP address, or None if the string is not an IP address"
    try:
        return ipaddress.ip_address(address.strip("[]"))
    except ValueError:
        return None


def is_ipv6(*addresses: str) -> bool:
    """
    Returns True if any of the given addresses is an IPv6 address that has no
    IPv4 representation. Hostnames are ignored.
    """
    for address in addresses:
        ip = parse_ip_address(address)
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is None:
            return True
    return False


def format_address(address: str) -> str:
    "Wraps IPv6 addresses in brackets so that a port can be appended"
    ip = parse_ip_address(address)
    if isinstance(ip, ipaddress.IPv6Address) and not address.startswith("["):
        return f"[{address}]"
    return address


def join_host_port(host: str, port: typing.Union[str, int]) -> str:
    return f"{format_address(host)}:{port}"
