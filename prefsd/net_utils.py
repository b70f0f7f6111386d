"""Subnet and address list helpers."""

from __future__ import annotations

import ipaddress
import logging
import re
from typing import Iterable

log = logging.getLogger("prefsd.net_utils")

# Newlines and commas both separate whitelist entries.
SUBNET_DELIMITERS = re.compile(r"\n|,")


def split_subnet_text(text: str) -> list[str]:
    return [token.strip() for token in SUBNET_DELIMITERS.split(text) if token.strip()]


def canonical_subnet(token: str) -> str | None:
    try:
        network = ipaddress.ip_network(token.strip(), strict=False)
    except ValueError:
        return None
    return network.with_prefixlen


def parse_subnet_whitelist(entries: str | Iterable[str]) -> list[str]:
    tokens = split_subnet_text(entries) if isinstance(entries, str) else [
        token.strip() for token in entries if token and token.strip()
    ]
    subnets: list[str] = []
    for token in tokens:
        subnet = canonical_subnet(token)
        if subnet is None:
            log.warning("Ignoring invalid subnet in auth whitelist: %s", token)
            continue
        if subnet not in subnets:
            subnets.append(subnet)
    return subnets


def join_lines(entries: Iterable[str]) -> str:
    return "\n".join(entries)
