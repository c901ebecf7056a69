"""Helpers for working with session domains and URLs."""

from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import urlparse


def extract_domain(url: str) -> str:
    """Extract the hostname from a URL.

    Returns the input unchanged when it has no parseable hostname, so a
    bare domain passes through.
    """
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return url
    return hostname or url


def is_domain_blacklisted(domain: str, blacklist: Iterable[str]) -> bool:
    """Check a domain against exact and ``*.suffix`` wildcard entries.

    ``*.example.com`` matches any subdomain of example.com but not
    example.com itself.
    """
    domain = domain.lower()
    for entry in blacklist:
        entry = entry.strip().lower()
        if not entry:
            continue
        if entry == domain:
            return True
        if entry.startswith("*.") and domain.endswith(entry[1:]):
            return True
    return False
