"""Block explorer links"""

import re
from typing import Optional


_TX_URL = re.compile(r"^https://(?P<host>[^/]+)/tx/(?P<hash>0x[0-9a-fA-F]{64})$")


def tx_url(explorer_host: str, tx_hash: str) -> str:
    return f"https://{explorer_host}/tx/{tx_hash}"


def address_url(explorer_host: str, address: str) -> str:
    return f"https://{explorer_host}/address/{address}"


def parse_tx_url(url: str) -> Optional[str]:
    """Transaction hash from a link produced by tx_url(), None otherwise"""
    match = _TX_URL.match(url or "")
    return match.group('hash') if match else None
