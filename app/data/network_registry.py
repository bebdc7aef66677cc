from __future__ import annotations

import enum
import re


class Network(str, enum.Enum):
    ETHEREUM = "ethereum"
    POLYGON  = "polygon"


# Network slug used by the Alchemy Prices API and the per-chain RPC hosts
ALCHEMY_NETWORK_SLUG: dict[Network, str] = {
    Network.ETHEREUM: "eth-mainnet",
    Network.POLYGON:  "polygon-mainnet",
}

TOKEN_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def parse_network(value: str) -> Network:
    """Return the Network for *value* or raise ValueError listing the supported ones."""
    try:
        return Network(value.strip().lower())
    except ValueError:
        supported = ", ".join(n.value for n in Network)
        raise ValueError(
            f"Unsupported network: {value}. Supported networks: {supported}"
        ) from None


def canonical_token(address: str) -> str:
    """Validate an ERC-20 contract address and return it lowercased.

    Examples
    --------
    >>> canonical_token("0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48")
    '0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48'
    """
    raw = address.strip()
    if not TOKEN_ADDRESS_RE.match(raw):
        raise ValueError(
            "Token address must be a valid Ethereum address (0x followed by 40 hex characters)"
        )
    return raw.lower()


def rpc_url(network: Network, api_key: str) -> str:
    return f"https://{ALCHEMY_NETWORK_SLUG[network]}.g.alchemy.com/v2/{api_key}"
