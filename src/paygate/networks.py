"""
Network and token registry.

Networks are keyed by short slugs ("base-sepolia") and also resolve from
their CAIP-2 id ("eip155:84532"). The chain id feeds the EIP-712 signing
domain, so a payload signed for one chain never verifies on another.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from .errors import UnsupportedNetworkError
from .money import NATIVE_TOKEN, parse_amount

_CAIP_NETWORK_RE = re.compile(r"^eip155:(\d+)$")


@dataclass(frozen=True)
class TokenConfig:
    symbol: str
    name: str
    decimals: int
    address: Optional[str] = None

    @property
    def is_native(self) -> bool:
        return self.address is None


@dataclass(frozen=True)
class NetworkConfig:
    id: str
    name: str
    chain_id: int
    native: TokenConfig
    tokens: tuple[TokenConfig, ...] = ()
    testnet: bool = False

    @property
    def caip2(self) -> str:
        return f"eip155:{self.chain_id}"

    def token(self, token: str) -> Optional[TokenConfig]:
        """Look up ``native``, a symbol, or a contract address (case-insensitive)."""
        key = token.strip().lower()
        if key in (NATIVE_TOKEN, self.native.symbol.lower()):
            return self.native
        for config in self.tokens:
            if key == config.symbol.lower() or (config.address and key == config.address.lower()):
                return config
        return None


_ETH = TokenConfig("ETH", "Ether", 18)


def _usdc(address: str) -> TokenConfig:
    return TokenConfig("USDC", "USD Coin", 6, address)


NETWORKS: dict[str, NetworkConfig] = {
    n.id: n
    for n in (
        NetworkConfig(
            "ethereum",
            "Ethereum Mainnet",
            1,
            _ETH,
            (
                _usdc("0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"),
                TokenConfig("USDT", "Tether USD", 6, "0xdAC17F958D2ee523a2206206994597C13D831ec7"),
            ),
        ),
        NetworkConfig("ethereum-sepolia", "Ethereum Sepolia", 11155111, _ETH, testnet=True),
        NetworkConfig("base", "Base", 8453, _ETH, (_usdc("0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"),)),
        NetworkConfig(
            "base-sepolia",
            "Base Sepolia",
            84532,
            _ETH,
            (_usdc("0x036CbD53842c5426634e7929541eC2318f3dCF7e"),),
            testnet=True,
        ),
        NetworkConfig(
            "somnia-testnet", "Somnia Testnet", 50312, TokenConfig("STT", "Somnia Test Token", 18), testnet=True
        ),
        NetworkConfig(
            "polygon",
            "Polygon",
            137,
            TokenConfig("MATIC", "Polygon", 18),
            (_usdc("0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"),),
        ),
        NetworkConfig("arbitrum", "Arbitrum One", 42161, _ETH, (_usdc("0xaf88d065e77c8cC2239327C5EDb3A432268e5831"),)),
    )
}

_BY_CHAIN_ID = {n.chain_id: n for n in NETWORKS.values()}


def get_network(network: str) -> NetworkConfig:
    """Resolve a slug or CAIP-2 id. Raises UnsupportedNetworkError."""
    config = NETWORKS.get(network)
    if config is not None:
        return config
    match = _CAIP_NETWORK_RE.match(network or "")
    if match:
        config = _BY_CHAIN_ID.get(int(match.group(1)))
        if config is not None:
            return config
    raise UnsupportedNetworkError(network)


def is_supported_network(network: str) -> bool:
    try:
        get_network(network)
    except UnsupportedNetworkError:
        return False
    return True


def chain_id_for(network: str) -> int:
    return get_network(network).chain_id


def supported_networks(testnet: Optional[bool] = None) -> list[str]:
    return [n.id for n in NETWORKS.values() if testnet is None or n.testnet == testnet]


def token_config(network: str, token: str) -> Optional[TokenConfig]:
    return get_network(network).token(token)


def format_amount(amount: str, token: str, network: str) -> str:
    """
    Render a base-unit amount in whole tokens, e.g. "2500" USDC -> "0.0025 USDC".

    Unknown tokens are shown in base units with the raw token name.
    """
    value = parse_amount(amount)
    config = token_config(network, token) if is_supported_network(network) else None
    if config is None:
        return f"{amount} {token}"
    whole = value / (Decimal(10) ** config.decimals)
    text = format(whole.normalize(), "f")
    return f"{text} {config.symbol}"
