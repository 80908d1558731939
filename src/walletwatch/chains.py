"""Chain registry for all supported EVM networks.

Each chain carries its RPC endpoint, its block explorer API (used for
interaction history), its CoinGecko identifiers (used for price tickers)
and the partner contracts probed by auto-detection.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from walletwatch.models import NATIVE_CONTRACT, ChainId


@dataclass
class ChainConfig:
    """Configuration for a blockchain."""

    # Required fields (no defaults) - must come first
    chain_id: ChainId
    name: str
    symbol: str
    rpc_url: str
    explorer_api_url: str

    # Optional fields (with defaults)
    decimals: int = 18
    coingecko_platform: Optional[str] = None  # /simple/token_price/{platform}
    coingecko_native_id: Optional[str] = None  # /simple/price?ids=...
    partner_contracts: list[tuple[str, str]] = field(default_factory=list)  # (name, address)


# ======================
# Chain Configurations
# ======================

CHAINS: dict[ChainId, ChainConfig] = {
    # Ethereum mainnet
    1: ChainConfig(
        chain_id=1,
        name="Ethereum",
        symbol="ETH",
        rpc_url=os.getenv("ETH_RPC_URL", "https://eth.llamarpc.com"),
        explorer_api_url="https://api.etherscan.io/api",
        coingecko_platform="ethereum",
        coingecko_native_id="ethereum",
        partner_contracts=[
            ("DGX", "0x4f3AfEC4E5a3F2A6a1A411DEF7D7dFe50eE057bF"),
            ("DGD", "0xE0B7927c4aF23765Cb51314A0E0521A9645F0E2A"),
            ("USDT", "0xdAC17F958D2ee523a2206206994597C13D831ec7"),
            ("USDC", "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"),
            ("DAI", "0x6B175474E89094C44Da98b954EedcdeCB5BE3830"),
        ],
    ),

    # BNB Smart Chain
    56: ChainConfig(
        chain_id=56,
        name="BNB Smart Chain",
        symbol="BNB",
        rpc_url=os.getenv("BSC_RPC_URL", "https://bsc-dataseed.binance.org"),
        explorer_api_url="https://api.bscscan.com/api",
        coingecko_platform="binance-smart-chain",
        coingecko_native_id="binancecoin",
    ),

    # Gnosis (xDai)
    100: ChainConfig(
        chain_id=100,
        name="Gnosis",
        symbol="xDAI",
        rpc_url=os.getenv("XDAI_RPC_URL", "https://rpc.gnosischain.com"),
        explorer_api_url="https://api.gnosisscan.io/api",
        coingecko_platform="xdai",
        coingecko_native_id="xdai",
        partner_contracts=[
            ("STAKE", "0xb7D311E2Eb55F2f68a9440da38e7989210b9A05e"),
            ("WETH", "0x6A023CCd1ff6F2045C3309768eAd9E68F978f6e1"),
            ("USDC", "0xDDAfbb505ad214D7b80b1f830fcCc89B60fb7A83"),
        ],
    ),

    # Polygon
    137: ChainConfig(
        chain_id=137,
        name="Polygon",
        symbol="MATIC",
        rpc_url=os.getenv("MATIC_RPC_URL", "https://polygon-rpc.com"),
        explorer_api_url="https://api.polygonscan.com/api",
        coingecko_platform="polygon-pos",
        coingecko_native_id="matic-network",
    ),

    # Avalanche C-Chain
    43114: ChainConfig(
        chain_id=43114,
        name="Avalanche",
        symbol="AVAX",
        rpc_url=os.getenv("AVAX_RPC_URL", "https://api.avax.network/ext/bc/C/rpc"),
        explorer_api_url="https://api.snowtrace.io/api",
        coingecko_platform="avalanche",
        coingecko_native_id="avalanche-2",
    ),
}


# ======================
# Helper Functions
# ======================

def get_chain(chain: ChainId) -> Optional[ChainConfig]:
    """Get chain configuration by chain id."""
    return CHAINS.get(chain)


def get_all_chains() -> list[ChainConfig]:
    """Get all chain configurations."""
    return list(CHAINS.values())


def native_token_info(chain: ChainId) -> dict:
    """Get name, symbol and decimals of a chain's native currency.

    Unknown chains fall back to an 18-decimal "ETH"-like currency.
    """
    config = get_chain(chain)
    if config is None:
        return {"contract": NATIVE_CONTRACT, "name": "Ether", "symbol": "ETH", "decimals": 18}
    return {
        "contract": NATIVE_CONTRACT,
        "name": config.name,
        "symbol": config.symbol,
        "decimals": config.decimals,
    }


def get_partner_contracts(
    chain: ChainId,
    extra: Optional[dict[ChainId, list[str]]] = None,
) -> list[str]:
    """Get the partner contract allow-list for a chain.

    Args:
        chain: Chain id
        extra: Additional addresses per chain (from settings)

    Returns:
        Lower-cased, de-duplicated addresses in declaration order
    """
    config = get_chain(chain)
    addresses = [address for _, address in config.partner_contracts] if config else []
    if extra:
        addresses.extend(extra.get(chain, []))

    seen: dict[str, None] = {}
    for address in addresses:
        seen.setdefault(address.lower(), None)
    return list(seen)
