"""Wallet balance watcher runner.

Tracks one wallet across several chains, auto-detects its tokens and
prints the aggregate balance after every refresh.

Usage:
    python -m walletwatch.runner --wallet 0x... --chains 1,56 --interval 60

Environment variables:
    DATABASE_URL: Database URL (default: sqlite+aiosqlite:///./data/walletwatch.db)
    REFRESH_INTERVAL_SECONDS: Seconds between refreshes (default: 60)
    AUTO_FETCH_DISABLED: Disable token auto-detection (default: false)
"""

import argparse
import asyncio
import logging
from typing import Optional

from walletwatch.balance.aggregator import WalletBalanceAggregator
from walletwatch.chains import CHAINS, get_all_chains
from walletwatch.config import get_settings
from walletwatch.models import WalletBalance
from walletwatch.storage.database import close_db, get_session_factory, init_db

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def format_balance(balance: Optional[WalletBalance]) -> str:
    """Render a wallet balance as plain text lines."""
    if balance is None:
        return "(no balance yet)"

    lines = [f"Wallet {balance.wallet}"]
    for chain_id in sorted({each.token.chain for each in balance.values}):
        chain = CHAINS[chain_id].name if chain_id in CHAINS else str(chain_id)
        for each in sorted(balance.for_chain(chain_id), key=lambda t: t.token.contract):
            token = each.token
            if token.type.is_fungible:
                amount = f"{each.amount.normalize():f} {token.symbol}"
                value = each.value_usd
                if value is not None:
                    amount += f" (${value:.2f})"
            else:
                amount = f"{len(token.balance)} item(s) {token.symbol or token.name}"
            lines.append(f"  [{chain}] {amount}")
    lines.append(f"  Total: ${balance.total_usd:.2f}")
    return "\n".join(lines)


def parse_chains(value: str) -> list[int]:
    try:
        chains = [int(part) for part in value.split(",") if part.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid chain list: {value}")
    unknown = [chain for chain in chains if chain not in CHAINS]
    if unknown:
        raise argparse.ArgumentTypeError(f"Unsupported chains: {unknown}")
    return chains


async def main():
    """Main entry point."""
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Watch a wallet's balance across chains")
    parser.add_argument("--wallet", required=True, help="Wallet address (0x...)")
    parser.add_argument(
        "--chains",
        type=parse_chains,
        default=[1],
        help="Comma separated chain ids (default: 1). Supported: "
        + ", ".join(f"{c.chain_id} ({c.name})" for c in get_all_chains()),
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.refresh_interval_seconds,
        help=f"Seconds between refreshes (default: {settings.refresh_interval_seconds:g})",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Refresh once, print the balance and exit",
    )

    args = parser.parse_args()

    if settings.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    await init_db()
    aggregator = WalletBalanceAggregator(args.wallet, args.chains, get_session_factory())
    aggregator.refresh_interval = args.interval

    try:
        if args.once:
            await aggregator.open()
            for bundle in aggregator.bundles.values():
                bundle.detector.start()
            for bundle in aggregator.bundles.values():
                await bundle.detector.wait()
            await aggregator.tickers.refresh(aggregator.ticker_keys())
            await aggregator.refresh_eth_balance()
            await aggregator.refresh_token_balances()
            print(format_balance(aggregator.current_balance()))
        else:
            aggregator.subscribe_wallet_balance().subscribe(lambda b: print(format_balance(b)))
            await aggregator.start()
            while True:
                await asyncio.sleep(3600)
    finally:
        await aggregator.close()
        await close_db()


def run() -> None:
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Stopped")


if __name__ == "__main__":
    run()
