"""Read-only contract call layer."""

from walletwatch.rpc.client import EvmRpcClient

__all__ = ["EvmRpcClient"]
