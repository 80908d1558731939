"""JSON-RPC client for read-only EVM contract calls.

Network-level failures (connection errors, timeouts, 429/5xx) raise
NetworkUnreachableError. A node that answers with a JSON-RPC error or
empty return data raises ContractCallError: the network was reachable
but the contract did not answer the call.
"""

import logging
from typing import Any, Optional

import httpx

from walletwatch.errors import ContractCallError, NetworkUnreachableError
from walletwatch.rpc import abi

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


class EvmRpcClient:
    """Read-only contract call layer for one EVM chain."""

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            rpc_url: Node JSON-RPC endpoint
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests inject a mock one)
        """
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.transport = transport
        self._request_id = 0

    async def _request(self, method: str, params: list[Any]) -> Any:
        """Make a JSON-RPC request and return its result."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.rpc_url, json=payload)
        except httpx.TransportError as e:
            raise NetworkUnreachableError(f"RPC request failed: {e}") from e

        if response.status_code != 200:
            raise NetworkUnreachableError(
                f"RPC error: HTTP {response.status_code}", status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise NetworkUnreachableError(f"Invalid RPC response: {e}") from e

        if "error" in data:
            error = data["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise ContractCallError(f"{method} failed: {message}")

        return data.get("result")

    async def eth_call(self, to: str, data: str) -> str:
        """Execute a read-only call against ``to`` at the latest block."""
        result = await self._request("eth_call", [{"to": to, "data": data}, "latest"])
        if not result or result == "0x":
            raise ContractCallError(f"Empty return data from {to}")
        return result

    async def get_balance(self, address: str) -> int:
        """Get native currency balance in the smallest unit."""
        result = await self._request("eth_getBalance", [address, "latest"])
        return int(result, 16)

    async def block_number(self) -> int:
        result = await self._request("eth_blockNumber", [])
        return int(result, 16)

    async def balance_of(self, contract: str, owner: str) -> int:
        """ERC20/ERC721 balanceOf(owner)."""
        data = f"{abi.BALANCE_OF_SELECTOR}{abi.encode_address(owner)}"
        return self._decode(abi.decode_uint, await self.eth_call(contract, data), contract)

    async def erc875_balance_of(self, contract: str, owner: str) -> list[str]:
        """ERC875 balanceOf(owner), returning the non-empty ticket slots as hex."""
        data = f"{abi.BALANCE_OF_SELECTOR}{abi.encode_address(owner)}"
        values = self._decode(abi.decode_uint_array, await self.eth_call(contract, data), contract)
        return [hex(value) for value in values if value]

    async def supports_interface(self, contract: str, interface_id: str) -> bool:
        """ERC-165 supportsInterface(interface_id)."""
        data = f"{abi.SUPPORTS_INTERFACE_SELECTOR}{abi.encode_bytes4(interface_id)}"
        return self._decode(abi.decode_bool, await self.eth_call(contract, data), contract)

    async def name(self, contract: str) -> str:
        return self._decode(abi.decode_string, await self.eth_call(contract, abi.NAME_SELECTOR), contract)

    async def symbol(self, contract: str) -> str:
        return self._decode(abi.decode_string, await self.eth_call(contract, abi.SYMBOL_SELECTOR), contract)

    async def decimals(self, contract: str) -> int:
        return self._decode(abi.decode_uint, await self.eth_call(contract, abi.DECIMALS_SELECTOR), contract)

    async def implementation(self, contract: str) -> Optional[str]:
        """Proxy implementation() target, or None for a zero address."""
        result = await self.eth_call(contract, abi.IMPLEMENTATION_SELECTOR)
        address = self._decode(abi.decode_address, result, contract)
        return None if address == ZERO_ADDRESS else address

    @staticmethod
    def _decode(decoder, data: str, contract: str):
        try:
            return decoder(data)
        except ValueError as e:
            raise ContractCallError(f"Undecodable return data from {contract}: {e}") from e
