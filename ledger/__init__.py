"""Ledger module for reading settlement state and token balances.

This module provides:
- The LedgerClient contract consumed by the facilitator and currency adapters
- A synchronous Solana JSON-RPC client built on a requests session
- SolanaLedgerClient, the async LedgerClient over that RPC client
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests
from pydantic import BaseModel

from errors import BazaarError, ErrorCodes

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10


class LedgerError(BazaarError):
    """Base exception for ledger errors"""
    code = ErrorCodes.LEDGER_ERROR
    status_code = 502


class LedgerConnectionError(LedgerError):
    """Raised when the ledger node cannot be reached or answers garbage"""
    pass


class LedgerRPCError(LedgerError):
    """Error object returned by the ledger's JSON-RPC endpoint

    Common error codes:
    -32002 - Transaction simulation failed
    -32004 - Block not available for slot
    -32005 - Node is unhealthy
    -32007 - Slot skipped or missing due to ledger jump
    -32009 - Slot skipped or missing in long-term storage
    -32600 - Invalid request
    -32601 - Method not found
    -32602 - Invalid params
    -32603 - Internal error
    """
    ERROR_MESSAGES = {
        -32002: "Transaction simulation failed",
        -32004: "Block not available for slot",
        -32005: "Node is unhealthy",
        -32007: "Slot skipped or missing due to ledger jump",
        -32009: "Slot skipped or missing in long-term storage",
        -32600: "Invalid request",
        -32601: "Method not found",
        -32602: "Invalid params",
        -32603: "Internal error",
    }

    def __init__(self, message: str, code: int, method: str):
        self.rpc_code = code
        self.method = method
        standard_msg = self.ERROR_MESSAGES.get(code, "Unknown error")
        full_msg = f"{standard_msg} - {message}" if message != standard_msg else message
        super().__init__(f"RPC Error [{code}] in {method}: {full_msg}")


class LedgerTransaction(BaseModel):
    """Settlement state of one ledger transfer."""
    signature: str
    settled: bool
    errored: bool
    slot: Optional[int] = None


class LedgerClient(ABC):
    """Read-only view of the external ledger."""

    @abstractmethod
    async def get_transaction_by_signature(self, signature: str) -> Optional[LedgerTransaction]:
        """Look up a transfer by signature; None when the ledger has not seen it."""

    @abstractmethod
    async def get_token_balance(self, account: str, asset_id: str) -> int:
        """Total balance in smallest units across all of ``account``'s token
        accounts for ``asset_id``."""


class RPCMethod:
    """Descriptor class for RPC methods"""
    def __init__(self, method_name: str):
        self.method_name = method_name

    def __get__(self, obj, objtype=None):
        if obj is None:
            return self

        def caller(*args) -> Any:
            return obj._call_method(self.method_name, *args)

        return caller


class SolanaRPC:
    """Solana JSON-RPC client"""

    def __init__(self, url: str, timeout: int = DEFAULT_TIMEOUT):
        self.url = url
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers['content-type'] = 'application/json'

        # Request ID counter
        self._request_id = 0

    def _get_request_id(self) -> int:
        """Get unique request ID"""
        self._request_id += 1
        return self._request_id

    def _call_method(self, method: str, *args) -> Any:
        """Make RPC call to the ledger node

        Args:
            method: RPC method name
            *args: Method arguments

        Returns:
            The ``result`` member of the response

        Raises:
            LedgerConnectionError: Connection to node failed or response unreadable
            LedgerRPCError: Node returned a JSON-RPC error object
        """
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": list(args),
            "id": self._get_request_id()
        }

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
            result = response.json()

            if isinstance(result, dict) and result.get('error') is not None:
                error = result['error']
                raise LedgerRPCError(
                    error.get('message', 'Unknown error'),
                    error.get('code', -1),
                    method
                )

            response.raise_for_status()
            return result['result']

        except requests.exceptions.Timeout as e:
            raise LedgerConnectionError(
                f"Request timed out after {self.timeout} seconds"
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise LedgerConnectionError(
                f"Failed to connect to ledger node at {self.url}"
            ) from e
        except requests.exceptions.RequestException as e:
            raise LedgerConnectionError(f"Request failed: {str(e)}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerConnectionError(f"Invalid response format: {str(e)}") from e

    # Transaction methods
    getTransaction = RPCMethod('getTransaction')
    getSignatureStatuses = RPCMethod('getSignatureStatuses')

    # Account methods
    getBalance = RPCMethod('getBalance')
    getTokenAccountsByOwner = RPCMethod('getTokenAccountsByOwner')
    getTokenAccountBalance = RPCMethod('getTokenAccountBalance')

    # Cluster methods
    getHealth = RPCMethod('getHealth')
    getSlot = RPCMethod('getSlot')
    getLatestBlockhash = RPCMethod('getLatestBlockhash')


class SolanaLedgerClient(LedgerClient):
    """LedgerClient over Solana JSON-RPC.

    RPC calls are blocking, so they run in the default executor.
    """

    def __init__(self, rpc: SolanaRPC, commitment: str = 'confirmed'):
        self.rpc = rpc
        self.commitment = commitment

    async def get_transaction_by_signature(self, signature: str) -> Optional[LedgerTransaction]:
        result = await asyncio.to_thread(
            self.rpc.getTransaction,
            signature,
            {
                'encoding': 'jsonParsed',
                'commitment': self.commitment,
                'maxSupportedTransactionVersion': 0,
            }
        )
        if not result:
            return None

        meta: Dict[str, Any] = result.get('meta') or {}
        return LedgerTransaction(
            signature=signature,
            settled=True,
            errored=meta.get('err') is not None,
            slot=result.get('slot'),
        )

    async def get_token_balance(self, account: str, asset_id: str) -> int:
        result = await asyncio.to_thread(
            self.rpc.getTokenAccountsByOwner,
            account,
            {'mint': asset_id},
            {'encoding': 'jsonParsed', 'commitment': self.commitment}
        )
        total = 0
        for entry in (result or {}).get('value', []):
            try:
                token_amount = entry['account']['data']['parsed']['info']['tokenAmount']
                total += int(token_amount['amount'])
            except (KeyError, TypeError, ValueError) as e:
                raise LedgerConnectionError(f"Unexpected token account format: {e}") from e
        logger.debug(f"Ledger balance for {account}: {total} ({asset_id})")
        return total


def create_ledger_client(url: str, timeout: int = DEFAULT_TIMEOUT) -> SolanaLedgerClient:
    return SolanaLedgerClient(SolanaRPC(url, timeout=timeout))


# Export public interface
__all__ = [
    'LedgerClient',
    'LedgerTransaction',
    'LedgerError',
    'LedgerConnectionError',
    'LedgerRPCError',
    'SolanaRPC',
    'SolanaLedgerClient',
    'create_ledger_client',
]
