"""RPC module for interacting with the settlement chain's JSON-RPC node"""
import logging
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


class RPCError(Exception):
    """Base exception for RPC errors"""
    def __init__(self, message: str, code: Optional[int] = None, method: Optional[str] = None):
        self.code = code
        self.method = method
        super().__init__(f"RPC Error [{code}] in {method}: {message}" if code else message)


class NodeConnectionError(RPCError):
    """Raised when the node cannot be reached or answers garbage"""
    pass


class NodeAuthError(RPCError):
    """Raised when the node rejects our credentials"""
    pass


class ChainError(RPCError):
    """JSON-RPC error returned by an EVM node

    Common error codes:
    -32700 - Parse error
    -32600 - Invalid request
    -32601 - Method not found
    -32602 - Invalid params
    -32603 - Internal error
    -32000 - Execution or server error (node specific)
    3      - Execution reverted
    """
    ERROR_MESSAGES = {
        -32700: "Parse error",
        -32600: "Invalid request",
        -32601: "Method not found",
        -32602: "Invalid params",
        -32603: "Internal error",
        -32000: "Server error",
        3: "Execution reverted",
    }

    def __init__(self, message: str, code: int, method: str):
        standard_msg = self.ERROR_MESSAGES.get(code, "Unknown error")
        full_msg = f"{standard_msg} - {message}" if message != standard_msg else message
        super().__init__(full_msg, code, method)


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


class ChainRPC:
    """Blocking JSON-RPC client for an EVM node.

    Async callers run these methods through asyncio.to_thread.
    """

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers['content-type'] = 'application/json'
        self._request_id = 0

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> 'ChainRPC':
        return cls(settings['chain_rpc_url'], timeout=settings['rpc_timeout'])

    def _get_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    def _call_method(self, method: str, *args) -> Any:
        """Make RPC call to the node

        Args:
            method: RPC method name
            *args: Method arguments

        Returns:
            The ``result`` member of the response

        Raises:
            NodeConnectionError: Connection to node failed
            NodeAuthError: Authentication failed
            ChainError: Node returned a JSON-RPC error
        """
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": list(args),
            "id": self._get_request_id()
        }

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)

            if response.status_code in (401, 403):
                raise NodeAuthError(f"Node rejected request with HTTP {response.status_code}")

            # Parse before raise_for_status so node errors on 4xx/5xx keep their code
            try:
                result = response.json()
            except ValueError:
                response.raise_for_status()
                raise

            if isinstance(result, dict) and result.get('error') is not None:
                error = result['error']
                raise ChainError(
                    error.get('message', 'Unknown error'),
                    error.get('code', -32603),
                    method
                )

            response.raise_for_status()
            return result['result']

        except requests.exceptions.Timeout as e:
            raise NodeConnectionError(
                f"Request timed out after {self.timeout} seconds", method=method
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise NodeConnectionError(
                f"Failed to connect to chain node at {self.url}", method=method
            ) from e
        except requests.exceptions.RequestException as e:
            raise NodeConnectionError(f"Request failed: {str(e)}", method=method) from e
        except (KeyError, ValueError, TypeError) as e:
            raise NodeConnectionError(f"Invalid response format: {str(e)}", method=method) from e

    # Chain state
    eth_chainId = RPCMethod('eth_chainId')
    eth_blockNumber = RPCMethod('eth_blockNumber')

    # Contract reads
    eth_call = RPCMethod('eth_call')

    # Transactions
    eth_getTransactionByHash = RPCMethod('eth_getTransactionByHash')
    eth_getTransactionReceipt = RPCMethod('eth_getTransactionReceipt')


__all__ = [
    'RPCError',
    'NodeConnectionError',
    'NodeAuthError',
    'ChainError',
    'RPCMethod',
    'ChainRPC'
]
