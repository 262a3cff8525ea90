import itertools
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from ...errors import EvmRpcError

logger = logging.getLogger(__name__)

RPC_MAX_BATCH = 100


def _chunks(seq: List[Any], size: int) -> Iterable[List[Any]]:
    for i in range(0, len(seq), size):
        yield seq[i : i + size]


def _hex_to_int(hex_str: str) -> int:
    if not hex_str or hex_str == "0x":
        return 0
    return int(hex_str, 16)


def _decode_erc20_uint256(result_hex: Optional[str]) -> Optional[int]:
    if not result_hex or result_hex == "0x":
        return None
    try:
        return _hex_to_int(result_hex)
    except ValueError:
        return None


def _decode_erc20_uint8(result_hex: Optional[str]) -> Optional[int]:
    v = _decode_erc20_uint256(result_hex)
    if v is None:
        return None
    if v < 0 or v > 255:
        return None
    return int(v)


def _decode_erc20_string(result_hex: Optional[str]) -> Optional[str]:
    if not result_hex or result_hex == "0x":
        return None
    try:
        raw = bytes.fromhex(result_hex[2:])
    except ValueError:
        return None
    # Legacy tokens (e.g. MKR) return bytes32 instead of an ABI string
    if len(raw) == 32:
        return raw.rstrip(b"\x00").decode("utf-8", errors="replace").strip() or None
    if len(raw) < 64:
        return None
    offset = int.from_bytes(raw[0:32], "big")
    if offset + 32 > len(raw):
        return None
    strlen = int.from_bytes(raw[offset : offset + 32], "big")
    start = offset + 32
    end = start + strlen
    if end > len(raw):
        return None
    return raw[start:end].decode("utf-8", errors="replace").strip() or None


class EvmRpcClient:
    """
    Minimal JSON-RPC client for one EVM endpoint.

    Every request carries a bounded timeout; transport failures and JSON-RPC
    error objects are raised as EvmRpcError.
    """

    _DECIMALS = "0x313ce567"
    _SYMBOL = "0x95d89b41"
    _NAME = "0x06fdde03"
    _TOTAL_SUPPLY = "0x18160ddd"

    def __init__(self, chain: str, rpc_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.chain = chain
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def _post(self, payload: Any) -> Any:
        try:
            with self._lock:
                resp = self._session.post(
                    self.rpc_url,
                    json=payload,
                    timeout=self.timeout,
                    headers={"Content-Type": "application/json"},
                )
            resp.raise_for_status()
            return resp.json()
        except Exception as e:
            raise EvmRpcError(f"{self.chain} RPC request failed: {e}") from e

    def _call(self, method: str, params: List[Any]) -> Any:
        response = self._post({"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params})
        if not isinstance(response, dict):
            raise EvmRpcError(f"{self.chain} {method}: malformed response {response!r}")
        if "error" in response:
            raise EvmRpcError(f"{self.chain} {method}: {response['error']}")
        return response.get("result")

    def block_number(self) -> int:
        return _hex_to_int(self._call("eth_blockNumber", []))

    def get_block(self, block_number: int, full_transactions: bool = True) -> Optional[Dict[str, Any]]:
        return self._call("eth_getBlockByNumber", [hex(block_number), full_transactions])

    def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self._call("eth_getTransactionReceipt", [tx_hash])

    def eth_call_batch(self, calls: List[Tuple[str, str]]) -> Dict[Tuple[str, str], Optional[str]]:
        if not calls:
            return {}

        results: Dict[Tuple[str, str], Optional[str]] = {}
        for batch in _chunks(calls, RPC_MAX_BATCH):
            payload = []
            for idx, (to, data) in enumerate(batch):
                payload.append(
                    {
                        "jsonrpc": "2.0",
                        "id": idx,
                        "method": "eth_call",
                        "params": [{"to": to, "data": data}, "latest"],
                    }
                )

            response = self._post(payload)
            # Some providers answer a batch with a single error object
            if isinstance(response, dict):
                response = [response]
            id_to_item = {item.get("id"): item for item in (response or []) if isinstance(item, dict)}
            for idx, (to, data) in enumerate(batch):
                item = id_to_item.get(idx) or {}
                if "error" in item:
                    # A revert is an answer, not a transport failure
                    results[(to, data)] = None
                else:
                    results[(to, data)] = item.get("result")

        return results

    def get_token_metadata(self, token: str) -> Dict[str, Any]:
        """
        Read name/symbol/decimals/totalSupply in one batched request.

        Values the contract does not implement (or reverts on) come back as None.
        Raises EvmRpcError only when the endpoint itself is unreachable.
        """
        t = token.lower()
        calls = [(t, self._NAME), (t, self._SYMBOL), (t, self._DECIMALS), (t, self._TOTAL_SUPPLY)]
        raw = self.eth_call_batch(calls)
        return {
            "name": _decode_erc20_string(raw.get((t, self._NAME))),
            "symbol": _decode_erc20_string(raw.get((t, self._SYMBOL))),
            "decimals": _decode_erc20_uint8(raw.get((t, self._DECIMALS))),
            "total_supply": _decode_erc20_uint256(raw.get((t, self._TOTAL_SUPPLY))),
        }

    def close(self):
        self._session.close()
        logger.info(f"[{self.chain}] RPC session closed")
