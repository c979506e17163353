"""Chain state fetched on demand from an Ethereum JSON-RPC node."""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Iterable, Optional, Union

import httpx

from pevmstate.storage import (
    EIP7702_MAGIC_BYTES,
    AccountBasic,
    BlockHashes,
    Bytecodes,
    ChainState,
    Eip7702Code,
    EofCode,
    EvmAccount,
    EvmCode,
    Storage,
    StorageError,
    analyze_bytecode,
    keccak256,
)

__all__ = [
    "DEFAULT_PRECOMPILES",
    "EMPTY_ROOT_HASH",
    "INITIAL_DELAY",
    "RETRY_LIMIT",
    "RpcStorage",
]

RETRY_LIMIT = 8
INITIAL_DELAY = 0.125

# Root hash of an empty Merkle-Patricia trie.
EMPTY_ROOT_HASH = bytes.fromhex(
    "56e81f171bcc55a6ff8345e692c0f86e5b48e01b996cadc001622fb5e363b421"
)

DEFAULT_PRECOMPILES = tuple(n.to_bytes(20, "big") for n in range(1, 11))

_EOF_MAGIC = bytes.fromhex("ef00")
_EIP7702_LEN = len(EIP7702_MAGIC_BYTES) + 1 + 20

BlockId = Union[int, str, bytes]


def _hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


def _unhex(text: str) -> bytes:
    return bytes.fromhex(text[2:] if text.startswith("0x") else text)


def _quantity(text: str) -> int:
    return int(text, 16)


def _encode_block_id(block_id: BlockId) -> Any:
    if isinstance(block_id, bool):
        raise TypeError("block id cannot be a boolean")
    if isinstance(block_id, int):
        if block_id < 0:
            raise ValueError("block number cannot be negative")
        return hex(block_id)
    if isinstance(block_id, (bytes, bytearray)):
        return {"blockHash": _hex(block_id)}
    return block_id


def _to_evm_code(code: bytes) -> EvmCode:
    """Interpret raw deployed code the way an EVM loads it."""
    if code.startswith(EIP7702_MAGIC_BYTES) and len(code) == _EIP7702_LEN:
        return Eip7702Code(delegated_address=code[3:], version=code[2])
    if code.startswith(_EOF_MAGIC):
        return EofCode(code)
    return analyze_bytecode(code)


class RpcStorage(Storage):
    """A storage that reads state at one block from a JSON-RPC node.

    Everything fetched is cached so the state can be reused or persisted;
    the caches are available as snapshots.
    """

    def __init__(
        self,
        url: str,
        block_id: BlockId = "latest",
        *,
        precompiles: Iterable[bytes] = DEFAULT_PRECOMPILES,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], Any] = time.sleep,
        timeout: float = 30.0,
    ) -> None:
        self._url = url
        self._block_param = _encode_block_id(block_id)
        self._precompiles = frozenset(bytes(p) for p in precompiles)
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=timeout)
        self._sleep = sleep
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._accounts: ChainState = {}
        self._bytecodes: Bytecodes = {}
        self._block_hashes: BlockHashes = {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(url={self._url!r}, block_id={self._block_param!r})"

    def __enter__(self) -> RpcStorage:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client if this storage created it."""
        if self._owns_client:
            self._client.close()

    def _request(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._client.post(self._url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as err:
            raise StorageError(f"{method} failed: {err}") from err
        if not isinstance(body, dict):
            raise StorageError(f"{method} returned a malformed response")
        if body.get("error") is not None:
            error = body["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise StorageError(f"{method} failed: {message}")
        if "result" not in body:
            raise StorageError(f"{method} returned no result")
        return body["result"]

    def _fetch(self, method: str, params: list[Any]) -> Any:
        """Send a request, retrying with exponential backoff on failure."""
        lives = RETRY_LIMIT
        delay = INITIAL_DELAY
        while True:
            try:
                return self._request(method, params)
            except StorageError:
                if lives == 0:
                    raise
                self._sleep(delay)
                lives -= 1
                delay *= 2

    def basic(self, address: bytes) -> Optional[AccountBasic]:
        address = bytes(address)
        with self._lock:
            account = self._accounts.get(address)
            if account is not None:
                return AccountBasic(balance=account.balance, nonce=account.nonce)

        address_hex = _hex(address)
        nonce = _quantity(
            self._fetch("eth_getTransactionCount", [address_hex, self._block_param])
        )
        balance = _quantity(self._fetch("eth_getBalance", [address_hex, self._block_param]))
        code = _unhex(self._fetch("eth_getCode", [address_hex, self._block_param]))

        # New non-precompile accounts must stay absent: creating accounts
        # costs extra gas in early hard forks.
        if address not in self._precompiles and balance == 0 and nonce == 0 and not code:
            return None

        code_hash: Optional[bytes] = None
        if code:
            code_hash = keccak256(code)
            evm_code = _to_evm_code(code)
        with self._lock:
            if code_hash is not None:
                self._bytecodes[code_hash] = evm_code
            self._accounts[address] = EvmAccount(
                balance=balance, nonce=nonce, code_hash=code_hash
            )
        return AccountBasic(balance=balance, nonce=nonce)

    def code_hash(self, address: bytes) -> Optional[bytes]:
        address = bytes(address)
        self.basic(address)
        with self._lock:
            account = self._accounts.get(address)
            return None if account is None else account.code_hash

    def code_by_hash(self, code_hash: bytes) -> Optional[EvmCode]:
        with self._lock:
            return self._bytecodes.get(bytes(code_hash))

    def has_storage(self, address: bytes) -> bool:
        proof = self._fetch("eth_getProof", [_hex(address), [], self._block_param])
        try:
            storage_hash = _unhex(proof["storageHash"])
        except (TypeError, KeyError, ValueError) as err:
            raise StorageError(f"malformed proof: {err}") from err
        return storage_hash != EMPTY_ROOT_HASH

    def storage(self, address: bytes, index: int) -> int:
        address = bytes(address)
        with self._lock:
            account = self._accounts.get(address)
            if account is not None and index in account.storage:
                return account.storage[index]

        slot = _hex(index.to_bytes(32, "big"))
        value = _quantity(self._fetch("eth_getStorageAt", [_hex(address), slot, self._block_param]))
        # Only cache for accounts that exist: caching a default zero would make
        # an empty account look non-empty (EIP-7610).
        self.basic(address)
        with self._lock:
            account = self._accounts.get(address)
            if account is not None:
                account.storage[index] = value
        return value

    def block_hash(self, number: int) -> bytes:
        with self._lock:
            known = self._block_hashes.get(number)
        if known is not None:
            return known

        block = self._fetch("eth_getBlockByNumber", [hex(number), False])
        if not isinstance(block, dict) or "hash" not in block:
            raise StorageError(f"block {number} not found")
        block_hash = _unhex(block["hash"])
        with self._lock:
            self._block_hashes[number] = block_hash
        return block_hash

    def cache_accounts(self) -> ChainState:
        """Return a snapshot of the cached accounts."""
        with self._lock:
            return {
                address: replace(account, storage=dict(account.storage))
                for address, account in self._accounts.items()
            }

    def cache_bytecodes(self) -> Bytecodes:
        """Return a snapshot of the cached bytecodes."""
        with self._lock:
            return dict(self._bytecodes)

    def cache_block_hashes(self) -> BlockHashes:
        """Return a snapshot of the cached block hashes."""
        with self._lock:
            return dict(self._block_hashes)