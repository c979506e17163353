import json

import httpx
import pytest
import respx

from pevmstate.rpc import EMPTY_ROOT_HASH, INITIAL_DELAY, RETRY_LIMIT, RpcStorage
from pevmstate.storage import (
    AccountBasic,
    Eip7702Code,
    StorageError,
    analyze_bytecode,
    keccak256,
)

URL = "http://localhost:8545"
ALICE = bytes([0x11] * 20)
CONTRACT = bytes([0x22] * 20)
NOBODY = bytes([0x33] * 20)
PRECOMPILE = (1).to_bytes(20, "big")
CODE = bytes.fromhex("6001600101005b00")


class FakeNode:
    def __init__(self):
        self.accounts = {}
        self.blocks = {}
        self.calls = []
        self.failures = 0
        self.rpc_error = False

    def add(self, address, balance=0, nonce=0, code=b"", storage=None, storage_hash=None):
        self.accounts[address] = {
            "balance": balance,
            "nonce": nonce,
            "code": code,
            "storage": storage or {},
            "storage_hash": storage_hash or EMPTY_ROOT_HASH,
        }

    def _account(self, address_hex):
        return self.accounts.get(bytes.fromhex(address_hex[2:]), {
            "balance": 0, "nonce": 0, "code": b"", "storage": {},
            "storage_hash": EMPTY_ROOT_HASH,
        })

    def __call__(self, request):
        body = json.loads(request.content)
        method, params = body["method"], body["params"]
        self.calls.append((method, params))
        if self.failures:
            self.failures -= 1
            return httpx.Response(500)
        if self.rpc_error:
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -1, "message": "boom"}}
            )
        if method == "eth_getTransactionCount":
            result = hex(self._account(params[0])["nonce"])
        elif method == "eth_getBalance":
            result = hex(self._account(params[0])["balance"])
        elif method == "eth_getCode":
            result = "0x" + self._account(params[0])["code"].hex()
        elif method == "eth_getStorageAt":
            value = self._account(params[0])["storage"].get(int(params[1], 16), 0)
            result = "0x" + value.to_bytes(32, "big").hex()
        elif method == "eth_getProof":
            result = {"storageHash": "0x" + self._account(params[0])["storage_hash"].hex()}
        elif method == "eth_getBlockByNumber":
            block_hash = self.blocks.get(int(params[0], 16))
            result = None if block_hash is None else {"hash": "0x" + block_hash.hex()}
        else:
            raise AssertionError(method)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


@pytest.fixture
def node():
    fake = FakeNode()
    with respx.mock(assert_all_called=False) as router:
        router.post(URL).mock(side_effect=fake)
        yield fake


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def storage(node, sleeps):
    with RpcStorage(URL, 5, sleep=sleeps.append) as rpc:
        yield rpc


def test_basic_fetches_and_caches(node, storage):
    node.add(ALICE, balance=1000, nonce=3)
    assert storage.basic(ALICE) == AccountBasic(balance=1000, nonce=3)
    count = len(node.calls)
    assert storage.basic(ALICE) == AccountBasic(balance=1000, nonce=3)
    assert len(node.calls) == count
    assert storage.cache_accounts()[ALICE].balance == 1000


def test_block_id_is_sent_as_quantity(node, storage):
    node.add(ALICE, balance=1)
    storage.basic(ALICE)
    assert ("eth_getBalance", ["0x" + ALICE.hex(), "0x5"]) in node.calls


def test_empty_account_is_absent(node, storage):
    assert storage.basic(NOBODY) is None
    assert NOBODY not in storage.cache_accounts()
    assert storage.code_hash(NOBODY) is None


def test_empty_precompile_exists(node, storage):
    assert storage.basic(PRECOMPILE) == AccountBasic(balance=0, nonce=0)


def test_contract_code_is_cached(node, storage):
    node.add(CONTRACT, nonce=1, code=CODE)
    code_hash = storage.code_hash(CONTRACT)
    assert code_hash == keccak256(CODE)
    assert storage.code_by_hash(code_hash) == analyze_bytecode(CODE)
    assert storage.cache_bytecodes() == {code_hash: analyze_bytecode(CODE)}


def test_eip7702_code(node, storage):
    delegate = bytes([0x01] * 20)
    raw = Eip7702Code(delegate).raw()
    node.add(ALICE, nonce=1, code=raw)
    code_hash = storage.code_hash(ALICE)
    assert storage.code_by_hash(code_hash) == Eip7702Code(delegate, 0)


def test_storage_is_cached_for_existing_account(node, storage):
    node.add(CONTRACT, nonce=1, code=CODE, storage={7: 99})
    assert storage.storage(CONTRACT, 7) == 99
    count = len(node.calls)
    assert storage.storage(CONTRACT, 7) == 99
    assert len(node.calls) == count
    assert storage.cache_accounts()[CONTRACT].storage == {7: 99}


def test_storage_of_missing_account_not_cached(node, storage):
    assert storage.storage(NOBODY, 1) == 0
    assert storage.cache_accounts() == {}


def test_has_storage(node, storage):
    node.add(ALICE, balance=1)
    node.add(CONTRACT, nonce=1, storage_hash=keccak256(b"x"))
    assert storage.has_storage(ALICE) is False
    assert storage.has_storage(CONTRACT) is True


def test_empty_root_hash_constant():
    assert EMPTY_ROOT_HASH.hex() == (
        "56e81f171bcc55a6ff8345e692c0f86e5b48e01b996cadc001622fb5e363b421"
    )


def test_block_hash_fetched_and_cached(node, storage):
    block_hash = keccak256(b"block")
    node.blocks[4] = block_hash
    assert storage.block_hash(4) == block_hash
    count = len(node.calls)
    assert storage.block_hash(4) == block_hash
    assert len(node.calls) == count
    assert storage.cache_block_hashes() == {4: block_hash}


def test_missing_block_raises(node, storage):
    with pytest.raises(StorageError):
        storage.block_hash(12)


def test_retries_with_backoff(node, storage, sleeps):
    node.add(ALICE, balance=5)
    node.failures = 2
    assert storage.basic(ALICE) == AccountBasic(balance=5, nonce=0)
    assert sleeps == [INITIAL_DELAY, INITIAL_DELAY * 2]


def test_gives_up_after_retry_limit(node, storage, sleeps):
    node.failures = 100
    with pytest.raises(StorageError):
        storage.basic(ALICE)
    assert len(sleeps) == RETRY_LIMIT
    assert all(b == a * 2 for a, b in zip(sleeps, sleeps[1:]))


def test_rpc_error_raises(node, storage):
    node.rpc_error = True
    with pytest.raises(StorageError, match="boom"):
        storage.has_storage(ALICE)


def test_snapshots_are_independent(node, storage):
    node.add(CONTRACT, nonce=1, storage={1: 2})
    storage.storage(CONTRACT, 1)
    snapshot = storage.cache_accounts()
    snapshot[CONTRACT].storage[1] = 42
    snapshot.clear()
    assert storage.cache_accounts()[CONTRACT].storage == {1: 2}