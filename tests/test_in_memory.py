import pytest

from pevmstate.in_memory import InMemoryStorage
from pevmstate.storage import (
    AccountBasic,
    EvmAccount,
    Storage,
    analyze_bytecode,
    keccak256,
)

U256_MAX = 2**256 - 1


def _address(idx: int) -> bytes:
    return idx.to_bytes(20, "big")


def _mock_account(idx: int):
    return _address(idx), EvmAccount(balance=-(-U256_MAX // 2), nonce=1)


@pytest.fixture
def contract():
    raw = bytes.fromhex("6080604052")
    code = analyze_bytecode(raw)
    code_hash = keccak256(raw)
    account = EvmAccount(balance=5, nonce=1, code_hash=code_hash, storage={1: 42})
    return _address(99), account, code_hash, code


@pytest.fixture
def storage(contract):
    address, account, code_hash, code = contract
    accounts = dict(_mock_account(i) for i in range(3))
    accounts[address] = account
    return InMemoryStorage(accounts, {code_hash: code}, {7: bytes([7] * 32)})


def test_is_a_storage(storage):
    assert isinstance(storage, Storage)
    assert storage.basic(_address(1)) == AccountBasic(
        balance=_mock_account(1)[1].balance, nonce=1
    )


def test_basic_missing_account(storage):
    assert storage.basic(_address(1000)) is None


def test_code_hash(storage, contract):
    address, _, code_hash, _ = contract
    assert storage.code_hash(address) == code_hash
    assert storage.code_hash(_address(0)) is None
    assert storage.code_hash(_address(1000)) is None


def test_code_by_hash(storage, contract):
    _, _, code_hash, code = contract
    assert storage.code_by_hash(code_hash) == code
    assert storage.code_by_hash(bytes(32)) is None


def test_has_storage(storage, contract):
    address = contract[0]
    assert storage.has_storage(address) is True
    assert storage.has_storage(_address(0)) is False
    assert storage.has_storage(_address(1000)) is False


def test_storage_values(storage, contract):
    address = contract[0]
    assert storage.storage(address, 1) == 42
    assert storage.storage(address, 2) == 0
    assert storage.storage(_address(1000), 1) == 0


def test_known_block_hash(storage):
    assert storage.block_hash(7) == bytes([7] * 32)


def test_unknown_block_hash_falls_back_to_keccak(storage):
    assert storage.block_hash(5) == keccak256(b"5")
    assert storage.block_hash(1234) == keccak256(b"1234")


def test_default_storage_is_empty():
    storage = InMemoryStorage()
    assert storage.basic(_address(0)) is None
    assert storage.storage(_address(0), 0) == 0
    assert storage.block_hash(0) == keccak256(b"0")


def test_mock_account_balance_is_half_full(storage):
    basic = storage.basic(_address(2))
    assert basic.balance * 2 >= U256_MAX
    assert basic.balance * 2 - U256_MAX <= 1
    assert basic.balance + basic.balance <= U256_MAX + 1