"""Chain state held in memory."""

from __future__ import annotations

from typing import Mapping, Optional

from pevmstate.storage import (
    AccountBasic,
    EvmAccount,
    EvmCode,
    Storage,
    keccak256,
)

__all__ = ["InMemoryStorage"]


class InMemoryStorage(Storage):
    """A storage that keeps accounts, bytecodes and block hashes in memory."""

    def __init__(
        self,
        accounts: Optional[Mapping[bytes, EvmAccount]] = None,
        bytecodes: Optional[Mapping[bytes, EvmCode]] = None,
        block_hashes: Optional[Mapping[int, bytes]] = None,
    ) -> None:
        self._accounts: Mapping[bytes, EvmAccount] = dict(accounts or {})
        self._bytecodes: Mapping[bytes, EvmCode] = bytecodes if bytecodes is not None else {}
        self._block_hashes: Mapping[int, bytes] = (
            block_hashes if block_hashes is not None else {}
        )

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(accounts={len(self._accounts)}, "
            f"bytecodes={len(self._bytecodes)}, block_hashes={len(self._block_hashes)})"
        )

    def basic(self, address: bytes) -> Optional[AccountBasic]:
        account = self._accounts.get(bytes(address))
        if account is None:
            return None
        return AccountBasic(balance=account.balance, nonce=account.nonce)

    def code_hash(self, address: bytes) -> Optional[bytes]:
        account = self._accounts.get(bytes(address))
        return None if account is None else account.code_hash

    def code_by_hash(self, code_hash: bytes) -> Optional[EvmCode]:
        return self._bytecodes.get(bytes(code_hash))

    def has_storage(self, address: bytes) -> bool:
        account = self._accounts.get(bytes(address))
        return account is not None and bool(account.storage)

    def storage(self, address: bytes, index: int) -> int:
        account = self._accounts.get(bytes(address))
        if account is None:
            return 0
        return account.storage.get(index, 0)

    def block_hash(self, number: int) -> bytes:
        known = self._block_hashes.get(number)
        if known is not None:
            return known
        # Unknown blocks hash to keccak256 of the decimal block number.
        return keccak256(str(number).encode())