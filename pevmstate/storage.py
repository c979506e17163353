"""Account, bytecode and storage types used to provide chain state."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from Crypto.Hash import keccak

__all__ = [
    "AccountBasic",
    "BlockHashes",
    "Bytecodes",
    "ChainState",
    "EIP7702_MAGIC_BYTES",
    "EIP7702_VERSION",
    "Eip7702Code",
    "EofCode",
    "EvmAccount",
    "EvmCode",
    "KECCAK_EMPTY",
    "LegacyCode",
    "Storage",
    "StorageError",
    "analyze_bytecode",
    "keccak256",
]

EIP7702_MAGIC_BYTES = bytes.fromhex("ef01")
EIP7702_VERSION = 0

_JUMPDEST = 0x5B
_PUSH1 = 0x60
_PUSH32 = 0x7F
# Analysed legacy code is padded so execution can never run off its end.
_LEGACY_PADDING = 33

_EOF_MAGIC = bytes.fromhex("ef00")
_EOF_VERSION = 0x01
_KIND_TYPES = 0x01
_KIND_CODE = 0x02
_KIND_CONTAINER = 0x03
_KIND_DATA = 0x04
_KIND_TERMINAL = 0x00
_MAX_CODE_SECTIONS = 1024
_MAX_CONTAINER_SECTIONS = 256


def keccak256(data: bytes) -> bytes:
    """Return the 32-byte Keccak-256 digest of ``data``."""
    return keccak.new(digest_bits=256, data=bytes(data)).digest()


KECCAK_EMPTY = keccak256(b"")


class StorageError(Exception):
    """Raised when a storage backend fails to provide data."""


@dataclass(frozen=True)
class AccountBasic:
    """Balance and nonce of an account."""

    balance: int = 0
    nonce: int = 0


@dataclass(frozen=True)
class LegacyCode:
    """Analysed legacy bytecode.

    ``bytecode`` holds the original bytes followed by zero padding and
    ``jump_table`` is a little-endian bitmap of valid jump destinations.
    """

    bytecode: bytes
    original_len: int
    jump_table: bytes


@dataclass(frozen=True)
class Eip7702Code:
    """EIP-7702 delegation designator."""

    delegated_address: bytes
    version: int = EIP7702_VERSION

    def raw(self) -> bytes:
        """Return the raw designator bytes: magic, version, address."""
        return EIP7702_MAGIC_BYTES + bytes([self.version]) + bytes(self.delegated_address)


@dataclass(frozen=True)
class EofCode:
    """EOF bytecode; the container header and body sizes are checked on creation."""

    raw: bytes

    def __post_init__(self) -> None:
        _validate_eof(bytes(self.raw))


EvmCode = Union[LegacyCode, Eip7702Code, EofCode]

ChainState = Dict[bytes, "EvmAccount"]
Bytecodes = Dict[bytes, EvmCode]
BlockHashes = Dict[int, bytes]


def analyze_bytecode(raw: bytes) -> LegacyCode:
    """Pad raw legacy bytecode and compute its jump destination table."""
    raw = bytes(raw)
    padded = raw + bytes(_LEGACY_PADDING)
    table = bytearray((len(padded) + 7) // 8)
    pos = 0
    while pos < len(padded):
        opcode = padded[pos]
        if opcode == _JUMPDEST:
            table[pos >> 3] |= 1 << (pos & 7)
        elif _PUSH1 <= opcode <= _PUSH32:
            pos += opcode - _PUSH1 + 1
        pos += 1
    return LegacyCode(bytecode=padded, original_len=len(raw), jump_table=bytes(table))


def _eof_error(reason: str) -> ValueError:
    return ValueError(f"Failed to decode EOF: {reason}")


def _validate_eof(raw: bytes) -> None:
    pos = 0

    def take(size: int) -> bytes:
        nonlocal pos
        if pos + size > len(raw):
            raise _eof_error("missing input")
        chunk = raw[pos : pos + size]
        pos += size
        return chunk

    def u8() -> int:
        return take(1)[0]

    def u16() -> int:
        return int.from_bytes(take(2), "big")

    if take(2) != _EOF_MAGIC:
        raise _eof_error("invalid magic number")
    if u8() != _EOF_VERSION:
        raise _eof_error("invalid version")
    if u8() != _KIND_TYPES:
        raise _eof_error("invalid types kind")
    types_size = u16()
    if types_size == 0 or types_size % 4:
        raise _eof_error("invalid types section")
    if u8() != _KIND_CODE:
        raise _eof_error("invalid code kind")
    num_code = u16()
    if num_code == 0:
        raise _eof_error("no code sections")
    if num_code > _MAX_CODE_SECTIONS:
        raise _eof_error("too many code sections")
    if num_code != types_size // 4:
        raise _eof_error("mismatched code and types sizes")
    code_sizes = [u16() for _ in range(num_code)]
    if 0 in code_sizes:
        raise _eof_error("zero size section")

    kind = u8()
    container_sizes: list[int] = []
    if kind == _KIND_CONTAINER:
        num_containers = u16()
        if num_containers == 0:
            raise _eof_error("no container sections")
        if num_containers > _MAX_CONTAINER_SECTIONS:
            raise _eof_error("too many container sections")
        container_sizes = [u16() for _ in range(num_containers)]
        if 0 in container_sizes:
            raise _eof_error("zero size section")
        kind = u8()
    if kind != _KIND_DATA:
        raise _eof_error("invalid data kind")
    data_size = u16()
    if u8() != _KIND_TERMINAL:
        raise _eof_error("invalid terminal byte")

    partial_body = types_size + sum(code_sizes) + sum(container_sizes)
    remaining = len(raw) - pos
    if remaining < partial_body:
        raise _eof_error("missing body")
    if remaining > partial_body + data_size:
        raise _eof_error("dangling data")


def _hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


def _unhex(text: str) -> bytes:
    return bytes.fromhex(text[2:] if text.startswith("0x") else text)


def _code_to_dict(code: EvmCode) -> dict[str, Any]:
    if isinstance(code, LegacyCode):
        return {
            "Legacy": {
                "bytecode": _hex(code.bytecode),
                "original_len": code.original_len,
                "jump_table": _hex(code.jump_table),
            }
        }
    if isinstance(code, Eip7702Code):
        return {
            "Eip7702": {
                "delegated_address": _hex(code.delegated_address),
                "version": code.version,
            }
        }
    if isinstance(code, EofCode):
        return {"Eof": _hex(code.raw)}
    raise TypeError(f"unsupported code type: {type(code).__name__}")


def _code_from_dict(data: dict[str, Any]) -> EvmCode:
    if len(data) != 1:
        raise ValueError("code must have exactly one variant tag")
    ((tag, body),) = data.items()
    if tag == "Legacy":
        return LegacyCode(
            bytecode=_unhex(body["bytecode"]),
            original_len=int(body["original_len"]),
            jump_table=_unhex(body["jump_table"]),
        )
    if tag == "Eip7702":
        return Eip7702Code(
            delegated_address=_unhex(body["delegated_address"]),
            version=int(body["version"]),
        )
    if tag == "Eof":
        return EofCode(_unhex(body))
    raise ValueError(f"unknown code variant: {tag}")


@dataclass
class EvmAccount:
    """An EVM account with optional code and its storage."""

    balance: int = 0
    nonce: int = 0
    code_hash: Optional[bytes] = None
    code: Optional[EvmCode] = None
    storage: dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly representation; absent code fields are omitted."""
        data: dict[str, Any] = {"balance": hex(self.balance), "nonce": self.nonce}
        if self.code_hash is not None:
            data["code_hash"] = _hex(self.code_hash)
        if self.code is not None:
            data["code"] = _code_to_dict(self.code)
        data["storage"] = {hex(slot): hex(value) for slot, value in sorted(self.storage.items())}
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EvmAccount:
        """Build an account from the representation made by :meth:`to_dict`."""
        code_hash = data.get("code_hash")
        code = data.get("code")
        return cls(
            balance=int(data.get("balance", "0x0"), 16),
            nonce=int(data.get("nonce", 0)),
            code_hash=None if code_hash is None else _unhex(code_hash),
            code=None if code is None else _code_from_dict(code),
            storage={
                int(slot, 16): int(value, 16)
                for slot, value in data.get("storage", {}).items()
            },
        )


class Storage(ABC):
    """Interface providing chain state for transaction execution.

    Implementations raise :class:`StorageError` when data cannot be read.
    """

    @abstractmethod
    def basic(self, address: bytes) -> Optional[AccountBasic]:
        """Return balance and nonce of an account, or None if it does not exist."""

    @abstractmethod
    def code_hash(self, address: bytes) -> Optional[bytes]:
        """Return the code hash of an account, or None if it has no code."""

    @abstractmethod
    def code_by_hash(self, code_hash: bytes) -> Optional[EvmCode]:
        """Return the code with the given hash, or None if unknown."""

    @abstractmethod
    def has_storage(self, address: bytes) -> bool:
        """Return whether the account already has storage (EIP-7610)."""

    @abstractmethod
    def storage(self, address: bytes, index: int) -> int:
        """Return the storage value of an account at a slot."""

    @abstractmethod
    def block_hash(self, number: int) -> bytes:
        """Return the hash of the block with the given number."""