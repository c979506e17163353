# pevmstate

Building blocks for executing the transactions of an EVM block in parallel:
account and code types, storage back ends that provide chain state, and a
collaborative scheduler that hands out execution and validation tasks to
worker threads.

## Installation

```
pip install pevmstate
```

For running the test suite:

```
pip install "pevmstate[test]"
pytest
```

## Storage

`pevmstate.storage` defines the data types and the `Storage` interface:

- `AccountBasic`: an account's balance and nonce.
- `EvmAccount`: balance, nonce, optional code hash and code, and storage
  slots. `to_dict()` gives a JSON-friendly dictionary (quantities as hex
  strings, absent code fields left out) and `EvmAccount.from_dict` reads it
  back.
- `LegacyCode`, `Eip7702Code` and `EofCode`: the kinds of contract code.
  `analyze_bytecode` pads raw legacy bytecode and computes its jump
  destination table, `Eip7702Code.raw()` gives the delegation designator
  bytes, and `EofCode` checks its container header and body sizes when
  created, raising `ValueError` if they are wrong.
- `keccak256` hashes bytes; `KECCAK_EMPTY` is the hash of empty input.
- `StorageError` is raised when a back end cannot serve a request.

A storage answers `basic`, `code_hash`, `code_by_hash`, `has_storage`,
`storage` and `block_hash` queries. Addresses and hashes are `bytes`,
balances, nonces and storage slots are `int`.

### In memory

```python
from pevmstate.in_memory import InMemoryStorage
from pevmstate.storage import EvmAccount

address = bytes(19) + b"\x01"
storage = InMemoryStorage({address: EvmAccount(balance=10, nonce=1)})

storage.basic(address)          # AccountBasic(balance=10, nonce=1)
storage.storage(address, 0)     # 0
storage.block_hash(1)           # keccak256(b"1") when the hash is unknown
```

`InMemoryStorage(accounts, bytecodes, block_hashes)` takes three optional
mappings: accounts by address, code by code hash, and block hashes by number.

### Over JSON-RPC

`pevmstate.rpc.RpcStorage(url, block_id="latest")` reads state from an
Ethereum JSON-RPC node at a fixed block. The block may be given as a number,
a tag such as `"latest"`, or a block hash as `bytes`. Failed requests are
retried up to `RETRY_LIMIT` times with a delay starting at `INITIAL_DELAY`
seconds and doubling each time; after that a `StorageError` is raised.

Accounts that do not exist (zero balance, zero nonce, no code, and not in
the `precompiles` set) are reported as `None`. Everything fetched is cached,
and snapshots of the caches are available through `cache_accounts()`,
`cache_bytecodes()` and `cache_block_hashes()`, so a block's pre-state can be
saved and later loaded into an `InMemoryStorage`.

An existing `httpx.Client` can be passed as `client`; otherwise the storage
creates its own and `close()` closes it. The storage is also a context
manager:

```python
from pevmstate.rpc import RpcStorage

with RpcStorage("http://localhost:8545", block_id=19_000_000) as rpc:
    basic = rpc.basic(bytes(19) + b"\x01")
    accounts = rpc.cache_accounts()
```

## Scheduler

`pevmstate.scheduler.Scheduler` coordinates work for a block of a given size.
Worker threads call `next_task()` to receive a `Task` of kind
`TaskKind.EXECUTION` or `TaskKind.VALIDATION` for a `TxVersion`, report back
with `finish_execution` (passing `FinishExecFlags`, which may return a
validation task), or with `try_validation_abort` and `finish_validation`
(which may return a re-execution task), and register read dependencies with
`add_dependency`. `next_task()` returns `None` once every transaction is done,
and `abort()` makes it return `None` straight away.

```python
from pevmstate.scheduler import FinishExecFlags, Scheduler

scheduler = Scheduler(2)
while (task := scheduler.next_task()) is not None:
    follow_up = scheduler.finish_execution(task.tx_version, FinishExecFlags.NONE)
```

## What this package does not do

The package does not execute transactions: it has no EVM, no multi-version
memory of the values transactions write, and no block runner that drives the
scheduler. It provides the chain state and the task coordination that such an
executor would use.