# kvs

This package is a small persistent key/value store for string keys and string
values.

The main engine, `KvStore`, works like this:

- It appends every write to a log file. Log files are named `1.log`, `2.log`
  and so on.
- It keeps an in-memory index that points at the latest record of each key.
- Once more than 1 MiB of stale records has built up, it rewrites the live
  records into a fresh log and deletes the old logs.

A TCP server makes an engine available over the network. A command-line
client talks to that server.

## Installing

    pip install .

For the tests:

    pip install ".[test]"
    pytest

## Running the server

    kvs-server --addr 127.0.0.1:4000 --engine kvs

The server keeps its data in the current directory.

- `--engine` picks the storage engine:
  - `kvs` is the log-structured store.
  - `sled` is an engine backed by an SQLite database file named `db`.
- Without `--engine`, the server uses the engine recorded in the directory's
  `engine` file. If that file does not exist, it uses `kvs`.
- The chosen engine name is written to the `engine` file on every start.
- If `--engine` names a different engine from the one recorded, the server
  logs `Wrong engine!` and exits with status 1.
- Without `--addr`, the server listens on `127.0.0.1:4000`.

Connections are served on a thread pool with one thread per CPU. Log messages
go to stderr at INFO level. The first messages give the version, the engine
and the address. `-V` prints the version.

## Using the client

    kvs-client set key1 value1
    kvs-client get key1
    kvs-client rm key1

Every subcommand accepts `--addr IP:PORT`, which defaults to `127.0.0.1:4000`.

- `get` prints the value, or `Key not found` if the key does not exist.
- `set` prints nothing on success.
- `rm` prints nothing on success.
- Any error reported by the server or the connection is printed to stderr, and
  the client exits with status 1. An example is `Key not found` from `rm` on a
  missing key.
- `-V` prints the version.

## Using it as a library

```python
from kvs.kv_store import KvStore

with KvStore.open("data") as store:
    store.set("key", "value")
    assert store.get("key") == "value"
    store.remove("key")
    assert store.get("key") is None
```

Using the store:

- A `KvStore` can be shared between threads. Reads run concurrently and
  writes are serialised.
- `compact()` forces a compaction.
- Removing a key that does not exist raises `kvs.errors.KeyNotFoundError`.
- Other failures raise `kvs.errors.KvsError`, which is the base class of
  every error the package reports.
- `kvs.engine.SledKvsEngine(path)` has the same `set`, `get`, `remove` and
  `close` methods. It stores its data in SQLite.

Talking to a running server:

```python
from kvs.client import KvsClient

with KvsClient.connect("127.0.0.1:4000") as client:
    client.set("key", "value")
    print(client.get("key"))
```

## Modules

- `kvs.server`
  - `KvsServer(engine, pool=None)` serves an engine over TCP. Requests and
    responses are JSON values written back to back.
  - `bind`, `serve_forever`, `run` and `shutdown` control it.
  - `handle_request` runs a single request against an engine.
- `kvs.client`: `KvsClient` is the matching blocking client.
- `kvs.protocol`: the request and response messages, a reader for
  back-to-back JSON values, and `parse_address` for `IP:PORT` strings.
- `kvs.thread_pool`: `NaiveThreadPool`, `SharedQueueThreadPool` and
  `ExecutorThreadPool`. A job that raises is logged, and the pool keeps
  running.
- `kvs.log_files`: the log records and log-file helpers used by `KvStore`.
- `kvs.async_engine`
  - `AsyncKvStore.open(path, concurrency, pool_class)` runs the store's
    operations on a thread pool as awaitable coroutines.
  - `AsyncSledKvsEngine.open(path, concurrency, pool_class)` does the same for
    the SQLite engine.
- `kvs.async_net`
  - `AsyncKvsServer` and `AsyncKvsClient` are an asyncio server and client.
  - They exchange JSON messages in frames prefixed by a 4-byte big-endian
    length.
  - This framed protocol is not compatible with `KvsServer` and `KvsClient`.

## Limits

The `kvs-server` and `kvs-client` commands use the blocking server and client
only. No command starts the asyncio server. To use it, call
`AsyncKvsServer.run` from your own program.