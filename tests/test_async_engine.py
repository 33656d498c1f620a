import asyncio
import os

import pytest

from kvs.async_engine import AsyncKvsEngine, AsyncKvStore, AsyncSledKvsEngine
from kvs.errors import KeyNotFoundError, KvsError
from kvs.kv_store import KvStore
from kvs.thread_pool import ExecutorThreadPool, NaiveThreadPool, SharedQueueThreadPool


def _dir_size(path):
    return sum(
        os.path.getsize(os.path.join(root, name))
        for root, _dirs, files in os.walk(path)
        for name in files
    )


@pytest.mark.asyncio
async def test_get_stored_value(tmp_path):
    store = AsyncKvStore.open(tmp_path, 1, ExecutorThreadPool)
    await store.set("key1", "value1")
    await store.set("key2", "value2")
    assert await store.get("key1") == "value1"
    assert await store.get("key2") == "value2"
    store.close()

    store = AsyncKvStore.open(tmp_path, 1, ExecutorThreadPool)
    assert await store.get("key1") == "value1"
    assert await store.get("key2") == "value2"
    store.close()


@pytest.mark.asyncio
async def test_overwrite_value(tmp_path):
    store = AsyncKvStore.open(tmp_path, 1, ExecutorThreadPool)
    await store.set("key1", "value1")
    assert await store.get("key1") == "value1"
    await store.set("key1", "value2")
    assert await store.get("key1") == "value2"
    store.close()

    store = AsyncKvStore.open(tmp_path, 1, ExecutorThreadPool)
    assert await store.get("key1") == "value2"
    await store.set("key1", "value3")
    assert await store.get("key1") == "value3"
    store.close()


@pytest.mark.asyncio
async def test_get_non_existent_value(tmp_path):
    store = AsyncKvStore.open(tmp_path, 1, ExecutorThreadPool)
    await store.set("key1", "value1")
    assert await store.get("key2") is None
    store.close()

    store = AsyncKvStore.open(tmp_path, 1, ExecutorThreadPool)
    assert await store.get("key2") is None
    store.close()


@pytest.mark.asyncio
async def test_remove_non_existent_key(tmp_path):
    async with AsyncKvStore.open(tmp_path, 1, ExecutorThreadPool) as store:
        with pytest.raises(KeyNotFoundError):
            await store.remove("key1")


@pytest.mark.asyncio
async def test_remove_key(tmp_path):
    async with AsyncKvStore.open(tmp_path, 1, ExecutorThreadPool) as store:
        await store.set("key1", "value1")
        await store.remove("key1")
        assert await store.get("key1") is None


@pytest.mark.asyncio
async def test_compaction(tmp_path):
    store = AsyncKvStore.open(tmp_path, 1, ExecutorThreadPool)
    current_size = _dir_size(tmp_path)
    for iteration in range(1000):
        await asyncio.gather(
            *(store.set(f"key{key_id}", str(iteration)) for key_id in range(1000))
        )
        new_size = _dir_size(tmp_path)
        if new_size > current_size:
            current_size = new_size
            continue
        store.close()
        store = AsyncKvStore.open(tmp_path, 1, ExecutorThreadPool)
        values = await asyncio.gather(*(store.get(f"key{key_id}") for key_id in range(1000)))
        store.close()
        assert values == [str(iteration)] * 1000
        break
    else:
        store.close()
        pytest.fail("No compaction detected")


@pytest.mark.asyncio
async def test_concurrent_set(tmp_path):
    store = AsyncKvStore.open(tmp_path, 8, ExecutorThreadPool)
    await asyncio.gather(*(store.set(f"key{i}", f"value{i}") for i in range(10000)))
    store.close()

    store = AsyncKvStore.open(tmp_path, 1, ExecutorThreadPool)
    for i in range(10000):
        assert await store.get(f"key{i}") == f"value{i}"
    store.close()


async def _check_concurrent_gets(store):
    expected = []
    calls = []
    for thread_id in range(100):
        for i in range(100):
            key_id = (i + thread_id) % 100
            expected.append(f"value{key_id}")
            calls.append(store.get(f"key{key_id}"))
    assert await asyncio.gather(*calls) == expected


@pytest.mark.asyncio
async def test_concurrent_get(tmp_path):
    store = AsyncKvStore.open(tmp_path, 8, ExecutorThreadPool)
    for i in range(100):
        await store.set(f"key{i}", f"value{i}")
    await _check_concurrent_gets(store)
    store.close()

    store = AsyncKvStore.open(tmp_path, 8, ExecutorThreadPool)
    await _check_concurrent_gets(store)
    store.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "pool_class", [NaiveThreadPool, SharedQueueThreadPool, ExecutorThreadPool]
)
async def test_store_with_each_pool(tmp_path, pool_class):
    async with AsyncKvStore.open(tmp_path, 4, pool_class) as store:
        await asyncio.gather(*(store.set(f"k{i}", f"v{i}") for i in range(50)))
        values = await asyncio.gather(*(store.get(f"k{i}") for i in range(50)))
        assert values == [f"v{i}" for i in range(50)]


@pytest.mark.asyncio
async def test_sled_engine_round_trip(tmp_path):
    engine = AsyncSledKvsEngine.open(tmp_path, 2, SharedQueueThreadPool)
    await engine.set("key1", "value1")
    await engine.set("key1", "value2")
    await engine.set("key2", "value3")
    assert await engine.get("key1") == "value2"
    await engine.remove("key1")
    assert await engine.get("key1") is None
    with pytest.raises(KeyNotFoundError):
        await engine.remove("key1")
    engine.close()

    engine = AsyncSledKvsEngine.open(tmp_path, 2, SharedQueueThreadPool)
    assert await engine.get("key2") == "value3"
    assert await engine.get("key1") is None
    engine.close()


@pytest.mark.asyncio
async def test_default_pool_and_concurrency(tmp_path):
    async with AsyncKvStore.open(tmp_path) as store:
        await store.set("a", "b")
        assert await store.get("a") == "b"


@pytest.mark.asyncio
async def test_engine_error_is_raised_to_caller(tmp_path):
    engine = KvStore.open(tmp_path)
    pool = ExecutorThreadPool(2)
    wrapped = AsyncKvsEngine(engine, pool)
    engine.close()
    with pytest.raises(KvsError, match="closed"):
        await wrapped.get("key")
    pool.shutdown()


@pytest.mark.asyncio
@pytest.mark.parametrize("pool_class", [SharedQueueThreadPool, ExecutorThreadPool])
async def test_operation_after_close_raises(tmp_path, pool_class):
    store = AsyncKvStore.open(tmp_path, 2, pool_class)
    store.close()
    with pytest.raises(KvsError):
        await store.set("key", "value")