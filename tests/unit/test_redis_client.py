import typing
from unittest.mock import AsyncMock

import pytest

from mail_indexer.services.redis_client import FastRedisClient, RedisClientError


@pytest.fixture
def client():
    redis_client = FastRedisClient(url="redis://unused", key_prefix="test")
    redis_client.client = AsyncMock()
    redis_client._initialized = True
    return redis_client


def test_key_is_namespaced(client):
    assert client.key("grant", "g1", "checkpoint") == "test:grant:g1:checkpoint"


@pytest.mark.asyncio
async def test_get_returns_none_for_missing_key(client):
    client.client.get.return_value = None

    assert await client.get("test:missing") is None


@pytest.mark.asyncio
async def test_command_failure_raises(client):
    client.client.get.side_effect = ConnectionError("connection reset")

    with pytest.raises(RedisClientError) as exc_info:
        await client.get("test:key")

    assert exc_info.value.operation == "get"


@pytest.mark.asyncio
async def test_set_if_absent_uses_nx_with_expiry(client):
    client.client.set.return_value = None

    assert await client.set_if_absent("test:lease", "env-1", 60) is False
    client.client.set.assert_awaited_once_with("test:lease", "env-1", nx=True, ex=60)


@pytest.mark.asyncio
async def test_push_to_list_direction(client):
    client.client.rpush.return_value = 3
    client.client.lpush.return_value = 1

    assert await client.push_to_list("test:list", "a") == 3
    assert await client.push_to_list("test:list", "b", left=True) == 1


@pytest.mark.asyncio
async def test_move_between_sorted_sets_reports_lost_race(client):
    client.client.eval.return_value = 0

    moved = await client.move_between_sorted_sets("test:src", "test:dst", "member", 10.0)

    assert moved is False
    args = client.client.eval.await_args.args
    assert args[1:] == (2, "test:src", "test:dst", "member", 10.0)


@pytest.mark.asyncio
async def test_sorted_set_due_is_bounded(client):
    client.client.zrangebyscore.return_value = ["a", "b"]

    assert await client.sorted_set_due("test:z", 100.0, limit=2) == ["a", "b"]
    client.client.zrangebyscore.assert_awaited_once_with("test:z", "-inf", 100.0, start=0, num=2)


def test_set_members_annotation_is_the_builtin_set():
    hints = typing.get_type_hints(FastRedisClient.set_members)

    assert hints["return"] == set[str]


@pytest.mark.asyncio
async def test_conditional_lease_operations_use_scripts(client):
    client.client.eval.side_effect = [1, 0]

    assert await client.expire_if_value("test:lease", "token-1", 60) is True
    assert await client.delete_if_value("test:lease", "token-2") is False
    assert client.client.eval.await_args_list[0].args[2:] == ("test:lease", "token-1", 60)


@pytest.mark.asyncio
async def test_sorted_set_update_only_touches_existing_members(client):
    client.client.zscore.return_value = None

    assert await client.sorted_set_update("test:inflight", "member", 42.0) is False
    client.client.zadd.assert_awaited_once_with("test:inflight", {"member": 42.0}, xx=True)
