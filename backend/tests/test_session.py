"""
Tests for in-memory document sessions.
"""
import asyncio

import pytest

from app.realtime.operations import OperationError, TextOperation
from app.realtime.session import DocumentSession, SessionRegistry, StaleVersionError


def make_session(content="hello", version=0, history_limit=1000):
    return DocumentSession(document_id=1, title="Doc", content=content, version=version, history_limit=history_limit)


class TestDocumentSession:
    @pytest.mark.anyio
    async def test_apply_bumps_version(self):
        session = make_session()
        applied = await session.apply(0, TextOperation.from_splice(5, 5, 0, "!"), user_id=1)

        assert applied.version == 1
        assert session.content == "hello!"
        assert session.version == 1
        assert session.dirty is True
        assert session.ops_since_snapshot == 1

    @pytest.mark.anyio
    async def test_concurrent_edits_from_same_base_converge(self):
        session = make_session("abc")
        await session.apply(0, TextOperation.from_splice(3, 0, 0, "X"), user_id=1)
        applied = await session.apply(0, TextOperation.from_splice(3, 3, 0, "Y"), user_id=2)

        assert session.content == "XabcY"
        assert applied.version == 2
        # The second operation was rebased over the first
        assert applied.operation.base_length == 4

    @pytest.mark.anyio
    async def test_broadcast_turns_run_in_version_order(self):
        session = make_session(version=3)
        sent = []

        async def send(version, delay=0):
            async with session.broadcast_turn(version):
                await asyncio.sleep(delay)
                sent.append(version)

        await asyncio.gather(send(6), send(5, delay=0.02), send(4, delay=0.05))

        assert sent == [4, 5, 6]
        assert session.broadcast_version == 6

    @pytest.mark.anyio
    async def test_splice_against_old_base(self):
        session = make_session("hello world")
        await session.apply_splice(0, 0, 0, "Oh, ", user_id=1)
        await session.apply_splice(0, 6, 5, "there", user_id=2)

        assert session.content == "Oh, hello there"

    @pytest.mark.anyio
    async def test_future_version_is_stale(self):
        session = make_session()
        with pytest.raises(StaleVersionError):
            await session.apply(3, TextOperation().retain(5), user_id=1)

    @pytest.mark.anyio
    async def test_version_outside_history_is_stale(self):
        session = make_session("", history_limit=2)
        for i in range(3):
            await session.apply_splice(session.version, 0, 0, str(i), user_id=1)

        assert session.oldest_version == 1
        with pytest.raises(StaleVersionError):
            await session.apply_splice(0, 0, 0, "x", user_id=1)

    @pytest.mark.anyio
    async def test_operation_for_wrong_length_is_rejected(self):
        session = make_session("hello")
        with pytest.raises(OperationError):
            await session.apply(0, TextOperation().retain(3).insert("x"), user_id=1)
        assert session.version == 0
        assert session.content == "hello"

    @pytest.mark.anyio
    async def test_replace_whole_content(self):
        session = make_session("hello")
        applied = await session.replace("help", user_id=1)
        assert session.content == "help"
        assert applied.version == 1

        assert await session.replace("help", user_id=1) is None
        assert session.version == 1

    @pytest.mark.anyio
    async def test_snapshot_is_consistent(self):
        session = make_session("abc", version=7)
        snapshot = await session.snapshot()
        assert snapshot == {"document_id": 1, "title": "Doc", "content": "abc", "version": 7}


class TestSessionRegistry:
    @pytest.mark.anyio
    async def test_concurrent_loads_share_one_session(self):
        registry = SessionRegistry()
        calls = []

        async def loader(document_id):
            calls.append(document_id)
            await asyncio.sleep(0.01)
            return make_session()

        first, second = await asyncio.gather(
            registry.get_or_load(1, loader),
            registry.get_or_load(1, loader),
        )

        assert first is second
        assert calls == [1]
        assert 1 in registry
        assert len(registry) == 1

    @pytest.mark.anyio
    async def test_failed_load_is_not_cached(self):
        registry = SessionRegistry()

        async def failing(document_id):
            raise LookupError("gone")

        with pytest.raises(LookupError):
            await registry.get_or_load(1, failing)
        assert registry.get(1) is None

        async def loader(document_id):
            return make_session()

        assert await registry.get_or_load(1, loader) is registry.get(1)

    @pytest.mark.anyio
    async def test_evict(self):
        registry = SessionRegistry()

        async def loader(document_id):
            return make_session()

        session = await registry.get_or_load(1, loader)
        assert registry.evict(1) is session
        assert registry.get(1) is None
        assert registry.evict(1) is None
