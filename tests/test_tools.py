"""
Tool executor tests: at-most-once execution and errors as results.
"""
import asyncio
import threading
from types import SimpleNamespace

import pytest

from orchestrator.agents import Agent, ToolSpec
from orchestrator.tool_backends import backend_for
from orchestrator.tools import ToolBackend, ToolExecutor
from orchestrator.transcript import ToolCall


AGENT = Agent(
    name="returns",
    instructions="Handle returns.",
    tools=(ToolSpec("lookupOrders"), ToolSpec("slowLookup"), ToolSpec("broken"), ToolSpec("remoteOnly")),
)
SESSION = SimpleNamespace(session_id="sess_tools")


def _executor(backend, **kwargs):
    kwargs.setdefault("timeout_seconds", 0.2)
    return ToolExecutor(backend, session_id="sess_tools", **kwargs)


class TestAtMostOnce:

    @pytest.mark.asyncio
    async def test_replay_returns_cached_result(self):
        calls = []
        backend = ToolBackend({"lookupOrders": lambda args, ctx: calls.append(args) or {"orders": len(calls)}})
        executor = _executor(backend)

        first = await executor.execute(ToolCall("call_1", "lookupOrders", {"phone": "1"}), AGENT, SESSION)
        replay = await executor.execute(ToolCall("call_1", "lookupOrders", {"phone": "1"}), AGENT, SESSION)

        assert first == replay == {"orders": 1}
        assert len(calls) == 1
        assert executor.get("call_1").resolved_once
        assert executor.get("call_1").resolved_locally

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_shares_execution(self):
        gate = asyncio.Event()
        runs = []

        async def slow_lookup(args, ctx):
            runs.append(ctx.call_id)
            await gate.wait()
            return {"ok": True}

        executor = _executor(ToolBackend({"slowLookup": slow_lookup}), timeout_seconds=1.0)
        first = asyncio.create_task(executor.execute(ToolCall("call_1", "slowLookup"), AGENT, SESSION))
        second = asyncio.create_task(executor.execute(ToolCall("call_1", "slowLookup"), AGENT, SESSION))
        await asyncio.sleep(0.01)
        gate.set()

        assert await first == await second == {"ok": True}
        assert runs == ["call_1"]

    @pytest.mark.asyncio
    async def test_register_reports_duplicates(self):
        executor = _executor(ToolBackend())

        assert executor.register(ToolCall("call_1", "lookupOrders"))
        assert not executor.register(ToolCall("call_1", "lookupOrders"))

    @pytest.mark.asyncio
    async def test_cancellation_leaves_call_unresolved(self):
        async def slow_lookup(args, ctx):
            await asyncio.sleep(10)

        executor = _executor(ToolBackend({"slowLookup": slow_lookup}), timeout_seconds=20.0)
        task = asyncio.create_task(executor.execute(ToolCall("call_1", "slowLookup"), AGENT, SESSION))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert not executor.get("call_1").resolved_once


class TestErrorsAsResults:

    @pytest.mark.asyncio
    async def test_handler_exception(self):
        def broken(args, ctx):
            raise KeyError("order")

        executor = _executor(ToolBackend({"broken": broken}))
        result = await executor.execute(ToolCall("call_1", "broken"), AGENT, SESSION)

        assert result["error"]["type"] == "ToolExecutionError"
        assert result["error"]["tool_name"] == "broken"
        assert "KeyError" in result["error"]["message"]
        call = executor.get("call_1")
        assert call.resolved_once
        assert call.error is not None

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow_lookup(args, ctx):
            await asyncio.sleep(1)

        executor = _executor(ToolBackend({"slowLookup": slow_lookup}), timeout_seconds=0.05)
        result = await executor.execute(ToolCall("call_1", "slowLookup"), AGENT, SESSION)

        assert "timed out" in result["error"]["message"]

    @pytest.mark.asyncio
    async def test_per_tool_timeout_overrides_default(self):
        async def slow_lookup(args, ctx):
            await asyncio.sleep(0.1)
            return "done"

        backend = ToolBackend()
        backend.register("slowLookup", slow_lookup, timeout_seconds=1.0)
        executor = _executor(backend, timeout_seconds=0.01)

        assert await executor.execute(ToolCall("call_1", "slowLookup"), AGENT, SESSION) == "done"

    @pytest.mark.asyncio
    async def test_blocking_handler_times_out_without_stalling_loop(self):
        release = threading.Event()

        def blocking_lookup(args, ctx):
            release.wait(2.0)
            return "late"

        ticks = []

        async def ticker():
            while True:
                ticks.append(1)
                await asyncio.sleep(0.005)

        executor = _executor(ToolBackend({"slowLookup": blocking_lookup}), timeout_seconds=0.1)
        background = asyncio.create_task(ticker())
        try:
            result = await executor.execute(ToolCall("call_1", "slowLookup"), AGENT, SESSION)
        finally:
            release.set()
            background.cancel()

        assert "timed out" in result["error"]["message"]
        assert len(ticks) > 3

    @pytest.mark.asyncio
    async def test_undeclared_tool(self):
        executor = _executor(ToolBackend({"notDeclared": lambda args, ctx: "x"}))
        result = await executor.execute(ToolCall("call_1", "notDeclared"), AGENT, SESSION)

        assert "no local handler" in result["error"]["message"]

    @pytest.mark.asyncio
    async def test_depth_limit(self):
        executor = _executor(ToolBackend({"lookupOrders": lambda args, ctx: "x"}), max_depth=2)

        assert await executor.execute(ToolCall("call_1", "lookupOrders"), AGENT, SESSION, depth=2) == "x"
        result = await executor.execute(ToolCall("call_2", "lookupOrders"), AGENT, SESSION, depth=3)
        assert "depth" in result["error"]["message"]


class TestBackend:

    def test_decorator_registration(self):
        backend = ToolBackend()

        @backend.register("lookupOrders", timeout_seconds=3.0)
        async def lookup_orders(args, ctx):
            return {}

        assert "lookupOrders" in backend
        assert backend.registration_for("lookupOrders").timeout_seconds == 3.0
        assert backend.names() == ["lookupOrders"]

    def test_local_vs_remote(self):
        executor = _executor(ToolBackend({"lookupOrders": lambda args, ctx: None}))

        assert executor.has_local_handler(AGENT, "lookupOrders")
        assert not executor.has_local_handler(AGENT, "remoteOnly")

        call = executor.record_remote(ToolCall("call_1", "remoteOnly"))
        assert call.resolved_once
        assert not call.resolved_locally
        assert call.result is None

    @pytest.mark.asyncio
    async def test_nested_call_ids(self):
        seen = []
        executor = _executor(ToolBackend({"lookupOrders": lambda args, ctx: seen.append((ctx.call_id, ctx.depth))}))

        await executor.execute_nested(
            "lookupOrders", {}, agent=AGENT, session=SESSION,
            parent_call_id="call_1", sub_call_id="1:tc_a", depth=1,
        )

        assert seen == [("call_1/1:tc_a", 1)]
        assert executor.get("call_1/1:tc_a").resolved_once


class TestShippedHandlers:

    @pytest.mark.asyncio
    async def test_retail_lookup_and_return(self):
        agent = Agent(
            name="returns",
            instructions="",
            tools=(ToolSpec("lookupOrders"), ToolSpec("initiateReturn")),
        )
        executor = _executor(backend_for("customer_service_retail"))

        orders = await executor.execute(
            ToolCall("call_1", "lookupOrders", {"phoneNumber": "(206) 135-1246"}), agent, SESSION
        )
        order_id = orders["orders"][0]["order_id"]
        ok = await executor.execute(
            ToolCall("call_2", "initiateReturn", {"orderId": order_id, "itemName": "Twin Tip Snowboard X"}),
            agent, SESSION,
        )
        bad = await executor.execute(
            ToolCall("call_3", "initiateReturn", {"orderId": "nope", "itemName": "x"}), agent, SESSION
        )

        assert ok["success"] is True
        assert "unknown order" in bad["error"]["message"]

    def test_unknown_set_has_no_handlers(self):
        assert backend_for("simple_handoff").names() == []
