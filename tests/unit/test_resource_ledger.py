import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from session_orchestrator.domain.models.chat_state import RESOURCE_CHAIN, ResourceName
from session_orchestrator.domain.models.errors import PreconditionError
from session_orchestrator.domain.resources.lock_table import LockTable
from session_orchestrator.domain.resources.resource_ledger import ResourceLedger

LLAMA = ResourceName.LLAMA
MODEL = ResourceName.MODEL
CONTEXT = ResourceName.CONTEXT
CHAT_SESSION = ResourceName.CHAT_SESSION


def make_handle(name, order, fail=False):
    handle = MagicMock()

    async def dispose():
        order.append(name)
        if fail:
            raise RuntimeError(f"cannot dispose {name}")

    handle.dispose = dispose
    return handle


async def load_chain(ledger, order, failing=()):
    handles = {}
    for name in RESOURCE_CHAIN:
        handle = make_handle(name.value, order, fail=name.value in failing)
        handles[name] = handle
        assert await ledger.transition(name, AsyncMock(return_value=handle))
    return handles


class TestLockTable:
    async def test_hold_takes_every_named_lock(self):
        table = LockTable()

        async with table.hold(CHAT_SESSION, LLAMA):
            assert table.locked(LLAMA)
            assert table.locked(CHAT_SESSION)
            assert not table.locked(MODEL)

        assert not table.locked(LLAMA)
        assert not table.locked(CHAT_SESSION)

    async def test_duplicate_names_are_taken_once(self):
        table = LockTable()

        async with table.hold(MODEL, MODEL):
            assert table.locked(MODEL)

    async def test_opposite_request_orders_do_not_deadlock(self):
        table = LockTable()

        async def worker(names):
            for _ in range(20):
                async with table.hold(*names):
                    await asyncio.sleep(0)

        await asyncio.wait_for(
            asyncio.gather(worker([MODEL, CHAT_SESSION]), worker([CHAT_SESSION, MODEL])),
            timeout=5
        )


class TestResourceLedger:
    async def test_transition_requires_predecessor(self):
        ledger = ResourceLedger()

        with pytest.raises(PreconditionError):
            await ledger.transition(MODEL, AsyncMock(return_value=MagicMock()))

        assert ledger.state(MODEL).loaded is False

    async def test_successful_transition_marks_loaded(self):
        ledger = ResourceLedger()
        handle = make_handle("llama", [])

        assert await ledger.transition(LLAMA, AsyncMock(return_value=handle))

        assert ledger.is_loaded(LLAMA)
        assert ledger.handle(LLAMA) is handle
        assert ledger.state(LLAMA).error is None

    async def test_failure_is_recorded_not_raised(self):
        ledger = ResourceLedger()

        loaded = await ledger.transition(LLAMA, AsyncMock(side_effect=RuntimeError("no backend")))

        assert loaded is False
        assert ledger.state(LLAMA).loaded is False
        assert ledger.state(LLAMA).error == "no backend"
        assert ledger.handle(LLAMA) is None

    async def test_retry_clears_previous_error(self):
        ledger = ResourceLedger()
        await ledger.transition(LLAMA, AsyncMock(side_effect=RuntimeError("no backend")))

        assert await ledger.transition(LLAMA, AsyncMock(return_value=make_handle("llama", [])))

        assert ledger.state(LLAMA).error is None

    async def test_on_loaded_fields_are_applied(self):
        ledger = ResourceLedger()
        await ledger.transition(LLAMA, AsyncMock(return_value=make_handle("llama", [])))

        await ledger.transition(
            MODEL,
            AsyncMock(return_value=make_handle("model", [])),
            on_loaded=lambda handle: {"name": "tiny.gguf", "load_progress": 1.0}
        )

        assert ledger.state(MODEL).name == "tiny.gguf"
        assert ledger.state(MODEL).load_progress == 1.0

    async def test_reset_fields_may_include_a_name(self):
        ledger = ResourceLedger()
        await ledger.transition(LLAMA, AsyncMock(return_value=make_handle("llama", [])))

        loaded = await ledger.transition(
            MODEL,
            AsyncMock(return_value=make_handle("model", [])),
            reset_fields={"load_progress": 0.0, "name": None},
            on_loaded=lambda handle: {"name": "tiny.gguf"}
        )

        assert loaded is True
        assert ledger.state(MODEL).name == "tiny.gguf"

    async def test_set_and_update_accept_a_name_field(self):
        ledger = ResourceLedger()

        ledger.set(MODEL, name="first.gguf")
        await ledger.update(MODEL, name="second.gguf", load_progress=0.5)

        assert ledger.state(MODEL).name == "second.gguf"
        assert ledger.state(MODEL).load_progress == 0.5

    async def test_dispose_cascades_deepest_first(self):
        ledger = ResourceLedger()
        order = []
        await load_chain(ledger, order)

        await ledger.dispose(MODEL)

        assert order == ["chatSession", "contextSequence", "context", "model"]
        assert ledger.is_loaded(LLAMA)
        assert not any(ledger.is_loaded(name) for name in RESOURCE_CHAIN[1:])

    async def test_dispose_failure_does_not_stop_the_cascade(self):
        ledger = ResourceLedger()
        order = []
        await load_chain(ledger, order, failing={"context"})

        await ledger.dispose(MODEL)

        assert order == ["chatSession", "contextSequence", "context", "model"]
        assert ledger.state(CONTEXT).loaded is False
        assert ledger.handle(CONTEXT) is None

    async def test_reloading_replaces_dependents(self):
        ledger = ResourceLedger()
        order = []
        await load_chain(ledger, order)

        assert await ledger.transition(MODEL, AsyncMock(return_value=make_handle("model-2", order)))

        assert order == ["chatSession", "contextSequence", "context", "model"]
        assert ledger.is_loaded(MODEL)
        assert not ledger.is_loaded(CONTEXT)

    async def test_listeners_are_notified(self):
        on_change = AsyncMock()
        ledger = ResourceLedger(on_change=on_change)

        await ledger.transition(LLAMA, AsyncMock(return_value=make_handle("llama", [])))

        assert on_change.await_count >= 2

    async def test_require_loaded(self):
        ledger = ResourceLedger()

        with pytest.raises(PreconditionError) as exc_info:
            ledger.require_loaded(CHAT_SESSION)

        assert exc_info.value.resource == "chatSession"

    def test_chain_neighbours(self):
        assert ResourceLedger.predecessor(LLAMA) is None
        assert ResourceLedger.predecessor(CONTEXT) == MODEL
        assert ResourceLedger.dependents(CONTEXT) == RESOURCE_CHAIN[3:]
