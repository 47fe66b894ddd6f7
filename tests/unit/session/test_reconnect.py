# tests/unit/session/test_reconnect.py
"""Tests for the keepalive-driven reconnection state machine.

Test Coverage:
- CONNECTED -> RECONNECTING on a bad keepalive
- Recovery on a good keepalive
- Reconnect with a new session (generation bump, schema refresh)
- Reconnect that resumes the session (generation kept)
- One attempt in flight; retries on later keepalives or liveness checks
- Giving up after reconnect_period: session_lost and DISCONNECTED
- Fail-fast and pass-through operations while reconnecting
"""

import asyncio

import pytest
from asyncua import ua

from uasession.errors import NoActiveSession, SessionLost
from uasession.protocols.services import CallMethodResult
from uasession.state.connection_state import ConnectionState

BAD = ua.StatusCodes.BadTimeout
GOOD = ua.StatusCodes.Good


def schema_browses(engine) -> int:
    return sum(
        1
        for name, args in engine.calls
        if name == "browse" and args[1][0].node_id == ua.NodeId(ua.ObjectIds.OPCBinarySchema_TypeSystem)
    )


async def bad_keepalive(manager) -> None:
    await manager.on_keepalive(manager.session.handle, BAD)


async def finish_attempt(manager) -> None:
    task = manager._reconnect_task
    if task is not None:
        await asyncio.gather(task, return_exceptions=True)


# ================================================================
# ENTERING RECONNECTING
# ================================================================
class TestBadKeepalive:
    """Test the first bad keepalive."""

    @pytest.mark.asyncio
    async def test_enters_reconnecting(self, connected_manager, engine):
        """Test a bad keepalive starts the reconnect cycle.

        WHY: The channel is suspect; callers must know.
        """
        engine.reconnect_mode = OSError("unreachable")
        changes = []
        connected_manager.connection_status_changed.add(lambda _, change: changes.append(change))

        await bad_keepalive(connected_manager)

        assert connected_manager.state == ConnectionState.RECONNECTING
        assert connected_manager.connected
        assert changes[-1].state == ConnectionState.RECONNECTING
        assert changes[-1].status_code == BAD
        await finish_attempt(connected_manager)
        assert engine.count("reconnect") == 1

    @pytest.mark.asyncio
    async def test_disconnected_for_reported(self, connected_manager, engine, clock):
        """Test the status snapshot shows the outage length.

        WHY: Operators judge how close the session is to being dropped.
        """
        engine.reconnect_mode = OSError("unreachable")
        await bad_keepalive(connected_manager)

        clock.advance(3)

        assert connected_manager.get_status()["disconnected_for"] == 3
        await finish_attempt(connected_manager)

    @pytest.mark.asyncio
    async def test_fail_fast_operations(self, connected_manager, engine):
        """Test reads and writes are refused while reconnecting.

        WHY: Their handles could belong to a session about to be replaced.
        """
        engine.reconnect_mode = OSError("unreachable")
        await bad_keepalive(connected_manager)
        await finish_attempt(connected_manager)

        with pytest.raises(NoActiveSession):
            await connected_manager.read_value("ns=2;s=A")
        with pytest.raises(NoActiveSession):
            await connected_manager.write_value("ns=2;s=A", 1)

    @pytest.mark.asyncio
    async def test_method_calls_pass_through(self, connected_manager, engine):
        """Test method calls are attempted while reconnecting.

        WHY: They hold no session-scoped handles.
        """
        engine.reconnect_mode = OSError("unreachable")
        engine.call_results = [CallMethodResult(output_arguments=[True])]
        await bad_keepalive(connected_manager)
        await finish_attempt(connected_manager)

        assert await connected_manager.call_method("ns=2;s=Pump", "ns=2;s=Pump.Start") == [True]


# ================================================================
# RECOVERY
# ================================================================
class TestRecovery:
    """Test leaving RECONNECTING."""

    @pytest.mark.asyncio
    async def test_good_keepalive_recovers(self, connected_manager, engine):
        """Test a good keepalive ends the cycle.

        WHY: The channel came back by itself; the session is intact.
        """
        engine.reconnect_mode = OSError("unreachable")
        established = []
        connected_manager.session_established.add(established.append)
        await bad_keepalive(connected_manager)
        await finish_attempt(connected_manager)

        await connected_manager.on_keepalive(connected_manager.session.handle, GOOD)

        assert connected_manager.state == ConnectionState.CONNECTED
        assert connected_manager.generation == 1
        assert established == [connected_manager]
        assert connected_manager._liveness_task is None
        assert connected_manager.get_status()["disconnected_for"] is None

    @pytest.mark.asyncio
    async def test_good_keepalive_cancels_attempt(self, connected_manager, engine):
        """Test an in-flight reconnect is abandoned on recovery.

        WHY: A late reconnect would replace a healthy session.
        """
        release = asyncio.Event()

        async def slow_reconnect(handle, timeout):
            await release.wait()
            return handle

        engine.reconnect = slow_reconnect
        await bad_keepalive(connected_manager)
        task = connected_manager._reconnect_task
        await asyncio.sleep(0)

        await connected_manager.on_keepalive(connected_manager.session.handle, GOOD)

        assert task.cancelled()
        assert connected_manager.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_new_session(self, connected_manager, engine):
        """Test a reconnect that had to create a new server session.

        WHY: Everything session-scoped must be rebuilt for the new generation.
        """
        established = []
        connected_manager.session_established.add(established.append)
        browses = schema_browses(engine)

        await bad_keepalive(connected_manager)
        await connected_manager._reconnect_task

        assert connected_manager.state == ConnectionState.CONNECTED
        assert connected_manager.generation == 2
        assert connected_manager.session.generation == 2
        assert connected_manager.session.handle.session_id == "session-2"
        assert established == [connected_manager]
        assert schema_browses(engine) == browses + 1
        assert connected_manager._liveness_task is None

    @pytest.mark.asyncio
    async def test_resumed_session(self, connected_manager, engine):
        """Test a reconnect that resumed the server session.

        WHY: Handles and subscriptions are still valid; nothing is rebuilt.
        """
        engine.reconnect_mode = "resume"
        browses = schema_browses(engine)

        await bad_keepalive(connected_manager)
        await connected_manager._reconnect_task

        assert connected_manager.state == ConnectionState.CONNECTED
        assert connected_manager.generation == 1
        assert connected_manager.session.handle.session_id == "session-1"
        assert schema_browses(engine) == browses


# ================================================================
# RETRIES
# ================================================================
class TestRetries:
    """Test repeated attempts within the reconnect period."""

    @pytest.mark.asyncio
    async def test_one_attempt_in_flight(self, connected_manager, engine):
        """Test further bad keepalives do not start parallel attempts.

        WHY: Parallel reconnects would race to replace the session.
        """
        release = asyncio.Event()
        attempts = []

        async def slow_reconnect(handle, timeout):
            attempts.append(handle.session_id)
            await release.wait()
            return handle

        engine.reconnect = slow_reconnect

        await bad_keepalive(connected_manager)
        await asyncio.sleep(0)
        await bad_keepalive(connected_manager)
        await asyncio.sleep(0)

        assert attempts == ["session-1"]
        release.set()
        await connected_manager._reconnect_task
        assert connected_manager.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_failed_attempt_retried_on_next_keepalive(self, connected_manager, engine, clock):
        """Test a failed attempt is retried by the next bad keepalive.

        WHY: The server may come back at any point of the period.
        """
        engine.reconnect_mode = OSError("unreachable")
        await bad_keepalive(connected_manager)
        await finish_attempt(connected_manager)

        engine.reconnect_mode = "new"
        clock.advance(5)
        await bad_keepalive(connected_manager)
        await connected_manager._reconnect_task

        assert engine.count("reconnect") == 2
        assert connected_manager.state == ConnectionState.CONNECTED
        assert connected_manager.generation == 2

    @pytest.mark.asyncio
    async def test_liveness_check_retries_without_keepalives(self, manager, engine, endpoint, clock):
        """Test attempts continue when keepalives stop arriving.

        WHY: A dead channel delivers no more keepalives to drive the cycle.
        """
        engine.keepalive_interval = 0.01
        engine.reconnect_mode = OSError("unreachable")
        await manager.connect(endpoint)
        try:
            await bad_keepalive(manager)
            clock.advance(1)

            for _ in range(50):
                await asyncio.sleep(0.01)
                if engine.count("reconnect") >= 2:
                    break

            assert engine.count("reconnect") >= 2
            assert manager.state == ConnectionState.RECONNECTING
        finally:
            await manager.disconnect()

        assert manager._liveness_task is None


# ================================================================
# GIVING UP
# ================================================================
class TestSessionLost:
    """Test abandoning the session after reconnect_period."""

    @pytest.mark.asyncio
    async def test_period_elapsed(self, connected_manager, engine, clock):
        """Test the session is dropped after the reconnect period.

        WHY: Callers must learn the session is gone and decide what to do.
        """
        engine.reconnect_mode = OSError("unreachable")
        lost = []
        cleared = []
        connected_manager.session_lost.add(lambda manager, error: lost.append(error))
        connected_manager.clear_node_entries.add(cleared.append)

        await bad_keepalive(connected_manager)
        await finish_attempt(connected_manager)
        clock.advance(31)
        await bad_keepalive(connected_manager)

        assert connected_manager.state == ConnectionState.DISCONNECTED
        assert connected_manager.session is None
        assert len(lost) == 1
        assert isinstance(lost[0], SessionLost)
        assert cleared == [connected_manager]
        assert engine.closed_sessions == ["session-1"]
        assert connected_manager._reconnect_task is None
        assert connected_manager._liveness_task is None

    @pytest.mark.asyncio
    async def test_keepalive_after_loss_ignored(self, connected_manager, engine, clock):
        """Test late keepalives of the dropped session.

        WHY: They must not restart a cycle for a session that is gone.
        """
        engine.reconnect_mode = OSError("unreachable")
        handle = connected_manager.session.handle
        await bad_keepalive(connected_manager)
        await finish_attempt(connected_manager)
        clock.advance(31)
        await bad_keepalive(connected_manager)

        await connected_manager.on_keepalive(handle, BAD)

        assert connected_manager.state == ConnectionState.DISCONNECTED
        assert engine.count("reconnect") == 1
