"""Tests for the session supervisor state machine."""

import asyncio
import random

import pytest

from autotunnel.common.exceptions import ConfigError, TransportFailure
from autotunnel.supervisor import SessionSupervisor
from autotunnel.supervisor.models import (
    ErrorClass,
    SessionState,
    TriggerKind,
    TriggerReason,
)
from autotunnel.trust import PresentedKey

K1 = PresentedKey(key_type="ssh-ed25519", key_material="AAAAKey1")
K2 = PresentedKey(key_type="ssh-ed25519", key_material="AAAAKey2")


def supervisor_for(context, transport) -> SessionSupervisor:
    return SessionSupervisor(context, transport, rng=random.Random(0))


def is_running(sup: SessionSupervisor) -> bool:
    return sup.state == SessionState.RUNNING


def is_stopped(sup: SessionSupervisor) -> bool:
    return sup.state == SessionState.STOPPED


class TestStartAndStop:
    """Test manual start and stop."""

    @pytest.mark.asyncio
    async def test_start_reaches_running(self, context, wait_until, fake_transport):
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))

            metrics = sup.metrics
            assert metrics.state == SessionState.RUNNING
            assert metrics.start_attempts == 1
            assert metrics.start_successes == 1
            assert metrics.uptime_start is not None
            assert metrics.last_success is not None
            assert sup.attempt == 0
            remote, forwards = transport.calls[0]
            assert remote.host == "example.com"
            assert [str(f) for f in forwards] == list(context.settings.local_forwards)

    @pytest.mark.asyncio
    async def test_second_start_is_ignored(self, context, wait_until, fake_transport):
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))
            sup.start()
            await asyncio.sleep(0.05)
            assert len(transport.calls) == 1
            assert sup.metrics.start_attempts == 1

    @pytest.mark.asyncio
    async def test_stop_closes_session(self, context, wait_until, fake_transport):
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))
            sup.stop()
            await wait_until(lambda: is_stopped(sup))

            assert transport.sessions[0].closed
            assert sup.metrics.exit_successes == 1
            assert sup.metrics.state == SessionState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_when_stopped_counts_nothing(self, context, fake_transport):
        async with supervisor_for(context, fake_transport()) as sup:
            sup.stop()
            await asyncio.sleep(0.05)
            assert sup.metrics.exit_successes == 0

    @pytest.mark.asyncio
    async def test_stop_cancels_inflight_attempt(
        self, context, wait_until, fake_transport
    ):
        transport = fake_transport([fake_transport.HANG])
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: len(transport.calls) == 1)
            assert sup.state == SessionState.CONNECTING
            sup.stop()
            await wait_until(lambda: is_stopped(sup))
            await asyncio.sleep(0.05)
            assert transport.sessions == []
            assert sup.metrics.exit_successes == 1

    @pytest.mark.asyncio
    async def test_shutdown_stops_running_session(
        self, context, wait_until, fake_transport
    ):
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))
        assert sup.state == SessionState.STOPPED
        assert transport.sessions[0].closed


class TestFailuresAndRetry:
    """Test backoff retries after failures."""

    @pytest.mark.asyncio
    async def test_failed_attempt_is_retried(self, context, wait_until, fake_transport):
        transport = fake_transport([TransportFailure("Connection refused")])
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))

            metrics = sup.metrics
            assert metrics.start_attempts == 2
            assert metrics.start_failures == 1
            assert metrics.start_successes == 1
            assert metrics.last_error_class == ErrorClass.REFUSED
            assert metrics.last_exit_reason == "Connection refused"
            assert sup.attempt == 0

    @pytest.mark.asyncio
    async def test_attempt_counter_grows_with_failures(
        self, make_settings, make_context, wait_until, fake_transport
    ):
        context = make_context(make_settings(min_delay_ms=10, max_delay_ms=1000))
        transport = fake_transport(
            [TransportFailure("timeout"), TransportFailure("timeout"), fake_transport.HANG]
        )
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: len(transport.calls) == 3)
            assert sup.attempt == 2
            assert sup.metrics.start_failures == 2
            assert sup.metrics.current_backoff is None
            sup.stop()

    @pytest.mark.asyncio
    async def test_failure_is_logged_before_retry(
        self, context, wait_until, fake_transport
    ):
        transport = fake_transport([TransportFailure("Connection timed out")])
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))

        messages = [line.message for line in context.event_log.recent]
        failure = next(i for i, m in enumerate(messages) if m.startswith("Connection failed"))
        running = next(i for i, m in enumerate(messages) if m.startswith("Tunnel running"))
        assert failure < running
        assert "error_class=timeout" in messages[failure]

    @pytest.mark.asyncio
    async def test_unexpected_error_is_retried(
        self, context, wait_until, fake_transport
    ):
        transport = fake_transport([RuntimeError("boom")])
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))
            assert sup.metrics.start_failures == 1
            assert sup.metrics.last_error_class == ErrorClass.UNKNOWN

    @pytest.mark.asyncio
    async def test_unexpected_error_without_message_uses_type_name(
        self, context, wait_until, fake_transport
    ):
        transport = fake_transport([TimeoutError()])
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))
            assert sup.metrics.last_error_class == ErrorClass.TIMEOUT
            assert sup.metrics.last_exit_reason == "TimeoutError"

    @pytest.mark.asyncio
    async def test_first_start_failure_waits_second_step(
        self, make_settings, make_context, wait_until, fake_transport
    ):
        context = make_context(make_settings(min_delay_ms=200, max_delay_ms=1000))
        transport = fake_transport(
            [TransportFailure("Connection refused"), fake_transport.HANG]
        )
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: sup.retry_pending)
            assert sup.attempt == 1
            assert sup.metrics.current_backoff == pytest.approx(0.4)
            sup.stop()

    @pytest.mark.asyncio
    async def test_restart_keeps_failure_count(
        self, make_settings, make_context, wait_until, fake_transport
    ):
        context = make_context(make_settings(min_delay_ms=1000, max_delay_ms=8000))
        transport = fake_transport(
            [TransportFailure("Connection refused"), TransportFailure("Connection refused")]
        )
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: sup.retry_pending)
            assert sup.attempt == 1

            sup.stop()
            await wait_until(lambda: is_stopped(sup))
            sup.start()
            await wait_until(lambda: sup.metrics.start_failures == 2)

            assert sup.attempt == 2
            assert sup.metrics.current_backoff == pytest.approx(4.0)
            sup.stop()

    @pytest.mark.asyncio
    async def test_stop_during_backoff_cancels_retry(
        self, make_settings, make_context, wait_until, fake_transport
    ):
        context = make_context(make_settings(min_delay_ms=5000, max_delay_ms=5000))
        transport = fake_transport([TransportFailure("Connection refused")])
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: sup.retry_pending)
            assert sup.state == SessionState.CONNECTING
            assert sup.metrics.current_backoff == pytest.approx(5.0)

            sup.stop()
            await wait_until(lambda: is_stopped(sup))
            assert not sup.retry_pending
            assert sup.metrics.current_backoff is None
            await asyncio.sleep(0.05)
            assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_wake_trigger_cuts_backoff_short(
        self, make_settings, make_context, wait_until, fake_transport
    ):
        context = make_context(make_settings(min_delay_ms=5000, max_delay_ms=5000))
        transport = fake_transport([TransportFailure("Network is unreachable")])
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: sup.retry_pending)

            sup.post(TriggerReason(kind=TriggerKind.NETWORK_AVAILABLE))
            await wait_until(lambda: is_running(sup), timeout=1.0)
            assert len(transport.calls) == 2
            assert sup.metrics.last_trigger == "network_available"

    @pytest.mark.asyncio
    async def test_periodic_refresh_ignored_while_connecting(
        self, make_settings, make_context, wait_until, fake_transport
    ):
        context = make_context(make_settings(min_delay_ms=5000, max_delay_ms=5000))
        transport = fake_transport([TransportFailure("Connection refused")])
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: sup.retry_pending)
            sup.post(TriggerReason(kind=TriggerKind.PERIODIC_REFRESH))
            await asyncio.sleep(0.05)
            assert len(transport.calls) == 1
            assert sup.retry_pending
            sup.stop()


class TestRunningTransitions:
    """Test transitions out of the running state."""

    @pytest.mark.asyncio
    async def test_connection_failed_then_recovered(
        self, make_settings, make_context, wait_until, fake_transport
    ):
        context = make_context(make_settings(min_delay_ms=200, max_delay_ms=1000))
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))

            sup.notify_connection_failed("Connection timed out")
            await wait_until(lambda: sup.metrics.exit_failures == 1)

            metrics = sup.metrics
            assert sup.state == SessionState.CONNECTING
            assert sup.attempt == 1
            assert sup.retry_pending
            assert metrics.last_error_class == ErrorClass.TIMEOUT
            assert metrics.current_backoff == pytest.approx(0.4)
            assert transport.sessions[0].closed

            await wait_until(lambda: is_running(sup))
            assert sup.attempt == 0
            assert sup.metrics.start_successes == 2
            assert sup.metrics.current_backoff is None

    @pytest.mark.asyncio
    async def test_connection_failed_ignored_when_not_running(
        self, context, fake_transport
    ):
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.notify_connection_failed("Connection refused")
            await asyncio.sleep(0.05)
            assert sup.state == SessionState.STOPPED
            assert sup.metrics.exit_failures == 0

    @pytest.mark.asyncio
    async def test_refresh_trigger_reconnects_immediately(
        self, context, wait_until, fake_transport
    ):
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))

            sup.post(TriggerReason(kind=TriggerKind.NETWORK_CHANGED, detail="wlan0"))
            await wait_until(lambda: len(transport.sessions) == 2 and is_running(sup))

            metrics = sup.metrics
            assert transport.sessions[0].closed
            assert metrics.restarts == 1
            assert metrics.last_trigger == "network_changed: wlan0"
            assert metrics.exit_failures == 0
            assert sup.attempt == 0

    @pytest.mark.asyncio
    async def test_refresh_burst_is_debounced(
        self, make_settings, make_context, wait_until, fake_transport
    ):
        context = make_context(make_settings(debounce_ms=50))
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))

            sup.post(TriggerReason(kind=TriggerKind.SLEEP_WAKE))
            sup.post(TriggerReason(kind=TriggerKind.NETWORK_DEGRADED))
            sup.post(TriggerReason(kind=TriggerKind.NETWORK_CHANGED))
            await wait_until(lambda: len(transport.sessions) == 2 and is_running(sup))
            await asyncio.sleep(0.15)

            assert len(transport.sessions) == 2
            assert sup.metrics.restarts == 1
            assert sup.metrics.last_trigger == "network_changed"

    @pytest.mark.asyncio
    async def test_remote_failure_ends_session(
        self, context, wait_until, fake_transport
    ):
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))

            transport.sessions[0].drop("Connection lost: network is unreachable")
            await wait_until(lambda: len(transport.sessions) == 2 and is_running(sup))

            assert sup.metrics.exit_failures == 1
            assert sup.metrics.last_error_class == ErrorClass.NETWORK

    @pytest.mark.asyncio
    async def test_clean_exit_restarts_with_always_policy(
        self, context, wait_until, fake_transport
    ):
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))

            transport.sessions[0].drop()
            await wait_until(lambda: len(transport.sessions) == 2 and is_running(sup))
            assert sup.metrics.exit_successes == 1
            assert sup.metrics.exit_failures == 0

    @pytest.mark.asyncio
    async def test_clean_exit_stops_with_on_failure_policy(
        self, make_settings, make_context, wait_until, fake_transport
    ):
        context = make_context(make_settings(policy="on-failure"))
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))

            transport.sessions[0].drop()
            await wait_until(lambda: is_stopped(sup))
            await asyncio.sleep(0.05)
            assert len(transport.calls) == 1
            assert sup.metrics.exit_successes == 1


class TestHostKeyRejection:
    """Test that a changed host key halts the supervisor."""

    @pytest.mark.asyncio
    async def test_changed_key_stops_without_retry(
        self, context, wait_until, fake_transport
    ):
        context.trust_store.verify("example.com", K1)
        transport = fake_transport([K2])
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: sup.metrics.start_failures == 1)

            assert sup.state == SessionState.STOPPED
            assert sup.metrics.last_error_class == ErrorClass.HOSTKEY
            assert not sup.retry_pending
            await asyncio.sleep(0.05)
            assert len(transport.calls) == 1
            assert context.trust_store.get("example.com").key_material == K1.key_material

    @pytest.mark.asyncio
    async def test_first_contact_pins_key(self, context, wait_until, fake_transport):
        transport = fake_transport([K1])
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))
        assert context.trust_store.get("example.com") is not None

    @pytest.mark.asyncio
    async def test_start_after_reset_connects(
        self, context, wait_until, fake_transport
    ):
        context.trust_store.verify("example.com", K1)
        transport = fake_transport([K2, K2])
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: sup.metrics.start_failures == 1)

            context.trust_store.reset("example.com")
            sup.start()
            await wait_until(lambda: is_running(sup))
            assert context.trust_store.get("example.com").key_material == K2.key_material


class TestRuntimeChanges:
    """Test forward edits and settings reloads."""

    @pytest.mark.asyncio
    async def test_add_forward_refreshes_session(
        self, context, wait_until, fake_transport
    ):
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))

            sup.add_forward("127.0.0.1:18080:10.0.0.5:80")
            await wait_until(lambda: len(transport.sessions) == 2 and is_running(sup))

            _, forwards = transport.calls[-1]
            assert [str(f) for f in forwards][-1] == "127.0.0.1:18080:10.0.0.5:80"
            assert sup.metrics.restarts == 1

    @pytest.mark.asyncio
    async def test_remove_last_forward_refused(self, context, fake_transport):
        async with supervisor_for(context, fake_transport()) as sup:
            with pytest.raises(ConfigError):
                sup.remove_forward(context.settings.local_forwards[0])
            assert len(context.settings.local_forwards) == 1

    @pytest.mark.asyncio
    async def test_forward_edit_while_stopped_does_not_connect(
        self, context, fake_transport
    ):
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.add_forward("127.0.0.1:18080:10.0.0.5:80")
            await asyncio.sleep(0.05)
            assert transport.calls == []
            assert len(context.settings.local_forwards) == 2

    @pytest.mark.asyncio
    async def test_reload_applies_new_backoff(
        self, make_settings, context, wait_until, fake_transport
    ):
        transport = fake_transport()
        async with supervisor_for(context, transport) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))

            sup.reload(make_settings(min_delay_ms=3000, max_delay_ms=3000))
            await wait_until(lambda: len(transport.sessions) == 2 and is_running(sup))
            assert sup.metrics.last_trigger == "config_reloaded: settings changed"

            sup.notify_connection_failed("Connection refused")
            await wait_until(lambda: sup.retry_pending)
            assert sup.metrics.current_backoff == pytest.approx(3.0)
            sup.stop()


class TestMetricsPublishing:
    """Test that snapshots reach subscribers."""

    @pytest.mark.asyncio
    async def test_subscribers_see_state_changes(
        self, context, wait_until, fake_transport
    ):
        states = []
        context.metrics.broadcaster.subscribe(lambda snap: states.append(snap.state))
        async with supervisor_for(context, fake_transport()) as sup:
            sup.start()
            await wait_until(lambda: is_running(sup))
            sup.stop()
            await wait_until(lambda: is_stopped(sup))

        assert SessionState.CONNECTING in states
        assert SessionState.RUNNING in states
        assert states[-1] == SessionState.STOPPED
