"""
HSSE Live — Realtime Reconciler Tests
=====================================
Tests: push parsing, channel filters, unread counters, alerts, connection
lifecycle, change feed fan-out.
"""

import asyncio
import datetime

import pytest

from hsse.realtime.alerts import build_alert
from hsse.realtime.models import (
    ChangeKind, ChannelFilter, InboundChangeEvent, MalformedMessage, SubscriptionStatus,
)
from hsse.realtime.transport import Channel, Transport
from tests.conftest import push_message


class FakeClock:
    def __init__(self):
        self.value = datetime.datetime(2026, 1, 5, 8, 0, 0)

    def __call__(self):
        return self.value

    def tick(self, seconds=1):
        self.value += datetime.timedelta(seconds=seconds)


class HandshakeFailsTransport(Transport):
    """Reports CHANNEL_ERROR instead of SUBSCRIBED."""

    def open(self, key, filter, on_status=None):
        channel = Channel(key, filter, on_status)
        channel.report_status(SubscriptionStatus.CHANNEL_ERROR, "permission denied for table")
        return channel

    def close(self, channel):
        channel.report_status(SubscriptionStatus.CLOSED)


class RefusingTransport(Transport):

    def open(self, key, filter, on_status=None):
        raise ConnectionError("realtime endpoint unreachable")

    def close(self, channel):
        pass


# ============================================================================
# WIRE PARSING
# ============================================================================

class TestInboundChangeEvent:

    def test_insert_with_severity(self):
        event = InboundChangeEvent.from_push(
            push_message(new={"id": 7, "severity": "CRITICAL", "title": "Gas leak"})
        )
        assert event.entity_kind == "incidents"
        assert event.change_kind == ChangeKind.INSERT
        assert event.severity_hint == "critical"
        assert event.record_id == "7"

    def test_priority_field_used_as_severity(self):
        event = InboundChangeEvent.from_push(
            push_message(table="emergency_alerts", new={"id": 1, "priority": "high"})
        )
        assert event.severity_hint == "high"

    def test_delete_reads_old_record(self):
        event = InboundChangeEvent.from_push(
            push_message(event_type="DELETE", old={"id": 3, "severity": "low"})
        )
        assert event.change_kind == ChangeKind.DELETE
        assert event.record_id == "3"
        assert event.severity_hint == "low"

    def test_lowercase_event_type_accepted(self):
        event = InboundChangeEvent.from_push(push_message(event_type="update", new={"id": 1}))
        assert event.change_kind == ChangeKind.UPDATE
        assert event.severity_hint is None

    @pytest.mark.parametrize("message", [
        None,
        "INSERT",
        {"eventType": "INSERT", "new": {}},
        {"eventType": "TRUNCATE", "table": "incidents"},
        {"eventType": "INSERT", "table": "incidents", "new": ["oops"]},
        {"eventType": "DELETE", "table": "incidents", "old": "oops"},
    ])
    def test_malformed(self, message):
        with pytest.raises(MalformedMessage):
            InboundChangeEvent.from_push(message)


class TestChannelFilter:

    def test_whole_table(self):
        f = ChannelFilter(table="incidents")
        assert f.matches(push_message(new={"id": 1}))
        assert not f.matches(push_message(table="ptw_permits", new={"id": 1}))
        assert not f.matches(push_message(schema="audit", new={"id": 1}))

    def test_single_row(self):
        f = ChannelFilter(table="ptw_permits", row="id=eq.42")
        assert f.matches(push_message(table="ptw_permits", event_type="UPDATE", new={"id": 42}))
        assert not f.matches(push_message(table="ptw_permits", event_type="UPDATE", new={"id": 43}))
        assert f.matches(push_message(table="ptw_permits", event_type="DELETE", old={"id": 42}))

    def test_event_restriction(self):
        f = ChannelFilter(table="incidents", event="INSERT")
        assert f.matches(push_message(new={"id": 1}))
        assert not f.matches(push_message(event_type="UPDATE", new={"id": 1}))

    @pytest.mark.parametrize("row", ["id", "id=gt.4", "=eq.4", "id=eq"])
    def test_unsupported_row_filter(self, row):
        with pytest.raises(ValueError):
            ChannelFilter(table="incidents", row=row)


# ============================================================================
# RECONCILER
# ============================================================================

class TestReconcilerCounters:

    def test_counts_and_alerts_every_critical_insert(self, feed, make_reconciler):
        alerts = []
        r = make_reconciler(on_alert=alerts.append)
        assert r.start() is True
        for i in range(5):
            feed.publish(push_message(new={"id": i, "severity": "critical"}))
        r.pump()
        assert r.new_updates_count == 5
        assert len(alerts) == 5
        assert [a.record_id for a in alerts] == ["0", "1", "2", "3", "4"]

    def test_only_insert_with_alert_severity_raises_alert(self, feed, make_reconciler):
        alerts = []
        r = make_reconciler(on_alert=alerts.append)
        r.start()
        feed.publish(push_message(new={"id": 1, "severity": "critical"}))
        feed.publish(push_message(event_type="UPDATE", new={"id": 1, "severity": "critical"}))
        r.pump()
        assert r.new_updates_count == 2
        assert len(alerts) == 1
        assert alerts[0].severity == "critical"

    def test_high_alerts_medium_does_not(self, feed, make_reconciler):
        alerts = []
        r = make_reconciler(on_alert=alerts.append)
        r.start()
        feed.publish(push_message(new={"id": 1, "severity": "high"}))
        feed.publish(push_message(new={"id": 2, "severity": "medium"}))
        feed.publish(push_message(new={"id": 3}))
        r.pump()
        assert r.new_updates_count == 3
        assert [a.record_id for a in alerts] == ["1"]

    def test_custom_alert_severities(self, feed, make_reconciler):
        alerts = []
        r = make_reconciler(on_alert=alerts.append, alert_severities={"Medium"})
        r.start()
        feed.publish(push_message(new={"id": 1, "severity": "critical"}))
        feed.publish(push_message(new={"id": 2, "severity": "medium"}))
        r.pump()
        assert [a.record_id for a in alerts] == ["2"]

    def test_acknowledge_only_clears_counter(self, feed, make_reconciler):
        clock = FakeClock()
        r = make_reconciler(now=clock)
        r.start()
        feed.publish(push_message(new={"id": 1}))
        r.pump()
        last = r.last_update
        assert last == clock.value

        clock.tick(30)
        r.clear_new_updates()
        assert r.new_updates_count == 0
        assert r.is_connected is True
        assert r.last_update == last

    def test_counter_never_decays(self, feed, make_reconciler):
        clock = FakeClock()
        r = make_reconciler(now=clock)
        r.start()
        feed.publish(push_message(new={"id": 1}))
        r.pump()
        clock.tick(3600)
        feed.publish(push_message(event_type="DELETE", old={"id": 1}))
        r.pump()
        assert r.new_updates_count == 2
        assert r.last_update == clock.value

    def test_malformed_message_dropped(self, feed, make_reconciler):
        r = make_reconciler()
        r.start()
        r.channel.messages.put_nowait({"eventType": "INSERT", "table": "incidents", "new": {"id": 1}})
        r.channel.messages.put_nowait({"eventType": "MERGE", "table": "incidents"})
        assert r.pump() == 1
        assert r.new_updates_count == 1

    def test_non_mapping_record_dropped(self, feed, make_reconciler):
        alerts = []
        r = make_reconciler(on_alert=alerts.append)
        r.start()
        feed.publish({"eventType": "INSERT", "table": "incidents", "new": ["oops"]})
        feed.publish(push_message(new={"id": 2, "severity": "critical"}))
        assert r.pump() == 1
        assert r.new_updates_count == 1
        assert [a.record_id for a in alerts] == ["2"]

    def test_consumer_task_survives_bad_record(self, feed, make_reconciler):
        alerts = []

        async def scenario():
            r = make_reconciler(on_alert=alerts.append)
            task = r.spawn()
            feed.publish({"eventType": "INSERT", "table": "incidents", "new": ["oops"]})
            feed.publish({"eventType": "UPDATE", "table": "incidents", "old": "oops"})
            feed.publish(push_message(new={"id": 3, "severity": "critical"}))
            for _ in range(5):
                await asyncio.sleep(0)
            alive = not task.done()
            count = r.new_updates_count
            await r.close()
            return alive, count

        alive, count = asyncio.run(scenario())
        assert alive is True
        assert count == 1
        assert len(alerts) == 1

    def test_alert_sink_failure_contained(self, feed, make_reconciler):
        def broken_sink(alert):
            raise RuntimeError("toast service down")

        r = make_reconciler(on_alert=broken_sink)
        r.start()
        feed.publish(push_message(new={"id": 1, "severity": "critical"}))
        feed.publish(push_message(new={"id": 2, "severity": "critical"}))
        assert r.pump() == 2
        assert r.alerts_dispatched == 2
        assert r.new_updates_count == 2

    def test_invalidates_query_keys_per_event(self, feed, make_reconciler):
        invalidated = []
        r = make_reconciler(
            table="gate_entry_logs",
            on_invalidate=invalidated.append,
            invalidates=("unified-access-logs", "unified-access-stats"),
        )
        r.start()
        feed.publish(push_message(table="gate_entry_logs", new={"id": 1}))
        feed.publish(push_message(table="gate_entry_logs", event_type="UPDATE", new={"id": 1}))
        r.pump()
        assert invalidated == ["unified-access-logs", "unified-access-stats"] * 2


class TestReconcilerConnection:

    def test_connected_after_handshake(self, feed, make_reconciler):
        r = make_reconciler()
        assert r.is_connected is False
        r.start()
        assert r.is_connected is True
        assert r.channel.status == SubscriptionStatus.SUBSCRIBED

    def test_start_is_idempotent(self, feed, make_reconciler):
        r = make_reconciler()
        r.start()
        r.start()
        assert feed.channel_count() == 1

    def test_handshake_failure_is_permanent(self, make_reconciler):
        r = make_reconciler(transport=HandshakeFailsTransport())
        assert r.start() is False
        assert r.is_connected is False
        assert r.failed is True

        r.channel.report_status(SubscriptionStatus.SUBSCRIBED)
        assert r.is_connected is False

    def test_transport_refusal(self, make_reconciler):
        r = make_reconciler(transport=RefusingTransport())
        assert r.start() is False
        assert r.failed is True
        assert r.start() is False
        assert r.is_connected is False

    def test_error_after_handshake_disconnects_without_failing(self, feed, make_reconciler):
        r = make_reconciler()
        r.start()
        feed.fail(r.channel, SubscriptionStatus.TIMED_OUT, "heartbeat timeout")
        assert r.is_connected is False
        assert r.failed is False
        assert feed.channel_count() == 0

    def test_close_channel(self, feed, make_reconciler):
        r = make_reconciler()
        r.start()
        feed.publish(push_message(new={"id": 1}))
        r.pump()
        r.close_channel()
        assert r.is_connected is False
        assert r.new_updates_count == 1
        assert feed.channel_count() == 0

    def test_each_reconciler_owns_its_channel(self, feed, make_reconciler):
        a = make_reconciler(key="same-key")
        b = make_reconciler(key="same-key")
        a.start()
        b.start()
        assert a.channel is not b.channel
        assert feed.publish(push_message(new={"id": 1})) == 2
        a.close_channel()
        assert feed.publish(push_message(new={"id": 2})) == 1
        b.pump()
        assert b.new_updates_count == 2

    def test_filtered_subscription_ignores_other_rows(self, feed, make_reconciler):
        r = make_reconciler(table="ptw_permits", row="id=eq.42")
        r.start()
        feed.publish(push_message(table="ptw_permits", event_type="UPDATE", new={"id": 41}))
        feed.publish(push_message(table="ptw_permits", event_type="UPDATE", new={"id": 42}))
        r.pump()
        assert r.new_updates_count == 1

    def test_consumer_task(self, feed, make_reconciler):
        alerts = []

        async def scenario():
            r = make_reconciler(on_alert=alerts.append)
            task = r.spawn()
            assert task is not None
            feed.publish(push_message(new={"id": 1, "severity": "critical"}))
            feed.publish(push_message(event_type="UPDATE", new={"id": 1}))
            for _ in range(5):
                await asyncio.sleep(0)
            count = r.new_updates_count
            await r.close()
            return count, task

        count, task = asyncio.run(scenario())
        assert count == 2
        assert len(alerts) == 1
        assert task.cancelled()


# ============================================================================
# ALERTS
# ============================================================================

class TestBuildAlert:

    def test_incident_drill_down(self):
        alert = build_alert(InboundChangeEvent.from_push(
            push_message(new={"id": 42, "severity": "critical", "title": "Fall from height"})
        ))
        assert alert.action_url == "/incidents/42"
        assert alert.sound is True
        assert alert.description == "Fall from height"
        assert "CRITICAL" in alert.title

    def test_permit_drill_down_without_sound(self):
        alert = build_alert(InboundChangeEvent.from_push(
            push_message(table="ptw_permits", new={"id": 9, "severity": "high", "reference_id": "PTW-009"})
        ))
        assert alert.action_url == "/ptw/permits/9"
        assert alert.sound is False
        assert alert.description == "PTW-009"

    def test_unknown_table(self):
        alert = build_alert(InboundChangeEvent.from_push(
            push_message(table="waste_manifests", new={"severity": "high"})
        ))
        assert alert.action_url == "/"
        assert alert.description == "waste_manifests"

    def test_route_without_record_id(self):
        alert = build_alert(InboundChangeEvent.from_push(
            push_message(new={"severity": "critical"})
        ))
        assert alert.action_url == "/incidents"
