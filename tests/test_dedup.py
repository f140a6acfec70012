"""Alarm publish rate-limiting tests."""

from iiot_listener.dedup import AlarmDeduplicator

KEY = ("esp32_02", "IO_ALR_107")


class TestAlarmDeduplicator:

    def test_repeat_within_window_is_rejected(self, clock):
        dedup = AlarmDeduplicator(1000, clock=clock)

        assert dedup.admit(KEY)
        clock.advance(0.2)
        assert not dedup.admit(KEY)

    def test_admitted_again_after_window(self, clock):
        dedup = AlarmDeduplicator(1000, clock=clock)

        assert dedup.admit(KEY)
        clock.advance(1.0)
        assert dedup.admit(KEY)

    def test_rejection_does_not_extend_window(self, clock):
        dedup = AlarmDeduplicator(1000, clock=clock)

        assert dedup.admit(KEY)
        clock.advance(0.6)
        assert not dedup.admit(KEY)
        clock.advance(0.4)
        assert dedup.admit(KEY)

    def test_keys_are_independent(self, clock):
        dedup = AlarmDeduplicator(1000, clock=clock)

        assert dedup.admit(KEY)
        assert dedup.admit(("esp32_02", "IO_ALR_106"))
        assert dedup.admit(("esp32_04", "IO_ALR_107"))

    def test_stats(self, clock):
        dedup = AlarmDeduplicator(1000, clock=clock)
        dedup.admit(KEY)
        dedup.admit(KEY)
        dedup.admit(KEY)

        assert dedup.stats == {"admitted": 1, "suppressed": 2, "tracked_keys": 1}
