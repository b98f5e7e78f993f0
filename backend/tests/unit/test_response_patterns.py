"""Unit tests for per-contact response velocity."""

from datetime import datetime, timedelta, timezone

from sqlmodel import Session

from parley.scheduler.response_patterns import classify_deviation, get_pattern, record_response

SENT = datetime(2026, 1, 5, 14, 0, tzinfo=timezone.utc)


class TestClassifyDeviation:

    def test_no_history_is_normal(self):
        assert classify_deviation(10.0, None) == "normal"

    def test_bands(self):
        assert classify_deviation(25.0, 10.0) == "much_slower"
        assert classify_deviation(15.0, 10.0) == "slower"
        assert classify_deviation(5.0, 10.0) == "faster"
        assert classify_deviation(11.0, 10.0) == "normal"


class TestRecordResponse:

    def test_profile_accumulates(self, engine):
        with Session(engine) as session:
            record_response(session, "Dana@Acme.example", sent_at=SENT, replied_at=SENT + timedelta(hours=2),
                            timezone="America/New_York")
            record_response(session, "dana@acme.example", sent_at=SENT, replied_at=SENT + timedelta(hours=4),
                            timezone="America/New_York")
            pattern = record_response(session, "dana@acme.example", sent_at=SENT,
                                      replied_at=SENT + timedelta(hours=12), timezone="America/New_York",
                                      new_thread=True)
            session.commit()

            assert pattern.contact_email == "dana@acme.example"
            assert pattern.response_count == 3
            assert pattern.thread_count == 1
            assert pattern.latencies_hours == [2.0, 4.0, 12.0]
            assert pattern.avg_response_hours == 6.0
            assert pattern.median_response_hours == 4.0
            assert pattern.fastest_response_hours == 2.0
            assert pattern.slowest_response_hours == 12.0
            # 12h against a prior average of 3h
            assert pattern.deviation == "much_slower"
            # 11:00, 13:00 and 21:00 in New York
            assert set(pattern.typical_response_hours) == {11, 13, 21}
            assert get_pattern(session, "DANA@acme.example").id == pattern.id

    def test_negative_latency_clamped(self, engine):
        with Session(engine) as session:
            pattern = record_response(session, "sam@acme.example", sent_at=SENT, replied_at=SENT - timedelta(hours=1))
            assert pattern.latencies_hours == [0.0]
