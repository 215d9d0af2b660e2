from scanrelay.app.errors import InvalidBarcode, PublishFailure
from scanrelay.app.scan_publisher import (
    HAPTIC_PULSE_MS,
    RECENT_HISTORY_SIZE,
    PublisherRegistry,
    ScanPublisher,
)
from scanrelay.tests.fakes import FakeRelayStore

SID = "sales_1700000000_abc123de"


def test_publish_inserts_sanitized_barcode_and_keeps_raw_history():
    store = FakeRelayStore()
    pulses = []
    pub = ScanPublisher(store, SID, feedback=pulses.append)

    res = pub.publish("  ITEM!!007 ")

    assert res.ok
    assert res.barcode == "ITEM007"
    assert res.record_id == "rec-1"
    assert store.records["rec-1"]["barcode"] == "ITEM007"
    assert store.records["rec-1"]["session_id"] == SID
    assert pub.recent == ["ITEM!!007"]
    assert pulses == [HAPTIC_PULSE_MS]


def test_recent_history_is_most_recent_first_and_capped():
    pub = ScanPublisher(FakeRelayStore(), SID)
    for i in range(RECENT_HISTORY_SIZE + 3):
        assert pub.publish(f"CODE{i:03d}").ok
    assert len(pub.recent) == RECENT_HISTORY_SIZE
    assert pub.recent[0] == "CODE012"
    assert pub.recent[-1] == "CODE003"


def test_empty_or_unusable_input_is_invalid():
    store = FakeRelayStore()
    pub = ScanPublisher(store, SID)
    for raw in ("", "   ", None, "!!!"):
        res = pub.publish(raw)
        assert not res.ok
        assert isinstance(res.error, InvalidBarcode)
    assert store.records == {}
    assert pub.recent == []


def test_insert_failure_returns_publish_failure_without_history():
    store = FakeRelayStore()
    store.fail_insert = True
    pulses = []
    pub = ScanPublisher(store, SID, feedback=pulses.append)

    res = pub.publish("ITEM007")

    assert not res.ok
    assert isinstance(res.error, PublishFailure)
    assert res.error.status_code == 503
    assert pub.recent == []
    assert pulses == []


def test_feedback_failure_does_not_fail_publish():
    def broken_vibrate(_ms):
        raise RuntimeError("no vibration motor")

    pub = ScanPublisher(FakeRelayStore(), SID, feedback=broken_vibrate)
    assert pub.publish("ITEM007").ok


def test_registry_keeps_one_history_per_session_and_evicts_lru():
    reg = PublisherRegistry(FakeRelayStore(), max_sessions=2)
    a = reg.get("sales_1_a")
    assert reg.get("sales_1_a") is a
    reg.get("sales_1_b")
    reg.get("sales_1_a")
    reg.get("sales_1_c")

    assert reg.peek("sales_1_b") is None
    assert reg.peek("sales_1_a") is a
    assert reg.peek("sales_1_c") is not None
