import pytest

from scanrelay.app.barcode_resolution import BarcodeResolver, resolve
from scanrelay.app.errors import InvalidBarcode, NotFound, ResolutionUnavailable
from scanrelay.app.inventory import InventoryItem
from scanrelay.app.scan_publisher import ScanPublisher
from scanrelay.app.change_feed import SUBSCRIBED, ChangeFeedSubscriber
from scanrelay.tests.fakes import AMOXICILLIN, PARACETAMOL, FakeFeed, FakeInventory, FakeRelayStore, FakeScheduler


def test_barcode_match_beats_id_match():
    by_id = InventoryItem(id="4006381333931", name="Ibuprofen 400mg")
    by_barcode = InventoryItem(id="med-9", name="Cetirizine 10mg", barcode="4006381333931")
    assert resolve("4006381333931", [by_id, by_barcode]) is by_barcode


def test_id_match_beats_name_match():
    by_name = InventoryItem(id="med-1", name="Vitamin med-7 complex")
    by_id = InventoryItem(id="med-7", name="Zinc")
    assert resolve("med-7", [by_name, by_id]) is by_id


def test_name_substring_match_is_case_insensitive():
    assert resolve("amoxi", [PARACETAMOL, AMOXICILLIN]) is AMOXICILLIN
    assert resolve("PARACETAMOL", [PARACETAMOL, AMOXICILLIN]) is PARACETAMOL


def test_resolve_miss():
    assert resolve("ZZZ999", [PARACETAMOL, AMOXICILLIN]) is None
    assert resolve("ZZZ999", []) is None


def test_handle_scan_resolves_and_logs():
    inventory = FakeInventory()
    resolver = BarcodeResolver("sales", inventory.find_candidates, inventory.log_scan, scanned_by="user-1")
    hits, misses = [], []

    outcome = resolver.handle_scan("ITEM!!007", on_success=lambda item, code: hits.append((item, code)), on_failure=misses.append)

    assert outcome.status == "resolved"
    assert outcome.item is AMOXICILLIN
    assert hits == [(AMOXICILLIN, "ITEM007")]
    assert misses == []
    assert len(inventory.logged) == 1
    entry = inventory.logged[0]
    assert entry.barcode == "ITEM007"
    assert entry.medicine_id == "med-1"
    assert entry.medicine_name == "Amoxicillin 500mg"
    assert entry.quantity == 1
    assert entry.context == "sales"
    assert entry.scanned_by == "user-1"


def test_handle_scan_not_found_calls_failure_without_log():
    inventory = FakeInventory()
    resolver = BarcodeResolver("inventory", inventory.find_candidates, inventory.log_scan)
    hits, misses = [], []

    outcome = resolver.handle_scan("ZZZ999", on_success=lambda *a: hits.append(a), on_failure=misses.append)

    assert outcome.status == "not_found"
    assert hits == []
    assert len(misses) == 1
    assert isinstance(misses[0], NotFound)
    assert misses[0].barcode == "ZZZ999"
    assert str(misses[0]) == "no medicine found for: ZZZ999"
    assert inventory.logged == []


def test_handle_scan_invalid_input():
    resolver = BarcodeResolver("sales", FakeInventory().find_candidates)
    misses = []
    outcome = resolver.handle_scan("!!!", on_failure=misses.append)
    assert outcome.status == "invalid"
    assert isinstance(misses[0], InvalidBarcode)


def test_short_tokens_are_ignored_silently():
    inventory = FakeInventory()
    resolver = BarcodeResolver("sales", inventory.find_candidates, inventory.log_scan)
    calls = []
    for raw in ("A", "ab", "a!b"):
        outcome = resolver.handle_scan(raw, on_success=lambda *a: calls.append(a), on_failure=calls.append)
        assert outcome.status == "ignored"
    assert calls == []


def test_scan_log_failure_does_not_block_success():
    inventory = FakeInventory()

    def broken_log(_entry):
        raise ConnectionError("audit table locked")

    resolver = BarcodeResolver("sales", inventory.find_candidates, broken_log)
    hits = []
    outcome = resolver.handle_scan("6291041500213", on_success=lambda item, code: hits.append(item))
    assert outcome.status == "resolved"
    assert hits == [PARACETAMOL]


def test_lookup_failure_is_resolution_unavailable():
    inventory = FakeInventory()
    inventory.fail_lookup = True
    resolver = BarcodeResolver("sales", inventory.find_candidates)
    with pytest.raises(ResolutionUnavailable):
        resolver.handle_scan("ITEM007")


def test_phone_scan_end_to_end():
    sid = "sales_1700000000_abc123de"
    store = FakeRelayStore()
    feed = FakeFeed()
    inventory = FakeInventory()
    resolver = BarcodeResolver("sales", inventory.find_candidates, inventory.log_scan)
    cart = []

    subscriber = ChangeFeedSubscriber(
        feed,
        sid,
        on_scan=lambda barcode: resolver.handle_scan(barcode, on_success=lambda item, code: cart.append(item.name)),
        delete_record=store.delete,
        scheduler=FakeScheduler(),
    )
    subscriber.start()
    feed.last.on_status(SUBSCRIBED)

    publisher = ScanPublisher(store, sid)
    res = publisher.publish("ITEM!!007")
    assert res.ok
    # what the insert trigger would NOTIFY
    feed.last.on_insert(dict(store.records[res.record_id]))

    assert cart == ["Amoxicillin 500mg"]
    assert store.records == {}
    assert store.deleted == [res.record_id]
    assert publisher.recent == ["ITEM!!007"]
