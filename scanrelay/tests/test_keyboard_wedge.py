from scanrelay.app.keyboard_wedge import KeyboardWedgeDecoder
from scanrelay.tests.fakes import FakeScheduler


def _decoder():
    scheduler = FakeScheduler()
    flushed = []
    return KeyboardWedgeDecoder(flushed.append, scheduler=scheduler), scheduler, flushed


def test_fast_keys_then_enter_flush_barcode():
    dec, scheduler, flushed = _decoder()
    for key in "ABC":
        dec.handle_key(key)
        scheduler.advance(0.01)
    assert dec.handle_key("Enter") == "ABC"
    assert flushed == ["ABC"]
    assert dec.buffer == ""
    assert scheduler.pending() == []


def test_pause_longer_than_idle_timeout_clears_buffer():
    dec, scheduler, flushed = _decoder()
    dec.handle_key("A")
    dec.handle_key("B")
    scheduler.advance(0.2)
    assert dec.buffer == ""
    assert dec.handle_key("Enter") is None
    assert flushed == []


def test_each_key_resets_idle_timer():
    dec, scheduler, flushed = _decoder()
    for key in "629104150021":
        dec.handle_key(key)
        scheduler.advance(0.05)
    dec.handle_key("3")
    assert len(scheduler.pending()) == 1
    dec.handle_key("Enter")
    assert flushed == ["6291041500213"]


def test_keys_in_editable_targets_are_ignored():
    dec, _, flushed = _decoder()
    dec.handle_key("A", target_tag="input")
    dec.handle_key("B", target_tag="TEXTAREA")
    dec.handle_key("C", editable=True)
    assert dec.buffer == ""
    dec.handle_key("Enter", target_tag="INPUT")
    assert flushed == []


def test_non_printable_keys_are_ignored():
    dec, _, flushed = _decoder()
    dec.handle_key("Shift")
    dec.handle_key("X")
    dec.handle_key("ArrowLeft")
    dec.handle_key("Enter")
    assert flushed == ["X"]


def test_enter_on_empty_buffer_does_nothing():
    dec, _, flushed = _decoder()
    assert dec.handle_key("Enter") is None
    assert flushed == []


def test_close_cancels_timer_and_is_idempotent():
    dec, scheduler, flushed = _decoder()
    dec.handle_key("A")
    timer = scheduler.pending()[0]
    dec.close()
    dec.close()
    assert timer.cancelled
    assert dec.buffer == ""
    dec.handle_key("B")
    dec.handle_key("Enter")
    assert flushed == []


def test_decoders_do_not_share_state():
    a, _, flushed_a = _decoder()
    b, _, flushed_b = _decoder()
    a.handle_key("1")
    b.handle_key("2")
    a.handle_key("Enter")
    assert flushed_a == ["1"]
    assert b.buffer == "2"
    assert flushed_b == []
