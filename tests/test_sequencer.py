import threading

import pytest

from fbug.errors import EngineBusy, TriggerFailed, UnknownTrigger
from fbug.events import LineEvent
from fbug.loader import load_device_text
from fbug.util import now_s

XBL = "Format: Log Type - Time(microsec) - Message - Optional Info"
FASTBOOT = "Fastboot Build Info"
UEFI_END = "Exit BS [  812] UEFI End"


def _emit(eng, text, source="uart"):
    eng.dispatcher.post(LineEvent(source, text, now_s()))


def _goto(eng, wait_for, *lines):
    for line in lines:
        _emit(eng, line)
    assert wait_for(lambda: eng.dispatcher.events.empty() and eng.state.transitions_total >= len(lines))


def _run_in_thread(eng, name, **kwargs):
    result = {}

    def target():
        try:
            result["outcome"] = eng.run_trigger(name, **kwargs)
        except Exception as e:
            result["error"] = e

    t = threading.Thread(target=target, daemon=True)
    t.start()
    return t, result


def test_boot_from_fastboot_presses_power_and_reaches_linux(running, wait_for, logger):
    eng, conns = running
    uart = conns["uart"]
    _goto(eng, wait_for, XBL, FASTBOOT)
    assert eng.get_current_state() == "fastboot"

    t, result = _run_in_thread(eng, "boot")
    # Press is 50ms: asserted, then released before waiting for the state.
    assert wait_for(lambda: ("dtr", False) in uart.calls)
    assert uart.calls[:2] == [("dtr", True), ("dtr", False)]

    _emit(eng, UEFI_END)
    t.join(timeout=3.0)
    assert "error" not in result
    assert result["outcome"].observed == "linux"
    assert eng.get_current_state() == "linux"
    assert eng.state.active_holds == set()
    assert "trigger_ok" in logger.names()


def test_reset_holds_both_buttons_until_xbl(running, wait_for):
    eng, conns = running
    uart = conns["uart"]

    t, result = _run_in_thread(eng, "reset")
    assert wait_for(lambda: eng.state.active_holds == {"power", "volume_up"})
    assert uart.calls == [("dtr", True), ("rts", True)]

    _emit(eng, XBL)
    t.join(timeout=3.0)
    assert result["outcome"].observed == "xbl"
    # Released in reverse order of assertion.
    assert uart.calls[2:] == [("rts", False), ("dtr", False)]
    assert eng.state.active_holds == set()


def test_hold_times_out_and_releases(running, wait_for):
    eng, conns = running
    with pytest.raises(TriggerFailed) as ei:
        eng.run_trigger("reset", timeout=0.2)
    assert ei.value.reason == "timed out"
    assert ei.value.observed == "unknown"
    assert conns["uart"].calls[-2:] == [("rts", False), ("dtr", False)]
    assert eng.state.active_holds == set()


def test_hold_fails_when_state_changes_elsewhere(running, wait_for):
    eng, conns = running
    _goto(eng, wait_for, XBL)

    t, result = _run_in_thread(eng, "bootloader")
    assert wait_for(lambda: eng.state.active_holds == {"volume_up"})
    _emit(eng, UEFI_END)
    t.join(timeout=3.0)

    err = result["error"]
    assert isinstance(err, TriggerFailed)
    assert err.observed == "linux"
    assert "state changed" in err.reason
    assert conns["uart"].calls[-1] == ("rts", False)
    assert eng.state.active_holds == set()


def test_cancel_releases_held_controls(running, wait_for, logger):
    eng, conns = running
    t, result = _run_in_thread(eng, "reset")
    assert wait_for(lambda: eng.state.active_holds == {"power", "volume_up"})

    assert eng.cancel_trigger() is True
    t.join(timeout=3.0)
    assert result["error"].reason == "cancelled"
    assert eng.state.active_holds == set()
    assert conns["uart"].calls[-2:] == [("rts", False), ("dtr", False)]
    assert logger.last("trigger_failed")["reason"] == "cancelled"


def test_second_trigger_is_rejected_while_running(running, wait_for):
    eng, _ = running
    t, result = _run_in_thread(eng, "reset")
    assert wait_for(lambda: eng.sequencer.running == "reset")

    with pytest.raises(EngineBusy):
        eng.run_trigger("reset")
    assert eng.status()["running_trigger"] == "reset"

    eng.cancel_trigger()
    t.join(timeout=3.0)
    assert eng.status()["running_trigger"] == ""


def test_trigger_not_legal_from_current_state(running, wait_for):
    eng, conns = running
    with pytest.raises(TriggerFailed) as ei:
        eng.run_trigger("boot")
    assert ei.value.reason == "not legal from current state"
    assert conns["uart"].calls == []


def test_unknown_and_timeout_only_triggers_are_not_runnable(running):
    eng, _ = running
    with pytest.raises(UnknownTrigger):
        eng.run_trigger("nope")
    with pytest.raises(UnknownTrigger):
        eng.run_trigger("hang")


def test_failed_release_stays_held_until_forced(running, wait_for, logger):
    eng, conns = running
    uart = conns["uart"]
    uart.fail_on.add(("dtr", False))

    with pytest.raises(TriggerFailed):
        eng.run_trigger("reset", timeout=0.1)
    assert "release_error" in logger.names()
    assert eng.state.active_holds == {"power"}

    uart.fail_on.clear()
    assert eng.force_release_all_holds() == ["power"]
    assert eng.state.active_holds == set()
    assert uart.calls[-1] == ("dtr", False)


def test_control_error_during_step_fails_trigger(running, wait_for):
    eng, conns = running
    conns["uart"].fail_on.add(("rts", True))
    with pytest.raises(TriggerFailed) as ei:
        eng.run_trigger("reset", timeout=0.5)
    assert ei.value.reason.startswith("control error")
    # power was asserted before the failing step and is released again.
    assert conns["uart"].calls == [("dtr", True), ("dtr", False)]
    assert eng.state.active_holds == set()


def test_rest_runs_trigger_to_resting_state(running, wait_for):
    eng, conns = running
    _goto(eng, wait_for, XBL)

    t = threading.Thread(target=lambda: eng.rest(timeout=2.0), daemon=True)
    t.start()
    assert wait_for(lambda: eng.state.active_holds == {"volume_up"})
    _emit(eng, FASTBOOT)
    t.join(timeout=3.0)
    assert eng.get_current_state() == "fastboot"
    assert eng.state.active_holds == set()

    # Already resting.
    assert eng.rest() is None


def test_init_sequence_leaves_state_unknown(make_engine, axolotl):
    eng, conns = make_engine(axolotl)
    eng.start(run_init=True)
    assert conns["uart"].calls == [("dtr", False), ("rts", False)]
    assert eng.get_current_state() == "unknown"


COLD_BOOT = """
name: Bench
codename: bench
connections:
  - type: serial
    label: uart
    path: /dev/null
controls:
  - name: power
    type: button
    connection: uart
    action: dtr
  - name: volume_up
    type: button
    connection: uart
    action: rts
states:
  - name: xbl
  - name: fastboot
transitions:
  - to: "off"
    actions:
      - source: uart
        value: "Power down"
  - to: xbl
    actions:
      - source: uart
        value: "Format: Log Type"
  - to: fastboot
    from: ["off", xbl]
    actions:
      - source: uart
        value: "Fastboot Build Info"
    triggers:
      - name: cold_bootloader
        from: ["off"]
        sequence:
          - control: power
            action: press
            duration: 200
          - control: volume_up
            action: hold
"""


def test_hold_after_press_waits_for_its_own_state_change(make_engine, wait_for):
    eng, conns = make_engine(load_device_text(COLD_BOOT), trigger_timeout_s=3.0)
    eng.dispatcher.start()
    uart = conns["uart"]
    _goto(eng, wait_for, "Power down")
    assert eng.get_current_state() == "off"

    t, result = _run_in_thread(eng, "cold_bootloader")
    # The press powers the board on; XBL shows up before volume_up is held.
    assert wait_for(lambda: ("dtr", True) in uart.calls)
    _emit(eng, XBL)
    assert wait_for(lambda: eng.get_current_state() == "xbl")
    assert wait_for(lambda: eng.state.active_holds == {"volume_up"})

    _emit(eng, FASTBOOT)
    t.join(timeout=3.0)
    assert "error" not in result, result.get("error")
    assert result["outcome"].observed == "fastboot"
    assert uart.calls == [("dtr", True), ("dtr", False), ("rts", True), ("rts", False)]
    assert eng.state.active_holds == set()
