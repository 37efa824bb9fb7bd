import pytest

from fbug.errors import ConfigurationError
from fbug.model import EventRule, Pattern, SequenceStep, TimeoutRule, Transition, Trigger
from fbug.statetable import StateTable, check_overlaps, describe_trigger


def _event(to, pattern, source="uart", from_states=None):
    return Transition(
        to=to,
        from_states=frozenset(from_states) if from_states is not None else None,
        events=(EventRule(source, "input", Pattern.parse(pattern)),),
    )


def _timeout(to, seconds, from_states=None):
    return Transition(
        to=to,
        from_states=frozenset(from_states) if from_states is not None else None,
        timeout=TimeoutRule(seconds),
    )


def test_literal_containing_literal_overlaps():
    with pytest.raises(ConfigurationError, match="overlap"):
        check_overlaps([_event("a", "Booting"), _event("b", "Booting Linux", from_states=["x"])])


def test_regex_matching_literal_overlaps():
    with pytest.raises(ConfigurationError, match="overlap"):
        check_overlaps([_event("a", r"/^U-Boot \d+/", from_states=["x"]), _event("b", "U-Boot 2024", from_states=["x"])])


def test_disjoint_sources_do_not_overlap():
    check_overlaps([
        _event("a", "Booting", from_states=["x"]),
        _event("b", "Booting", from_states=["y"]),
        _event("c", "Booting", source="ssh", from_states=["x"]),
    ])


def test_two_timeouts_from_same_state_overlap():
    with pytest.raises(ConfigurationError, match="time out"):
        check_overlaps([_timeout("a", 5, ["x"]), _timeout("b", 10, ["x", "y"])])


def test_wildcard_timeout_does_not_overlap_timeout_from_its_own_target():
    # A wildcard timeout never applies in its own target state.
    check_overlaps([_timeout("idle", 60), _timeout("sleep", 5, ["idle"])])


def test_axolotl_has_no_overlaps(axolotl):
    check_overlaps(axolotl.transitions)


def test_legal_matches_respect_from(axolotl):
    table = StateTable(axolotl)
    line = "Fastboot Build Info: v1"
    assert [t.to for t in table.matching("uart", line)] == ["fastboot"]
    assert [t.to for t in table.legal_matches("uart", line, "xbl")] == ["fastboot"]
    assert table.legal_matches("uart", line, "linux") == []
    # Lines on other connections never match uart rules.
    assert table.matching("ssh", line) == []


def test_timeouts_for_state(axolotl):
    table = StateTable(axolotl)
    assert [t.to for t in table.timeouts_for("xbl")] == ["edl"]
    assert table.timeouts_for("fastboot") == []


def test_legal_triggers(axolotl):
    table = StateTable(axolotl)
    assert sorted(t.name for t in table.triggers()) == ["boot", "bootloader", "reset"]
    assert sorted(t.name for t in table.legal_triggers("fastboot")) == ["boot", "reset"]
    assert sorted(t.name for t in table.legal_triggers("xbl")) == ["bootloader", "reset"]
    assert [t.name for t in table.legal_triggers("unknown")] == ["reset"]


def test_describe_trigger(axolotl):
    table = StateTable(axolotl)
    assert describe_trigger(table.trigger("boot")) == "boot: boot the kernel from fastboot\n\t* Press Power for 50ms"
    assert describe_trigger(table.trigger("reset")) == (
        "reset: hard reset the device from any state\n"
        "\t* Hold Power\n"
        "\t* Hold Volume Up\n"
        "\t* Until device enters state xbl"
    )


def test_describe_trigger_with_wait():
    trig = Trigger(
        name="cycle",
        to="off",
        from_states=frozenset({"on"}),
        sequence=(SequenceStep("wait", "wait", 200), SequenceStep("relay", "off")),
    )
    assert describe_trigger(trig) == "cycle from on\n\t* Wait 200ms\n\t* Off Relay"
