import pytest

from fbug.errors import ConfigurationError, UnsupportedAction
from fbug.loader import load_device, load_device_text
from fbug.model import SerialSpec, SshSpec, UsbSpec

BASE = """
name: Bench
codename: bench
connections:
  - type: serial
    label: uart
    path: /dev/null
  - type: ssh
    host: 10.0.0.2
controls:
  - name: power
    type: button
    connection: uart
    action: dtr
states:
  - name: boot
  - name: shell
transitions:
{transitions}
"""

SIMPLE_TRANSITIONS = """
  - to: boot
    actions:
      - source: uart
        value: "U-Boot"
  - to: shell
    from: [boot]
    actions:
      - source: uart
        value: "login:"
"""


def _load(transitions=SIMPLE_TRANSITIONS, **replace):
    text = BASE.format(transitions=transitions.strip("\n"))
    for old, new in replace.items():
        text = text.replace(old, new)
    return load_device_text(text)


def test_axolotl_loads(axolotl):
    assert axolotl.codename == "axolotl"
    assert axolotl.resting_state == "fastboot"
    # Unquoted numbers are still credentials.
    assert axolotl.password == "147147"

    uart, usb, ssh = axolotl.connections
    assert isinstance(uart, SerialSpec) and uart.getty is True and uart.lines is True and uart.baud == 115200
    assert isinstance(usb, UsbSpec) and usb.port == "1-4"
    assert isinstance(ssh, SshSpec) and ssh.alive_count_max == 2

    assert axolotl.state("linux").property("baud") == 3000000
    assert axolotl.state("xbl").property("baud") is None


def test_axolotl_transitions_and_triggers(axolotl):
    by_to = {t.to: t for t in axolotl.transitions}

    assert by_to["xbl"].from_states is None
    assert by_to["linux"].events[0].pattern.is_regex
    assert by_to["fastboot"].events[0].pattern.is_regex is False

    edl = by_to["edl"]
    assert edl.is_timeout
    assert edl.timeout.seconds == 10
    assert edl.timeout.name == "hang"
    assert edl.triggers == ()

    boot = next(t for t in by_to["linux"].triggers if t.name == "boot")
    assert boot.from_states == frozenset({"fastboot"})
    assert boot.sequence[0].action == "press" and boot.sequence[0].duration == 50

    # Omitted `from` inherits the transition's sources.
    bootloader = by_to["fastboot"].triggers[0]
    assert bootloader.from_states == frozenset({"xbl"})

    assert [s.action for s in axolotl.init] == ["release", "release"]


def test_on_off_are_not_yaml_booleans():
    dev = _load(SIMPLE_TRANSITIONS + """
  - to: off
    from: [shell]
    actions:
      - source: uart
        value: "Power down"
    triggers:
      - name: poweroff
        sequence:
          - control: power
            action: on
            duration: 10
          - control: power
            action: off
""")
    trig = next(t for t in dev.triggers() if t.name == "poweroff")
    assert [s.action for s in trig.sequence] == ["on", "off"]


def test_command_control_and_detect_alias():
    dev = _load("""
  - to: boot
    detect:
      - source: uart
        value: "U-Boot"
""", **{"controls:\n": "controls:\n  - name: reboot\n    type: command\n    connection: ssh\n    command-on: reboot\n    command-off: 'true'\n"})
    ctl = dev.control("reboot")
    assert ctl.kind == "command"
    assert ctl.action == "run"
    assert ctl.values == ("reboot", "true")
    assert dev.transitions[0].events[0].event == "input"


def test_switch_is_a_button():
    dev = _load(**{"type: button": "type: switch"})
    assert dev.control("power").kind == "button"


def test_duplicate_yaml_key_rejected():
    with pytest.raises(ConfigurationError, match="Duplicate key 'codename'"):
        _load(**{"codename: bench": "codename: bench\ncodename: again"})


def test_schema_rejects_missing_serial_path():
    with pytest.raises(ConfigurationError, match="Schema validation failed"):
        _load(**{"    path: /dev/null\n": ""})


def test_schema_rejects_unknown_connection_type():
    with pytest.raises(ConfigurationError):
        _load(**{"type: ssh": "type: telnet"})


def test_any_cannot_be_declared():
    with pytest.raises(ConfigurationError, match="reserved"):
        _load(**{"  - name: shell": "  - name: shell\n  - name: any"})


def test_trigger_from_must_be_subset():
    with pytest.raises(ConfigurationError, match="subset"):
        _load(SIMPLE_TRANSITIONS + """
  - to: off
    from: [shell]
    actions:
      - source: uart
        value: "Power down"
    triggers:
      - name: poweroff
        from: [shell, boot]
        sequence:
          - control: power
            action: press
""")


def test_unsupported_action_for_connection_kind():
    with pytest.raises(UnsupportedAction, match="has no action 'dtr'"):
        _load(**{"connection: uart\n    action: dtr": "connection: ssh\n    action: dtr"})


def test_values_must_have_two_elements():
    with pytest.raises(ConfigurationError, match="exactly"):
        _load(**{"action: dtr": "action: dtr\n    values: [1, 0, 1]"})


def test_valued_action_requires_values():
    with pytest.raises(ConfigurationError, match="values"):
        _load(**{"action: dtr": "action: baud"})


def test_unknown_state_and_source_rejected():
    with pytest.raises(ConfigurationError, match="unknown target state"):
        _load(SIMPLE_TRANSITIONS.replace("to: shell", "to: shel"))
    with pytest.raises(ConfigurationError, match="unknown event source"):
        _load(SIMPLE_TRANSITIONS.replace("source: uart\n        value: \"login:\"", "source: usb\n        value: \"login:\""))


def test_invalid_regex_rejected():
    with pytest.raises(ConfigurationError, match="invalid regex"):
        _load(SIMPLE_TRANSITIONS.replace('"U-Boot"', '"/U-Boot[/"'))


def test_hold_not_allowed_in_init():
    with pytest.raises(ConfigurationError, match="not allowed"):
        _load(SIMPLE_TRANSITIONS + "\ninit:\n  - control: power\n    action: hold\n")


def test_event_and_timeout_are_exclusive():
    with pytest.raises(ConfigurationError, match="mutually exclusive"):
        _load(SIMPLE_TRANSITIONS.replace("from: [boot]", "from: [boot]\n    timeout: 5"))


def test_load_device_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="Could not read"):
        load_device(tmp_path / "nope.yaml")
