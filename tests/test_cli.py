import io
import json

from fbug.cli import main, parse_args
from fbug.constants import DEFAULT_CONTROL_SOCKET, VERSION
from fbug.doctor import build_arg_parser
from fbug.logging import JsonLogger

from conftest import AXOLOTL


def test_parser_defaults():
    args = build_arg_parser().parse_args(["-d", "dev.yaml"])
    assert args.device == "dev.yaml"
    assert args.trigger_timeout == 30.0
    assert args.run_init is True
    assert args.json is False
    assert args.control_socket == DEFAULT_CONTROL_SOCKET


def test_no_control_socket_flag():
    args = build_arg_parser().parse_args(["-d", "dev.yaml", "--no-control-socket", "--no-init"])
    assert args.control_socket == ""
    assert args.run_init is False


def _write_config(tmp_path):
    cfg = tmp_path / "fbug.toml"
    cfg.write_text(
        '[device]\npath = "devices/axolotl.yaml"\n\n'
        "[engine]\ntrigger_timeout = 12.5\nrun_init = false\n\n"
        "[logging]\njson = true\n\n"
        '[control]\nsocket = "/tmp/fbug-test.sock"\n'
    )
    return cfg


def test_config_file_replaces_defaults(tmp_path):
    cfg = _write_config(tmp_path)
    _, args = parse_args(["--config", str(cfg)])
    assert args.device == "devices/axolotl.yaml"
    assert args.trigger_timeout == 12.5
    assert args.run_init is False
    assert args.json is True
    assert args.control_socket == "/tmp/fbug-test.sock"


def test_cli_overrides_config(tmp_path):
    cfg = _write_config(tmp_path)
    _, args = parse_args(["--config", str(cfg), "--trigger-timeout", "3", "--init", "--no-json"])
    assert args.trigger_timeout == 3.0
    assert args.run_init is True
    assert args.json is False


def test_print_config(tmp_path, capsys):
    cfg = _write_config(tmp_path)
    assert main(["--config", str(cfg), "--print-config"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["engine"] == {"trigger_timeout": 12.5, "run_init": False}
    assert out["control"]["socket"] == "/tmp/fbug-test.sock"


def test_version(capsys):
    assert main(["--version"]) == 0
    assert capsys.readouterr().out.strip() == VERSION


def test_list_triggers(capsys):
    assert main(["-d", str(AXOLOTL), "--list-triggers"]) == 0
    out = capsys.readouterr().out
    assert "boot: boot the kernel from fastboot" in out
    assert "\t* Press Power for 50ms" in out
    assert "hang" not in out


def test_bad_device_returns_2(tmp_path, capsys):
    bad = tmp_path / "bad.yaml"
    bad.write_text("name: x\nname: y\n")
    assert main(["-d", str(bad), "--list-triggers"]) == 2
    assert "Duplicate key" in capsys.readouterr().err


def test_json_logger_bind_adds_fields():
    buf = io.StringIO()
    log = JsonLogger(enable_json=True, stream=buf).bind(device="axolotl")
    log.emit("transition", to="xbl")
    payload = json.loads(buf.getvalue())
    assert payload["event"] == "transition"
    assert payload["device"] == "axolotl"
    assert payload["to"] == "xbl"

    buf = io.StringIO()
    JsonLogger(enable_json=False, stream=buf, device="axolotl").emit("startup", version=VERSION)
    assert buf.getvalue().rstrip().endswith(f"startup device=axolotl version={VERSION}")


def test_doctor_reports_missing_serial_port(tmp_path, monkeypatch, capsys):
    from fbug import doctor

    monkeypatch.setattr(doctor.list_ports, "comports", lambda: [])
    dev = tmp_path / "bench.yaml"
    dev.write_text(
        "name: Bench\ncodename: bench\n"
        "connections:\n  - type: serial\n    label: uart\n    path: /dev/fbug-missing\n"
        "states:\n  - name: shell\n"
        "transitions:\n  - to: shell\n    actions:\n      - source: uart\n        value: 'login:'\n"
    )
    assert main(["-d", str(dev), "--doctor"]) == 1
    out = capsys.readouterr().out
    assert "FAIL uart (serial): no such device /dev/fbug-missing" in out
    assert "(none)" in out
