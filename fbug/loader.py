"""Loading and validation of YAML device descriptions."""

from __future__ import annotations

import json
import logging
import re
from importlib import resources
from pathlib import Path
from typing import Any, Optional

import yaml
from jsonschema import ValidationError, validators

from .constants import EVENT_INPUT, STATE_ANY
from .errors import ConfigurationError
from .model import (
    ControlSpec,
    Device,
    EventRule,
    Pattern,
    SequenceStep,
    SerialSpec,
    SshSpec,
    StateSpec,
    TimeoutRule,
    Transition,
    Trigger,
    UsbSpec,
)
from .statetable import validate_device

LOGGER = logging.getLogger(__name__)

DEFAULT_LABELS = {"serial": "uart", "usb": "usb", "ssh": "ssh"}
CONTROL_KINDS = {"button": "button", "switch": "button", "command": "command"}


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys.

    YAML 1.1 booleans are not resolved implicitly, so `action: on` stays the
    string "on" instead of becoming True."""


UniqueKeyLoader.yaml_implicit_resolvers = {
    key: list(value) for key, value in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

for first_char, mappings in list(UniqueKeyLoader.yaml_implicit_resolvers.items()):
    UniqueKeyLoader.yaml_implicit_resolvers[first_char] = [
        (tag, regexp)
        for tag, regexp in mappings
        if tag != "tag:yaml.org,2002:bool"
    ]


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigurationError(f"Duplicate key '{key}' in YAML document (line {key_node.start_mark.line + 1})")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


def _load_schema_validator() -> Any:
    schema_text = resources.files("fbug.schemas").joinpath("device.schema.json").read_text(encoding="utf-8")
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _read_yaml(text: str, source) -> dict[str, Any]:
    try:
        loaded = yaml.load(text, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {source}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Device file {source} must contain a mapping at root")
    return loaded


def _normalize_bool(value: Any, *, context: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "on"):
            return True
        if lowered in ("false", "no", "off"):
            return False
    raise ConfigurationError(f"{context} must be boolean true/false")


def _state_list(value, *, context: str) -> Optional[frozenset[str]]:
    """`from` field: missing, empty or `any` means every state."""
    if value is None:
        return None
    names = [value] if isinstance(value, str) else list(value)
    if not names:
        return None
    if STATE_ANY in names:
        if len(names) > 1:
            raise ConfigurationError(f"{context}: '{STATE_ANY}' cannot be combined with other states")
        return None
    return frozenset(names)


def _pattern(value, *, context: str) -> Pattern:
    try:
        return Pattern.parse(str(value))
    except re.error as exc:
        raise ConfigurationError(f"{context}: invalid regex {value!r}: {exc}") from exc


# ---------------- sections ----------------

def _build_connection(doc: dict[str, Any]):
    kind = doc["type"]
    label = doc.get("label", DEFAULT_LABELS[kind])
    if kind == "serial":
        return SerialSpec(
            label=label,
            path=doc["path"],
            baud=int(doc.get("baud", 115200)),
            lines=_normalize_bool(doc.get("lines", True), context=f"connection '{label}'.lines"),
            getty=_normalize_bool(doc.get("getty", False), context=f"connection '{label}'.getty"),
        )
    if kind == "usb":
        return UsbSpec(label=label, port=str(doc["port"]))
    return SshSpec(
        label=label,
        host=doc["host"],
        port=int(doc.get("port", 22)),
        alive_interval=float(doc.get("alive_interval", 1.0)),
        alive_count_max=int(doc.get("alive_count_max", 3)),
        command=doc.get("command"),
    )


def _build_control(doc: dict[str, Any]) -> ControlSpec:
    name = doc["name"]
    kind = CONTROL_KINDS[doc["type"]]
    values = doc.get("values")
    action = doc.get("action")
    if kind == "command":
        if "command-on" in doc or "command-off" in doc:
            if values is not None:
                raise ConfigurationError(f"control '{name}': use either values or command-on/command-off")
            if "command-on" not in doc or "command-off" not in doc:
                raise ConfigurationError(f"control '{name}': command-on and command-off go together")
            values = [doc["command-on"], doc["command-off"]]
        action = action or "run"
    if action is None:
        raise ConfigurationError(f"control '{name}': missing action")
    return ControlSpec(
        name=name,
        kind=kind,
        connection=doc["connection"],
        action=action,
        values=tuple(values) if values is not None else None,
    )


def _build_state(doc: dict[str, Any]) -> StateSpec:
    props = doc.get("properties") or []
    if isinstance(props, dict):
        props = [{k: v} for k, v in props.items()]
    pairs = []
    for item in props:
        (key, value), = item.items()
        if key == "baud" and (isinstance(value, bool) or not isinstance(value, int) or value <= 0):
            raise ConfigurationError(f"state '{doc['name']}': baud must be a positive integer")
        pairs.append((key, value))
    return StateSpec(name=doc["name"], properties=tuple(pairs))


def _build_steps(docs, *, context: str) -> tuple[SequenceStep, ...]:
    steps = []
    for i, doc in enumerate(docs or []):
        action = doc.get("action")
        if action is None:
            if doc["control"] != "wait":
                raise ConfigurationError(f"{context} step {i}: missing action")
            action = "wait"
        steps.append(SequenceStep(control=doc["control"], action=str(action), duration=doc.get("duration")))
    return tuple(steps)


def _build_transition(doc: dict[str, Any]) -> Transition:
    to = doc["to"]
    context = f"transition to '{to}'"
    from_states = _state_list(doc.get("from"), context=context)

    rules = []
    for rule in doc.get("actions") or doc.get("detect") or []:
        rules.append(EventRule(
            source=rule["source"],
            event=rule.get("event", EVENT_INPUT),
            pattern=_pattern(rule["value"], context=context),
        ))

    timeout = None
    if "timeout" in doc:
        timeout = TimeoutRule(seconds=float(doc["timeout"]))

    triggers = []
    for tdoc in doc.get("triggers") or []:
        name = tdoc["name"]
        if "timeout" in tdoc:
            # A trigger carrying a timeout is the transition's timeout detection, not a runnable trigger.
            if timeout is not None:
                raise ConfigurationError(f"{context}: more than one timeout")
            if tdoc.get("sequence"):
                raise ConfigurationError(f"trigger '{name}': a timeout trigger cannot have a sequence")
            timeout = TimeoutRule(seconds=float(tdoc["timeout"]), name=name, description=tdoc.get("description"))
            continue
        if tdoc.get("from") is None:
            trig_from = from_states
        else:
            trig_from = _state_list(tdoc["from"], context=f"trigger '{name}'")
        triggers.append(Trigger(
            name=name,
            to=to,
            description=tdoc.get("description"),
            from_states=trig_from,
            sequence=_build_steps(tdoc.get("sequence"), context=f"trigger '{name}'"),
        ))

    return Transition(to=to, from_states=from_states, events=tuple(rules), timeout=timeout, triggers=tuple(triggers))


def build_device(doc: dict[str, Any], source="<document>") -> Device:
    """Validate a parsed device description and build the immutable model."""
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigurationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    password = doc.get("password")
    device = Device(
        name=doc["name"],
        codename=doc["codename"],
        description=doc.get("description"),
        username=doc.get("username"),
        password=str(password) if password is not None else None,
        resting_state=doc.get("resting-state", "off"),
        connections=tuple(_build_connection(c) for c in doc["connections"]),
        controls=tuple(_build_control(c) for c in doc.get("controls") or []),
        states=tuple(_build_state(s) for s in doc.get("states") or []),
        transitions=tuple(_build_transition(t) for t in doc["transitions"]),
        init=_build_steps(doc.get("init"), context="init"),
    )
    try:
        return validate_device(device)
    except ConfigurationError as exc:
        raise type(exc)(f"{source}: {exc}") from exc


def load_device_text(text: str, source="<string>") -> Device:
    return build_device(_read_yaml(text, source), source)


def load_device(path) -> Device:
    """Read, validate and build the device description at `path`."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Could not read device file {path}: {exc}") from exc
    device = load_device_text(text, path)
    LOGGER.debug("loaded device %s (%s) from %s", device.name, device.codename, path)
    return device
