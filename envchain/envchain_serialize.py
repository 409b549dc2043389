from __future__ import annotations

import json
from typing import Any, Mapping, Optional
import collections.abc

import yaml

from envchain.envchain_datatypes import BindingKind, Closure, Environment, InvalidArgument


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        return data.decode(encoding or 'utf-8', errors='replace')
    if isinstance(data, str):
        return data
    return str(data)


def _to_builtin(obj: Any) -> Any:
    # Environments and closures are never descended into: bindings may refer
    # back to the environment that holds them.
    if isinstance(obj, (Environment, Closure)):
        from envchain.envchain_printer import Printer
        return Printer().pformat(obj)
    if isinstance(obj, (list, tuple)):
        return [_to_builtin(x) for x in obj]
    if isinstance(obj, collections.abc.Mapping):
        return {str(k): _to_builtin(v) for k, v in obj.items()}
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    from envchain.envchain_printer import Printer
    return Printer().pformat(obj)


def env_to_dict(env: Environment, *, inherit: bool = False, force: bool = False) -> dict:
    """
    Snapshot an environment's bindings as a plain dict.
    - inherit: also include ancestors' bindings, nearer environments winning.
    - force: read lazy and active bindings instead of rendering them as
      "<lazy>" / "<active>".
    """
    if not isinstance(env, Environment):
        raise InvalidArgument(f"expected an environment, not {type(env).__name__}")
    chain = [env] + list(env.ancestors()) if inherit else [env]
    out: dict = {}
    for e in reversed(chain):
        for name, binding in e.entries():
            match binding.kind:
                case BindingKind.PLAIN:
                    value = binding.value
                case BindingKind.LAZY:
                    if binding.forced:
                        value = binding.value
                    else:
                        value = e.get(name) if force else "<lazy>"
                case BindingKind.ACTIVE:
                    value = e.get(name) if force else "<active>"
            out[name] = _to_builtin(value)
    return out


def environment_from(mapping: Mapping[str, Any], parent: Optional[Environment] = None,
                     label: Optional[str] = None) -> Environment:
    """Build a new environment whose bindings are the mapping's items."""
    if not isinstance(mapping, collections.abc.Mapping):
        raise InvalidArgument(f"expected a mapping, not {type(mapping).__name__}")
    return Environment(parent, mapping, label)


def detect_format(content_type: Optional[str] = None, data_hint: Optional[str] = None) -> Optional[str]:
    """
    Returns 'json' or 'yaml'.
    Uses Content-Type first; falls back to simple data sniffing if provided.
    """
    ct = (content_type or "").lower()
    if 'json' in ct:
        return 'json'
    if 'yaml' in ct:
        return 'yaml'
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
        return 'yaml'
    return None


# --------------------------
# Public API
# --------------------------

def deserialize(data: bytes | bytearray | str,
                *,
                content_type: Optional[str] = None,
                fmt: Optional[str] = None) -> Any:
    """
    Convert text to native Python structures.
    Supported fmt: 'json', 'yaml'. If fmt is None, uses content_type, then sniffing.
    """
    text = _norm_text(data)
    f = (fmt or detect_format(content_type, text) or '').lower()
    if f == 'json':
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            # YAML is a superset of JSON; accept mislabeled payloads
            f = 'yaml'
    if f == 'yaml':
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise InvalidArgument(f"could not parse {fmt or 'input'} as YAML: {e}") from e
    raise InvalidArgument(f"unsupported serialization format: {fmt!r}")


def serialize(value: Any,
              *,
              fmt: str,
              pretty: bool = True,
              inherit: bool = False,
              force: bool = False) -> str:
    """
    Convert a value into text. Environments are snapshotted with env_to_dict.
    - fmt: 'json' | 'yaml'
    """
    f = (fmt or '').lower()
    if isinstance(value, Environment):
        built = env_to_dict(value, inherit=inherit, force=force)
    else:
        built = _to_builtin(value)
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False)
    raise InvalidArgument(f"unsupported serialization format: {fmt!r}")


__all__ = [
    "deserialize",
    "serialize",
    "detect_format",
    "env_to_dict",
    "environment_from",
]
