import itertools
import random

import pytest
from envchain.envchain_datatypes import (
    EMPTY_ENV, BindingKind, Environment, InvalidArgument, PromiseRecursion, WriteRejected,
)


# --- Active bindings ---

def test_active_binding_runs_every_read():
    counter = itertools.count(1)
    env = Environment(EMPTY_ENV)
    env.bind_active("z", lambda: next(counter))
    assert env.get("z") == 1
    assert env.get("z") == 2
    assert env.peek("z") == 3


def test_active_binding_random_is_not_cached():
    rng = random.Random(42)
    env = Environment(EMPTY_ENV)
    env.bind_active("z", rng.random)
    reads = {env.get("z") for _ in range(5)}
    assert len(reads) > 1


def test_active_binding_resolves_through_chain():
    calls = []
    parent = Environment(EMPTY_ENV)
    parent.bind_active("now", lambda: calls.append(1) or len(calls))
    child = Environment(parent)
    assert child.resolve("now") == (parent, 1)
    assert child.resolve("now") == (parent, 2)


def test_active_binding_setter_receives_writes():
    store = {"v": 0}
    env = Environment(EMPTY_ENV)
    env.bind_active("x", lambda: store["v"], lambda value: store.__setitem__("v", value * 2))
    env.set("x", 5)
    assert store["v"] == 10
    assert env.get("x") == 10
    assert env.binding_kind("x") is BindingKind.ACTIVE


def test_active_binding_without_setter_is_read_only():
    env = Environment(EMPTY_ENV)
    env.bind_active("pi", lambda: 3.14)
    with pytest.raises(WriteRejected) as info:
        env.set("pi", 3)
    assert info.value.name == "pi"
    assert env.get("pi") == 3.14


def test_active_binding_setter_can_veto():
    def only_positive(value):
        if value <= 0:
            raise WriteRejected("must be positive", "n")
        state["n"] = value

    state = {"n": 1}
    env = Environment(EMPTY_ENV)
    env.bind_active("n", lambda: state["n"], only_positive)
    env.set("n", 4)
    with pytest.raises(WriteRejected):
        env.set("n", -1)
    assert env.get("n") == 4
    assert env.binding_kind("n") is BindingKind.ACTIVE


def test_active_binding_can_be_unbound():
    env = Environment(EMPTY_ENV)
    env.bind_active("z", lambda: 1)
    env.unbind("z")
    assert not env.has("z")


def test_bind_active_validation():
    env = Environment(EMPTY_ENV)
    with pytest.raises(InvalidArgument):
        env.bind_active("z", 42)
    with pytest.raises(InvalidArgument):
        env.bind_active("z", lambda: 1, setter="nope")
    assert not env.has("z")


# --- Lazy bindings ---

def test_lazy_binding_is_forced_once():
    rng = random.Random(7)
    calls = []
    def produce():
        calls.append(1)
        return rng.random()
    env = Environment(EMPTY_ENV)
    env.bind_lazy("z", produce)
    assert calls == []
    first = env.get("z")
    second = env.get("z")
    assert first == second
    assert len(calls) == 1


def test_lazy_binding_not_forced_by_has_or_names():
    calls = []
    env = Environment(EMPTY_ENV)
    env.bind_lazy("z", lambda: calls.append(1))
    assert env.has("z")
    assert env.names() == ["z"]
    assert env.binding_kind("z") is BindingKind.LAZY
    assert calls == []


def test_lazy_binding_retries_after_failure():
    attempts = []
    def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise ValueError("not yet")
        return "ok"
    env = Environment(EMPTY_ENV)
    env.bind_lazy("v", flaky)
    with pytest.raises(ValueError):
        env.get("v")
    assert env.get("v") == "ok"
    assert env.get("v") == "ok"
    assert len(attempts) == 2


def test_lazy_binding_recursive_reference():
    env = Environment(EMPTY_ENV)
    env.bind_lazy("x", lambda: env.get("x") + 1)
    with pytest.raises(PromiseRecursion):
        env.get("x")
    # RecursionError family, so generic handlers still catch it
    with pytest.raises(RecursionError):
        env.get("x")


def test_lazy_binding_reads_other_bindings():
    env = Environment(EMPTY_ENV, {"a": 2})
    env.bind_lazy("b", lambda: env.get("a") * 21)
    env.set("a", 3)
    assert env.get("b") == 63
    env.set("a", 100)
    assert env.get("b") == 63


def test_set_replaces_lazy_binding():
    calls = []
    env = Environment(EMPTY_ENV)
    env.bind_lazy("x", lambda: calls.append(1))
    env.set("x", 5)
    assert env.get("x") == 5
    assert env.binding_kind("x") is BindingKind.PLAIN
    assert calls == []


def test_bind_lazy_validation():
    env = Environment(EMPTY_ENV)
    with pytest.raises(InvalidArgument):
        env.bind_lazy("x", "value")


def test_rebinding_kind_replaces_previous():
    env = Environment(EMPTY_ENV, {"x": 1})
    env.bind_active("x", lambda: 2)
    assert env.get("x") == 2
    env.bind_lazy("x", lambda: 3)
    assert env.get("x") == 3
    assert env.binding_kind("x") is BindingKind.LAZY


def test_entries_are_snapshots():
    env = Environment(EMPTY_ENV, {"a": 1})
    env.bind_lazy("b", lambda: 2)
    entries = dict(env.entries())
    entries["a"].value = 99
    assert env.get("a") == 1
    assert entries["b"].kind is BindingKind.LAZY
    assert not entries["b"].forced
