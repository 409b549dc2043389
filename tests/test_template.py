import pytest
from envchain.envchain_datatypes import EMPTY_ENV, Environment, InvalidArgument, NameNotFound
from envchain.envchain_runtime import Runtime, RuntimeConfig, use_runtime
from envchain.envchain_template import render


def test_render_resolves_through_parents():
    parent = Environment(EMPTY_ENV, {"greeting": "Hello", "name": "parent"})
    child = Environment(parent, {"name": "child"})
    assert render("{{greeting}}, {{name}}!", child) == "Hello, child!"
    assert render("{{greeting}}, {{name}}!", parent) == "Hello, parent!"


def test_render_missing_is_empty_by_default():
    env = Environment(EMPTY_ENV, {"a": 1})
    assert render("[{{a}}][{{nope}}]", env) == "[1][]"


def test_render_strict_raises():
    env = Environment(EMPTY_ENV, {"a": 1})
    with pytest.raises(NameNotFound) as info:
        render("{{nope}}", env, strict=True)
    assert info.value.name == "nope"


def test_render_dotted_names_into_nested_envs():
    user = Environment(EMPTY_ENV, {"name": "Ada"})
    env = Environment(EMPTY_ENV, {"user": user})
    assert render("{{user.name}}", env) == "Ada"


def test_render_does_not_escape():
    env = Environment(EMPTY_ENV, {"html": "<b>&</b>"})
    assert render("{{html}}", env) == "<b>&</b>"


def test_render_sections_over_lists():
    env = Environment(EMPTY_ENV, {"items": [{"v": 1}, {"v": 2}]})
    assert render("{{#items}}{{v}};{{/items}}", env) == "1;2;"


def test_render_reads_active_bindings():
    counter = iter(range(1, 10))
    env = Environment(EMPTY_ENV)
    env.bind_active("tick", lambda: next(counter))
    assert render("{{tick}} {{tick}}", env) == "1 2"


def test_render_defaults_to_current_env():
    rt = Runtime(RuntimeConfig())
    rt.global_env.set("who", "global")
    with use_runtime(rt):
        assert render("hi {{who}}") == "hi global"
        def body(env):
            env.set("who", "local")
            return render("hi {{who}}")
        assert rt.call(rt.function((), body, name="f")) == "hi local"


def test_render_requires_environment():
    with pytest.raises(InvalidArgument):
        render("{{a}}", {"a": 1})
