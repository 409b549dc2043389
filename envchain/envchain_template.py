"""
Mustache interpolation with names resolved through an environment chain.

``render("{{greeting}}, {{user.name}}", env)`` looks up ``greeting`` the same
way code running in ``env`` would: in ``env`` itself, then its parent, and
so on. Nested environments can be traversed with dotted names.
"""
from typing import Optional

import pystache

from envchain.envchain_datatypes import Environment, InvalidArgument, NameNotFound


class _EnvView:
    """Exposes an environment to pystache through attribute lookup."""

    def __init__(self, env: Environment, strict: bool):
        self._env = env
        self._strict = strict

    def __getattr__(self, name: str):
        if name.startswith("__") or name in ("_env", "_strict"):
            raise AttributeError(name)
        try:
            _, value = self._env.resolve(name)
        except NameNotFound:
            if self._strict:
                raise
            # pystache renders missing attributes as empty
            raise AttributeError(name) from None
        if isinstance(value, Environment):
            return _EnvView(value, self._strict)
        return value


def render(template: str, env: Optional[Environment] = None, *, strict: bool = False) -> str:
    """Render ``template`` against ``env`` (the current environment by default).

    With ``strict`` a tag naming an unbound variable raises NameNotFound
    instead of rendering as an empty string.
    """
    if env is None:
        from envchain.envchain_runtime import current_env
        env = current_env()
    if not isinstance(env, Environment):
        raise InvalidArgument(f"expected an environment, not {type(env).__name__}")
    renderer = pystache.Renderer(escape=lambda u: u)
    return renderer.render(template, _EnvView(env, strict))
