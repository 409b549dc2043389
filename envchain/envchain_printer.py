"""
A pretty-printer for envchain objects.
"""
import collections.abc

from envchain.envchain_datatypes import (
    MISSING, Binding, BindingKind, Call, Closure, EmptyEnvironment, Environment,
)
from envchain.envchain_stack import Frame


# Short type tags used when listing bindings.
_TYPE_TAGS = {
    bool: "lgl",
    int: "int",
    float: "dbl",
    complex: "cpl",
    str: "chr",
    bytes: "raw",
    list: "list",
    tuple: "list",
    dict: "named list",
    type(None): "NULL",
}


class Printer:
    """Formats environments, closures, calls and stack traces as readable text."""

    def __init__(self, indent_width=2, max_repr=40):
        self._indent_char = " " * indent_width
        self._max_repr = max_repr
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        if obj is MISSING:
            return lambda o, l: "<missing>"
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, Environment):
            return self._pformat_environment
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_dict
        return self._pformat_default

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            list: self._pformat_list,
            tuple: self._pformat_list,
            Environment: self._pformat_environment,
            EmptyEnvironment: self._pformat_environment,
            Closure: self._pformat_closure,
            Call: self._pformat_call,
            Frame: self._pformat_frame,
        }

    def _pformat_default(self, obj, level):
        if callable(obj):
            name = getattr(obj, "__name__", None)
            return f"<fn: {name}>" if name else "<fn>"
        text = repr(obj)
        if len(text) > self._max_repr:
            text = text[:self._max_repr - 3] + "..."
        return text

    def _pformat_str(self, obj, level):
        return repr(obj)

    def _pformat_bool(self, obj, level):
        return 'TRUE' if obj else 'FALSE'

    def _pformat_none(self, obj, level):
        return 'NULL'

    def _pformat_list(self, obj, level):
        return f"[{', '.join(self.pformat(x, level) for x in obj)}]"

    def _pformat_dict(self, obj, level):
        items = ', '.join(f"{k} = {self.pformat(v, level)}" for k, v in obj.items())
        return f"list({items})"

    def _pformat_environment(self, obj, level):
        return f"<environment: {obj.display_name}>"

    def _pformat_closure(self, obj, level):
        params = []
        for p in obj.params:
            params.append(f"{p} = <default>" if p in obj.defaults else p)
        return f"<fn: {obj.name or '<anonymous>'}({', '.join(params)})>"

    def _pformat_call(self, obj, level):
        parts = [self._pformat_arg(a, level) for a in obj.args]
        parts += [f"{k} = {self._pformat_arg(v, level)}" for k, v in obj.kwargs]
        return f"{obj.name}({', '.join(parts)})"

    def _pformat_arg(self, obj, level):
        # Calls render arguments compactly: environments and closures by tag only
        if isinstance(obj, Environment):
            return "<env>"
        if isinstance(obj, Closure):
            return "<fn>"
        return self.pformat(obj, level)

    def _pformat_frame(self, obj, level):
        call = self.pformat(obj.call, level) if obj.call is not None else "<global>"
        return f"{obj.index}. {call} in {self.pformat(obj.env, level)}"

    # --- Environment listings ---

    def type_tag(self, value) -> str:
        """A short tag describing a value's type, in angle brackets."""
        if isinstance(value, Environment):
            return "<env>"
        if isinstance(value, Closure) or callable(value):
            return "<fn>"
        for t, tag in _TYPE_TAGS.items():
            if type(value) is t:
                return f"<{tag}>"
        return f"<{type(value).__name__}>"

    def binding_tag(self, binding: Binding) -> str:
        match binding.kind:
            case BindingKind.PLAIN:
                return self.type_tag(binding.value)
            case BindingKind.LAZY:
                return self.type_tag(binding.value) if binding.forced else "<lazy>"
            case BindingKind.ACTIVE:
                return "<active>"

    def env_print(self, env: Environment) -> str:
        """Describes an environment: its name, its parent and a tagged list of bindings.

        Never forces lazy bindings or runs active ones.
        """
        lines = [self.pformat(env)]
        if env.parent is not None:
            lines.append(f"parent: {self.pformat(env.parent)}")
        if env.is_locked:
            lines.append("locked: TRUE")
        entries = env.entries()
        if entries:
            lines.append("bindings:")
            for name, binding in entries:
                lock = " [locked]" if binding.locked else ""
                lines.append(f"{self._indent_char}* {name}: {self.binding_tag(binding)}{lock}")
        return "\n".join(lines)

    def pformat_chain(self, env: Environment) -> str:
        """One line per environment from ``env`` to the empty environment."""
        chain = [env] + list(env.ancestors())
        return "\n".join(f"{i}. {self.pformat(e)}" for i, e in enumerate(chain))

    def pformat_trace(self, calls) -> str:
        """Renders a stack trace (innermost first) as a call tree rooted at the outermost call."""
        ordered = list(reversed(list(calls)))
        if not ordered:
            return ""
        width = len(str(len(ordered)))
        lines = [" " * (width + 2) + "▆"]
        for i, call in enumerate(ordered, start=1):
            text = self.pformat(call) if call is not None else "<global>"
            branch = self._indent_char * (i - 1) + "└─"
            lines.append(f"{str(i).rjust(width)}. {branch}{text}")
        return "\n".join(lines)
