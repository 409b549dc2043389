"""
The envchain runtime.

A Runtime owns the standard environments (empty, base, global), the call
stack, and the search path, and it is the one place closures are invoked:
every invocation gets a fresh execution environment whose parent is the
closure's captured environment, a frame is pushed before the body runs and
popped on every exit path.
"""
import contextvars
import inspect
import itertools
import logging
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Literal, Mapping, Optional, Sequence

from envchain.envchain_datatypes import (
    EMPTY_ENV, Call, Closure, EmptyEnvironment, EnvchainError, Environment, InvalidArgument,
)
from envchain.envchain_stack import DEFAULT_MAX_DEPTH, CallStack, Frame

logger = logging.getLogger(__name__)

_TRUTHY = ("1", "true", "yes", "on")


# ===================================================================
# 1. Configuration & Logging
# ===================================================================

@dataclass
class RuntimeConfig:
    debug: bool = False
    max_depth: int = DEFAULT_MAX_DEPTH
    load_builtins: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'RuntimeConfig':
        """Reads ENVCHAIN_DEBUG and ENVCHAIN_MAX_DEPTH."""
        environ = os.environ if environ is None else environ
        debug = environ.get("ENVCHAIN_DEBUG", "").strip().lower() in _TRUTHY
        raw = environ.get("ENVCHAIN_MAX_DEPTH", "").strip()
        max_depth = DEFAULT_MAX_DEPTH
        if raw:
            try:
                max_depth = int(raw)
            except ValueError:
                raise InvalidArgument(f"ENVCHAIN_MAX_DEPTH must be an integer, got {raw!r}") from None
            if max_depth < 1:
                raise InvalidArgument(f"ENVCHAIN_MAX_DEPTH must be positive, got {max_depth}")
        return cls(debug=debug, max_depth=max_depth)


def configure_logging(level: int = logging.DEBUG, stream=None) -> logging.Logger:
    """Attach a stderr handler to the package logger (once) and set its level."""
    pkg_logger = logging.getLogger("envchain")
    if not any(getattr(h, "_envchain_handler", False) for h in pkg_logger.handlers):
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter("[%(name)s] %(levelname)s %(message)s"))
        handler._envchain_handler = True
        pkg_logger.addHandler(handler)
    pkg_logger.setLevel(level)
    return pkg_logger


# ===================================================================
# 2. Execution results
# ===================================================================

def _format_runtime_error(e: BaseException) -> str:
    match e:
        case EnvchainError():
            return f"{type(e).__name__}: {e}"
        case _:
            return f"Error: {type(e).__name__}: {e}"


@dataclass
class ExecutionResult:
    """The structured result of ``Runtime.run``."""
    status: Literal['success', 'error']
    value: Any = None
    error: Optional[BaseException] = None
    error_message: Optional[str] = None
    trace: List[Call] = field(default_factory=list)

    def format_error(self) -> str:
        """The error message followed by the call tree at the time of failure."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.trace:
            from envchain.envchain_printer import Printer
            msg += "\nBacktrace:\n" + Printer().pformat_trace(self.trace)
        return msg


# ===================================================================
# 3. Built-ins
# ===================================================================

class StdLib:
    """Python implementations of the built-ins bound into the base environment.

    Built-ins are called directly and push no frame, so inside a closure
    body they see that closure's frame as the top of the stack.
    """
    def __init__(self, runtime: 'Runtime'):
        self.runtime = runtime

    def _current_env(self): return self.runtime.current_env()
    def _caller_env(self, n=1): return self.runtime.caller_env(n)
    def _global_env(self): return self.runtime.global_env
    def _empty_env(self): return EMPTY_ENV
    def _env_names(self, env): return env.names()
    def _env_parent(self, env): return env.parent
    def _nframe(self): return self.runtime.stack.depth
    def _sys_call(self): return self.runtime.stack.top.call
    def _sys_function(self): return self.runtime.stack.top.function

    def _identical(self, a, b):
        # Environments compare by identity only
        if isinstance(a, Environment) or isinstance(b, Environment):
            return a is b
        return a == b


# ===================================================================
# 4. The Runtime
# ===================================================================

class Runtime:
    """Owns the standard environments and the call stack, and invokes closures."""

    def __init__(self, config: Optional[RuntimeConfig] = None):
        self.config = config or RuntimeConfig.from_env()
        if self.config.debug:
            configure_logging()
        self.empty_env = EMPTY_ENV
        self.base_env = Environment(EMPTY_ENV, label="base")
        self.global_env = Environment(self.base_env, label="global")
        self.stack = CallStack(self.global_env, max_depth=self.config.max_depth)
        self.last_trace: List[Call] = []
        self._trace_seq = itertools.count(1)
        self._attached: Dict[str, Environment] = {}
        if self.config.load_builtins:
            self._load_builtins()

    def _load_builtins(self):
        stdlib = StdLib(self)
        for name, member in inspect.getmembers(stdlib):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                self.base_env.set(name[1:], member)
                self.base_env.lock_binding(name[1:])

    # --- Environments ---

    def current_env(self) -> Environment:
        return self.stack.current_env()

    def caller_env(self, n: int = 1, env: Optional[Environment] = None) -> Environment:
        """The environment of the caller of the current frame (or of ``env``'s frame)."""
        if env is None:
            frame = self.stack.top
        else:
            frame = self.stack.frame_for(env)
            if frame is None:
                raise InvalidArgument(f"{env.display_name} is not the environment of an active frame")
        return self.stack.caller_environment(frame, n)

    def new_env(self, bindings: Optional[Mapping[str, Any]] = None,
                parent: Optional[Environment] = None, label: Optional[str] = None) -> Environment:
        return Environment(self.current_env() if parent is None else parent, bindings, label)

    def function(self, params: Sequence[str], body, env: Optional[Environment] = None,
                 name: Optional[str] = None, defaults=None) -> Closure:
        """Defines a closure capturing ``env`` (the current environment by default)."""
        return Closure(params, body, self.current_env() if env is None else env, name, defaults)

    def super_assign(self, name: str, value: Any, env: Optional[Environment] = None) -> Environment:
        """Rebinds ``name`` in the nearest ancestor of ``env`` that binds it, else in global.

        Returns the environment that received the binding.
        """
        env = self.current_env() if env is None else env
        owner = env.parent.where(name) if env.parent is not None else None
        target = owner if owner is not None else self.global_env
        target.set(name, value)
        return target

    # --- Search path ---

    def attach(self, env: Environment, name: str) -> Environment:
        """Inserts ``env`` between the global environment and its current parent."""
        if not isinstance(env, Environment) or isinstance(env, EmptyEnvironment):
            raise InvalidArgument("only non-empty environments can be attached")
        if name in self._attached:
            raise InvalidArgument(f"'{name}' is already attached")
        if env is self.global_env or env is self.base_env:
            raise InvalidArgument(f"cannot attach {env.display_name}")
        env.set_parent(self.global_env.parent)
        self.global_env.set_parent(env)
        self._attached[name] = env
        logger.debug("attached %s as %r", env.display_name, name)
        return env

    def detach(self, name: str) -> Environment:
        """Removes an attached environment from the search path and returns it."""
        env = self._attached.get(name)
        if env is None:
            raise InvalidArgument(f"'{name}' is not attached")
        child = self.global_env
        while child is not None and child.parent is not env:
            child = child.parent
        if child is None:
            raise InvalidArgument(f"'{name}' is no longer on the search path")
        del self._attached[name]
        child.set_parent(env.parent)
        env.set_parent(EMPTY_ENV)
        logger.debug("detached %r", name)
        return env

    def search_envs(self) -> List[Environment]:
        """Global, then every attached environment, then base."""
        return [self.global_env] + list(self.global_env.ancestors(until=self.base_env))

    # --- Invocation ---

    def _enter(self, fn: Closure, args: Sequence[Any], kwargs: Mapping[str, Any]) -> Frame:
        exec_env = Environment(fn.env)
        fn.bind_arguments(exec_env, args, kwargs)
        call = Call(fn.name or "<anonymous>", tuple(args), tuple(kwargs.items()))
        frame = self.stack.push_frame(call, exec_env, function=fn)
        logger.debug("enter %s (depth %d)", call.name, frame.index)
        return frame

    def _capture_trace(self, e: BaseException):
        # The innermost frame records the trace; outer frames of the same
        # outermost call keep it. A later call raising the same exception
        # object replaces it.
        root = self.stack.frame(1)
        if getattr(e, "envchain_trace", None) is not None and getattr(e, "_envchain_root", None) is root:
            return
        trace = self.stack.stack_trace()
        self.last_trace = trace
        try:
            e.envchain_trace = trace
            e._envchain_root = root
            e._envchain_seq = next(self._trace_seq)
        except AttributeError:
            logger.debug("could not attach trace to %s", type(e).__name__)

    def call(self, fn: Any, *args, **kwargs) -> Any:
        """Invokes a closure (pushing a frame) or a plain Python callable (without one)."""
        if isinstance(fn, Closure):
            if fn.is_async:
                raise InvalidArgument(f"{fn.name} has an async body; use acall()")
            frame = self._enter(fn, args, kwargs)
            try:
                return fn.body(frame.env)
            except Exception as e:
                self._capture_trace(e)
                raise
            finally:
                self.stack.pop_frame(frame)
        if callable(fn):
            return fn(*args, **kwargs)
        raise InvalidArgument(f"attempt to apply non-function: {type(fn).__name__}")

    async def acall(self, fn: Any, *args, **kwargs) -> Any:
        """Like ``call`` but awaits async bodies and awaitable results."""
        if isinstance(fn, Closure):
            frame = self._enter(fn, args, kwargs)
            try:
                result = fn.body(frame.env)
                if inspect.isawaitable(result):
                    result = await result
                return result
            except Exception as e:
                self._capture_trace(e)
                raise
            finally:
                self.stack.pop_frame(frame)
        if callable(fn):
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result
        raise InvalidArgument(f"attempt to apply non-function: {type(fn).__name__}")

    def local(self, body, bindings: Optional[Mapping[str, Any]] = None) -> Any:
        """Runs ``body`` in a fresh child of the current environment, as its own call."""
        fn = Closure(tuple(bindings or ()), body, self.current_env(), name="local")
        return self.call(fn, **dict(bindings or {}))

    def _result_from_error(self, e: Exception, started: int) -> ExecutionResult:
        # traces recorded before this run started are stale
        if getattr(e, "_envchain_seq", 0) > started:
            trace = e.envchain_trace
        else:
            trace = []
        return ExecutionResult('error', error=e, error_message=_format_runtime_error(e), trace=list(trace))

    def run(self, fn: Any, *args, **kwargs) -> ExecutionResult:
        """Calls ``fn`` and reports the outcome instead of raising."""
        self.last_trace = []
        started = next(self._trace_seq)
        try:
            value = self.call(fn, *args, **kwargs)
        except Exception as e:
            return self._result_from_error(e, started)
        return ExecutionResult('success', value=value)

    async def arun(self, fn: Any, *args, **kwargs) -> ExecutionResult:
        self.last_trace = []
        started = next(self._trace_seq)
        try:
            value = await self.acall(fn, *args, **kwargs)
        except Exception as e:
            return self._result_from_error(e, started)
        return ExecutionResult('success', value=value)


# ===================================================================
# 5. Default runtime
# ===================================================================

_current_runtime: contextvars.ContextVar[Optional[Runtime]] = contextvars.ContextVar(
    "envchain_runtime", default=None
)


def get_runtime() -> Runtime:
    """The runtime for the current context, created on first use."""
    rt = _current_runtime.get()
    if rt is None:
        rt = Runtime()
        _current_runtime.set(rt)
    return rt


@contextmanager
def use_runtime(rt: Runtime) -> Iterator[Runtime]:
    """Make ``rt`` the current runtime for the duration of the block."""
    token = _current_runtime.set(rt)
    try:
        yield rt
    finally:
        _current_runtime.reset(token)


def current_env() -> Environment:
    return get_runtime().current_env()


def caller_env(n: int = 1) -> Environment:
    return get_runtime().caller_env(n)


def global_env() -> Environment:
    return get_runtime().global_env
