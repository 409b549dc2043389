"""
Defines the core data types for the envchain runtime.

This module provides the binding environment (a reference-semantic mapping
from names to values with exactly one parent link), the binding kinds an
environment can hold, closures that capture the environment they were
defined in, call expressions as recorded on the call stack, and the error
taxonomy shared by the rest of the package.
"""

import dataclasses
import functools
import inspect
import itertools
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


# =================================================================
# Errors
# =================================================================

class EnvchainError(Exception):
    """Base class for every error raised by envchain."""


class InvalidArgument(EnvchainError, TypeError):
    """A malformed construction or call request."""


class NotFound(EnvchainError, LookupError):
    """A strict direct lookup found no binding."""
    def __init__(self, name: str, env: Optional['Environment'] = None):
        super().__init__(name)
        self.name = name
        self.env = env

    def __str__(self) -> str:
        if self.env is not None:
            return f"object '{self.name}' not found in {self.env.display_name}"
        return f"object '{self.name}' not found"


class NameNotFound(NotFound):
    """Chained resolution reached the empty environment without a match."""
    def __init__(self, name: str, depth: int = 0, env: Optional['Environment'] = None):
        super().__init__(name, env)
        self.depth = depth

    def __str__(self) -> str:
        return f"object '{self.name}' not found (searched {self.depth} environments)"


class WriteRejected(EnvchainError):
    """A write was vetoed: locked binding, locked environment or active setter."""
    def __init__(self, message: str, name: Optional[str] = None):
        super().__init__(message)
        self.name = name


class EmptyStack(EnvchainError, RuntimeError):
    """A frame was popped from a call stack with no active frames."""


class PromiseRecursion(EnvchainError, RecursionError):
    """A lazy binding was read while its own producer was running."""
    def __init__(self, name: str):
        super().__init__(f"promise '{name}' already under evaluation: recursive reference")
        self.name = name


class EvaluationDepthError(EnvchainError, RecursionError):
    """Pushing another frame would exceed the configured maximum depth."""
    def __init__(self, limit: int):
        super().__init__(f"evaluation nested too deeply: more than {limit} active frames")
        self.limit = limit


# =================================================================
# Sentinels and binding kinds
# =================================================================

class _Missing:
    """Returned by permissive lookups when a name has no binding."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<missing>"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_Missing, ())


MISSING = _Missing()


class BindingKind(Enum):
    PLAIN = "plain"
    LAZY = "lazy"
    ACTIVE = "active"


@dataclass
class Binding:
    """One entry in an environment's mapping, tagged by kind.

    PLAIN carries ``value``. LAZY carries a zero-argument ``producer`` until it
    is forced, after which ``value`` holds the cached result. ACTIVE carries a
    ``producer`` that runs on every read and an optional one-argument
    ``setter`` that receives writes.
    """
    kind: BindingKind
    value: Any = None
    producer: Optional[Callable[[], Any]] = None
    setter: Optional[Callable[[Any], Any]] = None
    forced: bool = False
    locked: bool = False
    # thread id forcing a LAZY binding, and the event set when it finishes
    owner: Optional[int] = None
    done: Optional[threading.Event] = None


_env_ids = itertools.count(1)

# Guards the forcing state of every lazy binding. Held only for bookkeeping,
# never while a producer runs.
_force_guard = threading.Lock()
# thread id -> the lazy binding that thread is waiting on
_waiting_on: Dict[int, Binding] = {}


def _waits_for(binding: Binding, me: int) -> bool:
    """True if waiting on ``binding`` would end up waiting on thread ``me``."""
    seen = set()
    while binding is not None and binding.owner is not None:
        if binding.owner == me:
            return True
        if binding.owner in seen:
            return False
        seen.add(binding.owner)
        binding = _waiting_on.get(binding.owner)
    return False


def _check_name(name: Any) -> str:
    if not isinstance(name, str) or not name:
        raise InvalidArgument(f"binding names must be non-empty strings, not {name!r}")
    return name


# =================================================================
# Environments
# =================================================================

class Environment:
    """A mutable mapping from names to bindings plus a single parent link.

    Environments have reference semantics: two environments are equal only
    when they are the same object, and nothing in envchain ever copies one.
    Lookups come in two flavours. The direct accessors (``get``, ``peek``,
    ``has``) only consult this environment's own bindings; ``resolve`` and
    ``where`` walk the parent chain until the empty environment.

    When ``parent`` is omitted the new environment's parent is the current
    environment of the active runtime.
    """

    def __init__(self, parent: Optional['Environment'] = None,
                 bindings: Optional[Mapping[str, Any]] = None,
                 label: Optional[str] = None):
        if parent is None:
            from envchain.envchain_runtime import current_env
            parent = current_env()
        if not isinstance(parent, Environment):
            raise InvalidArgument(f"parent must be an environment, not {type(parent).__name__}")
        initial = dict(bindings or {})
        for name in initial:
            _check_name(name)
        self._parent: Optional[Environment] = parent
        self._bindings: Dict[str, Binding] = {
            name: Binding(BindingKind.PLAIN, value) for name, value in initial.items()
        }
        self._lock = threading.RLock()
        self._locked = False
        self.id = next(_env_ids)
        self.label = label

    # --- Identity and display ---

    @property
    def display_name(self) -> str:
        return self.label if self.label else f"0x{self.id:06x}"

    def __repr__(self) -> str:
        names = ', '.join(self.names())
        return f"<Environment {self.display_name} bindings=[{names}] parent={self._parent_name()}>"

    def _parent_name(self) -> str:
        return self._parent.display_name if self._parent is not None else "none"

    # --- Parent chain ---

    @property
    def parent(self) -> Optional['Environment']:
        """The parent environment; ``None`` only for the empty environment."""
        return self._parent

    def set_parent(self, parent: 'Environment') -> None:
        """Re-point the parent edge, refusing any change that would create a cycle."""
        if not isinstance(parent, Environment):
            raise InvalidArgument(f"parent must be an environment, not {type(parent).__name__}")
        if parent is self or any(a is self for a in parent.ancestors()):
            raise InvalidArgument(f"cannot make {self.display_name} its own ancestor")
        with self._lock:
            logger.debug("re-parent %s: %s -> %s", self.display_name, self._parent_name(), parent.display_name)
            self._parent = parent

    def ancestors(self, until: Optional['Environment'] = None) -> Iterator['Environment']:
        """Yields the parent, grandparent, ... up to and including the empty environment.

        Each call returns a fresh generator. If ``until`` is given the
        sequence stops after yielding it.
        """
        env = self._parent
        while env is not None:
            yield env
            if env is until:
                return
            env = env._parent

    def depth(self) -> int:
        """Number of ancestors between this environment and the end of the chain."""
        return sum(1 for _ in self.ancestors())

    # --- Direct access ---

    def _entry(self, name: str) -> Optional[Binding]:
        with self._lock:
            return self._bindings.get(name)

    def _read(self, name: str, binding: Binding) -> Any:
        match binding.kind:
            case BindingKind.PLAIN:
                return binding.value
            case BindingKind.LAZY:
                return self._force(name, binding)
            case BindingKind.ACTIVE:
                return binding.producer()

    def _force(self, name: str, binding: Binding) -> Any:
        """Runs a lazy binding's producer once and caches the result.

        The producer runs without holding this environment's lock. Other
        threads reading the binding meanwhile wait for the result; a read
        that would wait on itself, directly or through other threads'
        pending lazy bindings, raises PromiseRecursion.
        """
        me = threading.get_ident()
        while True:
            with _force_guard:
                if binding.forced:
                    return binding.value
                if binding.owner is None:
                    binding.owner = me
                    binding.done = threading.Event()
                    break
                if _waits_for(binding, me):
                    raise PromiseRecursion(name)
                _waiting_on[me] = binding
                done = binding.done
            try:
                done.wait()
            finally:
                with _force_guard:
                    _waiting_on.pop(me, None)
        try:
            value = binding.producer()
        except BaseException:
            with _force_guard:
                binding.owner, done = None, binding.done
                binding.done = None
            done.set()
            raise
        with _force_guard:
            binding.value = value
            binding.forced = True
            binding.producer = None
            binding.owner, done = None, binding.done
            binding.done = None
        done.set()
        logger.debug("forced lazy binding %r in %s", name, self.display_name)
        return value

    def get(self, name: str) -> Any:
        """Returns the value bound to ``name`` here; raises NotFound if absent."""
        binding = self._entry(name)
        if binding is None:
            raise NotFound(name, self)
        return self._read(name, binding)

    def peek(self, name: str, default: Any = MISSING) -> Any:
        """Like ``get`` but returns ``default`` instead of raising."""
        binding = self._entry(name)
        if binding is None:
            return default
        return self._read(name, binding)

    def has(self, name: str, inherit: bool = False) -> bool:
        if inherit:
            return self.where(name) is not None
        with self._lock:
            return name in self._bindings

    def set(self, name: str, value: Any) -> None:
        """Binds ``name`` to ``value`` in this environment only.

        Assigning any value, including ``None`` or ``MISSING``, keeps the name
        bound; use ``unbind`` to remove it. A write to an active binding is
        handed to its setter instead.
        """
        _check_name(name)
        with self._lock:
            binding = self._bindings.get(name)
            if binding is None:
                if self._locked:
                    raise WriteRejected(f"cannot add binding '{name}' to a locked environment", name)
                self._bindings[name] = Binding(BindingKind.PLAIN, value)
                return
            if binding.locked:
                raise WriteRejected(f"cannot change value of locked binding for '{name}'", name)
            match binding.kind:
                case BindingKind.ACTIVE:
                    setter = binding.setter
                case _:
                    self._bindings[name] = Binding(BindingKind.PLAIN, value)
                    return
        if setter is None:
            raise WriteRejected(f"active binding '{name}' is read-only", name)
        setter(value)

    def unbind(self, name: str) -> None:
        """Removes the binding for ``name``; does nothing if there is none."""
        with self._lock:
            if name not in self._bindings:
                return
            if self._locked:
                raise WriteRejected("cannot remove bindings from a locked environment", name)
            del self._bindings[name]

    def _install(self, name: str, binding: Binding) -> None:
        _check_name(name)
        with self._lock:
            current = self._bindings.get(name)
            if current is None and self._locked:
                raise WriteRejected(f"cannot add binding '{name}' to a locked environment", name)
            if current is not None and current.locked:
                raise WriteRejected(f"cannot change value of locked binding for '{name}'", name)
            self._bindings[name] = binding

    def bind_lazy(self, name: str, producer: Callable[[], Any]) -> None:
        """Binds ``name`` to a value computed by ``producer`` on first read, then cached."""
        if not callable(producer):
            raise InvalidArgument(f"lazy binding '{name}' needs a callable producer")
        self._install(name, Binding(BindingKind.LAZY, producer=producer))

    def bind_active(self, name: str, getter: Callable[[], Any],
                    setter: Optional[Callable[[Any], Any]] = None) -> None:
        """Binds ``name`` so every read calls ``getter`` and every write calls ``setter``."""
        if not callable(getter):
            raise InvalidArgument(f"active binding '{name}' needs a callable getter")
        if setter is not None and not callable(setter):
            raise InvalidArgument(f"active binding '{name}' setter must be callable")
        self._install(name, Binding(BindingKind.ACTIVE, producer=getter, setter=setter))

    def binding_kind(self, name: str) -> BindingKind:
        binding = self._entry(name)
        if binding is None:
            raise NotFound(name, self)
        return binding.kind

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._bindings)

    def entries(self) -> List[Tuple[str, Binding]]:
        """A sorted snapshot of (name, binding) pairs; the bindings are copies."""
        with self._lock:
            return [(name, dataclasses.replace(self._bindings[name])) for name in sorted(self._bindings)]

    # --- Chained access ---

    def where(self, name: str) -> Optional['Environment']:
        """The nearest environment on the chain (starting here) that binds ``name``."""
        env = self
        while env is not None:
            if env.has(name):
                return env
            env = env._parent
        return None

    def resolve(self, name: str) -> Tuple['Environment', Any]:
        """Returns ``(owner, value)`` for the nearest binding of ``name``.

        Walks this environment, then its parent, and so on. Raises
        NameNotFound once the empty environment has been checked.
        """
        env = self
        depth = 0
        while env is not None:
            binding = env._entry(name)
            if binding is not None:
                return env, env._read(name, binding)
            depth += 1
            env = env._parent
        raise NameNotFound(name, depth, self)

    # --- Locking ---

    @property
    def is_locked(self) -> bool:
        return self._locked

    def lock(self, bindings: bool = False) -> None:
        """Forbid adding or removing names; with ``bindings`` also lock every existing binding."""
        with self._lock:
            self._locked = True
            if bindings:
                for binding in self._bindings.values():
                    binding.locked = True

    def lock_binding(self, name: str) -> None:
        with self._lock:
            binding = self._bindings.get(name)
            if binding is None:
                raise NotFound(name, self)
            binding.locked = True

    def unlock_binding(self, name: str) -> None:
        with self._lock:
            binding = self._bindings.get(name)
            if binding is None:
                raise NotFound(name, self)
            binding.locked = False

    def binding_is_locked(self, name: str) -> bool:
        binding = self._entry(name)
        if binding is None:
            raise NotFound(name, self)
        return binding.locked

    # --- Python protocol sugar (direct bindings only) ---

    def __getitem__(self, name: str) -> Any:
        return self.get(name)

    def __setitem__(self, name: str, value: Any):
        self.set(name, value)

    def __delitem__(self, name: str):
        self.unbind(name)

    def __contains__(self, name: Any) -> bool:
        return isinstance(name, str) and self.has(name)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __len__(self) -> int:
        with self._lock:
            return len(self._bindings)

    def __bool__(self) -> bool:
        return True


class EmptyEnvironment(Environment):
    """The unique root environment: no parent, no bindings, never writable."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            inst = object.__new__(cls)
            inst._parent = None
            inst._bindings = {}
            inst._lock = threading.RLock()
            inst._locked = True
            inst.id = 0
            inst.label = "empty"
            cls._instance = inst
        return cls._instance

    def __init__(self):
        pass

    def __reduce__(self):
        return (EmptyEnvironment, ())

    def set(self, name: str, value: Any) -> None:
        raise WriteRejected("cannot assign values in the empty environment", name)

    def _install(self, name: str, binding: Binding) -> None:
        raise WriteRejected("cannot assign values in the empty environment", name)

    def set_parent(self, parent: Environment) -> None:
        raise InvalidArgument("the empty environment has no parent")


EMPTY_ENV = EmptyEnvironment()


# =================================================================
# Closures and call expressions
# =================================================================

def _missing_argument(name: str):
    raise InvalidArgument(f"argument '{name}' is missing, with no default")


class Closure:
    """A Python callable paired with the environment it was defined in.

    ``body`` receives the fresh execution environment created for each
    invocation; that environment's parent is always ``env``. ``defaults``
    maps parameter names to one-argument callables that receive the
    execution environment and are evaluated lazily on first use.
    """
    def __init__(self, params: Sequence[str], body: Callable[[Environment], Any], env: Environment,
                 name: Optional[str] = None,
                 defaults: Optional[Mapping[str, Callable[[Environment], Any]]] = None):
        if not callable(body):
            raise InvalidArgument(f"closure body must be callable, not {type(body).__name__}")
        if not isinstance(env, Environment):
            raise InvalidArgument(f"closure environment must be an environment, not {type(env).__name__}")
        self.params: Tuple[str, ...] = tuple(_check_name(p) for p in params)
        if len(set(self.params)) != len(self.params):
            raise InvalidArgument(f"repeated formal argument in {list(self.params)}")
        self.defaults: Dict[str, Callable[[Environment], Any]] = dict(defaults or {})
        for pname, default in self.defaults.items():
            if pname not in self.params:
                raise InvalidArgument(f"default given for unknown parameter '{pname}'")
            if not callable(default):
                raise InvalidArgument(f"default for '{pname}' must be callable")
        self.body = body
        self.env = env
        self.name = name or getattr(body, "__name__", None)
        self.meta: Dict[str, Any] = {}

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.body)

    def with_env(self, env: Environment) -> 'Closure':
        return Closure(self.params, self.body, env, self.name, self.defaults)

    def bind_arguments(self, exec_env: Environment, args: Sequence[Any], kwargs: Mapping[str, Any]) -> None:
        """Binds call arguments into ``exec_env`` or raises InvalidArgument without binding anything."""
        if len(args) > len(self.params):
            extra = len(args) - len(self.params)
            raise InvalidArgument(f"{self.name}: {extra} unused positional argument{'s' if extra > 1 else ''}")
        supplied = dict(zip(self.params, args))
        for key, value in kwargs.items():
            if key not in self.params:
                raise InvalidArgument(f"{self.name}: unused argument ({key} = {value!r})")
            if key in supplied:
                raise InvalidArgument(f"{self.name}: formal argument '{key}' matched by multiple actual arguments")
            supplied[key] = value
        for pname in self.params:
            if pname in supplied:
                exec_env.set(pname, supplied[pname])
            elif pname in self.defaults:
                exec_env.bind_lazy(pname, functools.partial(self.defaults[pname], exec_env))
            else:
                exec_env.bind_lazy(pname, functools.partial(_missing_argument, pname))

    def __repr__(self) -> str:
        return f"<Closure {self.name}({', '.join(self.params)}) env={self.env.display_name}>"


@dataclass(frozen=True)
class Call:
    """A call expression as recorded on the call stack."""
    name: str
    args: Tuple[Any, ...] = ()
    kwargs: Tuple[Tuple[str, Any], ...] = field(default=())

    def __str__(self) -> str:
        from envchain.envchain_printer import Printer
        return Printer().pformat(self)


# =================================================================
# Functional API
# =================================================================

def new_environment(bindings: Optional[Mapping[str, Any]] = None,
                    parent: Optional[Environment] = None,
                    label: Optional[str] = None) -> Environment:
    """Creates an environment; ``parent`` defaults to the current environment."""
    return Environment(parent, bindings, label)


def _require_env(env: Any) -> Environment:
    if not isinstance(env, Environment):
        raise InvalidArgument(f"expected an environment, not {type(env).__name__}")
    return env


def parent_of(env: Environment) -> Optional[Environment]:
    return _require_env(env).parent


def ancestors(env: Environment, until: Optional[Environment] = None) -> Iterator[Environment]:
    return _require_env(env).ancestors(until)


def resolve(env: Environment, name: str) -> Tuple[Environment, Any]:
    return _require_env(env).resolve(name)


def where(name: str, env: Environment) -> Optional[Environment]:
    return _require_env(env).where(name)


def fn_env(fn: Closure) -> Environment:
    if not isinstance(fn, Closure):
        raise InvalidArgument(f"expected a closure, not {type(fn).__name__}")
    return fn.env
