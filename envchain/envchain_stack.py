"""
The call stack and its frames.

A frame pairs the call expression that produced it with the execution
environment created for that call and a link to the caller's frame. The
caller link is the dynamic chain (who called whom); the execution
environment's parent is the lexical chain (where the function was defined).
The two are independent and are never derived from each other here.
"""
import contextvars
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from envchain.envchain_datatypes import (
    Call, Environment, EmptyStack, EvaluationDepthError, InvalidArgument
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 5000


@dataclass(eq=False)
class Frame:
    """One call-stack entry. ``caller`` is None only for the global frame."""
    call: Optional[Call]
    env: Environment
    caller: Optional['Frame'] = None
    function: Any = None
    index: int = 0

    @property
    def is_global(self) -> bool:
        return self.caller is None

    def __repr__(self) -> str:
        call = self.call if self.call is not None else "<global>"
        return f"<Frame {self.index} {call} env={self.env.display_name}>"


class CallStack:
    """A LIFO stack of frames sitting on top of a permanent global frame.

    The global frame is not counted by ``depth`` and never appears in
    ``stack_trace``; with no active calls the current environment is the
    global environment.

    Active frames are kept per context: every thread and every asyncio task
    sees its own stack, starting from the frames active where it was created.
    """
    def __init__(self, global_env: Environment, max_depth: int = DEFAULT_MAX_DEPTH):
        if not isinstance(global_env, Environment):
            raise InvalidArgument(f"global environment must be an environment, not {type(global_env).__name__}")
        if max_depth < 1:
            raise InvalidArgument(f"max_depth must be positive, got {max_depth}")
        self.global_frame = Frame(None, global_env)
        self.max_depth = max_depth
        self._active: contextvars.ContextVar[Tuple[Frame, ...]] = contextvars.ContextVar(
            f"envchain_frames_{id(self):x}", default=()
        )

    @property
    def _frames(self) -> Tuple[Frame, ...]:
        return self._active.get()

    @property
    def top(self) -> Frame:
        return self._frames[-1] if self._frames else self.global_frame

    @property
    def depth(self) -> int:
        return len(self._frames)

    def __len__(self) -> int:
        return len(self._frames)

    def current_env(self) -> Environment:
        return self.top.env

    def push_frame(self, call: Optional[Call], env: Environment,
                   caller: Optional[Frame] = None, function: Any = None) -> Frame:
        """Pushes a new frame; ``caller`` defaults to the current top frame."""
        if not isinstance(env, Environment):
            raise InvalidArgument(f"frame environment must be an environment, not {type(env).__name__}")
        if len(self._frames) >= self.max_depth:
            raise EvaluationDepthError(self.max_depth)
        frame = Frame(call, env, caller if caller is not None else self.top, function, len(self._frames) + 1)
        self._active.set(self._frames + (frame,))
        logger.debug("push frame %d: %s", frame.index, call)
        return frame

    def pop_frame(self, expected: Optional[Frame] = None) -> Frame:
        """Pops the top frame. If ``expected`` is given it must be that frame."""
        frames = self._frames
        if not frames:
            raise EmptyStack("pop_frame called with no active frames")
        frame = frames[-1]
        if expected is not None and frame is not expected:
            raise EmptyStack(f"pop_frame expected frame {expected.index} but the top is {frame!r}")
        self._active.set(frames[:-1])
        logger.debug("pop frame %d: %s", frame.index, frame.call)
        return frame

    def caller_environment(self, frame: Optional[Frame] = None, n: int = 1) -> Environment:
        """The environment of the frame that called ``frame``, ``n`` levels down the stack.

        Follows caller links, not environment parents. Walking past the
        outermost call yields the global environment.
        """
        if n < 1:
            raise InvalidArgument(f"n must be at least 1, got {n}")
        frame = self.top if frame is None else frame
        for _ in range(n):
            if frame.caller is None:
                break
            frame = frame.caller
        return frame.env

    def frame(self, n: int) -> Frame:
        """The n-th active frame counting from the outermost call; 0 is the global frame."""
        if n == 0:
            return self.global_frame
        if n < 0 or n > len(self._frames):
            raise InvalidArgument(f"not that many frames on the stack: {n}")
        return self._frames[n - 1]

    def frames(self) -> List[Frame]:
        """Active frames, outermost first."""
        return list(self._frames)

    def frame_for(self, env: Environment) -> Optional[Frame]:
        """The innermost active frame whose execution environment is ``env``."""
        for frame in reversed(self._frames):
            if frame.env is env:
                return frame
        if env is self.global_frame.env:
            return self.global_frame
        return None

    def stack_trace(self) -> List[Optional[Call]]:
        """Call expressions from the top frame down to the outermost call."""
        return [frame.call for frame in reversed(self._frames)]
