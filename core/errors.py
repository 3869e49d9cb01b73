"""Exception taxonomy for the improvement loop."""

from __future__ import annotations


class LoopError(Exception):
    """Base class for all loop errors."""


class InputError(LoopError):
    """Invalid caller input; fatal to the call and consumes no attempt."""


class ProblemNotFoundError(InputError):
    """Problem identifier does not resolve in the problem source."""


class GenerationError(LoopError):
    """Upstream generation failed or produced an unusable stream."""


class EvaluationError(LoopError):
    """Execution service failed for a whole attempt."""


class EvaluationTimeoutError(EvaluationError):
    """Attempt-scoped evaluation deadline was exceeded."""


class StoreError(LoopError):
    """Durable store rejected or failed a write."""


class SessionBusyError(LoopError):
    """Another invocation is already running an attempt for this session."""
