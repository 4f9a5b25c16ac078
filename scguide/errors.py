from typing import Optional


class ScguideError(Exception):
    """Base class for pipeline failures.

    `stage` and `param` identify where the failure was detected; both are
    rendered into the message so a log line alone is enough to locate it.
    """

    def __init__(self, message: str, stage: Optional[str] = None, param: Optional[str] = None):
        self.stage = stage
        self.param = param
        self.detail = message
        prefix = ""
        if stage and param:
            prefix = f"[{stage}.{param}] "
        elif stage:
            prefix = f"[{stage}] "
        super().__init__(f"{prefix}{message}")


class InputError(ScguideError):
    """Malformed or missing matrix files."""


class ConfigError(ScguideError, ValueError):
    """Out-of-range or unknown configuration parameter."""


class DegenerateResultError(ScguideError):
    """A filtering or selection step left zero cells or genes."""


class NumericInstabilityWarning(RuntimeWarning):
    """Zero-variance gene encountered while scaling; values were zero-filled."""
