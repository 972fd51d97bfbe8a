"""Process execution runtime."""

from turnkit.runtime.process import ProcessResult, ProcessRuntime

__all__ = ["ProcessResult", "ProcessRuntime"]
