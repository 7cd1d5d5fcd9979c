import os
import time
import logging
import functools
from contextlib import contextmanager

logger = logging.getLogger("cytoflux")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("[cytoflux] %(message)s"))
    logger.addHandler(_handler)
    logger.setLevel(os.environ.get("CYTOFLUX_LOG_LEVEL", "INFO").upper())
    logger.propagate = False

_indent_level = 0


def _prefix() -> str:
    return "  " * _indent_level


def log_info(msg: str) -> None:
    logger.info(f"{_prefix()}{msg}")


def log_warning(msg: str) -> None:
    logger.warning(f"{_prefix()}WARNING: {msg}")


def log_debug(msg: str) -> None:
    logger.debug(f"{_prefix()}{msg}")


@contextmanager
def log_indent(title: str | None = None):
    """Indent every log line emitted inside the block (nested pipeline steps)."""
    global _indent_level
    if title:
        log_info(title)
    _indent_level += 1
    try:
        yield
    finally:
        _indent_level -= 1


def log_time(step_name: str):
    """
    Decorator logging start, end and elapsed wall time of a pipeline step.

    Usage:
        @log_time("Linear Regressions")
        def fit(self): ...
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            log_info(f"{step_name}...")
            start = time.perf_counter()
            with log_indent():
                result = func(*args, **kwargs)
            elapsed = time.perf_counter() - start
            log_info(f"{step_name} done ({elapsed:.2f}s)")
            return result
        return wrapper
    return decorator


def polars_matrix_to_numpy(df, index_col: str):
    """Split a wide polars frame into (matrix of the other columns, index values as str)."""
    index = [str(v) for v in df.get_column(index_col).to_list()]
    value_cols = [c for c in df.columns if c != index_col]
    mat = df.select(value_cols).to_numpy()
    return mat, index
