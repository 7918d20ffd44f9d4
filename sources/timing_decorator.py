# timing_decorator.py
import time
import functools
from typing import Callable, Any, Optional, TypeVar, cast
from app_logger import logger

F = TypeVar("F", bound=Callable[..., Any])


def timed(label: Optional[str] = None, slow_ms: Optional[float] = None) -> Callable[[F], F]:
    """
    Decorator that measures execution time and logs it at DEBUG level.

    Used on the store operations whose latency grows with the stored volume
    (multi-table queries, retention cleanup, export).  When ``slow_ms`` is
    given, runs slower than that are also reported at WARNING so they show up
    in the shell's log view.
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                elapsed_ms = (time.perf_counter() - start) * 1000.0
                tag = label or func.__qualname__
                logger.debug("[%s] took %.2f ms", tag, elapsed_ms)
                if slow_ms is not None and elapsed_ms > slow_ms:
                    logger.warning("[%s] slow: %.0f ms (threshold %.0f ms)",
                                   tag, elapsed_ms, slow_ms)
        return cast(F, wrapper)
    return decorator
