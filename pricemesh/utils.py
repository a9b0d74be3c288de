import functools
import inspect
import time

from loguru import logger


def safe_func_wrapper(func):
    """
    A decorator that logs function entry, exit, and exceptions.

    Features:
    - Works for plain and async functions
    - Logs function name and parameters before execution
    - Logs exceptions with traceback and re-raises them unchanged
    - Logs elapsed time after successful execution
    - Preserves function metadata and return values
    """

    def _params(args, kwargs) -> dict:
        bound_args = inspect.signature(func).bind(*args, **kwargs)
        bound_args.apply_defaults()
        return {k: v for k, v in bound_args.arguments.items() if k != "self"}

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            func_name = func.__qualname__
            logger.debug(f"Entering {func_name} with params: {_params(args, kwargs)}")
            started = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.exception(f"{func_name} failed: {type(e).__name__}: {e}")
                raise
            logger.debug(f"{func_name} done in {time.perf_counter() - started:.3f}s")
            return result

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        func_name = func.__qualname__
        logger.debug(f"Entering {func_name} with params: {_params(args, kwargs)}")
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.exception(f"{func_name} failed: {type(e).__name__}: {e}")
            raise
        logger.debug(f"{func_name} done in {time.perf_counter() - started:.3f}s")
        return result

    return wrapper
