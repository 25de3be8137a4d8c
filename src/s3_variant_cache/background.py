from concurrent.futures import Future

import logging
import threading


logger = logging.getLogger(__name__)


def submit(executor, func, *args):
    """Run ``func(*args)`` off the calling thread and return a Future.

    Uses the executor when one is given, otherwise a daemon thread.
    """
    if executor is not None:
        return executor.submit(func, *args)

    future = Future()

    def run():
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(func(*args))
        except BaseException as e:
            future.set_exception(e)

    threading.Thread(target=run, daemon=True).start()
    return future


def log_failure(future, description):
    """Log the exception of a finished background future, if any."""
    error = future.exception()
    if error is not None:
        logger.warning("%s failed", description, exc_info=error)
