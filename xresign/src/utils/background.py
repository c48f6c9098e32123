import threading
from concurrent.futures import Future
from typing import Callable


def run_in_background(fn: Callable, *args, **kwargs) -> Future:
    """Run `fn` on its own daemon thread; the returned future carries the outcome.

    Used for short lookups (identity listing, archive metadata) that block on
    subprocess or file I/O and may overlap with an active signing run.
    """
    future: Future = Future()

    def target():
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = fn(*args, **kwargs)
        except BaseException as e:
            future.set_exception(e)
        else:
            future.set_result(result)

    threading.Thread(target=target, daemon=True).start()
    return future
