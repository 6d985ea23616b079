from contextlib import contextmanager
from contextvars import ContextVar

# Fields stamped onto every log record emitted inside a rollup job or request.
LOG_CTX = ContextVar("log_ctx", default=None)


def get_log_ctx(key, default=None):
    ctx = LOG_CTX.get()
    return ctx[key] if ctx and key in ctx else default


@contextmanager
def set_log_ctx(data: dict):
    # Nested contexts inherit the outer fields.
    outer = LOG_CTX.get()
    merged = dict(outer) if outer else {}
    merged.update(data)

    token = LOG_CTX.set(merged)
    try:
        yield
    finally:
        LOG_CTX.reset(token)
