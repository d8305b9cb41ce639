"""Shared logging utilities.

Every run is a short-lived process whose stdout may be a closed pipe by the
time the summary is written (scheduler killed the reader, container log
driver restarted). SafeStreamHandler keeps those runs from crashing on the
final log line.
"""
import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Libraries that log every request at INFO
NOISY_LOGGERS = ("aiohttp", "httpx", "httpcore", "openai")


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that ignores broken pipe and closed file errors."""

    def emit(self, record):
        try:
            super().emit(record)
        except BrokenPipeError:
            pass  # stdout closed
        except ValueError:
            pass  # I/O operation on closed file


def configure_safe_logging(level=logging.INFO, verbose: bool = False):
    """Configure root logger with SafeStreamHandler.

    Safe to call multiple times (guards against duplicate handlers).

    Args:
        level: Logging level to set (default: INFO)
        verbose: Per-item diagnostics; forces DEBUG
    """
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger()
    handler = next((h for h in logger.handlers if isinstance(h, SafeStreamHandler)), None)
    if handler is None:
        handler = SafeStreamHandler()  # Defaults to sys.stderr
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    handler.setLevel(level)

    # Some libraries (e.g., OpenAI) set root logger to WARNING during import
    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def log_summary(logger: logging.Logger, title: str, counts: dict) -> None:
    """Write an end-of-run summary block, one `key: value` line per count."""
    width = max((len(k) for k in counts), default=0)
    lines = [f"  {key.ljust(width)} : {value}" for key, value in counts.items()]
    logger.info("%s\n%s", title, "\n".join(lines))
