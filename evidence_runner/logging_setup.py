# evidence_runner/logging_setup.py
"""
Console logging for the runner.

One root handler on stderr, so stdout stays free for the CI JSON summary.
On a TTY the level name is coloured; with --ci-mode (or when stderr is
piped) records carry the full date and logger name for log collectors.
Executor output is logged line by line at INFO under evidence_runner.executors.*;
httpx is held at WARNING.
"""

import logging
import sys

CI_FORMAT = "%(asctime)s %(levelname)-8s %(name)s %(message)s"
TTY_FORMAT = "%(asctime)s %(levelname)s %(message)s"


class ColoredFormatter(logging.Formatter):
    """Colored console output"""

    COLORS = {
        "DEBUG": "\033[36m",    # Cyan
        "INFO": "\033[32m",     # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",    # Red
        "CRITICAL": "\033[35m", # Magenta
    }
    RESET = "\033[0m"

    def format(self, record):
        # Format a copy so other handlers still see the plain level name
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logging(verbose: bool = False, ci_mode: bool = False, level: str = "INFO") -> logging.Handler:
    """Install a single root handler; colored on a TTY, plain in CI. Returns the handler."""
    resolved = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)

    if not ci_mode and sys.stderr.isatty():
        formatter = ColoredFormatter(TTY_FORMAT, datefmt="%H:%M:%S")
    else:
        formatter = logging.Formatter(CI_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(resolved)
    root.handlers = [handler]

    # httpx logs every request at INFO; evidence already records them
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return handler
