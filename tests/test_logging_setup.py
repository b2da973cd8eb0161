# tests/test_logging_setup.py
import logging

import pytest

from evidence_runner.logging_setup import CI_FORMAT, ColoredFormatter, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    httpx_level = logging.getLogger("httpx").level
    yield
    root.handlers = handlers
    root.setLevel(level)
    logging.getLogger("httpx").setLevel(httpx_level)


def test_ci_mode_installs_single_plain_handler():
    setup_logging(ci_mode=True)
    handler = setup_logging(ci_mode=True, level="warning")

    root = logging.getLogger()
    assert root.handlers == [handler]
    assert root.level == logging.WARNING
    assert not isinstance(handler.formatter, ColoredFormatter)
    assert handler.formatter._fmt == CI_FORMAT
    assert logging.getLogger("httpx").level == logging.WARNING


def test_verbose_overrides_level():
    setup_logging(verbose=True, ci_mode=True, level="ERROR")
    assert logging.getLogger().level == logging.DEBUG


def test_colored_formatter_leaves_record_untouched():
    record = logging.LogRecord("x", logging.ERROR, __file__, 1, "boom", None, None)
    line = ColoredFormatter("%(levelname)s %(message)s").format(record)
    assert "\033[31mERROR\033[0m boom" == line
    assert record.levelname == "ERROR"
