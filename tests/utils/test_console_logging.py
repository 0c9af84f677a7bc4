import logging
from pathlib import Path

from nixiform.logging.log import ConsoleFormatter, init_logging, node_logger


def _record(level, msg):
    return logging.LogRecord("nixiform", level, __file__, 1, msg, None, None)


def test_console_prefixes():
    fmt = ConsoleFormatter()
    assert fmt.format(_record(logging.INFO, "pushed")) == "Info: pushed"
    assert fmt.format(_record(logging.WARNING, "partial")) == "Warning: partial"
    assert fmt.format(_record(logging.ERROR, "failed")) == "Error: failed"


def test_init_logging_writes_trace_file(tmp_path: Path):
    logger, run_id, log_path = init_logging(base_dir=tmp_path, name="nixiform-test")
    try:
        node_logger("web").info("hello")
        logging.getLogger("nixiform-test").debug("trace line")
        for h in logger.handlers:
            h.flush()
        text = log_path.read_text()
        assert run_id in log_path.name
        assert "trace line" in text
    finally:
        for h in list(logger.handlers):
            h.close()
            logger.removeHandler(h)
