import structlog

from parley.logging import configure_logging, get_logger, set_log_sink


def test_log_lines_reach_configured_sink():
    lines: list[str] = []
    set_log_sink(lines.append)
    try:
        configure_logging("INFO")
        logger = get_logger("parley.sink_check")
        logger.debug("hidden detail")
        logger.info("turn started", chat_id="c1")
    finally:
        set_log_sink(None)
        structlog.reset_defaults()

    assert len(lines) == 1
    assert "turn started" in lines[0]
    assert "chat_id" in lines[0] and "c1" in lines[0]
    assert "\n" not in lines[0]
