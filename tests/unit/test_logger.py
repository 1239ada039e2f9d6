"""
日志工具测试
"""

import logging

from wa_gateway.config.config_parser import ConfigParser
from wa_gateway.utils.logger import ROOT_LOGGER_NAME, setup_logger, get_logger


def test_setup_logger_writes_file(tmp_path):
    config = ConfigParser(use_env=False).parse()
    config.log_file = str(tmp_path / "logs" / "gateway.log")

    logger = setup_logger(config)
    get_logger("instance").info("hello from instance")
    for handler in logger.handlers:
        handler.flush()

    assert logger.name == ROOT_LOGGER_NAME
    assert "hello from instance" in (tmp_path / "logs" / "gateway.log").read_text(encoding="utf-8")
    assert logging.getLogger("werkzeug").handlers == logger.handlers

    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logging.getLogger("werkzeug").handlers.clear()


def test_get_logger_children():
    assert get_logger().name == "WaGateway"
    assert get_logger("store").name == "WaGateway.store"
