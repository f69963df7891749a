"""
Pytest configuration and fixtures.

Add any shared fixtures or pytest configuration here.
"""

import logging
import sys

import pytest

from pyrecord import Recorder, create_channel
from pyrecord._internal.transfer_registry import TransferableRegistry

from .fixtures.fake_dom import Window


def pytest_configure(config):
    """Configure pytest with custom settings."""
    # Set up logging
    log_level = logging.DEBUG if config.getoption("--debug-pyrecord") else logging.INFO

    # Configure root logger
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Set specific logger levels
    logging.getLogger("pyrecord").setLevel(log_level)
    logging.getLogger("asyncio").setLevel(log_level)

    # If custom log file is specified, add file handler
    custom_log_file = config.getoption("--pyrecord-log-file")
    if custom_log_file:
        file_handler = logging.FileHandler(custom_log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )
        )
        logging.getLogger().addHandler(file_handler)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--debug-pyrecord",
        action="store_true",
        default=False,
        help="Enable debug logging for pyrecord (shows every recorded operation and message)",
    )
    parser.addoption(
        "--pyrecord-log-file",
        action="store",
        default=None,
        help="Log pyrecord debug output to specified file",
    )


@pytest.fixture(autouse=True)
def reset_transferables():
    yield
    TransferableRegistry.get_instance().clear()


@pytest.fixture
def window():
    return Window()


@pytest.fixture
async def linked(window):
    """A worker-side Recorder wired to a page-side Recorder replaying against ``window``."""
    worker_port, page_port = create_channel()
    page = Recorder(page_port, target=window)
    worker = Recorder(worker_port)
    yield worker, page
    worker.dispose()
    page.dispose()
