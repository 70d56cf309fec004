"""Module that adds flags to pytest to enable certain extra tests."""

import logging

import pytest


def pytest_addoption(parser):
    parser.addoption(
        "--fuse", action="store_true", default=False, help="Run FUSE tests"
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "fuse: mark test as requiring FUSE to run")


def pytest_collection_modifyitems(config, items):
    if not config.getoption("--fuse"):
        skip_fuse = pytest.mark.skip(reason="only runs with --fuse option")

        for item in items:
            if "fuse" in item.keywords:
                item.add_marker(skip_fuse)


@pytest.fixture(autouse=True)
def log_level(caplog):
    # Messages are asserted on regardless of the level left behind by main().
    caplog.set_level(logging.DEBUG, logger="subfs")
