# tests/conftest.py
#
# Root conftest providing shared fixtures for all test modules.

import pytest

from config import Config
from helpers.fakes import image_bytes, make_tokenizer


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Tests that build a real (tiny) model")


@pytest.fixture
def tokenizer():
    return make_tokenizer()


@pytest.fixture
def red_pixel_png():
    """1x1 solid red PNG."""
    return image_bytes()


@pytest.fixture
def cpu_config():
    """Config pinned to CPU with the default decoding parameters."""
    return Config(device="cpu")
