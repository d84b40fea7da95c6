import os
import sys
import logging
import pytest


def _ensure_project_root_on_sys_path() -> None:
    here = os.path.dirname(__file__)
    project_root = os.path.abspath(os.path.join(here, "..", ".."))
    if project_root not in sys.path:
        sys.path.insert(0, project_root)


_ensure_project_root_on_sys_path()


@pytest.fixture(autouse=True)
def _clear_musichub_env():
    """Keep MUSICHUB_* variables from the developer's shell out of the tests."""
    keys = [k for k in os.environ if k.startswith('MUSICHUB_')]
    backup = {k: os.environ.pop(k) for k in keys}
    try:
        yield
    finally:
        for k in [k for k in os.environ if k.startswith('MUSICHUB_')]:
            os.environ.pop(k, None)
        os.environ.update(backup)


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """setup_logging() replaces handlers on the package logger; restore them."""
    logger = logging.getLogger('musichub')
    handlers = list(logger.handlers)
    level = logger.level
    try:
        yield
    finally:
        logger.handlers[:] = handlers
        logger.setLevel(level)
