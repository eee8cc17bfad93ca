import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Callable
from unittest.mock import PropertyMock, patch

import pytest

from keytally.config.config import ConfigKeyTally, get_config
from keytally.core.database import KeystrokeDatabase
from keytally.core.models import KeyEvent

# 2023-11-14T19:26:40Z; +1h and +2h stay on the same UTC day
BASE_MS = 1699990000000
HOUR_MS = 3_600_000


@pytest.fixture()
def disable_debug_logging():
    """Disable debug logging of the standard library loggers for a test."""
    root_logger = logging.getLogger()
    original_level = root_logger.level
    root_logger.setLevel(logging.INFO)
    yield
    root_logger.setLevel(original_level)


@pytest.fixture(autouse=True)
def config_mixin(config_keytally):
    with patch(
        "keytally.core.coreabc.ConfigMixin.config", new_callable=PropertyMock
    ) as config_mixin_patch:
        config_mixin_patch.return_value = config_keytally
        yield config_mixin_patch


@pytest.fixture(autouse=True)
def user_cwd(config_default_dirs):
    with patch(
        "pathlib.Path.cwd",
        return_value=config_default_dirs[1],
    ) as user_cwd_patch:
        yield user_cwd_patch


@pytest.fixture(autouse=True)
def user_config_dir(config_default_dirs):
    with patch(
        "keytally.config.config.user_config_dir",
        return_value=str(config_default_dirs[0]),
    ) as user_dir_patch:
        yield user_dir_patch


@pytest.fixture(autouse=True)
def user_data_dir(config_default_dirs):
    with patch(
        "keytally.config.config.user_data_dir",
        return_value=str(config_default_dirs[-1] / "data"),
    ) as user_dir_patch:
        yield user_dir_patch


@pytest.fixture
def config_keytally(
    disable_debug_logging,
    user_config_dir,
    user_data_dir,
    user_cwd,
    config_default_dirs,
    monkeypatch,
) -> ConfigKeyTally:
    """Fixture to reset KeyTally config to default values."""
    for env_name in ("KEYTALLY_DIR", "KEYTALLY_CONFIG_DIR", "KEYTALLY_LOGGING__LEVEL"):
        monkeypatch.delenv(env_name, raising=False)
    config_file = config_default_dirs[0] / ConfigKeyTally.CONFIG_FILE_NAME
    config_file_cwd = config_default_dirs[1] / ConfigKeyTally.CONFIG_FILE_NAME
    assert not config_file.exists()
    assert not config_file_cwd.exists()
    config_keytally = get_config()
    config_keytally.reset_settings()
    assert config_file == config_keytally.general.config_file_path
    assert config_file.exists()
    assert not config_file_cwd.exists()
    assert config_default_dirs[-1] / "data" == config_keytally.general.data_folder_path
    return config_keytally


@pytest.fixture
def config_default_dirs():
    """Fixture that provides a list of directories to be used as config dir."""
    with tempfile.TemporaryDirectory() as tmp_user_home_dir:
        # Default config directory from platform user config directory
        config_default_dir_user = Path(tmp_user_home_dir) / "config"

        # Default config directory from current working directory
        config_default_dir_cwd = Path(tmp_user_home_dir) / "cwd"
        config_default_dir_cwd.mkdir()

        # Default data directory from platform user data directory
        data_default_dir_user = Path(tmp_user_home_dir)
        yield (
            config_default_dir_user,
            config_default_dir_cwd,
            data_default_dir_user,
        )


@pytest.fixture
def database(tmp_path) -> KeystrokeDatabase:
    """Open store in a temporary directory."""
    db = KeystrokeDatabase(tmp_path / "store" / "keytally.db")
    db.open()
    yield db
    db.close()


@pytest.fixture
def make_event() -> Callable[..., KeyEvent]:
    def _make_event(name: str = "A", timestamp_ms: int = BASE_MS, code: int = 0) -> KeyEvent:
        return KeyEvent(code=code or ord(name[0]), name=name, timestamp_ms=timestamp_ms)

    return _make_event


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll `predicate` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
