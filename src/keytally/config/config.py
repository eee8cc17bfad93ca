"""Configuration of KeyTally.

The configuration is assembled by pydantic-settings from, in priority order:

1. Settings passed at runtime (`merge_settings_from_dict`).
2. Environment variables with the `KEYTALLY_` prefix, nested by `__`
   (e.g. `KEYTALLY_BUFFER__MAX_SIZE=200`).
3. A dotenv file.
4. The JSON configuration file `keytally.config.json`.
5. Field defaults.

Key features:
- Locating the configuration file and the data directory
- Validating configurations using Pydantic models
- Writing the active configuration back to the configuration file
"""

import os
from pathlib import Path
from typing import Any, ClassVar, Optional, Type

from loguru import logger
from platformdirs import user_config_dir, user_data_dir
from pydantic import Field, computed_field
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

# settings
from keytally.config.configabc import SettingsBaseModel
from keytally.core.buffer import BufferCommonSettings
from keytally.core.coreabc import SingletonMixin
from keytally.core.database import DatabaseCommonSettings
from keytally.core.logging import configure_logging
from keytally.core.logsettings import LoggingCommonSettings
from keytally.core.pydantic import merge_models
from keytally.core.statistics import StatisticsCommonSettings


def get_absolute_path(
    basepath: Optional[Path | str], subpath: Optional[Path | str]
) -> Optional[Path]:
    """Get path based on base path."""
    if isinstance(basepath, str):
        basepath = Path(basepath)
    if subpath is None:
        return basepath

    if isinstance(subpath, str):
        subpath = Path(subpath)
    if subpath.is_absolute():
        return subpath
    if basepath is not None:
        return basepath.joinpath(subpath)
    return None


class GeneralSettings(SettingsBaseModel):
    """Settings for common configuration.

    Attributes:
        data_folder_path (Optional[Path]): Directory of the store, its backups and the log file.
    """

    _config_file_path: ClassVar[Optional[Path]] = None

    data_folder_path: Optional[Path] = Field(
        default=None,
        description="Path to KeyTally data directory.",
        examples=[None, "/home/user/.local/share/keytally"],
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def config_file_path(self) -> Optional[Path]:
        """Path to KeyTally configuration file."""
        return self._config_file_path


class SettingsKeyTally(BaseSettings):
    """Settings for all of KeyTally.

    Used by updating the configuration with specific settings only.
    """

    general: Optional[GeneralSettings] = Field(
        default=None,
        description="General Settings",
    )
    logging: Optional[LoggingCommonSettings] = Field(
        default=None,
        description="Logging Settings",
    )
    database: Optional[DatabaseCommonSettings] = Field(
        default=None,
        description="Durable Store Settings",
    )
    buffer: Optional[BufferCommonSettings] = Field(
        default=None,
        description="Ingestion Buffer Settings",
    )
    statistics: Optional[StatisticsCommonSettings] = Field(
        default=None,
        description="Statistics Cache Settings",
    )

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        nested_model_default_partial_update=True,
        env_prefix="KEYTALLY_",
    )


class SettingsKeyTallyDefaults(SettingsKeyTally):
    """Settings for all of KeyTally with defaults.

    Used by ConfigKeyTally instance to make all fields available.
    """

    general: GeneralSettings = GeneralSettings()
    logging: LoggingCommonSettings = LoggingCommonSettings()
    database: DatabaseCommonSettings = DatabaseCommonSettings()
    buffer: BufferCommonSettings = BufferCommonSettings()
    statistics: StatisticsCommonSettings = StatisticsCommonSettings()


class ConfigKeyTally(SingletonMixin, SettingsKeyTallyDefaults):
    """Singleton configuration handler for KeyTally.

    Initialization Process:
      - Upon instantiation, the singleton instance looks for a configuration file in this order:
        1. The directory specified by the `KEYTALLY_CONFIG_DIR` environment variable
           (relative to `KEYTALLY_DIR` if that one is given).
        2. A platform specific default directory for KeyTally.
        3. The current working directory.
      - The first configuration file found is loaded.
      - If no configuration file is found, one is written with the active settings
        to the first directory of the list.

    Example:
        ```python
        config = ConfigKeyTally()  # Always returns the same instance
        print(config.buffer.max_size)
        ```
    """

    APP_NAME: ClassVar[str] = "keytally"
    APP_AUTHOR: ClassVar[str] = "keytally"
    KEYTALLY_DIR: ClassVar[str] = "KEYTALLY_DIR"
    KEYTALLY_CONFIG_DIR: ClassVar[str] = "KEYTALLY_CONFIG_DIR"
    ENCODING: ClassVar[str] = "UTF-8"
    CONFIG_FILE_NAME: ClassVar[str] = "keytally.config.json"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customizes the order and handling of settings sources.

        Adds the JSON configuration file, if one exists, with the lowest priority
        after init, environment and dotenv settings. Records the configuration file
        path in `GeneralSettings`.
        """
        setting_sources = [
            init_settings,
            env_settings,
            dotenv_settings,
        ]

        config_file, exists = cls._get_config_file_path()
        if exists:
            try:
                setting_sources.append(JsonConfigSettingsSource(settings_cls, json_file=config_file))
            except Exception as e:
                logger.error("Error reading config file '{}' (using defaults): {}", config_file, e)
        GeneralSettings._config_file_path = config_file

        return tuple(setting_sources)

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        """Initializes the singleton ConfigKeyTally instance.

        Configuration data is loaded from a configuration file or a default one is created if none
        exists.
        """
        if hasattr(self, "_initialized"):
            return
        self._setup(*args, **kwargs)

    def _setup(self, *args: Any, **kwargs: Any) -> None:
        """Re-initialize global settings."""
        SettingsKeyTallyDefaults.__init__(self, *args, **kwargs)
        self._create_initial_config_file()
        self._update_data_folder_path()
        configure_logging(self)
        self._initialized = True

    def merge_settings(self, settings: SettingsKeyTally) -> None:
        """Merges the provided settings into the global settings.

        Raises:
            ValueError: If the `settings` is not a `SettingsKeyTally` instance.
        """
        if not isinstance(settings, SettingsKeyTally):
            raise ValueError(f"Settings must be an instance of SettingsKeyTally: '{settings}'.")

        self.merge_settings_from_dict(settings.model_dump(exclude_none=True, exclude_unset=True))

    def merge_settings_from_dict(self, data: dict) -> None:
        """Merges the provided dictionary data into the current instance.

        Args:
            data (dict): Dictionary containing field values to merge into the
                current settings instance.

        Raises:
            ValidationError: If the data contains invalid values for the defined fields.

        Example:
            >>> config = get_config()
            >>> config.merge_settings_from_dict({"buffer": {"max_size": 500}})
        """
        self._setup(**merge_models(self, data))

    def reset_settings(self) -> None:
        """Reset all changed settings to environment/config file defaults."""
        self._setup()

    def _create_initial_config_file(self) -> None:
        config_file = self.general.config_file_path
        if config_file and not config_file.exists():
            try:
                config_file.parent.mkdir(parents=True, exist_ok=True)
                with config_file.open("w", encoding=self.ENCODING, newline="\n") as f:
                    f.write(self.model_dump_json(indent=4, exclude={"general": {"config_file_path"}}))
            except OSError as e:
                logger.error("Could not write configuration file '{}': {}", config_file, e)

    def _update_data_folder_path(self) -> None:
        """Updates path to the data directory."""
        # From Settings
        if data_dir := self.general.data_folder_path:
            try:
                data_dir.mkdir(parents=True, exist_ok=True)
                return
            except OSError as e:
                logger.warning("Could not setup data dir: {}", e)
        # From KEYTALLY_DIR env
        if env_dir := os.getenv(self.KEYTALLY_DIR):
            try:
                data_dir = Path(env_dir).resolve()
                data_dir.mkdir(parents=True, exist_ok=True)
                self.general.data_folder_path = data_dir
                return
            except OSError as e:
                logger.warning("Could not setup data dir: {}", e)
        # From platform specific default path
        try:
            data_dir = Path(user_data_dir(self.APP_NAME, self.APP_AUTHOR))
            data_dir.mkdir(parents=True, exist_ok=True)
            self.general.data_folder_path = data_dir
            return
        except OSError as e:
            logger.warning("Could not setup data dir: {}", e)
        # Current working directory
        self.general.data_folder_path = Path.cwd()

    @classmethod
    def _get_config_file_path(cls) -> tuple[Path, bool]:
        """Finds a valid configuration file or returns the desired path for a new config file.

        Returns:
            tuple[Path, bool]: The path to the configuration file and whether it exists.
        """
        config_dirs = []
        env_base_dir = os.getenv(cls.KEYTALLY_DIR)
        env_config_dir = os.getenv(cls.KEYTALLY_CONFIG_DIR)
        env_dir = get_absolute_path(env_base_dir, env_config_dir)
        logger.debug("Environment config dir: '{}'", env_dir)
        if env_dir is not None:
            config_dirs.append(env_dir.resolve())
        config_dirs.append(Path(user_config_dir(cls.APP_NAME, cls.APP_AUTHOR)))
        config_dirs.append(Path.cwd())
        for cdir in config_dirs:
            cfile = cdir.joinpath(cls.CONFIG_FILE_NAME)
            if cfile.exists():
                logger.debug("Found config file: '{}'", cfile)
                return cfile, True
        return config_dirs[0].joinpath(cls.CONFIG_FILE_NAME), False

    def to_config_file(self) -> None:
        """Saves the current configuration to the configuration file.

        Raises:
            ValueError: If the configuration file path is not specified.
        """
        if not self.general.config_file_path:
            raise ValueError("Configuration file path unknown.")
        with self.general.config_file_path.open("w", encoding=self.ENCODING, newline="\n") as f_out:
            f_out.write(self.model_dump_json(indent=4, exclude={"general": {"config_file_path"}}))

    def database_path(self) -> Path:
        """Absolute path of the store file."""
        path = get_absolute_path(self.general.data_folder_path, self.database.file_name)
        if path is None:
            return Path.cwd() / self.database.file_name
        return path


def get_config() -> ConfigKeyTally:
    """Gets the KeyTally configuration data."""
    return ConfigKeyTally()
