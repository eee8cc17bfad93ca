"""Abstract and base classes for KeyTally core.

This module provides foundational classes for handling configuration in KeyTally.
It includes base classes that provide convenient access to the global
configuration instance through properties.

Classes:
    - ConfigMixin: Mixin class for managing and accessing global configuration.
    - SingletonMixin: Mixin class to create singletons.
"""

import threading
from typing import Any, ClassVar, Dict, Type

from loguru import logger

from keytally.core.decorators import classproperty

config_keytally: Any = None


class ConfigMixin:
    """Mixin class for managing KeyTally configuration data.

    This class serves as a foundational component for KeyTally classes requiring
    access to the global configuration. It provides a `config` property that
    dynamically retrieves the configuration instance, ensuring up-to-date access
    to configuration settings.

    Usage:
        Subclass this base class to gain access to the `config` attribute, which
        retrieves the global configuration instance lazily to avoid import-time
        circular dependencies.

    Example:
        .. code-block:: python

            class MyClass(ConfigMixin):
                def my_method(self):
                    if self.config.buffer.flush_on_add:
                        self.schedule()

    """

    @classproperty
    def config(cls) -> Any:
        """Convenience class method/ attribute to retrieve the KeyTally configuration data.

        Returns:
            ConfigKeyTally: The configuration.
        """
        # avoid circular dependency at import time
        global config_keytally
        if config_keytally is None:
            from keytally.config.config import get_config

            config_keytally = get_config()

        return config_keytally


class SingletonMixin:
    """A thread-safe singleton mixin class.

    Ensures that only one instance of the derived class is created, even when
    accessed from multiple threads. This mixin is intended to be combined with
    other classes, such as Pydantic models, to make them singletons.

    Attributes:
        _instances (Dict[Type, Any]): A dictionary holding instances of each singleton class.
        _lock (threading.Lock): A lock to synchronize access to singleton instance creation.

    Usage:
        - Inherit from `SingletonMixin` alongside other classes to make them singletons.
        - Avoid using `__init__` to reinitialize the singleton instance after it has been created.
    """

    _lock: ClassVar[threading.Lock] = threading.Lock()
    _instances: ClassVar[Dict[Type, Any]] = {}

    def __new__(cls: Type["SingletonMixin"], *args: Any, **kwargs: Any) -> "SingletonMixin":
        """Creates or returns the singleton instance of the class.

        Ensures thread-safe instance creation by locking during the first instantiation.

        Args:
            *args: Positional arguments for instance creation (ignored if instance exists).
            **kwargs: Keyword arguments for instance creation (ignored if instance exists).

        Returns:
            SingletonMixin: The singleton instance of the derived class.
        """
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    instance = super().__new__(cls)
                    cls._instances[cls] = instance
        return cls._instances[cls]

    @classmethod
    def reset_instance(cls) -> None:
        """Resets the singleton instance, forcing it to be recreated on next access."""
        with cls._lock:
            if cls in cls._instances:
                del cls._instances[cls]
                logger.debug(f"{cls.__name__} singleton instance has been reset.")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        """Initializes the singleton instance if it has not been initialized previously.

        Further calls to `__init__` are ignored for the singleton instance.
        """
        if not hasattr(self, "_initialized"):
            super().__init__(*args, **kwargs)
            self._initialized = True
