from collections.abc import Callable
from typing import Any, Optional


class classproperty:
    """A decorator to define a read-only property at the class level.

    The built-in `property` can no longer be combined with @classmethod since
    Python 3.13. This decorator allows a method to be accessed as a property on
    the class itself, rather than an instance.

    Example:
        class MyClass:
            _value = 42

            @classproperty
            def value(cls):
                return cls._value

        print(MyClass.value)  # Outputs: 42

    Raises:
        RuntimeError: If `fget` is not defined when `__get__` is called.
    """

    def __init__(self, fget: Callable[[Any], Any]) -> None:
        self.fget = fget

    def __get__(self, _: Any, owner_cls: Optional[type[Any]] = None) -> Any:
        if owner_cls is None:
            return self
        if self.fget is None:
            raise RuntimeError("'fget' not defined when `__get__` is called")
        return self.fget(owner_cls)
