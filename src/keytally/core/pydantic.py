"""Module for managing and serializing Pydantic-based models.

Provides the common base model of KeyTally with `pendulum.DateTime` support,
conversion to and from dictionaries and JSON strings, and a deep merge helper
used by the configuration layer.
"""

import json
from typing import Any, Optional, Type

from pydantic import BaseModel, ConfigDict


def merge_models(source: BaseModel, update_dict: dict[str, Any]) -> dict[str, Any]:
    """Merge a Pydantic model instance with an update dictionary.

    Values in update_dict (including None) override source values.
    Nested dictionaries are merged recursively.
    Lists in update_dict replace source lists entirely.

    Args:
        source (BaseModel): Pydantic model instance serving as the source.
        update_dict (dict[str, Any]): Dictionary with updates to apply.

    Returns:
        dict[str, Any]: Merged dictionary representing combined model data.
    """

    def deep_merge(source_data: Any, update_data: Any) -> Any:
        if not isinstance(source_data, dict) or not isinstance(update_data, dict):
            return update_data

        merged = dict(source_data)
        for key, update_value in update_data.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(update_value, dict):
                merged[key] = deep_merge(merged[key], update_value)
            else:
                merged[key] = update_value
        return merged

    source_dict = source.model_dump(exclude_unset=True)
    return deep_merge(source_dict, update_dict)


class PydanticBaseModel(BaseModel):
    """Base model with pendulum datetime support.

    This class provides:
    - Acceptance of `pendulum.DateTime` (arbitrary types) as field values.
    - Dictionary and JSON conversion helpers.

    Equality is field based, so records read back from the store compare equal
    to freshly built ones.
    """

    # Enable custom serialization globally in config
    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        use_enum_values=True,
        validate_assignment=True,
    )

    def to_dict(self) -> dict:
        """Convert this model instance to a dictionary representation.

        Returns:
            dict: A dictionary where the keys are the field names of the model,
                and the values are the corresponding field values.
        """
        return self.model_dump()

    @classmethod
    def from_dict(cls: Type["PydanticBaseModel"], data: dict) -> "PydanticBaseModel":
        """Create a model instance from a dictionary.

        Works with derived classes by ensuring the `cls` argument is used to
        instantiate the object.
        """
        return cls.model_validate(data)

    def model_dump_json(self, *args: Any, indent: Optional[int] = None, **kwargs: Any) -> str:
        data = self.model_dump(*args, **kwargs)
        return json.dumps(data, indent=indent, default=str)

    def to_json(self) -> str:
        """Convert the model instance to a JSON string."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls: Type["PydanticBaseModel"], json_str: str) -> "PydanticBaseModel":
        """Create an instance of the model class or its subclass from a JSON string."""
        data = json.loads(json_str)
        return cls.model_validate(data)
