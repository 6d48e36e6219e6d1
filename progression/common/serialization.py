"""
Serialization Utilities

Conversion of domain models to plain dicts and JSON for the HTTP layer and
the storage collaborators, with support for datetime, date, enum and set
values.
"""

import json
import datetime
from enum import Enum
from typing import Any, Dict, List, Type, TypeVar
from dataclasses import is_dataclass, fields

T = TypeVar('T')


def serialize(obj: Any) -> Any:
    """
    Serialize an object into JSON-compatible primitives.

    Args:
        obj: The object to serialize

    Returns:
        A structure of dicts, lists, strings, numbers, booleans and None
    """
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj

    if isinstance(obj, (datetime.datetime, datetime.date)):
        return obj.isoformat()

    if isinstance(obj, Enum):
        return obj.value

    if isinstance(obj, (list, tuple)):
        return [serialize(item) for item in obj]

    if isinstance(obj, (set, frozenset)):
        return sorted(serialize(item) for item in obj)

    if isinstance(obj, dict):
        return {str(serialize(key)): serialize(value) for key, value in obj.items()}

    if hasattr(obj, 'to_dict') and callable(getattr(obj, 'to_dict')):
        return serialize(obj.to_dict())

    if is_dataclass(obj):
        return {f.name: serialize(getattr(obj, f.name)) for f in fields(obj)}

    if hasattr(obj, 'dict') and callable(getattr(obj, 'dict')):
        return serialize(obj.dict())

    return str(obj)


def to_json(obj: Any, pretty: bool = False) -> str:
    """
    Serialize an object to a JSON string.

    Args:
        obj: The object to serialize
        pretty: Whether to format the JSON with indentation

    Returns:
        JSON string representation
    """
    indent = 2 if pretty else None
    return json.dumps(serialize(obj), indent=indent, ensure_ascii=False)


class SerializableMixin:
    """
    Mixin that provides serialization capabilities to a class.

    Classes using this mixin must define:
    1. __serializable_fields__ - list of field names to include in serialization
    2. __optional_fields__ - list of field names that are optional during deserialization

    Subclasses whose fields need type conversion on the way back in (dates,
    enums, nested models) override ``from_dict`` and call ``_collect_kwargs``.
    """

    __serializable_fields__: List[str] = []
    __optional_fields__: List[str] = []

    def to_dict(self) -> Dict[str, Any]:
        """Convert the object to a dictionary."""
        return {
            name: serialize(getattr(self, name))
            for name in self.__serializable_fields__
            if hasattr(self, name)
        }

    def to_json(self, pretty: bool = False) -> str:
        """Convert the object to a JSON string."""
        return to_json(self.to_dict(), pretty)

    @classmethod
    def _collect_kwargs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        init_kwargs = {}
        for name in cls.__serializable_fields__:
            if name in data:
                init_kwargs[name] = data[name]
            elif name not in cls.__optional_fields__:
                raise ValueError(f"Missing required field: {name}")
        return init_kwargs

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        """Create an instance from a dictionary."""
        return cls(**cls._collect_kwargs(data))

    @classmethod
    def from_json(cls: Type[T], json_str: str) -> T:
        """Create an instance from a JSON string."""
        return cls.from_dict(json.loads(json_str))
