from abc import ABC, abstractmethod
from decimal import Decimal
import enum
import json
from typing import List, Any, Dict

from referral_engine.data_access.db_lock import ResourceType


class DecimalEncoder(json.JSONEncoder):

    def default(self, o):
        if isinstance(o, Decimal):
            return str(o)
        if isinstance(o, enum.Enum):
            return o.value
        return super(DecimalEncoder, self).default(o)


class classproperty(property):

    def __get__(self, cls, owner):
        return classmethod(self.fget).__get__(None, owner)()


class BaseModel(ABC):
    """
    Row-mapped entity.

    Persistent fields are the annotated class attributes of the model and its
    bases; the class-level value is the default.
    """

    def set_from_dict(self, row: dict = None):
        if not row:
            return self

        for field, value in row.items():
            if field in self.field_names():
                setattr(self, field, value)

        return self

    @classmethod
    def field_names(cls) -> List[str]:
        names = []
        for klass in reversed(cls.__mro__):
            for name in getattr(klass, '__annotations__', {}):
                if name.startswith('_') or name in names:
                    continue
                names.append(name)
        return names

    def to_dict(self) -> Dict[str, Any]:
        return {field: getattr(self, field) for field in self.field_names()}

    def refresh_entity(self, new_entity):
        if not new_entity:
            return
        self.set_from_dict(new_entity.to_dict())

    @property
    @abstractmethod
    def schema_name(self) -> str:
        pass

    @property
    @abstractmethod
    def table_name(self) -> str:
        pass

    @property
    def db_excluded_fields(self) -> List[str]:
        return []

    @property
    def non_persistent_fields(self) -> List[str]:
        """Typically, auto-generated fields like `id` or `created_at`"""
        return []

    @property
    @abstractmethod
    def key_fields(self) -> List[str]:
        pass

    def __repr__(self):
        keys = ", ".join(f"{field}={getattr(self, field)!r}"
                         for field in self.key_fields)
        return f"<{self.__class__.__name__}({keys})>"


class ResourceVersion(ABC):

    @property
    @abstractmethod
    def resource_type(self) -> ResourceType:
        pass

    @property
    @abstractmethod
    def resource_id(self) -> int:
        pass

    @property
    @abstractmethod
    def resource_version(self):
        pass

    @abstractmethod
    def update_version(self):
        pass
