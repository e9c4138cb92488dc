from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CustomBaseModel(BaseModel):
    """Custom base model for all schemas.
    - snake_case attributes in python, camelCase on the wire
    - accepts both spellings when validating
    - helper to build a model from a plain record
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """camelCase dict without unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_record(cls, record: BaseModel | dict[str, Any]):
        if isinstance(record, BaseModel):
            return cls.model_validate(record.model_dump())
        elif isinstance(record, dict):
            return cls.model_validate(record)
        else:
            raise ValueError(f"Invalid record type: {type(record)}")
