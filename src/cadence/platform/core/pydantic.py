"""Common pydantic base model for domain objects."""

from pydantic import BaseModel, ConfigDict


class AppBaseModel(BaseModel):
    """Base for domain models loaded from ORM rows."""

    model_config = ConfigDict(
        from_attributes=True,
        str_strip_whitespace=True,
        populate_by_name=True,
    )
