"""
Shared Models

Base class for domain models.
"""

from pydantic import BaseModel, ConfigDict


class DomainModel(BaseModel):
    """
    Base domain model for all domain entities.

    Provides:
    - Proper Pydantic v2 configuration
    - Decimal serialized as string in JSON output (pydantic v2 default)
    - Enum values kept as enum members (compare against the enum)
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        populate_by_name=True,
        validate_assignment=True,
    )
