"""Raw API response types for the Microsoft Graph API.

Pydantic models representing directory objects as returned by Graph. Every
field is optional because ``$select`` queries and tenant configuration both
decide which properties are populated.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _GraphModel(BaseModel):
    """Base model accepting Graph's camelCase property names."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class RawUserData(_GraphModel):
    """Raw user object from ``GET /users``."""

    id: str | None = None
    user_principal_name: str | None = None
    display_name: str | None = None
    account_enabled: bool | None = None
    user_type: str | None = None
    creation_type: str | None = None


class RawDeviceData(_GraphModel):
    """Raw device object from ``GET /devices``."""

    id: str | None = None
    display_name: str | None = None
    device_category: str | None = None
    operating_system: str | None = None
    operating_system_version: str | None = None
    trust_type: str | None = None
    enrollment_type: str | None = None
    account_enabled: bool | None = None
    management_type: str | None = None
    registration_date_time: datetime | None = None
