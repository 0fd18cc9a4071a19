import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class AuthUser(BaseModel):
    """
    Claims of a verified bearer token issued by the identity provider.

    `user_id` is the provider's subject id, which the identity service mirrors
    as `User.external_id`. Role claims are advisory; authorization decisions use
    the mirrored local user's role.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="sub")
    email: Optional[EmailStr] = None
    role: str = "authenticated"
    session_id: Optional[str] = Field(default=None, alias="sid")


class Actor(BaseModel):
    """The local account behind a request, resolved from the token subject."""

    user_id: uuid.UUID
    external_id: str
    role: str
    email: Optional[str] = None
    vendor_id: Optional[uuid.UUID] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_vendor(self) -> bool:
        return self.role == "vendor"
