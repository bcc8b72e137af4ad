from typing import List, Optional

from pydantic import BaseModel, EmailStr, model_validator

from chatsync.utils.identity import format_name_from_email


class CurrentUser(BaseModel):

    id: Optional[str] = None
    email: Optional[EmailStr] = None
    name: Optional[str] = None

    @model_validator(mode="after")
    def _require_identity(self) -> "CurrentUser":
        if not self.id and not self.email:
            raise ValueError("a user needs an id or an email")
        return self

    @property
    def identities(self) -> List[str]:
        """Every representation this user may appear under, id first."""
        return [value for value in (self.id, self.email) if value]

    @property
    def primary_identity(self) -> str:
        return self.id or str(self.email)

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.email:
            return format_name_from_email(str(self.email))
        return self.primary_identity
