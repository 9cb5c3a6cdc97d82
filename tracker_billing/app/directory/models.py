"""Records exchanged with the external user directory."""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class DirectoryUser(BaseModel):
    """A user account as returned by the directory.

    Unknown fields are preserved so the full record can be written back.
    """

    id: int
    name: Optional[str] = None
    email: str
    device_limit: int = Field(default=-1, alias="deviceLimit")
    disabled: bool = False
    administrator: bool = False
    attributes: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="allow")


class NewDirectoryUser(BaseModel):
    """Profile used to provision an account."""

    name: str
    email: str
    password: str = Field(repr=False)
    device_limit: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "password": self.password,
            "deviceLimit": self.device_limit if self.device_limit is not None else -1,
            "disabled": False,
            "administrator": False,
            "readonly": False,
            "deviceReadonly": False,
            "limitCommands": False,
        }


__all__ = ["DirectoryUser", "NewDirectoryUser"]
