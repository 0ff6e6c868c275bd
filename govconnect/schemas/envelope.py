"""
Response envelope shared by every backend endpoint: { success, data?, error? }
"""
from typing import Any, Optional

from pydantic import BaseModel, field_validator


class ApiEnvelope(BaseModel):
    """Backend response envelope"""
    success: bool = False
    data: Any = None
    error: Optional[str] = None
    message: Optional[str] = None

    @field_validator("error", "message", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> Optional[str]:
        # Some gateway errors arrive as {"message": "..."} objects
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, dict) and "message" in v:
            return str(v["message"])
        return str(v)

    @property
    def error_text(self) -> str:
        return self.error or self.message or ""
