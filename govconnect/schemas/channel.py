"""
Channel session schemas: the tenant's WhatsApp pairing as the backend reports it.

The backend mixes camelCase (channel service) and snake_case (dashboard API)
keys, so every field accepts both spellings.
"""
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field, model_validator

from govconnect.core.validation import PhoneNumberValidator
from govconnect.state_machine.states import ChannelSessionState

QR_DATA_URI_PREFIX = "data:image/png;base64,"


def normalize_qr_payload(value: Optional[str]) -> Optional[str]:
    """QR arrives as raw base64 or as a data URI; always return a data URI."""
    if not value:
        return None
    value = value.strip()
    if not value:
        return None
    if value.startswith("data:"):
        return value
    return QR_DATA_URI_PREFIX + value


def extract_qr_from_payload(data: Any) -> Optional[str]:
    """Pull the QR image out of a /channel/qr payload."""
    if isinstance(data, str):
        return normalize_qr_payload(data)
    if not isinstance(data, dict):
        return None
    for key in ("QRCode", "qrcode", "qrCode", "qr"):
        if data.get(key):
            return normalize_qr_payload(data[key])
    return None


class ChannelSession(BaseModel):
    """Mirror of one tenant's WhatsApp session"""
    tenant_id: str
    exists: bool = True
    connected: bool = False
    logged_in: bool = Field(default=False, validation_alias=AliasChoices("logged_in", "loggedIn"))
    jid: Optional[str] = None
    phone_number: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("phone_number", "phoneNumber", "wa_number"),
    )
    qr_payload: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("qr_payload", "qrcode", "qrCode", "QRCode"),
    )

    @model_validator(mode="after")
    def enforce_pairing_invariants(self) -> "ChannelSession":
        if not self.exists:
            self.connected = False
            self.logged_in = False
            self.jid = None
            self.qr_payload = None
            return self

        # A login without a jid is not a usable identity yet
        if self.logged_in and not self.jid:
            self.logged_in = False
        if self.logged_in:
            self.connected = True
            self.qr_payload = None
        else:
            self.qr_payload = normalize_qr_payload(self.qr_payload)

        if not self.phone_number and self.jid:
            self.phone_number = PhoneNumberValidator.from_jid(self.jid)
        if self.phone_number:
            self.phone_number = PhoneNumberValidator.normalize(self.phone_number)
        return self

    @classmethod
    def absent(cls, tenant_id: str) -> "ChannelSession":
        return cls(tenant_id=tenant_id, exists=False)

    @classmethod
    def from_payload(cls, tenant_id: str, data: Optional[dict]) -> "ChannelSession":
        payload = dict(data or {})
        payload["tenant_id"] = tenant_id
        return cls.model_validate(payload)

    @property
    def state(self) -> ChannelSessionState:
        """State readable from this snapshot alone (no DISCONNECTED history)."""
        if not self.exists:
            return ChannelSessionState.NO_SESSION
        if self.logged_in:
            return ChannelSessionState.LOGGED_IN
        if self.qr_payload or self.connected:
            return ChannelSessionState.PAIRING
        return ChannelSessionState.SESSION_CREATED


class SessionCreateResult(BaseModel):
    """Result of an idempotent session create"""
    tenant_id: str
    existing: bool = False
    session: Optional[ChannelSession] = None


class DuplicateInfo(BaseModel):
    """Ownership conflict for a WhatsApp number"""
    is_duplicate: bool = Field(default=False, validation_alias=AliasChoices("is_duplicate", "isDuplicate"))
    owning_tenant_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("owning_tenant_id", "owningTenantId", "existingVillageId"),
    )
    owning_tenant_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("owning_tenant_name", "owningTenantName", "existingVillageName"),
    )
    phone_number: str = ""

    @model_validator(mode="after")
    def default_owner_name(self) -> "DuplicateInfo":
        if self.is_duplicate and not self.owning_tenant_name:
            self.owning_tenant_name = self.owning_tenant_id
        return self


class ChannelSettings(BaseModel):
    """Per-tenant channel toggles"""
    wa_number: str = ""
    webhook_url: str = ""
    enabled_wa: bool = False
    enabled_webchat: bool = False
