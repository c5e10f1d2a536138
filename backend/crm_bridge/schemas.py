"""
CRM BRIDGE SHARED SCHEMAS
=========================
Outbound message contracts (heartbeat, control-room log and republished
contacts). Field aliases are the XML element names the other side expects.
"""

from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with microsecond precision, e.g. 2025-01-01T12:00:00.123456Z"""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


# =============================================================================
# HEARTBEAT (Bridge → Monitoring)
# =============================================================================

class HeartbeatMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    version: str = Field(..., alias="Version")
    host: str = Field(..., alias="Host")
    environment: str = Field(..., alias="Environment")


class Heartbeat(BaseModel):
    """
    Liveness record published on monitoring.heartbeat.create.

    The timestamp is taken when the record is built, not when it is sent.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    service_name: str = Field(..., alias="ServiceName")
    status: str = Field("OK", alias="Status")
    timestamp: str = Field(default_factory=utc_now_iso, alias="Timestamp")
    heartbeat_interval: int = Field(1, alias="HeartBeatInterval", ge=1)
    metadata: HeartbeatMetadata = Field(..., alias="Metadata")

    ROOT: ClassVar[str] = "Heartbeat"

    def to_document(self) -> Dict[str, Any]:
        """JSON document ready for json_to_xml"""
        return {self.ROOT: self.model_dump(by_alias=True)}


# =============================================================================
# CONTROL-ROOM LOG (Bridge → Control room)
# =============================================================================

class LogEvent(BaseModel):
    """Operational log line forwarded to the control-room log exchange."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    service_name: str = Field(..., alias="ServiceName")
    status: str = Field(..., alias="Status")  # info | warning | error
    code: str = Field(..., alias="Code")
    message: str = Field(..., alias="Message")

    ROOT: ClassVar[str] = "Log"

    def to_document(self) -> Dict[str, Any]:
        return {self.ROOT: self.model_dump(by_alias=True)}


# =============================================================================
# USER MESSAGE (Salesforce CDC → frontend, facturatie, kassa)
# =============================================================================

class UserBusiness(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    business_name: str = Field("", alias="BusinessName")
    business_email: str = Field("", alias="BusinessEmail")
    real_address: str = Field("", alias="RealAddress")
    btw_number: str = Field("", alias="BTWNumber")
    facturation_address: str = Field("", alias="FacturationAddress")


class UserMessage(BaseModel):
    """
    A Contact change republished to the other systems.

    Delete messages only carry ActionType, UUID and TimeOfAction; the
    remaining fields stay None and are left out of the document.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    action_type: str = Field(..., alias="ActionType")  # CREATE | UPDATE | DELETE
    uuid: str = Field(..., alias="UUID")
    time_of_action: str = Field(default_factory=utc_now_iso, alias="TimeOfAction")
    encrypted_password: Optional[str] = Field(None, alias="EncryptedPassword")
    first_name: Optional[str] = Field(None, alias="FirstName")
    last_name: Optional[str] = Field(None, alias="LastName")
    phone_number: Optional[str] = Field(None, alias="PhoneNumber")
    email_address: Optional[str] = Field(None, alias="EmailAddress")
    business: Optional[UserBusiness] = Field(None, alias="Business")

    ROOT: ClassVar[str] = "UserMessage"

    def to_document(self) -> Dict[str, Any]:
        return {self.ROOT: self.model_dump(by_alias=True, exclude_none=True)}
