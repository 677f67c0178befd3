"""Schemas for the JSON documents stored on on-call records."""

import enum
import uuid
from datetime import time

from pydantic import BaseModel, ConfigDict, Field


class TeamMemberSchema(BaseModel):
    """One entry of an escalation policy's active team.

    Duty bounds are wall-clock times of day. A member with either bound
    missing is always on duty.
    """

    model_config = ConfigDict(extra="ignore")

    user_id: uuid.UUID
    start_time: time | None = None
    end_time: time | None = None
    group_user_ids: list[uuid.UUID] = Field(
        default_factory=list,
        description="Members of a team group attached to this entry.",
    )


class RoutingTarget(str, enum.Enum):
    """What an inbound call is forwarded to."""

    TEAM_MEMBER = "TeamMember"
    SCHEDULE = "Schedule"
    PHONE_NUMBER = "PhoneNumber"


class RoutingSchema(BaseModel):
    """Forwarding configuration of a purchased number.

    The primary target is tried first; the backup target is used when the
    provider calls back after the primary dial failed.
    """

    model_config = ConfigDict(extra="ignore")

    type: RoutingTarget | None = None
    id: str | None = None
    phone_number: str | None = None

    backup_type: RoutingTarget | None = None
    backup_id: str | None = None
    backup_phone_number: str | None = None

    # Advanced options only take effect when show_advance is set
    show_advance: bool = False
    intro_text: str | None = None
    intro_audio: str | None = None
    backup_intro_text: str | None = None
    backup_intro_audio: str | None = None
    call_drop_text: str | None = None

    def target(self, backup: bool) -> tuple[RoutingTarget | None, str | None, str | None]:
        """Return (type, id, phone number) for the primary or backup leg."""
        if backup:
            return self.backup_type, self.backup_id, self.backup_phone_number
        return self.type, self.id, self.phone_number

    def intro(self, backup: bool) -> tuple[str | None, str | None]:
        """Return (text, audio file id) to play before dialing."""
        if not self.show_advance:
            return None, None
        if backup:
            return self.backup_intro_text, self.backup_intro_audio
        return self.intro_text, self.intro_audio


class ProjectMemberSchema(BaseModel):
    """One entry of ``Project.members``."""

    model_config = ConfigDict(extra="ignore")

    user_id: uuid.UUID
    role: str = "Member"
