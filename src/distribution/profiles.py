"""Per-workspace channel connections (distribution profiles)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from src.auth.roles import is_admin
from src.core.errors import AuthorizationError, ConfigurationError, ValidationError
from src.core.logger import get_logger
from src.distribution.channels import DISTRIBUTION_CHANNELS, normalize_channel
from src.storage.models import DistributionProfile
from src.storage.tenant import TenantContext, tenant_transaction


logger = get_logger("contentos.distribution.profiles")

MIN_LABEL_CHARS = 2
MAX_LABEL_CHARS = 60


class ProfileConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(default="", max_length=256)
    external_id: str = Field(default="", max_length=120)
    space_id: str = Field(default="", max_length=120)


@dataclass(frozen=True)
class ProfileSummary:
    id: str
    channel: str
    label: str
    has_token: bool
    external_id: str
    space_id: str
    updated_at: Optional[datetime]


def load_profile_config(profile: DistributionProfile) -> ProfileConfig:
    try:
        raw = json.loads(profile.config_json or "{}")
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Stored {profile.channel} profile config is not valid JSON.") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Stored {profile.channel} profile config must be an object.")
    try:
        return ProfileConfig.model_validate(raw)
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Stored {profile.channel} profile config is invalid.") from exc


def summarize_profile(profile: DistributionProfile) -> ProfileSummary:
    """Public view of a profile; the access token itself is never exposed."""

    config = load_profile_config(profile)
    return ProfileSummary(
        id=profile.id,
        channel=profile.channel,
        label=profile.label or "Connected",
        has_token=bool(config.access_token),
        external_id=config.external_id,
        space_id=config.space_id,
        updated_at=profile.updated_at,
    )


def list_profiles(session: Session, context: TenantContext) -> List[ProfileSummary]:
    with tenant_transaction(session, context):
        profiles = session.scalars(select(DistributionProfile).order_by(DistributionProfile.channel.asc())).all()
        return [summarize_profile(profile) for profile in profiles]


def upsert_profile(
    session: Session,
    context: TenantContext,
    *,
    actor_role: str,
    channel: str,
    label: str,
    access_token: Optional[str] = None,
    external_id: Optional[str] = None,
    space_id: Optional[str] = None,
) -> ProfileSummary:
    """Create or update the workspace's connection for ``channel``.

    ``None`` keeps the stored value for a config key; an empty string clears it.
    """

    if not is_admin(actor_role):
        raise AuthorizationError("Only admins can manage channel connections.")

    channel = normalize_channel(channel)
    if channel not in DISTRIBUTION_CHANNELS:
        raise ValidationError.for_field("channel", f"Unsupported distribution channel: {channel}")
    label = (label or "").strip()
    if not MIN_LABEL_CHARS <= len(label) <= MAX_LABEL_CHARS:
        raise ValidationError.for_field(
            "label",
            f"Label must be between {MIN_LABEL_CHARS} and {MAX_LABEL_CHARS} characters.",
        )

    with tenant_transaction(session, context):
        profile = session.scalar(select(DistributionProfile).where(DistributionProfile.channel == channel))
        current = load_profile_config(profile) if profile is not None else ProfileConfig()
        updates = {
            key: value.strip()
            for key, value in (
                ("access_token", access_token),
                ("external_id", external_id),
                ("space_id", space_id),
            )
            if value is not None
        }
        try:
            config = ProfileConfig.model_validate({**current.model_dump(), **updates})
        except PydanticValidationError as exc:
            raise ValidationError.from_pydantic(exc) from exc

        now = datetime.now(timezone.utc)
        config_json = json.dumps(config.model_dump(), separators=(",", ":"), sort_keys=True)
        if profile is None:
            profile = DistributionProfile(
                workspace_id=context.workspace_id,
                channel=channel,
                label=label,
                config_json=config_json,
                created_at=now,
                updated_at=now,
            )
            session.add(profile)
        else:
            profile.label = label
            profile.config_json = config_json
            profile.updated_at = now
        session.flush()
        summary = summarize_profile(profile)

    logger.info("distribution_profile_saved", channel=channel, profile_id=summary.id, has_token=summary.has_token)
    return summary
