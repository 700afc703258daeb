"""Distribution channels, job statuses and static channel metadata."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple


CHANNEL_WEBFLOW = "WEBFLOW"
CHANNEL_WORDPRESS = "WORDPRESS"
CHANNEL_LINKEDIN = "LINKEDIN"
CHANNEL_FACEBOOK = "FACEBOOK"
CHANNEL_INSTAGRAM = "INSTAGRAM"
CHANNEL_REDDIT = "REDDIT"
CHANNEL_MAILCHIMP = "MAILCHIMP"
CHANNEL_SUBSTACK = "SUBSTACK"

DISTRIBUTION_CHANNELS: Tuple[str, ...] = (
    CHANNEL_WEBFLOW,
    CHANNEL_WORDPRESS,
    CHANNEL_LINKEDIN,
    CHANNEL_FACEBOOK,
    CHANNEL_INSTAGRAM,
    CHANNEL_REDDIT,
    CHANNEL_MAILCHIMP,
    CHANNEL_SUBSTACK,
)

JOB_STATUS_DRAFT = "DRAFT"
JOB_STATUS_READY = "READY"
JOB_STATUS_QUEUED = "QUEUED"
JOB_STATUS_SCHEDULED = "SCHEDULED"
JOB_STATUS_SENDING = "SENDING"
JOB_STATUS_SENT = "SENT"
JOB_STATUS_FAILED = "FAILED"

# Must stay in sync with ACTIVE_JOB_STATUS_SQL on the partial unique index.
ACTIVE_JOB_STATUSES: FrozenSet[str] = frozenset({JOB_STATUS_QUEUED, JOB_STATUS_SCHEDULED, JOB_STATUS_SENDING})
UPCOMING_JOB_STATUSES: Tuple[str, ...] = (JOB_STATUS_QUEUED, JOB_STATUS_SCHEDULED)

MODE_IMMEDIATE = "IMMEDIATE"
MODE_SCHEDULED = "SCHEDULED"
SCHEDULE_MODES: Tuple[str, ...] = (MODE_IMMEDIATE, MODE_SCHEDULED)


@dataclass(frozen=True)
class ChannelDefinition:
    channel: str
    label: str
    description: str
    max_characters: Optional[int] = None
    media_hint: Optional[str] = None


CHANNEL_DEFINITIONS: Dict[str, ChannelDefinition] = {
    CHANNEL_WEBFLOW: ChannelDefinition(
        channel=CHANNEL_WEBFLOW,
        label="Webflow",
        description="Publishes landing pages and CMS blog entries with full metadata control.",
        media_hint="Supports hero image + rich body",
    ),
    CHANNEL_WORDPRESS: ChannelDefinition(
        channel=CHANNEL_WORDPRESS,
        label="WordPress",
        description="Sync long-form posts via REST API with custom fields.",
        media_hint="Feature image optional",
    ),
    CHANNEL_LINKEDIN: ChannelDefinition(
        channel=CHANNEL_LINKEDIN,
        label="LinkedIn",
        description="Share thought-leadership to company page or personal profile.",
        max_characters=3000,
    ),
    CHANNEL_FACEBOOK: ChannelDefinition(
        channel=CHANNEL_FACEBOOK,
        label="Facebook",
        description="Page posts with link previews and image carousels.",
        max_characters=63206,
    ),
    CHANNEL_INSTAGRAM: ChannelDefinition(
        channel=CHANNEL_INSTAGRAM,
        label="Instagram",
        description="Feed captions with multi-image carousel + hashtags.",
        max_characters=2200,
        media_hint="Square image recommended",
    ),
    CHANNEL_REDDIT: ChannelDefinition(
        channel=CHANNEL_REDDIT,
        label="Reddit",
        description="Community posts with flair-aware formatting.",
        max_characters=40000,
    ),
    CHANNEL_MAILCHIMP: ChannelDefinition(
        channel=CHANNEL_MAILCHIMP,
        label="Mailchimp",
        description="Newsletter campaigns with drag-and-drop blocks.",
        media_hint="Header image + CTA button",
    ),
    CHANNEL_SUBSTACK: ChannelDefinition(
        channel=CHANNEL_SUBSTACK,
        label="Substack",
        description="Email + blog hybrid posts with highlights + paywall toggle.",
        max_characters=10000,
    ),
}


def channel_definitions() -> Tuple[ChannelDefinition, ...]:
    return tuple(CHANNEL_DEFINITIONS[channel] for channel in DISTRIBUTION_CHANNELS)


def normalize_channel(channel: str) -> str:
    return str(channel or "").strip().upper()
