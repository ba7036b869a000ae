"""Capability analyzer: picks the output encoding this system can produce."""

import logging
from typing import Callable

from dashmark import ffutil
from dashmark.errors import NoCapabilityError
from dashmark.models import EncodingProfile

LOG = logging.getLogger(__name__)

MP4_AVC1 = ("mp4", "video/mp4; codecs=avc1", "mp4", "libx264")
WEBM_VP9 = ("webm", "video/webm; codecs=vp9", "webm", "libvpx-vp9")
WEBM_VP8 = ("webm", "video/webm; codecs=vp8", "webm", "libvpx")
WEBM_ANY = ("webm", "video/webm", "webm", None)

# Order matters: the first supported entry wins.
POLICY_ORDER: dict[str, tuple[tuple[str, str, str, str | None], ...]] = {
    "mp4-first": (MP4_AVC1, WEBM_VP9, WEBM_VP8, WEBM_ANY),
    "webm-first": (WEBM_VP9, WEBM_VP8, MP4_AVC1, WEBM_ANY),
}


def candidate_profiles(policy: str, bitrate: int = 10_000_000) -> list[EncodingProfile]:
    """Profiles for *policy*, highest priority first."""
    if policy not in POLICY_ORDER:
        raise ValueError(f"Unknown negotiation policy {policy!r}")
    return [
        EncodingProfile(extension=ext, mime_type=mime, muxer=muxer, encoder=encoder, bitrate=bitrate)
        for ext, mime, muxer, encoder in POLICY_ORDER[policy]
    ]


def negotiate(
    policy: str = "mp4-first",
    bitrate: int = 10_000_000,
    is_supported: Callable[[str, str | None], bool] | None = None,
) -> EncodingProfile:
    """Return the first supported profile, or raise NoCapabilityError."""
    is_supported = is_supported or ffutil.is_format_supported
    for profile in candidate_profiles(policy, bitrate):
        if is_supported(profile.muxer, profile.encoder):
            LOG.info("Encoding as %s (%s)", profile.mime_type, profile.encoder or "default encoder")
            return profile
        LOG.debug("Not supported: %s", profile.mime_type)
    raise NoCapabilityError()
