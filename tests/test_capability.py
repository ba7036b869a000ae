"""Tests for encoding negotiation."""

import pytest

from dashmark.analyzers.capability import candidate_profiles, negotiate
from dashmark.errors import NoCapabilityError


def _only(*allowed):
    def is_supported(muxer, encoder):
        return (muxer, encoder) in allowed
    return is_supported


class TestCandidateProfiles:
    def test_mp4_first_order(self):
        mimes = [p.mime_type for p in candidate_profiles("mp4-first")]
        assert mimes == [
            "video/mp4; codecs=avc1",
            "video/webm; codecs=vp9",
            "video/webm; codecs=vp8",
            "video/webm",
        ]

    def test_webm_first_order(self):
        mimes = [p.mime_type for p in candidate_profiles("webm-first")]
        assert mimes == [
            "video/webm; codecs=vp9",
            "video/webm; codecs=vp8",
            "video/mp4; codecs=avc1",
            "video/webm",
        ]

    def test_bitrate_applied(self):
        assert {p.bitrate for p in candidate_profiles("mp4-first", bitrate=5_000_000)} == {5_000_000}

    def test_unknown_policy(self):
        with pytest.raises(ValueError, match="Unknown negotiation policy"):
            candidate_profiles("avi-first")


class TestNegotiate:
    def test_first_supported_wins(self):
        profile = negotiate("mp4-first", is_supported=lambda m, e: True)
        assert profile.extension == "mp4"
        assert profile.encoder == "libx264"
        assert profile.codec == "avc1"

    def test_falls_back_to_vp8(self):
        profile = negotiate("mp4-first", is_supported=_only(("webm", "libvpx")))
        assert profile.mime_type == "video/webm; codecs=vp8"
        assert profile.extension == "webm"

    def test_last_resort_default_encoder(self):
        profile = negotiate("mp4-first", is_supported=_only(("webm", None)))
        assert profile.mime_type == "video/webm"
        assert profile.encoder is None
        assert profile.codec is None

    def test_webm_first_prefers_vp9_over_mp4(self):
        profile = negotiate("webm-first", is_supported=_only(("mp4", "libx264"), ("webm", "libvpx-vp9")))
        assert profile.mime_type == "video/webm; codecs=vp9"

    def test_nothing_supported(self):
        with pytest.raises(NoCapabilityError) as exc_info:
            negotiate(is_supported=lambda m, e: False)
        assert exc_info.value.kind == "capability"
        assert "cannot record video" in str(exc_info.value)
