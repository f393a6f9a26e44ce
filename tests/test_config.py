"""Test configuration loading."""
from __future__ import annotations

import os

import pytest
from pydantic import ValidationError


def test_settings_load():
    """Test that settings load correctly."""
    from core.config import get_settings

    settings = get_settings()

    # Check defaults
    assert settings.max_invalid_responses >= 1
    assert settings.conversation_timeout_hours > 0
    assert settings.poll_initial_interval_seconds <= settings.poll_regular_interval_seconds
    assert settings.log_level in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def test_settings_dry_run_default():
    """Test that dry_run defaults to True for safety."""
    os.environ.setdefault("DRY_RUN", "true")

    # Clear cache to pick up new env
    from core.config import get_settings
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.dry_run is True


class TestNudgeSchedule:
    """Nudge offsets parsed from comma-separated minutes."""

    def test_defaults(self):
        from core.config import Settings

        settings = Settings()
        assert settings.nudge_offsets("PHASE1") == [10, 60, 720]
        assert settings.nudge_offsets("PHASE2") == [15, 60, 720]
        assert settings.nudge_offsets("TRANSITION") == []

    def test_normalized(self):
        """Offsets are sorted and deduplicated."""
        from core.config import Settings

        settings = Settings(nudge_schedule_phase1="60, 10,60 ,5")
        assert settings.nudge_schedule_phase1 == "5,10,60"
        assert settings.nudge_offsets("PHASE1") == [5, 10, 60]

    @pytest.mark.parametrize("value", ["10,abc", "0,10", "-5"])
    def test_invalid(self, value):
        from core.config import Settings

        with pytest.raises(ValidationError):
            Settings(nudge_schedule_phase2=value)


class TestSettingsValidation:
    """Validators on individual fields and combinations."""

    def test_log_level_uppercased(self):
        from core.config import Settings

        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_bad_log_level(self):
        from core.config import Settings

        with pytest.raises(ValidationError):
            Settings(log_level="chatty")

    def test_bad_log_format(self):
        from core.config import Settings

        with pytest.raises(ValidationError):
            Settings(log_format="xml")

    def test_initial_interval_cannot_exceed_regular(self):
        from core.config import Settings

        with pytest.raises(ValidationError):
            Settings(poll_initial_interval_seconds=30, poll_regular_interval_seconds=10)

    def test_live_production_requires_api_key(self):
        from core.config import Settings

        with pytest.raises(ValidationError):
            Settings(environment="production", dry_run=False, dm_api_key=None)

        settings = Settings(environment="production", dry_run=False, dm_api_key="secret")
        assert settings.is_provider_configured()
        assert "dm_provider" in settings.get_enabled_services()

    def test_twilio_needs_every_field(self):
        from core.config import Settings

        partial = Settings(twilio_account_sid="AC1", twilio_auth_token="t")
        assert not partial.is_twilio_enabled()

        full = Settings(
            twilio_account_sid="AC1",
            twilio_auth_token="t",
            twilio_from_number="+15550000000",
            alert_phone_number="+15551111111",
        )
        assert full.is_twilio_enabled()

    def test_relative_sqlite_path_resolved(self):
        from core.config import PROJECT_ROOT, Settings

        settings = Settings(database_url="sqlite:///./data/test.db")
        assert settings.database_url == f"sqlite:///{(PROJECT_ROOT / 'data/test.db').as_posix()}"

    def test_memory_database_untouched(self):
        from core.config import Settings

        assert Settings(database_url="sqlite:///:memory:").database_url == "sqlite:///:memory:"


def test_json_log_lines_carry_conversation_context():
    """Context logger fields land at the top level of JSON log lines."""
    import json
    import logging

    from core.logging_config import JSONFormatter, get_context_logger

    records = []

    class Capture(logging.Handler):
        def emit(self, record):
            records.append(record)

    log = get_context_logger("tests.logging", conversation_id="c-1", phase="PHASE1")
    handler = Capture()
    log.logger.addHandler(handler)
    log.logger.setLevel(logging.INFO)
    try:
        log.info("Tick complete", extra={"extra_data": {"messages": 2}})
    finally:
        log.logger.removeHandler(handler)

    line = json.loads(JSONFormatter().format(records[0]))
    assert line["msg"] == "Tick complete"
    assert line["conversation_id"] == "c-1"
    assert line["phase"] == "PHASE1"
    assert line["data"] == {"messages": 2}
