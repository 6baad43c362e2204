"""Tests for application settings."""

from __future__ import annotations

import base64
import hashlib
from datetime import timedelta

import pytest
from pydantic import ValidationError

from dsr_engine.config import Environment, Settings, get_settings
from dsr_engine.core.encryption import FieldEncryptionService

PRODUCTION_SECRET = "Zq8rV2mN4pL7tK1xW9yB3cH6jF0sD5gA"


class TestSettings:
    """Defaults and derived properties."""

    def test_is_dev_property_returns_true_for_test(self, fake_settings):
        """Test that the test environment counts as a development environment."""
        assert fake_settings.is_dev is True
        assert fake_settings.is_prod is False

    def test_debug_forced_on_in_dev(self):
        """Test that debug is switched on automatically in dev."""
        settings = Settings(environment=Environment.DEV, debug=False)
        assert settings.debug is True

    def test_debug_left_alone_in_test(self):
        """Test that debug keeps its configured value outside dev."""
        settings = Settings(environment=Environment.TEST)
        assert settings.debug is False

    def test_statutory_window_defaults_to_thirty_days(self, fake_settings):
        """Test that every right answers within one month by default."""
        for right in ("ACCESS", "ERASURE", "PORTABILITY", "CONSENT_WITHDRAW"):
            assert fake_settings.statutory_window(right) == timedelta(days=30)

    def test_statutory_window_override(self):
        """Test that a per-right window can be configured."""
        settings = Settings(environment=Environment.TEST, statutory_window_days={"ACCESS": 14})
        assert settings.statutory_window("ACCESS") == timedelta(days=14)
        assert settings.statutory_window("ERASURE") == timedelta(days=30)

    def test_verification_defaults(self, fake_settings):
        """Test the verification limits shipped by default."""
        assert fake_settings.challenge_max_attempts == 3
        assert fake_settings.knowledge_max_attempts == 2
        assert fake_settings.risk_high_threshold == 70
        assert fake_settings.risk_medium_threshold == 40
        assert fake_settings.max_deadline_extension_days == 60

    def test_medium_threshold_above_high_rejected(self):
        """Test that risk thresholds must be ordered."""
        with pytest.raises(ValidationError):
            Settings(environment=Environment.TEST, risk_medium_threshold=80, risk_high_threshold=70)

    def test_get_settings_is_cached(self):
        """Test that get_settings returns one shared instance."""
        get_settings.cache_clear()
        assert get_settings() is get_settings()
        get_settings.cache_clear()


class TestMasterKey:
    """Derivation of the field-encryption master key."""

    def test_derived_from_secret_key_when_unset(self, fake_settings):
        """Test that dev/test derive a 32-byte key from SECRET_KEY."""
        expected = hashlib.sha256(fake_settings.secret_key.get_secret_value().encode()).digest()
        assert fake_settings.master_key_bytes() == expected
        assert len(fake_settings.master_key_bytes()) == 32

    def test_configured_key_is_decoded(self):
        """Test that ENCRYPTION_MASTER_KEY is base64-decoded."""
        key = FieldEncryptionService.generate_master_key()
        settings = Settings(environment=Environment.TEST, encryption_master_key=key)
        assert settings.master_key_bytes() == base64.b64decode(key)


class TestProductionValidation:
    """Production refuses insecure configuration."""

    def test_default_secret_blocks_startup(self):
        """Test that the shipped secret key is rejected in production."""
        with pytest.raises(RuntimeError, match="SECRET_KEY"):
            Settings(
                environment=Environment.PROD,
                encryption_master_key=FieldEncryptionService.generate_master_key(),
            )

    def test_missing_master_key_blocks_startup(self):
        """Test that production requires an explicit encryption master key."""
        with pytest.raises(RuntimeError, match="ENCRYPTION_MASTER_KEY"):
            Settings(environment=Environment.PROD, secret_key=PRODUCTION_SECRET)

    def test_in_memory_store_blocks_startup(self):
        """Test that in-memory stores are refused in production."""
        with pytest.raises(RuntimeError, match="USE_IN_MEMORY_STORE"):
            Settings(
                environment=Environment.PROD,
                secret_key=PRODUCTION_SECRET,
                encryption_master_key=FieldEncryptionService.generate_master_key(),
                use_in_memory_store=True,
            )

    def test_secure_configuration_accepted(self):
        """Test that a complete production configuration loads."""
        settings = Settings(
            environment=Environment.PROD,
            secret_key=PRODUCTION_SECRET,
            encryption_master_key=FieldEncryptionService.generate_master_key(),
        )
        assert settings.is_prod is True
        assert settings.is_dev is False
