"""Tests for smsledger.config — YAML configuration loader."""

import pytest

from smsledger.config import Config
from tests.conftest import FIXTURE_CONFIG_DIR


class TestConfigInit:
    def test_loads_from_config_dir(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config.config_dir == FIXTURE_CONFIG_DIR

    def test_raises_on_missing_directory(self):
        with pytest.raises(FileNotFoundError, match="Config directory not found"):
            Config("/nonexistent/path")

    def test_raises_on_file_not_directory(self, tmp_path):
        f = tmp_path / "not_a_dir.yaml"
        f.write_text("test: true")
        with pytest.raises(FileNotFoundError, match="Config directory not found"):
            Config(f)


class TestConfigFiles:
    def test_missing_file(self, tmp_path):
        config = Config(tmp_path)
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            config.banks

    def test_invalid_yaml(self, tmp_path):
        (tmp_path / "sms.yaml").write_text("bank_keywords: [unclosed\n")
        with pytest.raises(ValueError, match="Invalid YAML"):
            Config(tmp_path).sms

    def test_empty_yaml(self, tmp_path):
        (tmp_path / "merchants.yaml").write_text("")
        with pytest.raises(ValueError, match="Empty config file"):
            Config(tmp_path).merchants

    def test_cached(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config.banks is config.banks


class TestConfigBanks:
    def test_six_templates(self):
        assert len(Config(FIXTURE_CONFIG_DIR).banks) == 6

    def test_required_fields(self):
        for entry in Config(FIXTURE_CONFIG_DIR).banks:
            missing = {"name", "triggers", "amount"} - entry.keys()
            assert not missing, f"{entry.get('name', '?')} missing {missing}"

    def test_only_generic_is_fallback(self):
        fallbacks = [b["name"] for b in Config(FIXTURE_CONFIG_DIR).banks if b.get("fallback")]
        assert fallbacks == ["Generic Bank"]


class TestConfigMerchants:
    def test_keywords_ordered(self):
        keywords = Config(FIXTURE_CONFIG_DIR).merchant_keywords
        assert keywords[0] == {"pattern": "swiggy", "category": "Food & Dining"}
        assert keywords[-1] == {"pattern": "refund", "category": "Refund"}

    def test_fallback_category(self):
        assert Config(FIXTURE_CONFIG_DIR).fallback_category == "Other"


class TestConfigSms:
    def test_keyword_lists_lowercase(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert "hdfc" in config.bank_keywords
        assert "upi" in config.transaction_keywords
        assert all(k == k.lower() for k in config.bank_keywords)

    def test_import_defaults(self):
        defaults = Config(FIXTURE_CONFIG_DIR).import_defaults
        assert defaults == {"min_confidence": 0.7, "auto_approve": False, "max_messages": 100}

    def test_webhook_and_payment_method(self):
        config = Config(FIXTURE_CONFIG_DIR)
        assert config.webhook_path == "/api/sms/webhook"
        assert config.payment_method == "Bank Transfer"

    def test_defaults_when_keys_absent(self, tmp_path):
        (tmp_path / "sms.yaml").write_text("bank_keywords: [bank]\n")
        config = Config(tmp_path)
        assert config.transaction_keywords == []
        assert config.import_defaults["max_messages"] == 100
        assert config.webhook_path == "/api/sms/webhook"
