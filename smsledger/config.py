"""YAML configuration loader for smsledger.

Loads the seed config files from the config/ directory:
  banks.yaml, merchants.yaml, sms.yaml
"""

from pathlib import Path

import yaml


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._banks: list[dict] | None = None
        self._merchants: dict | None = None
        self._sms: dict | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def banks(self) -> list[dict]:
        """Bank templates in priority order (fallback last)."""
        if self._banks is None:
            data = self._load("banks.yaml")
            self._banks = data.get("templates", []) if isinstance(data, dict) else data
        return self._banks

    @property
    def merchants(self) -> dict:
        if self._merchants is None:
            self._merchants = self._load("merchants.yaml")
        return self._merchants

    @property
    def sms(self) -> dict:
        if self._sms is None:
            self._sms = self._load("sms.yaml")
        return self._sms

    @property
    def merchant_keywords(self) -> list[dict]:
        return self.merchants.get("keywords", [])

    @property
    def fallback_category(self) -> str:
        """Category assigned when no keyword matches. Default: 'Other'."""
        return self.merchants.get("fallback_category", "Other")

    @property
    def bank_keywords(self) -> list[str]:
        return [k.lower() for k in self.sms.get("bank_keywords", [])]

    @property
    def transaction_keywords(self) -> list[str]:
        return [k.lower() for k in self.sms.get("transaction_keywords", [])]

    @property
    def import_defaults(self) -> dict:
        """Default batch-import knobs: min_confidence, auto_approve, max_messages."""
        defaults = {"min_confidence": 0.7, "auto_approve": False, "max_messages": 100}
        defaults.update(self.sms.get("import", {}) or {})
        return defaults

    @property
    def webhook_path(self) -> str:
        return self.sms.get("webhook_path", "/api/sms/webhook")

    @property
    def payment_method(self) -> str:
        return self.sms.get("payment_method", "Bank Transfer")
