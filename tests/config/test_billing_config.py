"""
Billing configuration tests.

get_active_config loads the packaged defaults, honours the environment
overrides, and rejects invalid files.  build_billing_policy is the only
bridge from configuration into the kernel.
"""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
import yaml

from billing_config import build_billing_policy, get_active_config
from billing_config.loader import compute_checksum, load_yaml_file, parse_config

DEFAULTS = Path(__file__).resolve().parent.parent.parent / "billing_config" / "defaults.yaml"


@pytest.fixture(autouse=True)
def _no_env_overrides(monkeypatch):
    monkeypatch.delenv("BILLING_CONFIG_PATH", raising=False)
    monkeypatch.delenv("BILLING_DATABASE_URL", raising=False)


def _write(tmp_path, data) -> Path:
    path = tmp_path / "billing.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def _defaults() -> dict:
    return load_yaml_file(DEFAULTS)


class TestDefaults:

    def test_packaged_defaults(self):
        config = get_active_config()
        assert config.config_id == "wms-billing-default"
        assert config.invoice.currency == "KRW"
        assert config.invoice.vat_rate == Decimal("0.07")
        assert config.invoice.due_days == 30
        assert (config.fx.base_currency, config.fx.quote_currency) == ("THB", "KRW")
        assert config.rounding.truncation_unit == Decimal("100")
        assert config.checksum == compute_checksum(_defaults())

    def test_load_is_logged(self, captured_logs):
        get_active_config()
        loaded = [r for r in captured_logs() if r["message"] == "billing_config_loaded"]
        assert loaded and loaded[0]["config_id"] == "wms-billing-default"


class TestOverrides:

    def test_explicit_path(self, tmp_path):
        data = _defaults()
        data["config_id"] = "custom"
        assert get_active_config(_write(tmp_path, data)).config_id == "custom"

    def test_config_path_env(self, tmp_path, monkeypatch):
        data = _defaults()
        data["version"] = 7
        monkeypatch.setenv("BILLING_CONFIG_PATH", str(_write(tmp_path, data)))
        assert get_active_config().version == 7

    def test_database_url_env(self, monkeypatch):
        monkeypatch.setenv("BILLING_DATABASE_URL", "postgresql://billing@db/billing")
        assert get_active_config().database.url == "postgresql://billing@db/billing"


class TestValidation:

    def test_non_positive_truncation_unit(self):
        data = _defaults()
        data["rounding"]["truncation_unit"] = "0"
        with pytest.raises(ValueError, match="truncation_unit"):
            parse_config(data)

    def test_currency_pair_must_end_in_invoice_currency(self):
        data = _defaults()
        data["fx"]["quote_currency"] = "USD"
        with pytest.raises(ValueError, match="quote_currency"):
            parse_config(data)

    def test_bad_number(self):
        data = _defaults()
        data["invoice"]["vat_rate"] = "seven"
        with pytest.raises(ValueError, match="vat_rate"):
            parse_config(data)

    def test_missing_section(self):
        data = _defaults()
        del data["fx"]
        with pytest.raises(KeyError):
            parse_config(data)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")


class TestBridge:

    def test_policy_from_defaults(self):
        policy = build_billing_policy(get_active_config())
        assert policy.invoice_currency == "KRW"
        assert policy.fx_base_currency == "THB"
        assert policy.vat_rate == Decimal("0.07")
        assert policy.vat_service_code == "VAT_7"
        assert policy.due_date_for(date(2026, 3, 5)) == date(2026, 4, 4)
        assert policy.invoice_number(7, "202602", 1) == "KRW-7-202602-0001"

    def test_custom_vat_and_width(self):
        data = _defaults()
        data["invoice"]["vat_rate"] = "0.1"
        data["invoice"]["sequence_width"] = 6
        policy = build_billing_policy(parse_config(data))
        assert policy.vat_rate == Decimal("0.1")
        assert policy.invoice_number(7, "202602", 12) == "KRW-7-202602-000012"
