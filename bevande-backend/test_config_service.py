"""Tests for the payment method configuration."""

import json

import pytest

from config_service import ConfigService, FeeType


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "payment_config.json"


class TestConfigService:
    def test_defaults(self, config_path):
        config = ConfigService(str(config_path)).get_config()
        assert config.bacs.bank_name == "Intesa SanPaolo"
        assert config.bacs.iban == "IT53U0306904013100000018868"
        assert config.cod.enable_for_shipping == ["local_delivery"]
        assert config.cod.fee_type == FeeType.FIXED
        assert config.stripe.instructions == "Paga in modo sicuro con la tua carta di credito."

    def test_partial_update_keeps_other_fields(self, config_path):
        service = ConfigService(str(config_path))
        updated = service.update_config({"bacs": {"iban": "IT00X0000000000000000000000"}})

        assert updated.bacs.iban == "IT00X0000000000000000000000"
        assert updated.bacs.bank_name == "Intesa SanPaolo"
        assert updated.cod.enabled is True

    def test_update_is_persisted(self, config_path):
        ConfigService(str(config_path)).update_section("cod", {"fee_amount": 2.5, "fee_type": "percentage"})

        reloaded = ConfigService(str(config_path)).get_cod_config()
        assert reloaded.fee_amount == 2.5
        assert reloaded.fee_type == FeeType.PERCENTAGE
        assert json.loads(config_path.read_text(encoding="utf-8"))["cod"]["fee_type"] == "percentage"

    def test_invalid_value_rejected(self, config_path):
        service = ConfigService(str(config_path))
        with pytest.raises(ValueError):
            service.update_config({"paypal": {"environment": "staging"}})
        assert service.get_paypal_config().environment.value in ("sandbox", "production")

    def test_unknown_section(self, config_path):
        with pytest.raises(ValueError, match="sconosciuta"):
            ConfigService(str(config_path)).update_config({"bitcoin": {"enabled": True}})

    def test_reset(self, config_path):
        service = ConfigService(str(config_path))
        service.update_config({"stripe": {"enabled": False}})
        assert service.reset_to_defaults().stripe.enabled is True

    def test_corrupt_file_falls_back_to_defaults(self, config_path):
        config_path.write_text("{oops", encoding="utf-8")
        assert ConfigService(str(config_path)).get_bacs_config().account_name == "Imperatore Pietro"

    def test_returned_config_is_a_copy(self, config_path):
        service = ConfigService(str(config_path))
        service.get_config().bacs.enabled = False
        assert service.is_method_enabled("bacs")

    def test_methods_without_section_are_enabled(self, config_path):
        assert ConfigService(str(config_path)).is_method_enabled("satispay")

    def test_public_config_is_json_ready(self, config_path):
        public = ConfigService(str(config_path)).public_config()
        assert public["cod"]["fee_type"] == "fixed"
        assert set(public["stripe"]) == {"enabled", "publishable_key", "environment", "instructions"}
