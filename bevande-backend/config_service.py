# config_service.py - Payment method configuration
# Bank transfer, cash on delivery, PayPal and Stripe settings edited from the admin panel

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("Imperatore.Config")

PAYMENT_CONFIG_FILE = os.getenv(
    "PAYMENT_CONFIG_FILE",
    str(Path(__file__).resolve().parent / "data" / "payment_config.json"),
)

# ============================================================================
# DATA MODELS
# ============================================================================

class FeeType(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class PayPalEnvironment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class StripeEnvironment(str, Enum):
    TEST = "test"
    LIVE = "live"


class BACSConfig(BaseModel):
    enabled: bool = True
    bank_name: str = "Intesa SanPaolo"
    account_name: str = "Imperatore Pietro"
    iban: str = "IT53U0306904013100000018868"
    instructions: str = (
        "Effettua il bonifico utilizzando i dati bancari forniti. "
        "Inserisci il numero dell'ordine come causale."
    )


class CODConfig(BaseModel):
    enabled: bool = True
    instructions: str = "Paga in contanti o con POS al momento della consegna."
    enable_for_shipping: List[str] = Field(default_factory=lambda: ["local_delivery"])
    fee_amount: float = 0
    fee_type: FeeType = FeeType.FIXED


class PayPalConfig(BaseModel):
    enabled: bool = True
    client_id: str = Field(default_factory=lambda: os.getenv("PAYPAL_CLIENT_ID", ""))
    environment: PayPalEnvironment = Field(
        default_factory=lambda: PayPalEnvironment(os.getenv("PAYPAL_ENVIRONMENT", "sandbox"))
    )
    instructions: str = "Paga in modo sicuro con il tuo account PayPal."


class StripeConfig(BaseModel):
    enabled: bool = True
    publishable_key: str = Field(default_factory=lambda: os.getenv("STRIPE_PUBLISHABLE_KEY", ""))
    environment: StripeEnvironment = Field(
        default_factory=lambda: StripeEnvironment(os.getenv("STRIPE_ENVIRONMENT", "test"))
    )
    instructions: str = "Paga in modo sicuro con la tua carta di credito."


class PaymentConfig(BaseModel):
    bacs: BACSConfig = Field(default_factory=BACSConfig)
    cod: CODConfig = Field(default_factory=CODConfig)
    paypal: PayPalConfig = Field(default_factory=PayPalConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)


SECTIONS = ("bacs", "cod", "paypal", "stripe")

# ============================================================================
# CONFIG SERVICE
# ============================================================================

class ConfigService:
    """Payment configuration persisted as JSON"""

    def __init__(self, path: str = PAYMENT_CONFIG_FILE):
        self.path = Path(path)
        self.config = self._load_config()

    def _load_config(self) -> PaymentConfig:
        if not self.path.exists():
            return PaymentConfig()
        try:
            with self.path.open(encoding="utf-8") as fh:
                return PaymentConfig.model_validate(json.load(fh))
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Errore nel caricamento della configurazione: {e}")
            return PaymentConfig()

    def _save_config(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(self.config.model_dump_json(indent=2), encoding="utf-8")
        except OSError as e:
            logger.error(f"Errore nel salvataggio della configurazione: {e}")
            raise

    def get_config(self) -> PaymentConfig:
        return self.config.model_copy(deep=True)

    def update_config(self, changes: Dict[str, Dict[str, Any]]) -> PaymentConfig:
        """Merge each given section into the current one"""
        merged = self.config.model_dump()
        for section, values in changes.items():
            if section not in SECTIONS:
                raise ValueError(f"Sezione di configurazione sconosciuta: {section}")
            if values:
                merged[section].update(values)
        self.config = PaymentConfig.model_validate(merged)
        self._save_config()
        logger.info(f"Configurazione pagamenti aggiornata: {', '.join(changes)}")
        return self.get_config()

    def reset_to_defaults(self) -> PaymentConfig:
        self.config = PaymentConfig()
        self._save_config()
        logger.info("Configurazione pagamenti ripristinata ai valori predefiniti")
        return self.get_config()

    def get_section(self, section: str) -> BaseModel:
        if section not in SECTIONS:
            raise ValueError(f"Sezione di configurazione sconosciuta: {section}")
        return getattr(self.config, section).model_copy()

    def update_section(self, section: str, values: Dict[str, Any]) -> BaseModel:
        self.update_config({section: values})
        return self.get_section(section)

    def get_bacs_config(self) -> BACSConfig:
        return self.get_section("bacs")

    def get_cod_config(self) -> CODConfig:
        return self.get_section("cod")

    def get_paypal_config(self) -> PayPalConfig:
        return self.get_section("paypal")

    def get_stripe_config(self) -> StripeConfig:
        return self.get_section("stripe")

    def is_method_enabled(self, method: str) -> bool:
        # Methods without a section (satispay) are always offered
        if method not in SECTIONS:
            return True
        return getattr(self.config, method).enabled

    def public_config(self) -> Dict[str, Any]:
        """Settings the storefront may see"""
        cfg = self.config
        return {
            "bacs": cfg.bacs.model_dump(),
            "cod": cfg.cod.model_dump(mode="json"),
            "paypal": {
                "enabled": cfg.paypal.enabled,
                "client_id": cfg.paypal.client_id,
                "environment": cfg.paypal.environment.value,
                "instructions": cfg.paypal.instructions,
            },
            "stripe": {
                "enabled": cfg.stripe.enabled,
                "publishable_key": cfg.stripe.publishable_key,
                "environment": cfg.stripe.environment.value,
                "instructions": cfg.stripe.instructions,
            },
        }


# Singleton instance
config_service_instance: Optional[ConfigService] = None

def get_config_service() -> ConfigService:
    """Get or create the payment configuration service"""
    global config_service_instance
    if config_service_instance is None:
        config_service_instance = ConfigService()
    return config_service_instance
