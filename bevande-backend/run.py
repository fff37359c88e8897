#!/usr/bin/env python
"""
Imperatore Bevande - avvio del backend
Usage: python run.py   (settings from .env or the environment)
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("Imperatore.Server")

# =============================================================================
# REQUIREMENTS
# =============================================================================

# PyPI names; the import name can differ (python-dotenv -> dotenv)
REQUIRED_DISTS: tuple[str, ...] = (
    "fastapi",
    "uvicorn",
    "pydantic",
    "httpx",
    "python-dotenv",
    "stripe",
    "openai",
)

# (env var, integration shown at startup)
INTEGRATIONS: tuple[tuple[str, str], ...] = (
    ("WOOCOMMERCE_URL", "WooCommerce"),
    ("STRIPE_SECRET_KEY", "Stripe"),
    ("STRIPE_WEBHOOK_SECRET", "Stripe webhooks"),
    ("PAYPAL_CLIENT_ID", "PayPal"),
    ("WHATSAPP_ACCESS_TOKEN", "WhatsApp Cloud API"),
    ("TWILIO_ACCOUNT_SID", "Twilio WhatsApp"),
    ("OPENAI_API_KEY", "OpenAI schede tecniche"),
    ("GOOGLE_MAPS_API_KEY", "Google Geocoding"),
)


def missing_distributions(required) -> list[str]:
    """Distributions from ``required`` that pip has not installed."""
    missing = []
    for dist in required:
        try:
            version(dist)
        except PackageNotFoundError:
            missing.append(dist)
    return missing


def load_env() -> None:
    from dotenv import load_dotenv

    if load_dotenv():
        logger.info("📄 Variabili caricate da .env")
    else:
        logger.info("📄 Nessun file .env, uso le variabili di sistema")

# =============================================================================
# SERVER SETTINGS
# =============================================================================

@dataclass
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8000
    reload: bool = True
    log_level: str = "info"

    @classmethod
    def from_env(cls) -> "ServerSettings":
        return cls(
            host=os.getenv("HOST", cls.host),
            port=int(os.getenv("PORT", str(cls.port))),
            reload=os.getenv("RELOAD", "true").lower() == "true",
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
        )

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def check_environment() -> list[str]:
    """Log the integration status and return the ones left unconfigured."""
    logger.info("🍺 Imperatore Bevande - backend vetrina")

    unconfigured = []
    for env_var, label in INTEGRATIONS:
        if os.getenv(env_var):
            logger.info("✅ %s attivo", label)
        else:
            unconfigured.append(label)
            logger.warning("⚠️  %s non configurato (%s)", label, env_var)

    if os.getenv("PAYPAL_CLIENT_ID"):
        logger.info("   PayPal: ambiente %s", os.getenv("PAYPAL_ENVIRONMENT", "sandbox"))
    if os.getenv("OPENAI_API_KEY"):
        logger.info("   OpenAI: modello %s", os.getenv("OPENAI_MODEL", "gpt-3.5-turbo"))
    if not os.getenv("ADMIN_PASSWORD"):
        logger.warning("⚠️  ADMIN_PASSWORD assente: password admin predefinita in uso")

    zones_file = Path(os.getenv("DELIVERY_ZONES_FILE", Path(__file__).parent / "data" / "delivery_zones.json"))
    if not zones_file.exists():
        logger.warning("⚠️  File zone di consegna non trovato: %s", zones_file)

    logger.info("📡 Origini CORS: %s", os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:8080,http://localhost:3000"))
    logger.info(
        "🛡️  Limiti al minuto - pagamenti: %s, contatti: %s, AI: %s",
        os.getenv("MAX_PAYMENT_REQUESTS_PER_MINUTE", "20"),
        os.getenv("MAX_CONTACT_REQUESTS_PER_MINUTE", "5"),
        os.getenv("MAX_AI_REQUESTS_PER_MINUTE", "10"),
    )
    return unconfigured

# =============================================================================
# ENTRY POINT
# =============================================================================

def main() -> None:
    missing = missing_distributions(REQUIRED_DISTS)
    if missing:
        logger.error("Pacchetti mancanti: %s", ", ".join(missing))
        logger.info("Installa le dipendenze con: pip install -e .")
        sys.exit(1)

    load_env()
    check_environment()
    settings = ServerSettings.from_env()

    import uvicorn

    logger.info("🚀 Server in ascolto su %s", settings.base_url)
    logger.info("📚 Documentazione API: %s/api/docs", settings.base_url)

    try:
        uvicorn.run(
            "app:app",
            host=settings.host,
            port=settings.port,
            reload=settings.reload,
            log_level=settings.log_level,
            access_log=True,
        )
    except KeyboardInterrupt:
        logger.info("👋 Arresto del server")


if __name__ == "__main__":
    main()
