# whatsapp_service.py - Contact form delivery over WhatsApp
# Meta Cloud API first, Twilio as fallback, wa.me link when nothing is configured

import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel

logger = logging.getLogger("Imperatore.WhatsApp")

WHATSAPP_ACCESS_TOKEN = os.getenv("WHATSAPP_ACCESS_TOKEN", "")
WHATSAPP_PHONE_NUMBER_ID = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")
WHATSAPP_API_VERSION = os.getenv("WHATSAPP_API_VERSION", "v18.0")
WHATSAPP_BUSINESS_NUMBER = os.getenv("WHATSAPP_BUSINESS_NUMBER", "393123456789")
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN", "")
TWILIO_WHATSAPP_NUMBER = os.getenv("TWILIO_WHATSAPP_NUMBER", "")  # whatsapp:+14155238886

REQUIRED_FIELDS_MESSAGE = "Nome, oggetto e messaggio sono obbligatori"


class WhatsAppError(Exception):
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class ContactForm(BaseModel):
    name: str = ""
    subject: str = ""
    message: str = ""

# ============================================================================
# FORMATTING
# ============================================================================

def validate_form(form: ContactForm) -> None:
    if not form.name.strip() or not form.subject.strip() or not form.message.strip():
        raise WhatsAppError(REQUIRED_FIELDS_MESSAGE, status_code=400)


def format_whatsapp_message(form: ContactForm, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return (
        "🍺 *NUOVO CONTATTO - Imperatore Bevande*\n\n"
        f"👤 *Nome:* {form.name}\n"
        f"📋 *Oggetto:* {form.subject}\n\n"
        "💬 *Messaggio:*\n"
        f"{form.message}\n\n"
        "---\n"
        f"📅 *Data:* {now.strftime('%d/%m/%Y, %H:%M:%S')}\n"
        "🌐 *Fonte:* Sito Web - Form Contatti"
    )


def format_phone_for_whatsapp(phone: str) -> str:
    """International format with a leading +, Italian prefix by default"""
    cleaned = re.sub(r"[^\d+]", "", phone or "")
    if not cleaned.startswith("+"):
        cleaned = "+39" + cleaned
    return cleaned


def format_phone_number(phone: str) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if not digits.startswith("39"):
        digits = "39" + digits
    return digits


URI_COMPONENT_SAFE = "-_.!~*'()"


def build_whatsapp_url(number: str, message: str) -> str:
    return f"https://wa.me/{number}?text={quote(message, safe=URI_COMPONENT_SAFE)}"

# ============================================================================
# DELIVERY
# ============================================================================

class WhatsAppService:
    def __init__(
        self,
        access_token: str = WHATSAPP_ACCESS_TOKEN,
        phone_number_id: str = WHATSAPP_PHONE_NUMBER_ID,
        twilio_account_sid: str = TWILIO_ACCOUNT_SID,
        twilio_auth_token: str = TWILIO_AUTH_TOKEN,
        twilio_number: str = TWILIO_WHATSAPP_NUMBER,
        business_number: str = WHATSAPP_BUSINESS_NUMBER,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.twilio_account_sid = twilio_account_sid
        self.twilio_auth_token = twilio_auth_token
        self.twilio_number = twilio_number
        self.business_number = business_number
        self.transport = transport

    @property
    def cloud_api_configured(self) -> bool:
        return bool(self.access_token and self.phone_number_id)

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)

    async def _send_via_cloud_api(self, to: str, message: str) -> Dict[str, Any]:
        url = f"https://graph.facebook.com/{WHATSAPP_API_VERSION}/{self.phone_number_id}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": message},
        }
        async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
            response = await client.post(url, json=payload, headers={"Authorization": f"Bearer {self.access_token}"})
        if response.is_error:
            try:
                detail = response.json().get("error", {}).get("message")
            except ValueError:
                detail = None
            raise WhatsAppError(f"WhatsApp Business API Error: {detail or response.reason_phrase}")
        return response.json()

    async def _send_via_twilio(self, to: str, message: str) -> Dict[str, Any]:
        url = f"https://api.twilio.com/2010-04-01/Accounts/{self.twilio_account_sid}/Messages.json"
        data = {"From": self.twilio_number, "To": f"whatsapp:{to}", "Body": message}
        async with httpx.AsyncClient(timeout=30.0, transport=self.transport) as client:
            response = await client.post(url, data=data, auth=(self.twilio_account_sid, self.twilio_auth_token))
        if response.is_error:
            try:
                detail = response.json().get("message")
            except ValueError:
                detail = None
            raise WhatsAppError(f"Twilio API Error: {detail or response.reason_phrase}")
        return response.json()

    async def send(self, form: ContactForm, to: Optional[str] = None) -> Dict[str, Any]:
        validate_form(form)
        message = format_whatsapp_message(form)
        destination = to or format_phone_number(self.business_number)

        if self.cloud_api_configured:
            try:
                result = await self._send_via_cloud_api(destination, message)
                method = "WhatsApp Business API"
            except (WhatsAppError, httpx.HTTPError) as e:
                if not self.twilio_configured:
                    raise
                logger.warning(f"WhatsApp Business API fallito, provo con Twilio: {e}")
                result = await self._send_via_twilio(destination, message)
                method = "Twilio"
        elif self.twilio_configured:
            result = await self._send_via_twilio(destination, message)
            method = "Twilio"
        else:
            logger.info(f"Nessuna API WhatsApp configurata, genero link per {destination}")
            return {
                "success": True,
                "message": "URL WhatsApp generato con successo",
                "method": "URL",
                "whatsapp_url": build_whatsapp_url(destination, message),
                "data": {"to": destination, "message": message},
            }

        logger.info(f"Messaggio WhatsApp inviato tramite {method}")
        return {
            "success": True,
            "message": f"Messaggio WhatsApp inviato con successo tramite {method}",
            "method": method,
            "data": result,
        }


# Singleton instance
whatsapp_service_instance: Optional[WhatsAppService] = None

def get_whatsapp_service() -> WhatsAppService:
    global whatsapp_service_instance
    if whatsapp_service_instance is None:
        whatsapp_service_instance = WhatsAppService()
    return whatsapp_service_instance
