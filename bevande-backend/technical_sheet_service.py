# technical_sheet_service.py - AI product technical sheets
# OpenAI-generated specs, benefits and pairings for the beverage catalog

import json
import logging
import os
import re
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

logger = logging.getLogger("Imperatore.TechnicalSheet")

SYSTEM_PROMPT = (
    "Sei un esperto sommelier e consulente per bevande di qualità. "
    "Genera schede tecniche professionali e accurate per prodotti di bevande."
)

WATER_PROMPT = """
Agisci come esperto di acque minerali e nutrizione sportiva. Lingua: italiano, tono chiaro e conciso.

OBIETTIVO
Dato il nome di un'acqua minerale "{name}", genera una scheda tecnica standardizzata.

STRUTTURA OBBLIGATORIA
## 💧 {name}
**Tipo:** (oligominerale/mediominerale/effervescente naturale, ecc.)
**pH:** …
**Residuo fisso a 180 °C:** … mg/L

### 🧪 Composizione chimico-fisica (mg/L)
| Componente | Quantità | Note |
|---|---:|---|
| Calcio (Ca²⁺) | … | … |
| Magnesio (Mg²⁺) | … | … |
| Sodio (Na⁺) | … | … |
| Potassio (K⁺) | … | … |
| Bicarbonato (HCO₃⁻) | … | … |
| Cloruri (Cl⁻) | … | … |
| Solfati (SO₄²⁻) | … | … |
| Nitrati (NO₃⁻) | … | … |
| Fluoruri (F⁻) | … | … |
Se un valore non è disponibile, scrivi "n.d." (non lasciare celle vuote).
⚠️ Non riportare mai fonti o link nelle note. Le note devono contenere solo indicazioni semplici (es. "basso contenuto di sodio", "dato non disponibile", "quantità minima", ecc.).

### ✅ Benefici e indicazioni
- Rilevanza per sportivi (reintegro sali, crampi, digestione, sudorazione, ecc.)
- Vantaggi/limiti (es. sodio basso/alto; residuo fisso alto/medio/basso; tollerabilità dell'effervescenza).
- Suggerisci quando abbinarla a bevande isotoniche/elettroliti per sforzi prolungati.

STILE
- Risposte brevi ma complete.
- Tabella sempre presente.
- Nessun riferimento a fonti esterne, etichette o siti web.

Converti questa scheda tecnica in formato JSON con la seguente struttura:
{{
  "technicalSpecs": {{
    "category": "tipo di acqua (oligominerale/mediominerale/etc)",
    "ph": "valore pH",
    "fixedResidue": "residuo fisso in mg/L",
    "calcium": "calcio in mg/L",
    "magnesium": "magnesio in mg/L",
    "sodium": "sodio in mg/L",
    "potassium": "potassio in mg/L",
    "bicarbonate": "bicarbonato in mg/L",
    "chlorides": "cloruri in mg/L",
    "sulfates": "solfati in mg/L",
    "nitrates": "nitrati in mg/L",
    "fluorides": "fluoruri in mg/L"
  }},
  "benefits": {{
    "healthBenefits": ["beneficio per la salute 1", "beneficio per la salute 2"],
    "nutritionalInfo": ["info nutrizionale 1", "info nutrizionale 2"],
    "recommendations": ["raccomandazione per sportivi 1", "raccomandazione per sportivi 2"]
  }},
  "pairingsSuggestions": ["suggerimento abbinamento 1", "suggerimento abbinamento 2"],
  "description": "descrizione dettagliata con focus sui benefici per sportivi e caratteristiche dell'acqua"
}}

Rispondi SOLO con il JSON, senza testo aggiuntivo."""

GENERAL_PROMPT = """
Analizza il seguente prodotto e genera una scheda tecnica completa in formato JSON:

Nome prodotto: {name}
Descrizione: {description}
Categoria: {category}

Genera una risposta in formato JSON con la seguente struttura:
{{
  "technicalSpecs": {{
    "category": "categoria del prodotto",
    "ingredients": "ingredienti principali (se applicabile)",
    "alcoholContent": "gradazione alcolica (se applicabile)",
    "volume": "volume/formato (se specificato)",
    "producer": "produttore (se specificato)",
    "vintage": "annata (se applicabile)",
    "servingTemperature": "temperatura di servizio consigliata",
    "storageConditions": "condizioni di conservazione",
    "fixedResidue": "residuo fisso per acque (mg/L)"
  }},
  "benefits": {{
    "healthBenefits": ["beneficio 1", "beneficio 2", "beneficio 3"],
    "nutritionalInfo": ["info nutrizionale 1", "info nutrizionale 2"],
    "recommendations": ["raccomandazione 1", "raccomandazione 2"]
  }},
  "pairingsSuggestions": ["abbinamento 1", "abbinamento 2", "abbinamento 3"],
  "description": "descrizione dettagliata e professionale del prodotto con focus sui suoi punti di forza"
}}

Rispondi SOLO con il JSON, senza testo aggiuntivo. Assicurati che tutte le informazioni siano accurate e professionali, adatte per un e-commerce di bevande di qualità."""

# technicalSpecs key -> response key
SPEC_FIELDS = {
    "ingredients": "ingredients",
    "alcoholContent": "alcohol_content",
    "volume": "volume",
    "origin": "origin",
    "producer": "producer",
    "vintage": "vintage",
    "servingTemperature": "serving_temperature",
    "storageConditions": "storage_conditions",
    "fixedResidue": "fixed_residue",
    # Mineral water only
    "ph": "ph",
    "calcium": "calcium",
    "magnesium": "magnesium",
    "sodium": "sodium",
    "potassium": "potassium",
    "bicarbonate": "bicarbonate",
    "chlorides": "chlorides",
    "sulfates": "sulfates",
    "nitrates": "nitrates",
    "fluorides": "fluorides",
}

FENCE_PATTERN = re.compile(r"```json\n?|\n?```")


class TechnicalSheetError(Exception):
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


def is_water(category: Optional[str]) -> bool:
    return bool(category) and "acqua" in category.lower()


def build_prompt(name: str, description: str, category: Optional[str] = None) -> str:
    if is_water(category):
        return WATER_PROMPT.format(name=name)
    return GENERAL_PROMPT.format(name=name, description=description, category=category or "Non specificata")


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def sanitize_sheet(raw: Dict[str, Any]) -> Dict[str, Any]:
    specs = raw.get("technicalSpecs") if isinstance(raw.get("technicalSpecs"), dict) else {}
    benefits = raw.get("benefits") if isinstance(raw.get("benefits"), dict) else {}

    technical_specs = {"category": specs.get("category") or "Non specificato"}
    for source, target in SPEC_FIELDS.items():
        technical_specs[target] = specs.get(source)

    return {
        "technical_specs": technical_specs,
        "benefits": {
            "health_benefits": _as_list(benefits.get("healthBenefits")),
            "nutritional_info": _as_list(benefits.get("nutritionalInfo")),
            "recommendations": _as_list(benefits.get("recommendations")),
        },
        "pairings_suggestions": _as_list(raw.get("pairingsSuggestions")),
        "description": raw.get("description") or "Descrizione non disponibile",
    }


def parse_sheet(content: str) -> Dict[str, Any]:
    cleaned = FENCE_PATTERN.sub("", content.strip())
    try:
        raw = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error(f"Errore nel parsing JSON: {e}")
        raise TechnicalSheetError("Formato risposta non valido da OpenAI") from e
    if not isinstance(raw, dict):
        raise TechnicalSheetError("Formato risposta non valido da OpenAI")
    return sanitize_sheet(raw)


class TechnicalSheetService:
    def __init__(self, api_key: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        self.api_key = api_key if api_key is not None else os.getenv("OPENAI_API_KEY")
        self.model = os.getenv("OPENAI_MODEL", "gpt-3.5-turbo")
        self.max_tokens = int(os.getenv("OPENAI_MAX_TOKENS", "1500"))
        self.temperature = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))

        if client is not None:
            self.client = client
        elif self.api_key:
            self.client = AsyncOpenAI(api_key=self.api_key)
        else:
            self.client = None
            logger.warning("OpenAI API key not configured - technical sheets disabled")

    async def generate(self, name: str, description: str, category: Optional[str] = None) -> Dict[str, Any]:
        if not name or not description:
            raise TechnicalSheetError("Nome prodotto e descrizione sono obbligatori", status_code=400)
        if self.client is None:
            raise TechnicalSheetError("Chiave API OpenAI non configurata")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(name, description, category)},
                ],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except openai.AuthenticationError as e:
            logger.error(f"Errore OpenAI API: {e}")
            raise TechnicalSheetError("Chiave API OpenAI non valida") from e
        except openai.RateLimitError as e:
            logger.warning(f"OpenAI rate limit: {e}")
            raise TechnicalSheetError("Limite di richieste raggiunto. Riprova più tardi", status_code=429) from e
        except openai.OpenAIError as e:
            logger.error(f"Errore OpenAI API: {e}")
            raise TechnicalSheetError("Errore nella chiamata a OpenAI") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise TechnicalSheetError("Risposta vuota da OpenAI")

        sheet = parse_sheet(content)
        logger.info(f"Scheda tecnica generata per {name}")
        return sheet


# Singleton instance
technical_sheet_instance: Optional[TechnicalSheetService] = None

def get_technical_sheet_service() -> TechnicalSheetService:
    """Get or create the technical sheet generator"""
    global technical_sheet_instance
    if technical_sheet_instance is None:
        technical_sheet_instance = TechnicalSheetService()
    return technical_sheet_instance
