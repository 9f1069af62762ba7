"""
System prompts and tool definitions.

Prompts are rendered from the injected BusinessProfile and price table; no
business details are hard-coded here.
"""
from typing import Mapping, Optional

from dispatch_ai.core.config import BusinessProfile
from dispatch_ai.services.ai.schema import BackendRequest, ConversationTurn, QueryContext, ToolSpec
from dispatch_ai.services.triage.pricing import PriceEntry, build_price_table

CHAT_TOOL_NAME = "analyze_customer_request"
ANALYSIS_TOOL_NAME = "provide_detailed_analysis"
WORK_ORDER_TOOL_NAME = "create_work_order"

CHAT_TOOL = ToolSpec(
    name=CHAT_TOOL_NAME,
    description="Analyze the customer request for urgency, problem type and contact details",
    parameters={
        "type": "object",
        "properties": {
            "urgency": {"type": "string", "enum": ["low", "normal", "high", "emergency"]},
            "problem_type": {"type": "string", "description": "Detected plumbing problem category"},
            "categories": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Service categories needed",
            },
            "extracted_info": {
                "type": "object",
                "properties": {
                    "customer_name": {"type": "string"},
                    "customer_phone": {"type": "string"},
                    "address": {"type": "string"},
                    "problem_description": {"type": "string"},
                },
            },
            "confidence": {"type": "number", "description": "Confidence in the analysis (0-100)"},
            "should_book": {"type": "boolean", "description": "Whether to suggest immediate booking"},
        },
        "required": ["urgency", "confidence"],
    },
)

ANALYSIS_TOOL = ToolSpec(
    name=ANALYSIS_TOOL_NAME,
    description="Provide a structured analysis of the plumbing request",
    parameters={
        "type": "object",
        "properties": {
            "summary": {"type": "string"},
            "problem_complexity": {
                "type": "string",
                "enum": ["simple", "moderate", "complex", "very_complex"],
            },
            "estimated_duration_hours": {
                "type": "object",
                "properties": {
                    "min": {"type": "number"},
                    "max": {"type": "number"},
                    "description": {"type": "string"},
                },
                "required": ["min", "max", "description"],
            },
            "materials_needed": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "item": {"type": "string"},
                        "quantity": {"type": "string"},
                        "estimated_cost": {"type": "number"},
                        "essential": {"type": "boolean"},
                    },
                    "required": ["item", "quantity", "estimated_cost", "essential"],
                },
            },
            "cost_breakdown": {
                "type": "object",
                "properties": {
                    "labor_hours": {"type": "number"},
                    "labor_rate": {"type": "number"},
                    "labor_total": {"type": "number"},
                    "materials_total": {"type": "number"},
                    "subtotal": {"type": "number"},
                    "vat_amount": {"type": "number"},
                    "total_with_vat": {"type": "number"},
                },
                "required": [
                    "labor_hours", "labor_rate", "labor_total", "materials_total",
                    "subtotal", "vat_amount", "total_with_vat",
                ],
            },
            "urgency_priority": {"type": "string", "enum": ["low", "normal", "high", "emergency"]},
            "recommendations": {"type": "array", "items": {"type": "string"}},
            "confidence_percentage": {"type": "number", "minimum": 0, "maximum": 100},
        },
        "required": [
            "summary", "problem_complexity", "estimated_duration_hours",
            "cost_breakdown", "urgency_priority", "confidence_percentage",
        ],
    },
)


WORK_ORDER_TOOL = ToolSpec(
    name=WORK_ORDER_TOOL_NAME,
    description="Create a work order for the plumber who carries out the job",
    parameters={
        "type": "object",
        "properties": {
            "job_title": {"type": "string"},
            "job_description": {"type": "string"},
            "specifications": {"type": "array", "items": {"type": "string"}},
            "instructions": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Step-by-step execution instructions",
            },
            "safety_notes": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["job_title", "job_description", "instructions"],
    },
)

def _price_lines(price_table: Mapping[str, PriceEntry], language: str, currency_sign: str) -> str:
    lines = []
    for entry in price_table.values():
        if entry.min == entry.max:
            amount = f"{currency_sign}{entry.min:g}"
        else:
            amount = f"{currency_sign}{entry.min:g}-{entry.max:g}"
        lines.append(f"- {entry.describe(language)}: {amount}")
    return "\n".join(lines)


def _currency_sign(profile: BusinessProfile) -> str:
    return "€" if profile.currency == "EUR" else f"{profile.currency} "


def build_chat_system_prompt(
    profile: BusinessProfile,
    language: str,
    price_table: Optional[Mapping[str, PriceEntry]] = None,
) -> str:
    table = price_table if price_table is not None else build_price_table(profile)
    sign = _currency_sign(profile)
    specialties = ", ".join(profile.specialties) or "-"
    languages = ", ".join(profile.languages)
    prices = _price_lines(table, language, sign)

    if language == "nl":
        return f"""Je bent de AI-assistent van {profile.name}, een professionele loodgieter in {profile.service_area}.

BEDRIJFSPROFIEL:
- Specialisaties: {specialties}
- Standaard tarief: {sign}{profile.standard_rate:g}/uur
- Spoed tarief: {sign}{profile.emergency_rate:g}/uur
- Werkuren: {profile.business_hours}
- Talen: {languages}

PRIJZEN (incl. BTW):
{prices}

URGENTE SITUATIES (onmiddellijke actie):
- Lekkage, overstroming, water stroomt
- Gaslek (direct 112 bellen!)
- Geen warm water of verwarming in de winter
- Verstopte afvoer met overloop

GESPREKSSTIJL:
- Formeel Nederlands ("u" vorm), direct en empathisch bij noodgevallen
- Vraag altijd naar: naam, telefoonnummer, adres
- Geef altijd prijsbereiken, nooit exacte prijzen

Roep na elk antwoord de functie {CHAT_TOOL_NAME} aan met uw beoordeling."""

    return f"""You are the AI assistant for {profile.name}, a professional plumber serving {profile.service_area}.

BUSINESS PROFILE:
- Specialties: {specialties}
- Standard rate: {sign}{profile.standard_rate:g}/hour
- Emergency rate: {sign}{profile.emergency_rate:g}/hour
- Business hours: {profile.business_hours}
- Languages: {languages}

PRICING (incl. VAT):
{prices}

URGENT SITUATIONS (immediate action):
- Leaks, flooding, water flowing
- Gas leak (call 112 immediately!)
- No hot water or heating in winter
- Blocked drain with overflow

CONVERSATION STYLE:
- Professional and empathetic, direct during emergencies
- Always ask for: name, phone number, address
- Always give price ranges, never exact prices

After every answer call the {CHAT_TOOL_NAME} function with your assessment."""


def build_analysis_system_prompt(profile: BusinessProfile) -> str:
    sign = _currency_sign(profile)
    return f"""Je bent een expert loodgieter met ruime ervaring in Nederland en analyseert aanvragen voor {profile.name}.

ANALYSEER ALTIJD:
1. Technische complexiteit en benodigde expertise
2. Geschatte tijd en materialen
3. Kostenbreakdown (arbeid + materiaal + BTW)
4. Risico's en aanbevelingen
5. Planning en prioriteit

TARIEVEN:
- Uurtarief: {sign}{profile.standard_rate:g}-{profile.emergency_rate:g} (standaard/spoed)
- BTW: {profile.vat_rate * 100:g}%

Gebruik de volledige conversatiegeschiedenis en lever het resultaat via de functie {ANALYSIS_TOOL_NAME}."""


def build_work_order_system_prompt(profile: BusinessProfile) -> str:
    return f"""Je bent een expert in het maken van gedetailleerde werkorders voor loodgieterswerk bij {profile.name}.
Maak een professionele werkorder met alle benodigde details voor de uitvoering.

NEEM OP:
- Een korte titel en omschrijving van de klus
- Technische specificaties
- Uitvoeringsinstructies stap voor stap
- Veiligheidsaandachtspunten

Kosten, materialen en planning staan al in de analyse; neem die niet opnieuw op.
Lever het resultaat via de functie {WORK_ORDER_TOOL_NAME}."""


def build_chat_request(
    context: QueryContext,
    profile: BusinessProfile,
    price_table: Optional[Mapping[str, PriceEntry]] = None,
) -> BackendRequest:
    """Customer-facing request: history plus the new message, chat tool offered."""
    return BackendRequest(
        system_prompt=build_chat_system_prompt(profile, context.language, price_table),
        messages=context.turns + (ConversationTurn(role="user", content=context.message),),
        tool=CHAT_TOOL,
        force_tool=False,
        max_tokens=1000,
        temperature=0.7,
    )
