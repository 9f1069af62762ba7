"""
Heuristic extraction of customer contact fields from free text.

Used when a backend returned no structured extracted_info, and to fill the
fields a structured payload left empty. Deliberately conservative: a missed
field is re-asked by the assistant, a wrong field ends up on a work order.
"""
import re
from typing import List, Optional

from dispatch_ai.services.ai.schema import ExtractedInfo

PHONE_PATTERNS: List[re.Pattern] = [
    re.compile(r"(?:\+31|0031)[\s-]?[6789]\d{8}"),  # mobile, international
    re.compile(r"(?:\+31|0031)[\s-]?\d{2}[\s-]?\d{7}"),  # landline, international
    re.compile(r"\b0[6789]\d{8}\b"),  # mobile: 06xxxxxxxx
    re.compile(r"\b06[\s-]\d{8}\b"),  # mobile: 06-xxxxxxxx
    re.compile(r"\b0\d{2}[\s-]?\d{7}\b"),  # landline: 020-xxxxxxx
]

NAME_TRIGGER = re.compile(
    r"(?:mijn naam is|my name is|naam\s*:|name\s*:|ik ben|i am|i'm|dit is|this is)\s+([^\n,.!?;:]+)",
    re.IGNORECASE,
)

# Lowercase name particles that may sit between capitalised name parts.
NAME_PARTICLES = {"de", "van", "der", "den", "ter", "te", "het", "la", "le"}

# Words that show the "name" is actually the problem description.
NOT_A_NAME = {"probleem", "storing", "lek", "ketel", "kraan", "toilet", "leak", "boiler", "tap"}

POSTCODE = re.compile(r"\b(\d{4}\s?[A-Z]{2})\b")
ADDRESS_LABEL = re.compile(r"(?:adres|address)\s*:?\s*([^\n,]+(?:,\s*\d{4}\s?[A-Za-z]{2})?)", re.IGNORECASE)
STREET = re.compile(
    r"\b([A-Z][a-zà-ÿ]+(?:straat|laan|weg|plein|gracht|kade|singel|dijk|steeg|hof|park|street|road|avenue|lane)"
    r"\s+\d+(?:\s?[a-zA-Z]\b)?)"
)


def extract_phone(text: str) -> Optional[str]:
    for pattern in PHONE_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0).strip()
    return None


def extract_name(text: str) -> Optional[str]:
    """Name following an explicit introduction ("mijn naam is ...", "my name is ...")."""
    for match in NAME_TRIGGER.finditer(text):
        words: List[str] = []
        for word in match.group(1).split():
            if word[0].isupper() or (words and word.lower() in NAME_PARTICLES):
                words.append(word)
            else:
                break
        while words and words[-1].lower() in NAME_PARTICLES:
            words.pop()
        if not words or len(words) > 5:
            continue
        name = " ".join(words)
        if len(name) > 2 and not any(word.lower() in NOT_A_NAME for word in words):
            return name
    return None


def extract_address(text: str) -> Optional[str]:
    """Labelled address, street with house number, or a Dutch postcode."""
    labelled = ADDRESS_LABEL.search(text)
    if labelled:
        address = labelled.group(1).strip()
        if len(address) > 2:
            return address

    street = STREET.search(text)
    postcode = POSTCODE.search(text)
    if street and postcode:
        return f"{street.group(1)}, {postcode.group(1)}"
    if street:
        return street.group(1)
    if postcode:
        return postcode.group(1)
    return None


def extract_contact_info(text: str, problem_type: Optional[str] = None) -> ExtractedInfo:
    return ExtractedInfo(
        customer_name=extract_name(text),
        customer_phone=extract_phone(text),
        address=extract_address(text),
        problem_type=problem_type,
    )


def merge_extracted(primary: Optional[ExtractedInfo], secondary: ExtractedInfo) -> Optional[ExtractedInfo]:
    """Fields of ``primary`` win; empty ones are taken from ``secondary``."""
    if primary is None:
        merged = secondary
    else:
        merged = ExtractedInfo(
            customer_name=primary.customer_name or secondary.customer_name,
            customer_phone=primary.customer_phone or secondary.customer_phone,
            address=primary.address or secondary.address,
            problem_type=primary.problem_type or secondary.problem_type,
        )
    return None if merged.is_empty() else merged
