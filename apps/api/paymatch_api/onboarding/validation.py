"""Swiss company detail validation for the onboarding wizard."""

import re
from typing import Any, Optional

from paymatch_api.config.plans import BILLING_CYCLES, get_plan

SWISS_CANTONS: dict[str, str] = {
    "ZH": "Zürich",
    "BE": "Bern",
    "LU": "Luzern",
    "UR": "Uri",
    "SZ": "Schwyz",
    "OW": "Obwalden",
    "NW": "Nidwalden",
    "GL": "Glarus",
    "ZG": "Zug",
    "FR": "Freiburg",
    "SO": "Solothurn",
    "BS": "Basel-Stadt",
    "BL": "Basel-Landschaft",
    "SH": "Schaffhausen",
    "AR": "Appenzell Ausserrhoden",
    "AI": "Appenzell Innerrhoden",
    "SG": "St. Gallen",
    "GR": "Graubünden",
    "AG": "Aargau",
    "TG": "Thurgau",
    "TI": "Tessin",
    "VD": "Waadt",
    "VS": "Wallis",
    "NE": "Neuenburg",
    "GE": "Genf",
    "JU": "Jura",
}

SWISS_IBAN_LENGTH = 21
MIN_VAT_DIGITS = 9

_POSTAL_CODE_RE = re.compile(r"^[0-9]{4}$")


def normalize_iban(iban: str) -> str:
    return re.sub(r"\s", "", iban or "").upper()


def validate_swiss_iban(iban: Optional[str]) -> bool:
    clean = normalize_iban(iban or "")
    return clean.startswith("CH") and len(clean) == SWISS_IBAN_LENGTH


def validate_swiss_postal_code(postal_code: Optional[str]) -> bool:
    return bool(_POSTAL_CODE_RE.match(postal_code or ""))


def validate_swiss_canton(canton: Optional[str]) -> bool:
    return canton in SWISS_CANTONS


def validate_swiss_vat_number(vat_number: Optional[str]) -> bool:
    return len(re.sub(r"\D", "", vat_number or "")) >= MIN_VAT_DIGITS


def _too_short(value: Optional[str], minimum: int) -> bool:
    return not value or len(value.strip()) < minimum


def validate_company_details(data: dict[str, Any]) -> dict[str, str]:
    """Field errors for a company details payload (empty when valid).

    IBAN is required; VAT number is optional but checked when present.
    """
    errors: dict[str, str] = {}

    if _too_short(data.get("company_name"), 2):
        errors["company_name"] = "Company name must be at least 2 characters long"
    if _too_short(data.get("street"), 5):
        errors["street"] = "Street address must be at least 5 characters long"
    if not validate_swiss_postal_code(data.get("postal_code")):
        errors["postal_code"] = "Swiss postal code must be 4 digits"
    if _too_short(data.get("city"), 2):
        errors["city"] = "City name must be at least 2 characters long"
    if not validate_swiss_canton(data.get("canton")):
        errors["canton"] = "Invalid Swiss canton code"
    if not validate_swiss_iban(data.get("iban")):
        errors["iban"] = "Invalid Swiss IBAN format"
    if data.get("vat_number") and not validate_swiss_vat_number(data["vat_number"]):
        errors["vat_number"] = "Invalid Swiss VAT number format"

    return errors


def validate_plan_selection(plan: Optional[str], billing_cycle: Optional[str]) -> dict[str, str]:
    errors: dict[str, str] = {}
    if not plan or get_plan(plan) is None:
        errors["plan"] = "Please select a valid plan"
    if billing_cycle not in BILLING_CYCLES:
        errors["billing_cycle"] = "Billing cycle must be monthly or annual"
    return errors
