"""High-risk country policy for metered phone alerts.

Hosted projects opt in separately to calls/SMS for US numbers, other
countries, and countries with a history of toll fraud.
"""

from typing import Literal

from alerting.models.alert import AlertChannel
from alerting.models.project import Project

CountryType = Literal["us", "non-us", "risk"]

# Country calling codes treated as high risk for premium-rate fraud
HIGH_RISK_PREFIXES = (
    "+53",
    "+211",
    "+222",
    "+223",
    "+224",
    "+225",
    "+231",
    "+232",
    "+235",
    "+236",
    "+237",
    "+240",
    "+241",
    "+242",
    "+243",
    "+252",
    "+257",
    "+263",
    "+355",
    "+371",
    "+375",
    "+381",
    "+670",
    "+675",
    "+677",
    "+678",
    "+685",
    "+687",
    "+688",
    "+690",
    "+850",
    "+881",
    "+882",
    "+883",
    "+960",
    "+963",
    "+967",
)

ALERT_OPTION_KEYS: dict[str, str] = {
    "us": "billingUS",
    "non-us": "billingNonUSCountries",
    "risk": "billingRiskCountries",
}


def get_country_type(phone_number: str) -> CountryType:
    """Classify an E.164 phone number."""
    number = phone_number.strip().replace(" ", "")
    if not number.startswith("+"):
        number = f"+{number}"
    if number.startswith("+1"):
        return "us"
    if number.startswith(HIGH_RISK_PREFIXES):
        return "risk"
    return "non-us"


def complies_with_high_risk_config(project: Project, phone_number: str) -> bool:
    """Whether the project's alert options allow alerting this number."""
    options = project.alert_options or {}
    key = ALERT_OPTION_KEYS[get_country_type(phone_number)]
    return bool(options.get(key))


def compliance_error_message(channel: AlertChannel, phone_number: str) -> str:
    """Audit message for a number the project policy rejects."""
    label = "Calls" if channel == AlertChannel.CALL else "SMS"
    country_type = get_country_type(phone_number)
    if country_type == "us":
        return f"{label} for numbers inside US not enabled for this project"
    if country_type == "non-us":
        return f"{label} for numbers outside US not enabled for this project"
    return f"{label} to High Risk country not enabled for this project"
