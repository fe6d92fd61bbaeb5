"""
Mobile money provider directory.

Read-only lookup of validation rules per (provider, country) pair and of the
instructional metadata shown to payers. The built-in table covers the African
markets served through Yellow Card; deployments can replace it with a JSON
file of the same shape (see ``ProviderDirectory.from_json``).
"""
import json
import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple

from .schemas import ProviderInfo, ProviderRule

logger = logging.getLogger(__name__)

# country -> (dial code, currency, national number pattern)
COUNTRY_PHONE_RULES: Dict[str, Tuple[str, str, str]] = {
    "NG": ("234", "NGN", r"^(\+234|234|0)?[789][01]\d{8}$"),
    "KE": ("254", "KES", r"^(\+254|254|0)?[17]\d{8}$"),
    "UG": ("256", "UGX", r"^(\+256|256|0)?[37]\d{8}$"),
    "GH": ("233", "GHS", r"^(\+233|233|0)?[235]\d{8}$"),
    "TZ": ("255", "TZS", r"^(\+255|255|0)?[67]\d{8}$"),
    "ZA": ("27", "ZAR", r"^(\+27|27|0)?[67]\d{8}$"),
    "SN": ("221", "XOF", r"^(\+221|221|0)?[37]\d{8}$"),
    "BF": ("226", "XOF", r"^(\+226|226|0)?[67]\d{7}$"),
    "TG": ("228", "XOF", r"^(\+228|228|0)?[92]\d{7}$"),
    "CI": ("225", "XOF", r"^(\+225|225|0)?[0457]\d{7}$"),
    "CM": ("237", "XAF", r"^(\+237|237|0)?[62]\d{8}$"),
}

# provider -> limits, fee schedule and the countries it operates in
PROVIDER_TABLE: Dict[str, dict] = {
    "MTN_MOMO": {
        "name": "MTN Mobile Money", "ussd_code": "*165#", "processing_minutes": 5,
        "min_amount": 100, "max_amount": 5000000, "fee_percentage": 0.5, "fee_fixed": 0,
        "countries": ["NG", "UG", "GH", "CI", "CM"],
        "steps": ["Dial *165# on your MTN phone", "Select \"Send Money\"",
                  "Enter the payment code provided", "Enter the exact amount", "Confirm with your PIN"],
        "tips": ["Ensure you have sufficient balance", "Keep your PIN secure"],
    },
    "MPESA": {
        "name": "M-Pesa", "ussd_code": "*334#", "processing_minutes": 3,
        "min_amount": 50, "max_amount": 1000000, "fee_percentage": 0.3, "fee_fixed": 0,
        "countries": ["KE", "TZ"],
        "steps": ["Go to M-Pesa menu on your phone", "Select \"Send Money\"",
                  "Enter business number provided", "Enter the amount", "Enter your M-Pesa PIN"],
        "tips": ["Available 24/7", "Keep your transaction message for reference"],
    },
    "AIRTEL_MONEY": {
        "name": "Airtel Money", "ussd_code": "*432#", "processing_minutes": 5,
        "min_amount": 100, "max_amount": 2000000, "fee_percentage": 0.4, "fee_fixed": 0,
        "countries": ["NG", "KE", "UG", "TZ", "GH"],
        "steps": ["Dial *432# from your Airtel line", "Select \"Send Money\"", "Choose \"To Business\"",
                  "Enter merchant code and amount", "Confirm with PIN"],
        "tips": ["Low transaction fees"],
    },
    "VODAFONE_CASH": {
        "name": "Vodafone Cash", "ussd_code": "*110#", "processing_minutes": 5,
        "min_amount": 50, "max_amount": 1500000, "fee_percentage": 0.5, "fee_fixed": 0,
        "countries": ["GH", "TZ"],
    },
    "TIGO_CASH": {
        "name": "Tigo Cash", "ussd_code": "*150*01#", "processing_minutes": 5,
        "min_amount": 1000, "max_amount": 3000000, "fee_percentage": 0.6, "fee_fixed": 100,
        "countries": ["TZ"],
    },
    "ORANGE_MONEY": {
        "name": "Orange Money", "ussd_code": "#144#", "processing_minutes": 5,
        "min_amount": 100, "max_amount": 1000000, "fee_percentage": 0.5, "fee_fixed": 0,
        "countries": ["CI", "SN", "BF"],
    },
    "MOOV_MONEY": {
        "name": "Moov Money", "ussd_code": "*155#", "processing_minutes": 5,
        "min_amount": 500, "max_amount": 2000000, "fee_percentage": 0.7, "fee_fixed": 0,
        "countries": ["CI", "BF", "TG"],
    },
    "WAVE": {
        "name": "Wave", "ussd_code": "", "processing_minutes": 2,
        "min_amount": 100, "max_amount": 1000000, "fee_percentage": 0.1, "fee_fixed": 0,
        "countries": ["SN", "CI", "UG"],
    },
    "FLOOZ": {
        "name": "Flooz", "ussd_code": "*155#", "processing_minutes": 5,
        "min_amount": 200, "max_amount": 500000, "fee_percentage": 0.8, "fee_fixed": 0,
        "countries": ["SN"],
    },
}

# (country, provider) -> allowed national number prefixes
PROVIDER_PREFIXES: Dict[Tuple[str, str], Tuple[str, ...]] = {
    ("NG", "MTN_MOMO"): ("803", "806", "813", "814", "816", "903", "906", "913"),
    ("NG", "AIRTEL_MONEY"): ("802", "808", "812", "901", "902", "907", "911"),
    ("KE", "MPESA"): tuple(str(p) for p in range(700, 710)),
    ("KE", "AIRTEL_MONEY"): tuple(str(p) for p in range(730, 740)),
}

class ProviderDirectory:
    """Read-only (provider, country) -> ProviderRule lookup"""

    def __init__(self, rules: Iterable[ProviderRule], providers: Iterable[ProviderInfo] = ()):
        self._rules: Dict[Tuple[str, str], ProviderRule] = {}
        for rule in rules:
            key = (rule.provider_id.upper(), rule.country_code.upper())
            if key in self._rules:
                raise ValueError(f"Duplicate provider rule for {key[0]}/{key[1]}")
            re.compile(rule.phone_pattern)
            self._rules[key] = rule
        self._providers: Dict[str, ProviderInfo] = {p.provider_id.upper(): p for p in providers}

    def lookup(self, provider_id: str, country_code: str) -> Optional[ProviderRule]:
        return self._rules.get(((provider_id or "").upper(), (country_code or "").upper()))

    def info(self, provider_id: str) -> Optional[ProviderInfo]:
        return self._providers.get((provider_id or "").upper())

    def providers_for_country(self, country_code: str) -> List[str]:
        country = (country_code or "").upper()
        return sorted(provider for provider, c in self._rules if c == country)

    def __len__(self) -> int:
        return len(self._rules)

    @classmethod
    def default(cls) -> "ProviderDirectory":
        rules = []
        providers = []
        for provider_id, details in PROVIDER_TABLE.items():
            providers.append(ProviderInfo(
                provider_id=provider_id,
                name=details["name"],
                ussd_code=details.get("ussd_code", ""),
                processing_minutes=details.get("processing_minutes", 5),
                steps=tuple(details.get("steps", ())),
                tips=tuple(details.get("tips", ())),
            ))
            for country in details["countries"]:
                dial_code, currency, pattern = COUNTRY_PHONE_RULES[country]
                rules.append(ProviderRule(
                    provider_id=provider_id,
                    country_code=country,
                    phone_pattern=pattern,
                    min_amount=details["min_amount"],
                    max_amount=details["max_amount"],
                    fee_percentage=details["fee_percentage"],
                    fee_fixed=details["fee_fixed"],
                    currency=currency,
                    dial_code=dial_code,
                    prefixes=PROVIDER_PREFIXES.get((country, provider_id), ()),
                ))
        return cls(rules, providers)

    @classmethod
    def from_json(cls, path: str) -> "ProviderDirectory":
        """Load ``{"rules": [...], "providers": [...]}`` exported by the catalog owner"""
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
        rules = [ProviderRule(**item) for item in data.get("rules", [])]
        providers = [ProviderInfo(**item) for item in data.get("providers", [])]
        logger.info(f"Loaded {len(rules)} provider rules from {path}")
        return cls(rules, providers)
