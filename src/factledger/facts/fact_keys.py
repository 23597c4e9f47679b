"""
Taxonomie des fact keys.

La catégorie d'une clé dérive de son premier segment ('financial.arr' ->
FINANCIAL). Un préfixe inconnu retombe sur OTHER pour ne jamais bloquer
l'ingestion, sauf en mode strict.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from factledger.facts.errors import CategoryMismatchError
from factledger.facts.schemas import FactCategory

logger = logging.getLogger(__name__)


class ValueKind(str, Enum):
    """Nature de la valeur, pilote la normalisation."""
    CURRENCY = "currency"
    PERCENTAGE = "percentage"
    NUMBER = "number"
    STRING = "string"
    DATE = "date"
    BOOLEAN = "boolean"
    ARRAY = "array"
    ENUM = "enum"


NUMERIC_KINDS = frozenset({ValueKind.CURRENCY, ValueKind.PERCENTAGE, ValueKind.NUMBER})


@dataclass(frozen=True)
class FactKeyDefinition:
    kind: ValueKind
    category: FactCategory
    description: str
    unit: Optional[str] = None
    enum_values: Tuple[str, ...] = ()

    @property
    def is_numeric(self) -> bool:
        return self.kind in NUMERIC_KINDS


CATEGORY_PREFIXES: Dict[str, FactCategory] = {
    "financial": FactCategory.FINANCIAL,
    "team": FactCategory.TEAM,
    "market": FactCategory.MARKET,
    "product": FactCategory.PRODUCT,
    "legal": FactCategory.LEGAL,
    "competition": FactCategory.COMPETITION,
    "traction": FactCategory.TRACTION,
    "other": FactCategory.OTHER,
}


def _d(kind: ValueKind, description: str, **kwargs) -> Tuple[ValueKind, str, dict]:
    return kind, description, kwargs


_C, _P, _N = ValueKind.CURRENCY, ValueKind.PERCENTAGE, ValueKind.NUMBER
_S, _D, _B, _A, _E = ValueKind.STRING, ValueKind.DATE, ValueKind.BOOLEAN, ValueKind.ARRAY, ValueKind.ENUM

_RAW_FACT_KEYS = {
    # FINANCIAL
    "financial.arr": _d(_C, "Annual Recurring Revenue", unit="EUR"),
    "financial.mrr": _d(_C, "Monthly Recurring Revenue", unit="EUR"),
    "financial.revenue": _d(_C, "Total Revenue (non-recurring)", unit="EUR"),
    "financial.revenue_growth_yoy": _d(_P, "Year-over-year revenue growth"),
    "financial.burn_rate": _d(_C, "Monthly burn rate", unit="EUR/month"),
    "financial.runway_months": _d(_N, "Months of runway remaining"),
    "financial.gross_margin": _d(_P, "Gross margin percentage"),
    "financial.ebitda": _d(_C, "EBITDA", unit="EUR"),
    "financial.cash_position": _d(_C, "Current cash in bank", unit="EUR"),
    "financial.valuation_pre": _d(_C, "Pre-money valuation", unit="EUR"),
    "financial.valuation_post": _d(_C, "Post-money valuation", unit="EUR"),
    "financial.amount_raising": _d(_C, "Amount raising in current round", unit="EUR"),
    "financial.lead_investor": _d(_S, "Lead investor of the current round"),
    "financial.dilution_current_round": _d(_P, "Dilution in current round"),
    # TRACTION
    "traction.churn_monthly": _d(_P, "Monthly churn rate"),
    "traction.nrr": _d(_P, "Net Revenue Retention"),
    "traction.cac": _d(_C, "Customer Acquisition Cost", unit="EUR"),
    "traction.ltv": _d(_C, "Customer Lifetime Value", unit="EUR"),
    "traction.ltv_cac_ratio": _d(_N, "LTV/CAC ratio"),
    "traction.customers_count": _d(_N, "Total paying customers"),
    "traction.mau": _d(_N, "Monthly Active Users"),
    # TEAM
    "team.size": _d(_N, "Total team size"),
    "team.founders_count": _d(_N, "Number of founders"),
    "team.ceo.name": _d(_S, "CEO name"),
    "team.advisors": _d(_A, "List of advisors with backgrounds"),
    # MARKET
    "market.tam": _d(_C, "Total Addressable Market", unit="EUR"),
    "market.sam": _d(_C, "Serviceable Addressable Market", unit="EUR"),
    "market.cagr": _d(_P, "Market CAGR"),
    "market.geography_primary": _d(_S, "Primary geographic market"),
    "market.b2b_or_b2c": _d(_E, "Business model orientation", enum_values=("b2b", "b2c", "b2b2c")),
    # PRODUCT
    "product.name": _d(_S, "Product name"),
    "product.stage": _d(_E, "Product stage", enum_values=("idea", "mvp", "beta", "launched", "scaling")),
    "product.launch_date": _d(_D, "Product launch date"),
    "product.tech_stack": _d(_A, "Technology stack"),
    "product.nps": _d(_N, "Net Promoter Score"),
    # COMPETITION
    "competition.main_competitor": _d(_S, "Main competitor name"),
    "competition.competitors_list": _d(_A, "List of competitor names"),
    "competition.market_position": _d(
        _E, "Market position", enum_values=("leader", "challenger", "follower", "niche")
    ),
    # LEGAL
    "legal.incorporation_country": _d(_S, "Country of incorporation"),
    "legal.incorporation_date": _d(_D, "Date of incorporation"),
    "legal.pending_litigation": _d(_B, "Any pending litigation"),
    "legal.compliance_certifications": _d(_A, "Compliance certifications (SOC2, GDPR, etc.)"),
    # OTHER
    "other.headquarters_country": _d(_S, "Headquarters country"),
    "other.founding_date": _d(_D, "Company founding date"),
    "other.website": _d(_S, "Company website URL"),
}

FACT_KEYS: Dict[str, FactKeyDefinition] = {
    key: FactKeyDefinition(
        kind=kind,
        category=CATEGORY_PREFIXES[key.split(".", 1)[0]],
        description=description,
        unit=extra.get("unit"),
        enum_values=extra.get("enum_values", ()),
    )
    for key, (kind, description, extra) in _RAW_FACT_KEYS.items()
}


def get_fact_key_definition(fact_key: str) -> Optional[FactKeyDefinition]:
    return FACT_KEYS.get(fact_key)


def category_for_fact_key(fact_key: str, strict: bool = False) -> FactCategory:
    """
    Catégorie dérivée du premier segment de la clé.

    Args:
        fact_key: Clé pointée (ex: 'financial.arr')
        strict: Lever CategoryMismatchError au lieu de retomber sur OTHER

    Returns:
        Catégorie (OTHER si préfixe inconnu et mode non strict)
    """
    prefix = fact_key.split(".", 1)[0]
    category = CATEGORY_PREFIXES.get(prefix)

    if category is None:
        if strict:
            raise CategoryMismatchError(
                f"fact_key '{fact_key}' has unknown category prefix '{prefix}'"
            )
        logger.warning(
            f"Category mismatch - fact_key: {fact_key}, prefix '{prefix}' unknown, falling back to OTHER"
        )
        return FactCategory.OTHER

    return category


def is_valid_enum_value(fact_key: str, value: str) -> bool:
    definition = FACT_KEYS.get(fact_key)
    if not definition or definition.kind != ValueKind.ENUM:
        return False
    return value.strip().lower() in definition.enum_values
