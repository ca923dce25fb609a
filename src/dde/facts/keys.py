"""
Canonical fact key taxonomy.

Keys are dotted and hierarchical (``team.ceo.name``). The registry is
advisory: unknown keys are accepted and categorised by their first segment.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from dde.types import FactCategory


class FactKeyType(str, Enum):
    CURRENCY = "currency"
    PERCENTAGE = "percentage"
    NUMBER = "number"
    STRING = "string"
    DATE = "date"
    BOOLEAN = "boolean"
    ARRAY = "array"
    ENUM = "enum"

    @property
    def is_numeric(self) -> bool:
        return self in (FactKeyType.CURRENCY, FactKeyType.PERCENTAGE, FactKeyType.NUMBER)


@dataclass(frozen=True)
class FactKeyDefinition:
    key: str
    type: FactKeyType
    category: FactCategory
    description: str
    unit: str | None = None
    enum_values: tuple[str, ...] = ()
    temporal: bool = False


def _define(
    key: str,
    type_: FactKeyType,
    description: str,
    unit: str | None = None,
    enum_values: tuple[str, ...] = (),
    temporal: bool = False,
) -> FactKeyDefinition:
    return FactKeyDefinition(
        key=key,
        type=type_,
        category=FactCategory.from_key(key),
        description=description,
        unit=unit,
        enum_values=enum_values,
        temporal=temporal,
    )


_C = FactKeyType.CURRENCY
_P = FactKeyType.PERCENTAGE
_N = FactKeyType.NUMBER
_S = FactKeyType.STRING
_D = FactKeyType.DATE
_B = FactKeyType.BOOLEAN
_A = FactKeyType.ARRAY
_E = FactKeyType.ENUM

_DEFINITIONS: tuple[FactKeyDefinition, ...] = (
    # Financial
    _define("financial.arr", _C, "Annual recurring revenue", "EUR", temporal=True),
    _define("financial.mrr", _C, "Monthly recurring revenue", "EUR", temporal=True),
    _define("financial.revenue", _C, "Total revenue", "EUR", temporal=True),
    _define("financial.revenue_growth_yoy", _P, "Year-over-year revenue growth"),
    _define("financial.revenue_growth_mom", _P, "Month-over-month revenue growth"),
    _define("financial.burn_rate", _C, "Monthly burn rate", "EUR/month", temporal=True),
    _define("financial.runway_months", _N, "Runway at current burn", "months", temporal=True),
    _define("financial.gross_margin", _P, "Gross margin"),
    _define("financial.net_margin", _P, "Net margin"),
    _define("financial.ebitda", _C, "EBITDA", "EUR"),
    _define("financial.cash_position", _C, "Cash in the bank", "EUR", temporal=True),
    _define("financial.debt", _C, "Outstanding debt", "EUR"),
    _define("financial.valuation_pre", _C, "Pre-money valuation", "EUR"),
    _define("financial.valuation_post", _C, "Post-money valuation", "EUR"),
    _define("financial.valuation_multiple", _N, "Valuation as a multiple of ARR", "x"),
    _define("financial.amount_raised_total", _C, "Total raised to date", "EUR"),
    _define("financial.amount_raising", _C, "Amount raised in the current round", "EUR"),
    _define("financial.dilution_current_round", _P, "Dilution of the current round"),
    # Traction
    _define("traction.churn_monthly", _P, "Monthly logo churn", temporal=True),
    _define("traction.nrr", _P, "Net revenue retention"),
    _define("traction.grr", _P, "Gross revenue retention"),
    _define("traction.cac", _C, "Customer acquisition cost", "EUR"),
    _define("traction.ltv", _C, "Customer lifetime value", "EUR"),
    _define("traction.ltv_cac_ratio", _N, "LTV to CAC ratio", "x"),
    _define("traction.payback_months", _N, "CAC payback period", "months"),
    _define("traction.customers_count", _N, "Paying customers", temporal=True),
    _define("traction.users_count", _N, "Registered users", temporal=True),
    _define("traction.mau", _N, "Monthly active users", temporal=True),
    _define("traction.arpu", _C, "Average revenue per user", "EUR"),
    # Team
    _define("team.size", _N, "Total headcount", temporal=True),
    _define("team.founders_count", _N, "Number of founders"),
    _define("team.technical_ratio", _P, "Share of technical staff"),
    _define("team.ceo.name", _S, "CEO name"),
    _define("team.ceo.background", _S, "CEO background"),
    _define("team.ceo.previous_exits", _N, "CEO previous exits"),
    _define("team.cto.name", _S, "CTO name"),
    _define("team.competitors_exist", _B, "Founders acknowledge direct competitors"),
    _define("team.vesting_months", _N, "Founder vesting period", "months"),
    # Market
    _define("market.tam", _C, "Total addressable market", "EUR"),
    _define("market.sam", _C, "Serviceable addressable market", "EUR"),
    _define("market.som", _C, "Serviceable obtainable market", "EUR"),
    _define("market.cagr", _P, "Market compound annual growth"),
    _define("market.geography_primary", _S, "Primary geography"),
    _define(
        "market.timing_assessment",
        _E,
        "Market timing",
        enum_values=("early", "right", "late"),
    ),
    # Product
    _define("product.name", _S, "Product name"),
    _define(
        "product.stage",
        _E,
        "Product stage",
        enum_values=("idea", "mvp", "beta", "launched", "scaling"),
    ),
    _define("product.launch_date", _D, "Launch date"),
    _define("product.tech_stack", _A, "Technology stack"),
    _define("product.nps", _N, "Net promoter score"),
    # Competition
    _define("competition.main_competitor", _S, "Main competitor"),
    _define("competition.competitors_count", _N, "Identified competitors"),
    _define("competition.competitors_list", _A, "Named competitors"),
    _define("competition.big_tech_threat", _B, "Exposure to big tech entry"),
    # Legal
    _define("legal.incorporation_country", _S, "Country of incorporation"),
    _define("legal.incorporation_date", _D, "Incorporation date"),
    _define("legal.pending_litigation", _B, "Any pending litigation"),
    _define("legal.compliance_certifications", _A, "Compliance certifications"),
    # Other
    _define("other.founding_date", _D, "Company founding date"),
    _define("other.headquarters", _S, "Headquarters location"),
    _define("other.sector", _S, "Primary sector"),
)

FACT_KEYS: dict[str, FactKeyDefinition] = {d.key: d for d in _DEFINITIONS}


def get_definition(fact_key: str) -> FactKeyDefinition | None:
    return FACT_KEYS.get(fact_key)


def is_known_key(fact_key: str) -> bool:
    return fact_key in FACT_KEYS


def category_for_key(fact_key: str) -> FactCategory:
    """Category from the taxonomy, falling back to the key's first segment."""
    definition = FACT_KEYS.get(fact_key)
    if definition is not None:
        return definition.category
    return FactCategory.from_key(fact_key)


def keys_for_category(category: FactCategory) -> list[str]:
    return [key for key, d in FACT_KEYS.items() if d.category is category]


def keys_of_type(type_: FactKeyType) -> list[str]:
    return [key for key, d in FACT_KEYS.items() if d.type is type_]


def is_numeric_key(fact_key: str) -> bool | None:
    """True/False for known keys, None when the key is not in the taxonomy."""
    definition = FACT_KEYS.get(fact_key)
    if definition is None:
        return None
    return definition.type.is_numeric


def key_segments(fact_key: str) -> tuple[str, ...]:
    return tuple(fact_key.split("."))


def are_parent_child(a: str, b: str) -> bool:
    """Whether one dotted key is a strict segment-wise prefix of the other.

    Single-segment keys are category names, not facts, and never relate.
    """
    sa, sb = key_segments(a), key_segments(b)
    if len(sa) < 2 or len(sb) < 2 or len(sa) == len(sb):
        return False
    shorter, longer = (sa, sb) if len(sa) < len(sb) else (sb, sa)
    return longer[: len(shorter)] == shorter
