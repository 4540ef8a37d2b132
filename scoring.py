"""
Broker onboarding scoring
Maps the onboarding questionnaire to weighted readiness scores, a success band,
risk flags and the primary sales angle used by the consultant on the first call.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import List


# ===== POINT TABLES =====

CRM_USAGE_POINTS = {'full': 30, 'basic': 15, 'none': 0}
SPEED_TO_CONTACT_POINTS = {'5min': 30, '30min': 20, 'sameDay': 10, 'nextDay': 0}
TEAM_SIZE_POINTS = {'dedicated': 20, 'small': 15, 'solo': 10, 'unclear': 5}
FOLLOW_UP_POINTS = {'clear': 20, 'basic': 10, 'none': 0}

MONTHLY_SPEND_POINTS = {'30k+': 30, '15k-30k': 25, '5k-15k': 15, 'under5k': 5, 'none': 0}
CPL_AWARENESS_POINTS = {'yes': 25, 'rough': 15, 'no': 5}
PRICING_COMFORT_POINTS = {'comfortable': 15, 'flexible': 10, 'sensitive': 0}

PRODUCT_FOCUS_POINTS = {'clear': 30, 'multiple': 20, 'unclear': 10}
GEOGRAPHIC_FOCUS_POINTS = {'clear': 25, 'semi': 15, 'undefined': 5}
GROWTH_GOAL_POINTS = {'numeric': 25, 'general': 15, 'vague': 5}
TIMELINE_POINTS = {'immediate': 20, '30days': 15, 'exploring': 5}

INTENT_TIMELINE_POINTS = {'immediate': 60, '30days': 40, 'exploring': 20}
INTENT_GOAL_POINTS = {'numeric': 40, 'general': 20, 'vague': 0}

VOLUME_FULL_CREDIT = 30
VOLUME_PARTIAL_CREDIT = 15
MAX_WEEKLY_VOLUME = 100_000

WEIGHTS = {
    'operational': 0.35,
    'budget': 0.25,
    'growth': 0.25,
    'intent': 0.15,
}

HIGH_BAND_THRESHOLD = 80
MEDIUM_BAND_THRESHOLD = 60

FLAG_OPERATIONAL_RISK = 'Operational Risk'
FLAG_HIGH_CHURN_RISK = 'High Churn Risk'
FLAG_EXPECTATION_MISMATCH = 'Expectation Mismatch'
FLAG_PRICE_SENSITIVITY = 'Price Sensitivity Risk'
FLAG_STRATEGY_REQUIRED = 'Strategy Required'
FLAG_LOW_GROWTH_READINESS = 'Low Growth Readiness'

# field name -> (payload key, allowed values)
CATEGORICAL_FIELDS = {
    'crm_usage': ('crmUsage', CRM_USAGE_POINTS),
    'speed_to_contact': ('speedToContact', SPEED_TO_CONTACT_POINTS),
    'team_size': ('teamSize', TEAM_SIZE_POINTS),
    'follow_up_clarity': ('followUpClarity', FOLLOW_UP_POINTS),
    'monthly_spend': ('monthlySpend', MONTHLY_SPEND_POINTS),
    'cpl_awareness': ('cplAwareness', CPL_AWARENESS_POINTS),
    'pricing_comfort': ('pricingComfort', PRICING_COMFORT_POINTS),
    'product_focus_clarity': ('productFocusClarity', PRODUCT_FOCUS_POINTS),
    'geographic_focus_clarity': ('geographicFocusClarity', GEOGRAPHIC_FOCUS_POINTS),
    'growth_goal_clarity': ('growthGoalClarity', GROWTH_GOAL_POINTS),
    'timeline': ('timeline', TIMELINE_POINTS),
}

NUMERIC_FIELDS = {
    'desired_leads_weekly': 'desiredLeadsWeekly',
    'max_capacity_weekly': 'maxCapacityWeekly',
}


class InvalidOnboardingAnswer(ValueError):
    """Raised when a questionnaire answer is outside its allowed values."""

    def __init__(self, field_name: str, value, allowed=None):
        self.field_name = field_name
        self.value = value
        self.allowed = list(allowed) if allowed is not None else None
        if self.allowed is not None:
            message = f"Invalid value for {field_name}: {value!r} (expected one of {', '.join(self.allowed)})"
        else:
            message = f"Invalid value for {field_name}: {value!r} (expected a whole number from 0 to {MAX_WEEKLY_VOLUME})"
        super().__init__(message)


@dataclass(frozen=True)
class OnboardingAnswers:
    crm_usage: str
    speed_to_contact: str
    team_size: str
    follow_up_clarity: str
    monthly_spend: str
    cpl_awareness: str
    pricing_comfort: str
    desired_leads_weekly: int
    max_capacity_weekly: int
    product_focus_clarity: str
    geographic_focus_clarity: str
    growth_goal_clarity: str
    timeline: str

    def __post_init__(self):
        for name, (_, table) in CATEGORICAL_FIELDS.items():
            value = getattr(self, name)
            if value not in table:
                raise InvalidOnboardingAnswer(name, value, table.keys())
        for name in NUMERIC_FIELDS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= MAX_WEEKLY_VOLUME:
                raise InvalidOnboardingAnswer(name, value)

    @classmethod
    def from_payload(cls, payload: dict) -> 'OnboardingAnswers':
        """Build answers from a request body using camelCase or snake_case keys."""
        if not isinstance(payload, dict):
            raise InvalidOnboardingAnswer('answers', payload, [])

        values = {}
        for name, (camel, _) in CATEGORICAL_FIELDS.items():
            values[name] = payload.get(camel, payload.get(name))
        for name, camel in NUMERIC_FIELDS.items():
            values[name] = _coerce_count(name, payload.get(camel, payload.get(name)))
        return cls(**values)


@dataclass
class ScoreResult:
    operational_score: int
    budget_score: int
    growth_score: int
    intent_score: int
    success_probability: int
    success_band: str
    primary_sales_angle: str
    risk_flags: List[str] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)

    def to_camel_dict(self):
        return {
            'operationalScore': self.operational_score,
            'budgetScore': self.budget_score,
            'growthScore': self.growth_score,
            'intentScore': self.intent_score,
            'successProbability': self.success_probability,
            'riskFlags': list(self.risk_flags),
            'successBand': self.success_band,
            'primarySalesAngle': self.primary_sales_angle,
        }


def _coerce_count(name, value):
    if isinstance(value, bool):
        raise InvalidOnboardingAnswer(name, value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdecimal():
        return int(value.strip())
    raise InvalidOnboardingAnswer(name, value)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _operational_score(answers: OnboardingAnswers, flags: List[str]) -> int:
    score = (
        CRM_USAGE_POINTS[answers.crm_usage]
        + SPEED_TO_CONTACT_POINTS[answers.speed_to_contact]
        + TEAM_SIZE_POINTS[answers.team_size]
        + FOLLOW_UP_POINTS[answers.follow_up_clarity]
    )
    if score < 60:
        flags.append(FLAG_OPERATIONAL_RISK)
    if score < 40:
        flags.append(FLAG_HIGH_CHURN_RISK)
    return score


def _volume_points(desired: int, capacity: int, flags: List[str]) -> int:
    if desired <= capacity:
        return VOLUME_FULL_CREDIT
    flags.append(FLAG_EXPECTATION_MISMATCH)
    # within 1.5x capacity
    if desired * 2 <= capacity * 3:
        return VOLUME_PARTIAL_CREDIT
    return 0


def _budget_score(answers: OnboardingAnswers, flags: List[str]) -> int:
    score = MONTHLY_SPEND_POINTS[answers.monthly_spend] + CPL_AWARENESS_POINTS[answers.cpl_awareness]
    score += _volume_points(answers.desired_leads_weekly, answers.max_capacity_weekly, flags)
    score += PRICING_COMFORT_POINTS[answers.pricing_comfort]
    if score < 60:
        flags.append(FLAG_PRICE_SENSITIVITY)
    return score


def _growth_score(answers: OnboardingAnswers, flags: List[str]) -> int:
    score = PRODUCT_FOCUS_POINTS[answers.product_focus_clarity] + GEOGRAPHIC_FOCUS_POINTS[answers.geographic_focus_clarity]
    score += GROWTH_GOAL_POINTS[answers.growth_goal_clarity]
    if answers.growth_goal_clarity == 'vague':
        flags.append(FLAG_STRATEGY_REQUIRED)
    score += TIMELINE_POINTS[answers.timeline]
    if score < 60:
        flags.append(FLAG_LOW_GROWTH_READINESS)
    return score


def _intent_score(answers: OnboardingAnswers) -> int:
    return INTENT_TIMELINE_POINTS[answers.timeline] + INTENT_GOAL_POINTS[answers.growth_goal_clarity]


def success_band_for(composite: int) -> str:
    if composite >= HIGH_BAND_THRESHOLD:
        return 'High'
    if composite >= MEDIUM_BAND_THRESHOLD:
        return 'Medium'
    return 'Low'


def primary_sales_angle_for(operational: int, budget: int, desired_leads_weekly: int) -> str:
    if budget < 50:
        return 'Cost Efficiency'
    if operational < 50:
        return 'Process Optimisation'
    if budget >= 80 and desired_leads_weekly > 50:
        return 'Volume Scaling'
    if operational >= 80:
        return 'Lead Quality'
    return 'Education & Setup'


def calculate_scores(answers: OnboardingAnswers) -> ScoreResult:
    """
    Score a broker's onboarding answers.

    Pure and deterministic: the same answers always produce the same result.
    Every sub-score lies in [0, 100], so the weighted composite does too.
    """
    flags: List[str] = []

    operational = _operational_score(answers, flags)
    budget = _budget_score(answers, flags)
    growth = _growth_score(answers, flags)
    intent = _intent_score(answers)

    composite = _round_half_up(
        operational * WEIGHTS['operational']
        + budget * WEIGHTS['budget']
        + growth * WEIGHTS['growth']
        + intent * WEIGHTS['intent']
    )

    return ScoreResult(
        operational_score=operational,
        budget_score=budget,
        growth_score=growth,
        intent_score=intent,
        success_probability=composite,
        success_band=success_band_for(composite),
        primary_sales_angle=primary_sales_angle_for(operational, budget, answers.desired_leads_weekly),
        risk_flags=list(dict.fromkeys(flags)),
    )
