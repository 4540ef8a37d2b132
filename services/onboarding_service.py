"""Broker onboarding persistence helpers and score explanations."""

from __future__ import annotations

from scoring import OnboardingAnswers

# answer field -> broker_onboarding_responses column
RESPONSE_COLUMNS = {
    'crm_usage': 'crm_usage',
    'speed_to_contact': 'speed_to_contact',
    'team_size': 'team_size',
    'follow_up_clarity': 'follow_up_process',
    'monthly_spend': 'monthly_lead_spend',
    'cpl_awareness': 'cpl_awareness',
    'pricing_comfort': 'pricing_comfort',
    'desired_leads_weekly': 'desired_leads_weekly',
    'max_capacity_weekly': 'max_capacity_weekly',
    'product_focus_clarity': 'product_focus_clarity',
    'geographic_focus_clarity': 'geographic_focus_clarity',
    'growth_goal_clarity': 'growth_goal_clarity',
    'timeline': 'timeline_to_start',
}


def response_columns(answers: OnboardingAnswers) -> dict:
    return {column: getattr(answers, field) for field, column in RESPONSE_COLUMNS.items()}


def build_explanation_prompt(analysis: dict, responses: dict) -> str:
    flags = ', '.join(analysis.get('risk_flags') or []) or 'None'
    return f"""
Analyze this broker's onboarding data and deterministic scores. Generate plain-English explanations for the scores and risk flags.

DATA:
- CRM Usage: {responses['crm_usage']}
- Contact Speed: {responses['speed_to_contact']}
- Team Size: {responses['team_size']}
- Follow-up Process: {responses['follow_up_process']}
- Monthly Lead Spend: {responses['monthly_lead_spend']}
- CPL Awareness: {responses['cpl_awareness']}
- Pricing Comfort: {responses['pricing_comfort']}
- Vol vs Cap: Desired {responses['desired_leads_weekly']}, Max {responses['max_capacity_weekly']}
- Product Focus: {responses['product_focus_clarity']}
- Growth Goals: {responses['growth_goal_clarity']}
- Timeline: {responses['timeline_to_start']}

DETERMINISTIC RESULTS:
- Operational Score: {analysis['operational_score']}/100
- Budget Score: {analysis['budget_score']}/100
- Growth Score: {analysis['growth_score']}/100
- Success Probability: {analysis['success_probability']}% ({analysis['success_band']})
- Risk Flags: {flags}
- Primary Sales Angle: {analysis['primary_sales_angle']}

INSTRUCTIONS:
Generate a concise analysis (approx 150-200 words) that:
1. Explains why the individual scores are what they are, referencing specific inputs.
2. Explains the overall success probability and its practical implications.
3. Explains each triggered risk flag with improvement suggestions.
4. Maintains a professional, consultative tone.

Do not invent data. Explain the deterministic results only.
"""


def fallback_explanation(analysis: dict, responses: dict) -> str:
    """Rule-based explanation used when the AI provider is unavailable."""
    strength = 'strong' if analysis['operational_score'] >= 80 else 'limited'
    text = f"Operational readiness is {strength}. "
    if responses.get('crm_usage') == 'none':
        text += "The lack of a CRM system typically lowers conversion efficiency. "
    if responses.get('speed_to_contact') == 'nextDay':
        text += "Delayed lead contact is a significant barrier to success. "

    alignment = 'optimal' if analysis['budget_score'] >= 70 else 'a concern'
    text += f"\n\nBudget alignment is {alignment}. "
    if responses.get('pricing_comfort') == 'sensitive':
        text += "High price sensitivity suggests a need for education on cost-per-acquisition vs lead cost. "

    text += (
        f"\n\nOverall, the {analysis['success_probability']}% probability indicates "
        f"{analysis['success_band'].lower()} readiness. "
    )
    flags = analysis.get('risk_flags') or []
    if flags:
        text += f"Key risks include {' and '.join(flags)}. Focus on process optimization before significant scaling."
    return text
