"""Default red-flag rules for the standard diligence agents."""

from __future__ import annotations

from dde.coordinator.early_warnings import DetectionRule, RuleCondition
from dde.types import Recommendation, Severity, WarningCategory

_C = RuleCondition
_S = Severity
_W = WarningCategory
_R = Recommendation

DEFAULT_RULES: tuple[DetectionRule, ...] = (
    # Red flag detector
    DetectionRule(
        agent_name="red_flag_detector",
        field_path="overall_risk_level",
        condition=_C.EQUALS,
        threshold="critical",
        severity=_S.CRITICAL,
        category=_W.FOUNDER_INTEGRITY,
        title="Critical Risk Level Detected",
        description_template=(
            "Red flag analysis indicates critical overall risk level. "
            "Multiple serious issues identified."
        ),
        recommendation=_R.LIKELY_DEALBREAKER,
        questions_to_ask=(
            "What specific critical issues were identified?",
            "Can any be mitigated?",
        ),
    ),
    # Financial auditor
    DetectionRule(
        agent_name="financial_auditor",
        field_path="overall_score",
        condition=_C.BELOW,
        threshold=20,
        severity=_S.CRITICAL,
        category=_W.FINANCIAL_CRITICAL,
        title="Financial Metrics Below Viability Threshold",
        description_template=(
            "Financial score of {value}/100 indicates fundamental business model issues."
        ),
        recommendation=_R.LIKELY_DEALBREAKER,
        questions_to_ask=(
            "What explains the weak financial metrics?",
            "Is there a path to unit economics profitability?",
        ),
    ),
    DetectionRule(
        agent_name="financial_auditor",
        field_path="valuation_analysis.verdict",
        condition=_C.EQUALS,
        threshold="very_aggressive",
        severity=_S.HIGH,
        category=_W.DEAL_STRUCTURE,
        title="Valuation Significantly Above Market",
        description_template="Valuation assessed as very aggressive compared to benchmarks.",
        questions_to_ask=(
            "What justifies this premium valuation?",
            "Are there comparable exits at these multiples?",
        ),
    ),
    # Legal and regulatory
    DetectionRule(
        agent_name="legal_regulatory",
        field_path="regulatory_exposure.risk_level",
        condition=_C.EQUALS,
        threshold="critical",
        severity=_S.CRITICAL,
        category=_W.LEGAL_EXISTENTIAL,
        title="Critical Regulatory Risk",
        description_template=(
            "Regulatory exposure at critical level: potential license or compliance issues."
        ),
        recommendation=_R.LIKELY_DEALBREAKER,
        questions_to_ask=(
            "What specific regulations are at risk?",
            "Is there pending regulatory action?",
        ),
    ),
    DetectionRule(
        agent_name="legal_regulatory",
        field_path="litigation_risk.current_litigation",
        condition=_C.EQUALS,
        threshold=True,
        severity=_S.HIGH,
        category=_W.LEGAL_EXISTENTIAL,
        title="Active Litigation Detected",
        description_template=(
            "Company has ongoing litigation that may impact operations or valuation."
        ),
        questions_to_ask=(
            "What is the nature and status of the litigation?",
            "What's the potential financial exposure?",
        ),
    ),
    DetectionRule(
        agent_name="legal_regulatory",
        field_path="critical_issues",
        condition=_C.EXISTS,
        severity=_S.CRITICAL,
        category=_W.LEGAL_EXISTENTIAL,
        title="Critical Legal Issues Identified",
        description_template="Legal analysis found critical issues requiring immediate attention.",
        recommendation=_R.LIKELY_DEALBREAKER,
    ),
    # Team investigator
    DetectionRule(
        agent_name="team_investigator",
        field_path="overall_team_score",
        condition=_C.BELOW,
        threshold=25,
        severity=_S.HIGH,
        category=_W.FOUNDER_INTEGRITY,
        title="Team Assessment Critical",
        description_template="Team score of {value}/100 indicates significant gaps or concerns.",
        questions_to_ask=(
            "What are the key team gaps?",
            "Are there any background verification issues?",
        ),
    ),
    DetectionRule(
        agent_name="team_investigator",
        field_path="founder_profiles.*.red_flags",
        condition=_C.EXISTS,
        severity=_S.HIGH,
        category=_W.FOUNDER_INTEGRITY,
        title="Founder Red Flags Detected",
        description_template="Background check revealed concerns about one or more founders.",
        questions_to_ask=(
            "Can you explain the flagged issues?",
            "Are there references who can vouch for this?",
        ),
    ),
    # Competitive intelligence
    DetectionRule(
        agent_name="competitive_intel",
        field_path="moat_assessment.type",
        condition=_C.EQUALS,
        threshold="none",
        severity=_S.HIGH,
        category=_W.PRODUCT_BROKEN,
        title="No Competitive Moat Identified",
        description_template=(
            "No defensible competitive advantage detected. High risk of commoditization."
        ),
        questions_to_ask=("What prevents competitors from copying this?",),
    ),
    DetectionRule(
        agent_name="competitive_intel",
        field_path="competitive_score",
        condition=_C.BELOW,
        threshold=25,
        severity=_S.HIGH,
        category=_W.PRODUCT_BROKEN,
        title="Weak Competitive Position",
        description_template="Competitive score of {value}/100 indicates vulnerable market position.",
    ),
    # Market intelligence
    DetectionRule(
        agent_name="market_intelligence",
        field_path="timing_analysis.timing",
        condition=_C.EQUALS,
        threshold="too_early",
        severity=_S.MEDIUM,
        category=_W.MARKET_DEAD,
        title="Market Timing Concern",
        description_template=(
            "Market may be too early for this solution. Adoption risk is elevated."
        ),
        questions_to_ask=("What evidence shows the market is ready now?",),
    ),
    DetectionRule(
        agent_name="market_intelligence",
        field_path="market_size_validation.discrepancy",
        condition=_C.EQUALS,
        threshold="major",
        severity=_S.HIGH,
        category=_W.MARKET_DEAD,
        title="Major Market Size Discrepancy",
        description_template="Claimed market size significantly differs from validated figures.",
        questions_to_ask=("What sources support your market size claims?",),
    ),
    # Cap table auditor
    DetectionRule(
        agent_name="cap_table_auditor",
        field_path="cap_table_score",
        condition=_C.BELOW,
        threshold=30,
        severity=_S.HIGH,
        category=_W.DEAL_STRUCTURE,
        title="Problematic Cap Table Structure",
        description_template="Cap table score of {value}/100 indicates structural issues.",
        questions_to_ask=("Can the cap table be cleaned up before investment?",),
    ),
    DetectionRule(
        agent_name="cap_table_auditor",
        field_path="round_terms.participating_preferred",
        condition=_C.EQUALS,
        threshold=True,
        severity=_S.MEDIUM,
        category=_W.DEAL_STRUCTURE,
        title="Participating Preferred Terms",
        description_template=(
            "Deal includes participating preferred shares, unfavorable for common shareholders."
        ),
    ),
    # Customer intelligence
    DetectionRule(
        agent_name="customer_intel",
        field_path="customer_risks.concentration",
        condition=_C.ABOVE,
        threshold=50,
        severity=_S.HIGH,
        category=_W.FINANCIAL_CRITICAL,
        title="Severe Customer Concentration",
        description_template=(
            "Top customer represents {value}% of revenue: extreme concentration risk."
        ),
        questions_to_ask=("What's the plan to diversify the customer base?",),
    ),
    DetectionRule(
        agent_name="customer_intel",
        field_path="product_market_fit.strength",
        condition=_C.EQUALS,
        threshold="weak",
        severity=_S.HIGH,
        category=_W.PRODUCT_BROKEN,
        title="Weak Product-Market Fit Signals",
        description_template=(
            "Product-market fit assessment indicates fundamental adoption challenges."
        ),
        questions_to_ask=("What evidence do you have of product-market fit?",),
    ),
    # Question master
    DetectionRule(
        agent_name="question_master",
        field_path="dealbreakers",
        condition=_C.EXISTS,
        severity=_S.CRITICAL,
        category=_W.FOUNDER_INTEGRITY,
        title="Potential Dealbreakers Identified",
        description_template="Analysis identified conditions that could kill the deal.",
        recommendation=_R.LIKELY_DEALBREAKER,
    ),
    # Debate
    DetectionRule(
        agent_name="devils_advocate",
        field_path="dealbreakers",
        condition=_C.EXISTS,
        severity=_S.CRITICAL,
        category=_W.FOUNDER_INTEGRITY,
        title="Devil's Advocate: Dealbreakers Found",
        description_template="Critical review identified potential dealbreaking scenarios.",
        recommendation=_R.LIKELY_DEALBREAKER,
    ),
    DetectionRule(
        agent_name="devils_advocate",
        field_path="overall_skepticism",
        condition=_C.ABOVE,
        threshold=85,
        severity=_S.HIGH,
        category=_W.PRODUCT_BROKEN,
        title="Extremely High Skepticism Level",
        description_template="Skepticism at {value}/100: major concerns identified.",
    ),
    # Synthesis
    DetectionRule(
        agent_name="synthesis_deal_scorer",
        field_path="verdict",
        condition=_C.EQUALS,
        threshold="strong_pass",
        severity=_S.CRITICAL,
        category=_W.FINANCIAL_CRITICAL,
        title="Strong Pass Recommendation",
        description_template="Synthesis analysis recommends passing on this deal.",
        recommendation=_R.LIKELY_DEALBREAKER,
    ),
    DetectionRule(
        agent_name="synthesis_deal_scorer",
        field_path="overall_score",
        condition=_C.BELOW,
        threshold=30,
        severity=_S.CRITICAL,
        category=_W.FINANCIAL_CRITICAL,
        title="Very Low Overall Score",
        description_template=(
            "Overall synthesis score of {value}/100 indicates significant issues "
            "across multiple dimensions."
        ),
        recommendation=_R.LIKELY_DEALBREAKER,
    ),
)


def rules_for_agent(agent_name: str) -> list[DetectionRule]:
    return [r for r in DEFAULT_RULES if r.agent_name == agent_name]
