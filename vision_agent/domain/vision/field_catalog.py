"""
Static reference data for vision scoring.

The weighted field catalog, the stage gates and the question rule tables live
here as plain declarations so that adding a field or retuning a weight is a
data change. Declaration order of DEFAULT_FIELD_CATALOG is significant: it
breaks ties when ranking candidate questions.
"""

from typing import Dict, List, Tuple

from vision_agent.domain.models.vision_state import (
    FieldCatalogEntry, FieldCategory, FocusStage, FollowUpType, QuestionPriority
)


DEFAULT_FIELD_CATALOG: Tuple[FieldCatalogEntry, ...] = (
    # critical
    FieldCatalogEntry(
        field_name="company_name", weight=20, category=FieldCategory.CRITICAL,
        label="Company Name",
        question="What is your organization's name?",
        follow_up_type=FollowUpType.CLARIFICATION,
    ),
    FieldCatalogEntry(
        field_name="industry", weight=15, category=FieldCategory.CRITICAL,
        label="Industry",
        question="What industry or sector does your organization operate in?",
        follow_up_type=FollowUpType.CLARIFICATION,
    ),
    FieldCatalogEntry(
        field_name="vision_statement", weight=25, category=FieldCategory.CRITICAL,
        label="Vision Statement",
        question=(
            "What is your current vision statement, or what vision would you like "
            "to develop for your organization?"
        ),
    ),
    # important
    FieldCatalogEntry(
        field_name="key_themes", weight=10, category=FieldCategory.IMPORTANT,
        label="Strategic Themes",
        question=(
            "What are the main strategic themes or focus areas that will drive "
            "your organization forward?"
        ),
    ),
    FieldCatalogEntry(
        field_name="success_metrics", weight=10, category=FieldCategory.IMPORTANT,
        label="Success Metrics",
        question=(
            "How will you measure success? What specific metrics or KPIs are most "
            "important for tracking progress?"
        ),
    ),
    FieldCatalogEntry(
        field_name="target_outcomes", weight=8, category=FieldCategory.IMPORTANT,
        label="Target Outcomes",
        question="What specific outcomes or results do you want to achieve with this strategic vision?",
    ),
    FieldCatalogEntry(
        field_name="current_strategy", weight=7, category=FieldCategory.IMPORTANT,
        label="Current Strategy",
        question="What is your organization's current strategic direction or approach?",
    ),
    # enhancement
    FieldCatalogEntry(field_name="competitive_landscape", weight=3, category=FieldCategory.ENHANCEMENT,
                      label="Competitive Analysis"),
    FieldCatalogEntry(field_name="market_size", weight=3, category=FieldCategory.ENHANCEMENT,
                      label="Market Context"),
    FieldCatalogEntry(field_name="constraints", weight=2, category=FieldCategory.ENHANCEMENT,
                      label="Constraints"),
    FieldCatalogEntry(field_name="assumptions", weight=2, category=FieldCategory.ENHANCEMENT,
                      label="Assumptions"),
    # metric
    FieldCatalogEntry(field_name="timeline", weight=5, category=FieldCategory.METRIC,
                      label="Timeline"),
    FieldCatalogEntry(field_name="strategic_priorities", weight=5, category=FieldCategory.METRIC,
                      label="Strategic Priorities"),
    FieldCatalogEntry(field_name="company_size", weight=3, category=FieldCategory.METRIC,
                      label="Company Size"),
)

# Fields whose schema type is a list of strings
LIST_FIELDS = frozenset({
    "key_themes", "success_metrics", "target_outcomes", "constraints",
    "assumptions", "strategic_priorities",
})

# Quality below this marks a critical/important field as a gap
WEAK_THRESHOLDS: Dict[FieldCategory, float] = {
    FieldCategory.CRITICAL: 0.5,
    FieldCategory.IMPORTANT: 0.5,
}

# (stage, fields, threshold to pass the stage), in progression order
STAGE_GATES: Tuple[Tuple[FocusStage, Tuple[str, ...], float], ...] = (
    (FocusStage.BASIC_INFO, ("company_name", "industry"), 0.8),
    (FocusStage.STRATEGY, ("vision_statement", "key_themes", "current_strategy"), 0.7),
    (FocusStage.METRICS, ("success_metrics", "target_outcomes", "timeline"), 0.6),
    (FocusStage.IMPLEMENTATION, ("strategic_priorities", "constraints", "competitive_landscape"), 1.0),
)

# (keywords, question, target fields, follow-up type)
INDUSTRY_RULES: Tuple[Tuple[Tuple[str, ...], str, Tuple[str, ...], FollowUpType], ...] = (
    (
        ("healthcare", "medical"),
        "What specific healthcare challenges or patient outcomes is your organization focused on improving?",
        ("target_outcomes", "key_themes"),
        FollowUpType.EXPANSION,
    ),
    (
        ("fintech", "financial"),
        "What financial services or user experiences are you looking to transform or improve?",
        ("target_outcomes", "current_strategy"),
        FollowUpType.EXPANSION,
    ),
    (
        ("tech", "software", "saas"),
        "What technology problems are you solving, and who is your target user base?",
        ("target_outcomes", "competitive_landscape"),
        FollowUpType.EXPANSION,
    ),
)

# (minimum head count, question, target fields); first matching bucket wins
SIZE_RULES: Tuple[Tuple[int, str, Tuple[str, ...]], ...] = (
    (
        500,
        "As a larger organization, how do you plan to ensure alignment and communication "
        "of this vision across all teams and departments?",
        ("strategic_priorities", "constraints"),
    ),
    (
        50,
        "What are your key growth priorities as you scale your organization?",
        ("strategic_priorities", "target_outcomes"),
    ),
    (
        1,
        "As a smaller organization, what are your biggest opportunities for impact and growth?",
        ("target_outcomes", "success_metrics"),
    ),
)

# (keywords, question, target fields, follow-up type, trigger label)
CONTEXT_RULES: Tuple[Tuple[Tuple[str, ...], str, Tuple[str, ...], FollowUpType, str], ...] = (
    (
        ("competitor", "competition"),
        "What sets your organization apart from competitors in your space?",
        ("competitive_landscape", "key_themes"),
        FollowUpType.EXPANSION,
        "competition mentioned",
    ),
    (
        ("challenge", "problem"),
        "What are the main constraints or challenges that might impact achieving this vision?",
        ("constraints", "assumptions"),
        FollowUpType.CLARIFICATION,
        "challenges mentioned",
    ),
)

# How many trailing context entries the context rules look at
CONTEXT_WINDOW = 3

FOCUS_RECOMMENDATIONS: Dict[FocusStage, str] = {
    FocusStage.BASIC_INFO: "Start by clearly defining your organization's core identity and industry context",
    FocusStage.STRATEGY: "Develop your strategic vision and key themes to provide clear direction",
    FocusStage.METRICS: "Define specific success metrics and target outcomes to measure progress",
    FocusStage.IMPLEMENTATION: (
        "Focus on implementation details like priorities, constraints, and competitive positioning"
    ),
}

SIZE_PRIORITY = QuestionPriority.MEDIUM
INDUSTRY_PRIORITY = QuestionPriority.MEDIUM
CONTEXT_PRIORITY = QuestionPriority.LOW
GAP_PRIORITY = QuestionPriority.HIGH


def catalog_field_names(catalog: Tuple[FieldCatalogEntry, ...] = DEFAULT_FIELD_CATALOG) -> List[str]:
    return [entry.field_name for entry in catalog]
