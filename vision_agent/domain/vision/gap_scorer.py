from typing import Dict, Any, List, Mapping, Optional, Sequence, Tuple
import re
import structlog

from vision_agent.domain.models.vision_state import (
    FieldCatalogEntry, FieldCategory, FocusStage, FollowUpType, GapResult, SmartQuestion, skipped_field_names
)
from vision_agent.domain.vision.field_catalog import (
    CONTEXT_PRIORITY, CONTEXT_RULES, CONTEXT_WINDOW, DEFAULT_FIELD_CATALOG,
    FOCUS_RECOMMENDATIONS, GAP_PRIORITY, INDUSTRY_PRIORITY, INDUSTRY_RULES,
    SIZE_PRIORITY, SIZE_RULES, STAGE_GATES, WEAK_THRESHOLDS
)

logger = structlog.get_logger(__name__)

_FIRST_INT = re.compile(r"\d[\d,]*")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def field_quality(value: Any, category: FieldCategory) -> float:
    """Quality in [0, 1] of one field value, by category"""

    if value is None:
        return 0.0

    if isinstance(value, str):
        length = len(value.strip())
        if length == 0:
            return 0.0
        if category == FieldCategory.CRITICAL:
            if length < 3:
                return 0.2
            if length < 10:
                return 0.5
            if length < 50:
                return 0.8
            return 1.0
        if length < 10:
            return 0.4
        if length < 30:
            return 0.7
        return 1.0

    if isinstance(value, (list, tuple)):
        count = sum(
            1 for item in value
            if item is not None and not (isinstance(item, str) and not item.strip())
        )
        if count == 0:
            return 0.0
        if category in (FieldCategory.CRITICAL, FieldCategory.IMPORTANT):
            return {1: 0.4, 2: 0.7}.get(count, 1.0)
        return 0.6 if count == 1 else 1.0

    if _is_number(value):
        return 1.0 if value > 0 else 0.0

    if isinstance(value, dict):
        return 1.0 if value else 0.0

    return 1.0 if value else 0.0


def parse_company_size(value: Any) -> int:
    """Head count from a number or a free-text size such as '1,200 employees'"""
    if _is_number(value):
        return int(value)
    if isinstance(value, str):
        match = _FIRST_INT.search(value)
        if match:
            return int(match.group(0).replace(",", ""))
    return 0


class GapScorer:
    """
    Measures completeness of a vision snapshot against the weighted catalog
    and ranks candidate follow-up questions.
    """

    def __init__(self, catalog: Sequence[FieldCatalogEntry] = DEFAULT_FIELD_CATALOG):
        self.catalog = tuple(catalog)
        self._entries = {entry.field_name: entry for entry in self.catalog}
        self._order = {entry.field_name: index for index, entry in enumerate(self.catalog)}
        self._total_weight = sum(entry.weight for entry in self.catalog)

    def field_scores(self, state: Mapping[str, Any]) -> Dict[str, float]:
        return {
            entry.field_name: field_quality(state.get(entry.field_name), entry.category)
            for entry in self.catalog
        }

    def completeness(self, state: Mapping[str, Any]) -> float:
        """Weighted completeness on the closed range [0, 100]"""
        if not self._total_weight:
            return 0.0
        scores = self.field_scores(state or {})
        weighted = sum(scores[entry.field_name] * entry.weight for entry in self.catalog)
        return round(min(100.0, max(0.0, 100 * weighted / self._total_weight)), 2)

    def score(self, state: Mapping[str, Any], context: Sequence[str] = ()) -> GapResult:
        """Full gap analysis of a snapshot plus recent conversation context"""

        state = state or {}
        scores = self.field_scores(state)

        critical_gaps: List[str] = []
        weak_fields: List[str] = []
        enhancement_gaps: List[str] = []
        for entry in self.catalog:
            q = scores[entry.field_name]
            threshold = WEAK_THRESHOLDS.get(entry.category)
            if threshold is not None:
                if q < threshold:
                    critical_gaps.append(entry.field_name)
                    if q > 0:
                        weak_fields.append(entry.field_name)
            elif q == 0:
                enhancement_gaps.append(entry.field_name)

        metadata = state.get("metadata") if isinstance(state.get("metadata"), dict) else {}
        stage_scores = self.stage_scores(scores)
        focus = self.suggest_focus(stage_scores, metadata.get("focus_stage"))

        skipped = set(skipped_field_names(metadata))
        candidates = self.rank(self._candidates(state, critical_gaps, context), skipped)

        completeness = self.completeness(state)
        result = GapResult(
            completeness_score=completeness,
            critical_gaps=critical_gaps,
            weak_fields=weak_fields,
            enhancement_gaps=enhancement_gaps,
            field_scores=scores,
            stage_scores=stage_scores,
            suggested_focus=focus,
            next_question=candidates[0] if candidates else None,
            candidate_questions=candidates,
            recommendations=self._recommendations(focus, critical_gaps, completeness),
        )

        logger.debug(
            "Scored vision state",
            completeness=completeness,
            critical_gaps=len(critical_gaps),
            focus=focus.value,
            candidates=len(candidates)
        )
        return result

    def stage_scores(self, scores: Mapping[str, float]) -> Dict[str, float]:
        stage_scores = {}
        for stage, fields, _ in STAGE_GATES:
            values = [scores.get(field, 0.0) for field in fields]
            stage_scores[stage.value] = round(sum(values) / len(values), 4) if values else 0.0
        return stage_scores

    def suggest_focus(self, stage_scores: Mapping[str, float], previous: Optional[str] = None) -> FocusStage:
        """Advance through the stage gates starting at the previously recorded stage"""

        order = [stage for stage, _, _ in STAGE_GATES]
        try:
            start = order.index(FocusStage(previous)) if previous else 0
        except ValueError:
            start = 0

        index = start
        while index < len(order) - 1:
            stage, _, threshold = STAGE_GATES[index]
            if stage_scores.get(stage.value, 0.0) < threshold:
                break
            index += 1
        return order[index]

    def _candidates(
        self,
        state: Mapping[str, Any],
        critical_gaps: List[str],
        context: Sequence[str]
    ) -> List[SmartQuestion]:
        questions: List[SmartQuestion] = []

        for field in critical_gaps:
            entry = self._entries[field]
            if entry.question:
                questions.append(SmartQuestion(
                    question=entry.question,
                    target_fields=[field],
                    priority=GAP_PRIORITY,
                    follow_up_type=entry.follow_up_type,
                ))

        industry = state.get("industry")
        if isinstance(industry, str) and industry.strip():
            lowered = industry.lower()
            for keywords, question, targets, follow_up in INDUSTRY_RULES:
                if any(keyword in lowered for keyword in keywords):
                    questions.append(SmartQuestion(
                        question=question,
                        target_fields=list(targets),
                        priority=INDUSTRY_PRIORITY,
                        follow_up_type=follow_up,
                        industry_specific=True,
                    ))

        size = parse_company_size(state.get("company_size"))
        if size > 0:
            for minimum, question, targets in SIZE_RULES:
                if size >= minimum:
                    questions.append(SmartQuestion(
                        question=question,
                        target_fields=list(targets),
                        priority=SIZE_PRIORITY,
                        follow_up_type=FollowUpType.EXPANSION,
                    ))
                    break

        recent = " ".join(str(entry) for entry in list(context)[-CONTEXT_WINDOW:]).lower()
        if recent:
            for keywords, question, targets, follow_up, trigger in CONTEXT_RULES:
                if any(keyword in recent for keyword in keywords):
                    questions.append(SmartQuestion(
                        question=question,
                        target_fields=list(targets),
                        priority=CONTEXT_PRIORITY,
                        follow_up_type=follow_up,
                        context_trigger=trigger,
                    ))

        return questions

    def rank(self, questions: List[SmartQuestion], skipped: Optional[set] = None) -> List[SmartQuestion]:
        """Drop skipped targets, then order by priority, target weight and declaration order"""

        skipped = skipped or set()
        kept: List[SmartQuestion] = []
        for question in questions:
            targets = [field for field in question.target_fields if field not in skipped]
            if not targets:
                continue
            if len(targets) != len(question.target_fields):
                question = question.model_copy(update={"target_fields": targets})
            kept.append(question)

        return sorted(kept, key=self._rank_key)

    def _rank_key(self, question: SmartQuestion) -> Tuple[int, float, int]:
        weights = [self._entries[f].weight for f in question.target_fields if f in self._entries]
        order = [self._order[f] for f in question.target_fields if f in self._order]
        return (
            question.priority.rank,
            -(max(weights) if weights else 0.0),
            min(order) if order else len(self._order),
        )

    def _recommendations(self, focus: FocusStage, critical_gaps: List[str], completeness: float) -> List[str]:
        recommendations = [FOCUS_RECOMMENDATIONS[focus]]

        if len(critical_gaps) > 3:
            recommendations.append(
                "Consider focusing on the most critical gaps first to build a strong foundation"
            )

        if completeness < 30:
            recommendations.append(
                "Your vision needs significant development. Consider starting with basic company "
                "information and core strategic themes"
            )
        elif completeness < 70:
            recommendations.append(
                "Your vision foundation is good. Focus on adding specific metrics and implementation details"
            )
        else:
            recommendations.append(
                "Your vision is well-developed. Consider refining details and ensuring all "
                "stakeholders are aligned"
            )
        return recommendations
