"""
Review Policy - Human Review Routing

Decides whether a processed document must go to a human before its workflow
can advance, and why. Rules are evaluated independently and every rule that
fires contributes a reason, in a fixed order:

1. Unidentified document (classified as unknown)
2. Legal category (lease, option, easement, ppa)
3. Extraction confidence below the configured threshold
4. A financial commitment above the configured amount
5. Missing critical fields (opt-in)

The policy is pure: it reads only its arguments and its config and never
raises on odd input (non-numeric amounts are ignored).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Any, Optional, Union

from nodes.classifier import DocumentCategory
from nodes.extractor import get_nested_value
from nodes.validator import get_critical_fields, missing_critical_fields


LEGAL_CATEGORIES = frozenset({
    DocumentCategory.LEASE,
    DocumentCategory.OPTION,
    DocumentCategory.EASEMENT,
    DocumentCategory.PPA,
})

# Fields that represent a financial commitment, checked in this order
FINANCIAL_FIELDS = ["rent.signingBonus", "signingBonus", "purchasePrice", "optionPayment"]

# Below this extraction confidence a review is urgent
HIGH_URGENCY_CONFIDENCE = 0.7


class Urgency(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ReviewPolicyConfig:
    """Thresholds for review routing."""
    confidence_threshold: float = 0.90
    financial_threshold: float = 10_000.0
    flag_missing_critical_fields: bool = False

    @classmethod
    def from_pipeline_config(cls, config) -> "ReviewPolicyConfig":
        return cls(
            confidence_threshold=config.review_confidence_threshold,
            financial_threshold=config.financial_commitment_threshold,
            flag_missing_critical_fields=config.flag_missing_critical_fields,
        )


@dataclass
class ReviewDecision:
    requires_review: bool
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"requiresReview": self.requires_review, "reasons": list(self.reasons)}


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", "").replace("$", "").strip())
        except ValueError:
            return None
    return None


def _format_money(amount: float) -> str:
    return f"${amount:,.0f}" if float(amount).is_integer() else f"${amount:,.2f}"


def evaluate_review(
    category: Union[DocumentCategory, str, None],
    confidence: Any,
    extracted_data: Optional[Dict[str, Any]],
    config: Optional[ReviewPolicyConfig] = None,
) -> ReviewDecision:
    """
    Evaluate all review rules for a processed document.

    `requires_review` is true exactly when at least one reason applies.
    """
    config = config or ReviewPolicyConfig()
    if not isinstance(category, DocumentCategory):
        category = DocumentCategory.from_string(category)
    data = extracted_data if isinstance(extracted_data, dict) else {}
    reasons: List[str] = []

    if category == DocumentCategory.UNKNOWN:
        reasons.append("Document type could not be identified")

    if category in LEGAL_CATEGORIES:
        reasons.append("Legal document requires attorney review")

    score = _as_number(confidence)
    if score is not None and score < config.confidence_threshold:
        reasons.append(
            f"Extraction confidence ({round(score * 100)}%) below "
            f"{round(config.confidence_threshold * 100)}% threshold"
        )

    for path in FINANCIAL_FIELDS:
        amount = _as_number(get_nested_value(data, path))
        if amount is not None and amount > config.financial_threshold:
            reasons.append(
                f"Financial commitment > {_format_money(config.financial_threshold)} requires approval"
            )
            break

    if config.flag_missing_critical_fields:
        missing = missing_critical_fields(data, get_critical_fields(category))
        if missing:
            reasons.append(f"Missing critical fields: {', '.join(missing)}")

    return ReviewDecision(requires_review=bool(reasons), reasons=reasons)


def determine_urgency(confidence: Any) -> str:
    """High urgency below 0.7 extraction confidence, medium otherwise."""
    score = _as_number(confidence)
    if score is not None and score < HIGH_URGENCY_CONFIDENCE:
        return Urgency.HIGH.value
    return Urgency.MEDIUM.value
