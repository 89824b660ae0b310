"""
Validator Node - Extraction Confidence Scoring

Scores how complete an extraction is by counting which of the category's
critical fields were actually found. This is independent of classification
confidence: a document can be confidently a lease while its lease terms are
mostly missing.
"""

import logging
from typing import List, Dict, Any, Optional, Union

from nodes.classifier import DocumentCategory
from nodes.extractor import get_nested_value

logger = logging.getLogger(__name__)


# Critical fields per category. Categories not listed have none.
CRITICAL_FIELDS: Dict[DocumentCategory, List[str]] = {
    DocumentCategory.LEASE: ["lessor", "totalAcres", "initialTermYears", "rent"],
    DocumentCategory.PPA: ["buyer", "seller", "contractCapacity", "price", "term"],
    DocumentCategory.OPTION: ["grantor", "grantee", "optionPeriod", "purchasePrice"],
    DocumentCategory.EASEMENT: ["grantor", "grantee", "purpose", "location"],
    DocumentCategory.TITLE_REPORT: ["effectiveDate", "owner", "legalDescription"],
    DocumentCategory.SURVEY: ["surveyor", "date", "acreage", "legalDescription"],
    DocumentCategory.INTERCONNECTION_AGREEMENT: ["utility", "developer", "capacity", "poi"],
    DocumentCategory.SYSTEM_IMPACT_STUDY: ["utility", "capacity", "networkUpgrades"],
    DocumentCategory.FACILITY_STUDY: ["utility", "capacity", "estimatedCost"],
    DocumentCategory.CUP_APPLICATION: ["applicant", "projectName", "location", "capacity"],
    DocumentCategory.ENVIRONMENTAL: ["preparer", "date", "findings"],
}


def get_critical_fields(category: Union[DocumentCategory, str, None]) -> List[str]:
    """Critical fields for a category; empty for unknown or unlisted ones."""
    if not isinstance(category, DocumentCategory):
        category = DocumentCategory.from_string(category)
    return list(CRITICAL_FIELDS.get(category, []))


def is_field_found(data: Dict[str, Any], path: str) -> bool:
    """
    A field is found when its value is not None. An object-valued field
    counts only if at least one of its immediate sub-values is not None.
    """
    value = get_nested_value(data or {}, path)
    if value is None:
        return False
    if isinstance(value, dict):
        return any(v is not None for v in value.values())
    return True


def score_extraction(data: Dict[str, Any], critical_fields: List[str]) -> float:
    """
    Extraction confidence = found critical fields / total critical fields.

    An empty critical-field list scores 1.0: there is nothing to miss.
    """
    if not critical_fields:
        return 1.0
    found = sum(1 for path in critical_fields if is_field_found(data, path))
    return round(found / len(critical_fields), 4)


def missing_critical_fields(data: Dict[str, Any], critical_fields: List[str]) -> List[str]:
    """Critical fields that were not found, in declaration order."""
    return [path for path in critical_fields if not is_field_found(data, path)]


def score_document(
    data: Dict[str, Any],
    category: Union[DocumentCategory, str, None],
    critical_fields: Optional[List[str]] = None,
) -> float:
    """Score extracted data against its category's critical fields."""
    fields = critical_fields if critical_fields is not None else get_critical_fields(category)
    confidence = score_extraction(data, fields)
    missing = missing_critical_fields(data, fields)
    if missing:
        logger.info(f"Extraction confidence {confidence:.0%}; missing {', '.join(missing)}")
    else:
        logger.info(f"Extraction confidence {confidence:.0%}")
    return confidence
