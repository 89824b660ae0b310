"""
Extractor - Category-Specific Structured Data Extraction

Given document text and its assigned category, produces a structured field
map whose shape depends on the category (lease, PPA, option, ...).

Each category has one extractor satisfying `extract(text) -> field map`,
registered in a registry keyed by category. Adding a category means adding
an extractor class; existing extractors are never touched. Categories with
no registered extractor degrade to the generic extractor instead of raising,
so confidence scoring downstream can still run.

Scalar fields apply an ordered list of pattern candidates and keep the first
match. Every declared field is present in the output; a field with no match
is explicitly None.
"""

import re
import json
import logging
from dataclasses import dataclass
from typing import List, Dict, Any, Optional, Tuple, Callable, Union

from langchain_core.messages import HumanMessage, SystemMessage

from nodes.classifier import DocumentCategory, build_chat_model, parse_json_response

logger = logging.getLogger(__name__)


# ============================================================================
# Value Parsers
# ============================================================================

def parse_text(raw: str) -> Optional[str]:
    """Trim a captured phrase; empty captures count as no match."""
    value = raw.strip().strip("\"'").strip()
    return value or None


def parse_number(raw: str) -> Optional[Union[int, float]]:
    """Parse "1,250.5" style numbers. Whole values come back as int."""
    cleaned = raw.replace(",", "").strip()
    try:
        value = float(cleaned)
    except ValueError:
        return None
    return int(value) if value.is_integer() else value


def parse_currency_amount(text: str) -> Optional[Tuple[float, str]]:
    """
    Parse a currency amount from text.

    Handles formats:
    - $1,234.56
    - $1.5M or $1.5 million
    - 1,234.56 dollars
    - USD 1,234.56

    Returns:
        Tuple of (amount, original_match_text) or None if no match
    """
    if not text:
        return None

    text = text.strip()

    # Check for million/M suffix
    million_pattern = re.search(
        r'\$?\s*([\d,]+(?:\.\d{1,2})?)\s*(?:million|mil|m)\b',
        text, re.IGNORECASE
    )
    if million_pattern:
        num_str = million_pattern.group(1).replace(',', '')
        try:
            return (float(num_str) * 1_000_000, million_pattern.group(0))
        except ValueError:
            pass

    # Check for standard currency format
    currency_match = re.search(r'\$\s*([\d,]+(?:\.\d{1,2})?)', text)
    if currency_match:
        num_str = currency_match.group(1).replace(',', '')
        try:
            return (float(num_str), currency_match.group(0))
        except ValueError:
            pass

    # Check for "X dollars" / "USD X" formats
    dollars_match = re.search(
        r'([\d,]+(?:\.\d{1,2})?)\s*(?:dollars?|USD)|USD\s*([\d,]+(?:\.\d{1,2})?)',
        text, re.IGNORECASE
    )
    if dollars_match:
        num_str = (dollars_match.group(1) or dollars_match.group(2)).replace(',', '')
        try:
            return (float(num_str), dollars_match.group(0))
        except ValueError:
            pass

    # Plain number (last resort)
    plain_match = re.search(r'([\d,]*\d(?:\.\d{1,2})?)', text)
    if plain_match:
        num_str = plain_match.group(1).replace(',', '')
        try:
            return (float(num_str), plain_match.group(0))
        except ValueError:
            pass

    return None


def parse_currency(raw: str) -> Optional[float]:
    parsed = parse_currency_amount(raw)
    return parsed[0] if parsed else None


def parse_percentage(raw: str) -> Optional[float]:
    """Parse "2.5" / "2.5%" / "2.5 percent" into 2.5, rejecting out-of-range values."""
    match = re.search(r'(\d+(?:\.\d+)?)', raw)
    if not match:
        return None
    value = float(match.group(1))
    return value if 0 <= value <= 100 else None


# ============================================================================
# Nested Field Helpers
# ============================================================================

def get_nested_value(data: Dict[str, Any], path: str) -> Any:
    """Read a dotted path ("rent.signingBonus"); missing segments give None."""
    current: Any = data
    for key in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def set_nested_value(data: Dict[str, Any], path: str, value: Any) -> None:
    """Write a dotted path, creating intermediate maps."""
    keys = path.split(".")
    current = data
    for key in keys[:-1]:
        nxt = current.get(key)
        if not isinstance(nxt, dict):
            nxt = {}
            current[key] = nxt
        current = nxt
    current[keys[-1]] = value


# ============================================================================
# Field Specifications
# ============================================================================

# Date formats commonly seen in recorded instruments
DATE_CAPTURE = r"([A-Z][a-z]+\.?\s+\d{1,2},\s+\d{4}|\d{1,2}/\d{1,2}/\d{2,4}|\d{4}-\d{2}-\d{2})"

# A party name runs to the end of the line or the next comma
PARTY_CAPTURE = r"([^,\n]+)"


@dataclass
class FieldSpec:
    """
    A scalar field and its ordered pattern candidates.

    Each pattern must have exactly one capture group. The first pattern
    that matches and parses to a non-None value wins.
    """
    path: str
    patterns: List[str]
    parser: Callable[[str], Any] = parse_text
    flags: int = re.IGNORECASE

    def __post_init__(self):
        self._compiled = [re.compile(p, self.flags) for p in self.patterns]

    def extract(self, text: str) -> Any:
        for compiled in self._compiled:
            match = compiled.search(text)
            if not match:
                continue
            value = self.parser(match.group(1))
            if value is not None:
                return value
        return None


@dataclass
class ListFieldSpec:
    """A list-valued field: every match of the pattern, de-duplicated in order."""
    path: str
    pattern: str
    parser: Callable[[str], Any] = parse_text
    flags: int = re.IGNORECASE

    def extract(self, text: str) -> List[Any]:
        values: List[Any] = []
        for raw in re.findall(self.pattern, text, self.flags):
            value = self.parser(raw)
            if value is not None and value not in values:
                values.append(value)
        return values


# ============================================================================
# Extractors
# ============================================================================

class PatternExtractor:
    """
    Base class for category extractors driven by field specifications.

    Subclasses set `category`, `fields` and optionally `list_fields`.
    """
    category: DocumentCategory = DocumentCategory.UNKNOWN
    fields: List[FieldSpec] = []
    list_fields: List[ListFieldSpec] = []

    def field_paths(self) -> List[str]:
        return [f.path for f in self.fields] + [f.path for f in self.list_fields]

    def empty_result(self) -> Dict[str, Any]:
        """The schema with every field present and unfilled."""
        result: Dict[str, Any] = {}
        for spec in self.fields:
            set_nested_value(result, spec.path, None)
        for list_spec in self.list_fields:
            set_nested_value(result, list_spec.path, [])
        return result

    def extract(self, text: str) -> Dict[str, Any]:
        result = self.empty_result()
        if not isinstance(text, str) or not text.strip():
            return result

        for spec in self.fields:
            set_nested_value(result, spec.path, spec.extract(text))
        for list_spec in self.list_fields:
            set_nested_value(result, list_spec.path, list_spec.extract(text))
        return result


class ExtractorRegistry:
    """
    Extractors keyed by category, with a fallback for unregistered ones.
    """

    def __init__(self, fallback: Optional[PatternExtractor] = None):
        self._extractors: Dict[DocumentCategory, PatternExtractor] = {}
        self._fallback = fallback

    def register(self, extractor: PatternExtractor) -> PatternExtractor:
        if extractor.category in self._extractors:
            raise ValueError(f"Extractor for '{extractor.category.value}' already registered")
        self._extractors[extractor.category] = extractor
        return extractor

    def set_fallback(self, extractor: PatternExtractor) -> None:
        self._fallback = extractor

    def get(self, category: Union[DocumentCategory, str, None]) -> PatternExtractor:
        if not isinstance(category, DocumentCategory):
            category = DocumentCategory.from_string(category)
        extractor = self._extractors.get(category)
        if extractor is not None:
            return extractor
        if self._fallback is None:
            raise KeyError(f"No extractor for '{category.value}' and no fallback configured")
        return self._fallback

    def categories(self) -> List[DocumentCategory]:
        return list(self._extractors.keys())

    def __contains__(self, category: DocumentCategory) -> bool:
        return category in self._extractors


_registry = ExtractorRegistry()


def get_extractor_registry() -> ExtractorRegistry:
    """Get the global extractor registry."""
    return _registry


def register_extractor(cls):
    """Class decorator: instantiate and add to the global registry."""
    _registry.register(cls())
    return cls


@register_extractor
class LeaseExtractor(PatternExtractor):
    category = DocumentCategory.LEASE
    fields = [
        FieldSpec("lessor.name", [
            r"Lessor:\s*" + PARTY_CAPTURE,
            r"Landowner['\":\s]+" + PARTY_CAPTURE,
        ]),
        FieldSpec("lessee.name", [
            r"Lessee:\s*" + PARTY_CAPTURE,
            r"Developer['\":\s]+" + PARTY_CAPTURE,
        ]),
        FieldSpec("totalAcres", [
            r"(?:total|approximately|containing)\s+([\d,]+(?:\.\d+)?)\s*acres",
            r"([\d,]+(?:\.\d+)?)\s*acres",
        ], parser=parse_number),
        FieldSpec("county", [
            r"County\s+of\s+([A-Za-z]+)",
            r"County:\s*([A-Za-z]+)",
            r"([A-Z][a-z]+)\s+County",
        ]),
        FieldSpec("state", [
            r",\s*([A-Z]{2})\s+\d{5}",
            r"State:\s*([A-Z]{2})\b",
        ], flags=0),
        FieldSpec("initialTermYears", [
            r"initial\s+term[^\d]{0,40}(\d+)\s*(?:\(\d+\)\s*)?years",
            r"(\d+)\s*years",
        ], parser=parse_number),
        FieldSpec("rent.baseRentPerAcre", [
            r"(\$\s*[\d,]+(?:\.\d+)?)\s*(?:per|/)\s*acre",
            r"base\s+rent[^$\d]{0,30}(\$?\s*[\d,]+(?:\.\d+)?)",
        ], parser=parse_currency),
        FieldSpec("rent.annualEscalationPercent", [
            r"(\d+(?:\.\d+)?)\s*%\s*(?:annual(?:ly)?\s+)?escalat",
            r"escalat\w*[^\d%]{0,30}(\d+(?:\.\d+)?)\s*(?:%|percent)",
        ], parser=parse_percentage),
        FieldSpec("rent.signingBonus", [
            r"signing\s*bonus[:\s]+(\$?\s*[\d,]+(?:\.\d+)?)",
        ], parser=parse_currency),
    ]
    list_fields = [
        ListFieldSpec(
            "parcelNumbers",
            r"(?:APN|Parcel\s+(?:No\.?|Number|ID))[:#\s]+(\d[\d-]{5,})",
        ),
    ]


@register_extractor
class PpaExtractor(PatternExtractor):
    category = DocumentCategory.PPA
    fields = [
        FieldSpec("seller", [r"Seller:\s*" + PARTY_CAPTURE]),
        FieldSpec("buyer", [
            r"Buyer:\s*" + PARTY_CAPTURE,
            r"Purchaser:\s*" + PARTY_CAPTURE,
            r"Offtaker:\s*" + PARTY_CAPTURE,
        ]),
        FieldSpec("contractCapacity", [
            r"(?:contract(?:ed)?\s+)?capacity[^\d]{0,30}([\d,]+(?:\.\d+)?)\s*MW",
            r"([\d,]+(?:\.\d+)?)\s*MW(?:ac|dc)?\b",
        ], parser=parse_number),
        FieldSpec("price", [
            r"(\$\s*[\d,]+(?:\.\d+)?)\s*(?:per|/)\s*MWh",
            r"contract\s+price[:\s]+(\$?\s*[\d,]+(?:\.\d+)?)",
        ], parser=parse_currency),
        FieldSpec("term", [
            r"term\s+of\s+(\d+)\s*years",
            r"(\d+)[\s-]*year\s+term",
        ], parser=parse_number),
        FieldSpec("escalationPercent", [
            r"escalat\w*[^\d%]{0,30}(\d+(?:\.\d+)?)\s*(?:%|percent)",
        ], parser=parse_percentage),
        FieldSpec("deliveryPoint", [r"delivery\s+point[:\s]+([^,\n.]+)"]),
        FieldSpec("commercialOperationDate", [
            r"commercial\s+operation\s+date[^\w]{0,10}" + DATE_CAPTURE,
        ]),
    ]


@register_extractor
class OptionExtractor(PatternExtractor):
    category = DocumentCategory.OPTION
    fields = [
        FieldSpec("grantor", [
            r"(?:Grantor|Optionor):\s*" + PARTY_CAPTURE,
            r"Owner:\s*" + PARTY_CAPTURE,
        ]),
        FieldSpec("grantee", [r"(?:Grantee|Optionee):\s*" + PARTY_CAPTURE]),
        FieldSpec("optionPeriod", [
            r"option\s+(?:period|term)[^\d]{0,30}(\d+\s*(?:years?|months?))",
        ]),
        FieldSpec("purchasePrice", [
            r"purchase\s+price[:\s]+(\$?\s*[\d,]+(?:\.\d+)?(?:\s*(?:million|m)\b)?)",
        ], parser=parse_currency),
        FieldSpec("optionPayment", [
            r"option\s+(?:payment|fee|consideration)[:\s]+(\$?\s*[\d,]+(?:\.\d+)?)",
        ], parser=parse_currency),
        FieldSpec("totalAcres", [r"([\d,]+(?:\.\d+)?)\s*acres"], parser=parse_number),
    ]


@register_extractor
class EasementExtractor(PatternExtractor):
    category = DocumentCategory.EASEMENT
    fields = [
        FieldSpec("grantor", [r"Grantor:\s*" + PARTY_CAPTURE]),
        FieldSpec("grantee", [r"Grantee:\s*" + PARTY_CAPTURE]),
        FieldSpec("purpose", [
            r"for\s+the\s+purpose\s+of\s+([^.\n]+)",
            r"Purpose:\s*([^.\n]+)",
        ]),
        FieldSpec("location", [
            r"Location:\s*([^.\n]+)",
            r"(?:located|situated)\s+in\s+([^.\n]+)",
        ]),
        FieldSpec("widthFeet", [
            r"(\d+(?:\.\d+)?)[\s-]*(?:foot|feet|ft)\s+wide",
        ], parser=parse_number),
        FieldSpec("compensation", [
            r"(?:compensation|consideration)[:\s]+(\$?\s*[\d,]+(?:\.\d+)?)",
        ], parser=parse_currency),
    ]


@register_extractor
class EnvironmentalExtractor(PatternExtractor):
    category = DocumentCategory.ENVIRONMENTAL
    fields = [
        FieldSpec("preparer", [
            r"Prepared\s+by:?\s*" + PARTY_CAPTURE,
            r"Consultant:\s*" + PARTY_CAPTURE,
        ]),
        FieldSpec("date", [
            r"(?:Report\s+)?Date:\s*" + DATE_CAPTURE,
            r"dated\s+" + DATE_CAPTURE,
        ]),
        FieldSpec("findings", [
            r"(?:Findings|Conclusions?):\s*([^\n]+)",
            r"((?:no\s+)?recognized\s+environmental\s+conditions?[^.\n]*)",
        ]),
        FieldSpec("siteAddress", [r"(?:Site|Property)\s+Address:\s*([^\n]+)"]),
    ]


@register_extractor
class TitleReportExtractor(PatternExtractor):
    category = DocumentCategory.TITLE_REPORT
    fields = [
        FieldSpec("effectiveDate", [r"effective\s+date[^\w]{0,10}" + DATE_CAPTURE]),
        FieldSpec("owner", [
            r"(?:vested\s+in|Owner|Title\s+Holder):\s*" + PARTY_CAPTURE,
        ]),
        FieldSpec("legalDescription", [r"Legal\s+Description:\s*([^\n]+)"]),
        FieldSpec("commitmentNumber", [r"Commitment\s+(?:No\.?|Number)[:\s]+(\S+)"]),
    ]


@register_extractor
class SurveyExtractor(PatternExtractor):
    category = DocumentCategory.SURVEY
    fields = [
        FieldSpec("surveyor", [r"(?:Surveyor|Surveyed\s+by):\s*" + PARTY_CAPTURE]),
        FieldSpec("date", [r"(?:Date\s+of\s+Survey|Date):\s*" + DATE_CAPTURE]),
        FieldSpec("acreage", [r"([\d,]+(?:\.\d+)?)\s*acres"], parser=parse_number),
        FieldSpec("legalDescription", [r"Legal\s+Description:\s*([^\n]+)"]),
    ]


@register_extractor
class InterconnectionAgreementExtractor(PatternExtractor):
    category = DocumentCategory.INTERCONNECTION_AGREEMENT
    fields = [
        FieldSpec("utility", [
            r"(?:Transmission\s+Provider|Utility):\s*" + PARTY_CAPTURE,
        ]),
        FieldSpec("developer", [
            r"(?:Interconnection\s+Customer|Developer):\s*" + PARTY_CAPTURE,
        ]),
        FieldSpec("capacity", [r"([\d,]+(?:\.\d+)?)\s*MW"], parser=parse_number),
        FieldSpec("poi", [
            r"Point\s+of\s+Interconnection[:\s]+([^\n.]+)",
            r"POI:\s*([^\n.]+)",
        ]),
    ]


@register_extractor
class SystemImpactStudyExtractor(PatternExtractor):
    category = DocumentCategory.SYSTEM_IMPACT_STUDY
    fields = [
        FieldSpec("utility", [r"(?:Transmission\s+Provider|Utility):\s*" + PARTY_CAPTURE]),
        FieldSpec("capacity", [r"([\d,]+(?:\.\d+)?)\s*MW"], parser=parse_number),
        FieldSpec("networkUpgrades", [
            r"network\s+upgrades?[^$\d]{0,40}(\$\s*[\d,]+(?:\.\d+)?(?:\s*(?:million|m)\b)?)",
        ], parser=parse_currency),
    ]


@register_extractor
class FacilityStudyExtractor(PatternExtractor):
    category = DocumentCategory.FACILITY_STUDY
    fields = [
        FieldSpec("utility", [r"(?:Transmission\s+Provider|Utility):\s*" + PARTY_CAPTURE]),
        FieldSpec("capacity", [r"([\d,]+(?:\.\d+)?)\s*MW"], parser=parse_number),
        FieldSpec("estimatedCost", [
            r"(?:estimated|total)\s+cost[^$\d]{0,30}(\$\s*[\d,]+(?:\.\d+)?(?:\s*(?:million|m)\b)?)",
        ], parser=parse_currency),
    ]


@register_extractor
class CupApplicationExtractor(PatternExtractor):
    category = DocumentCategory.CUP_APPLICATION
    fields = [
        FieldSpec("applicant", [r"Applicant:\s*" + PARTY_CAPTURE]),
        FieldSpec("projectName", [r"Project(?:\s+Name)?:\s*([^\n]+)"]),
        FieldSpec("location", [r"(?:Location|Site):\s*([^\n]+)"]),
        FieldSpec("capacity", [r"([\d,]+(?:\.\d+)?)\s*MW"], parser=parse_number),
    ]


class GenericExtractor(PatternExtractor):
    """
    Fallback for categories without a dedicated extractor (and `unknown`).
    Pulls the fields most documents in this domain share.
    """
    category = DocumentCategory.UNKNOWN
    fields = [
        FieldSpec("documentDate", [
            r"(?:dated|effective\s+date|date)[:\s]+" + DATE_CAPTURE,
        ]),
        FieldSpec("totalAcres", [r"([\d,]+(?:\.\d+)?)\s*acres"], parser=parse_number),
        FieldSpec("county", [r"County\s+of\s+([A-Za-z]+)", r"County:\s*([A-Za-z]+)"]),
        FieldSpec("state", [r",\s*([A-Z]{2})\s+\d{5}"], flags=0),
    ]
    list_fields = [
        ListFieldSpec("parties", r"between\s+([^,\n]+?)\s+and\s+"),
        ListFieldSpec("amounts", r"(\$\s*[\d,]+(?:\.\d{2})?)", parser=parse_currency),
    ]


_registry.set_fallback(GenericExtractor())


# ============================================================================
# LLM-Backed Extraction
# ============================================================================

EXTRACTION_SYSTEM_PROMPT = """You extract structured data from land and energy development documents.

CRITICAL INSTRUCTIONS:
1. Extract ONLY information explicitly stated in the document
2. Use null for fields not found in the document
3. Be precise with dates and numbers
4. Return only valid JSON, no explanation"""


class LlmExtractor:
    """
    Chat-model backed extraction over the same per-category schema.

    The reply is normalised to the registered extractor's field paths, so
    the output shape is identical to pattern extraction. An unparseable
    reply falls back to the pattern extractor for that category.
    """

    def __init__(
        self,
        llm=None,
        registry: Optional[ExtractorRegistry] = None,
        provider: str = "openai",
        model: str = "gpt-4o-mini",
        max_chars: int = 10000,
    ):
        self.llm = llm or build_chat_model(provider, model)
        self.registry = registry or get_extractor_registry()
        self.max_chars = max_chars

    def extract(self, text: str, category: Union[DocumentCategory, str, None]) -> Dict[str, Any]:
        pattern_extractor = self.registry.get(category)
        schema = json.dumps(pattern_extractor.empty_result(), indent=2)
        category_name = (
            category.value if isinstance(category, DocumentCategory)
            else DocumentCategory.from_string(category).value
        )

        messages = [
            SystemMessage(content=EXTRACTION_SYSTEM_PROMPT),
            HumanMessage(
                content=f"Extract the key terms of this {category_name.replace('_', ' ')} document.\n\n"
                f"Document:\n{(text or '')[:self.max_chars]}\n\n"
                f"Return a JSON object matching this schema:\n{schema}"
            ),
        ]

        response = self.llm.invoke(messages)

        try:
            reply = parse_json_response(str(response.content))
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse LLM extraction response: {e}")
            return pattern_extractor.extract(text)

        if not isinstance(reply, dict):
            logger.error("LLM extraction response was not a JSON object")
            return pattern_extractor.extract(text)

        result = pattern_extractor.empty_result()
        for spec in pattern_extractor.fields:
            set_nested_value(result, spec.path, get_nested_value(reply, spec.path))
        for list_spec in pattern_extractor.list_fields:
            values = get_nested_value(reply, list_spec.path)
            set_nested_value(result, list_spec.path, values if isinstance(values, list) else [])
        return result


# ============================================================================
# Main Extraction Function
# ============================================================================

def extract_fields(
    text: str,
    category: Union[DocumentCategory, str, None],
    registry: Optional[ExtractorRegistry] = None,
) -> Dict[str, Any]:
    """
    Extract the category-specific field map from document text.

    Never raises for an unsupported category; the generic extractor is used.
    """
    extractor = (registry or get_extractor_registry()).get(category)
    data = extractor.extract(text)
    found = sum(
        1 for path in extractor.field_paths()
        if get_nested_value(data, path) not in (None, [])
    )
    logger.info(
        f"Extracted {found}/{len(extractor.field_paths())} fields "
        f"with {type(extractor).__name__}"
    )
    return data


class RegistryExtractor:
    """Pattern extraction through the category registry."""

    def __init__(self, registry: Optional[ExtractorRegistry] = None):
        self.registry = registry or get_extractor_registry()

    def extract(self, text: str, category: Union[DocumentCategory, str, None]) -> Dict[str, Any]:
        return extract_fields(text, category, self.registry)


def build_extractor(backend: str = "pattern", provider: str = "openai", model: str = "gpt-4o-mini"):
    """Select an extraction backend by name ("pattern" or "llm")."""
    if backend == "pattern":
        return RegistryExtractor()
    if backend == "llm":
        return LlmExtractor(provider=provider, model=model)
    raise ValueError(f"Unknown extractor backend: {backend}")
