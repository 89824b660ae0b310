"""
Document Classifier - Land & Energy Document Categorisation

Assigns a document category and a classification confidence from raw text.

The default backend is a fixed, ordered table of category detectors: the
first detector whose pattern appears in the text wins. No match (or empty
input) yields `unknown` at 0.3. A model-backed classifier can be swapped in
behind the same `classify(text) -> ClassificationResult` contract; the
LangChain adapter below is one such backend.

Classification confidence measures category certainty only. Extraction
completeness is scored separately (see nodes/validator.py).
"""

import re
import json
import time
import logging
from typing import List, Dict, Any, Optional, Tuple, Protocol
from dataclasses import dataclass
from enum import Enum

from langchain_core.messages import HumanMessage, SystemMessage

# Configure logger
logger = logging.getLogger(__name__)


# ============================================================================
# Document Categories
# ============================================================================

class DocumentCategory(Enum):
    """
    Categories of documents handled by the land acquisition pipeline.
    """
    # Site control (legal)
    LEASE = "lease"
    OPTION = "option"
    EASEMENT = "easement"

    # Title & land
    TITLE_REPORT = "title_report"
    SURVEY = "survey"

    # Grid
    INTERCONNECTION_AGREEMENT = "interconnection_agreement"
    SYSTEM_IMPACT_STUDY = "system_impact_study"
    FACILITY_STUDY = "facility_study"

    # Permitting & environmental
    CUP_APPLICATION = "cup_application"
    ENVIRONMENTAL = "environmental"

    # Offtake (legal)
    PPA = "ppa"

    UNKNOWN = "unknown"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "DocumentCategory":
        """Convert string to DocumentCategory, case-insensitive."""
        if not value:
            return cls.UNKNOWN

        value_lower = value.lower().strip().replace(" ", "_").replace("-", "_")

        for category in cls:
            if category.value == value_lower:
                return category

        # Common variations
        if value_lower in ("environmental_report", "environmental_site_assessment", "esa"):
            return cls.ENVIRONMENTAL
        if value_lower in ("power_purchase_agreement",):
            return cls.PPA
        if value_lower in ("land_lease", "lease_agreement", "ground_lease"):
            return cls.LEASE

        return cls.UNKNOWN


# Confidence reported when no detector matches
UNKNOWN_CONFIDENCE = 0.3


# Ordered detector table: (pattern, category, confidence). First match wins.
CATEGORY_DETECTORS: List[Tuple[str, DocumentCategory, float]] = [
    (r"lease\s+agreement", DocumentCategory.LEASE, 0.95),
    (r"power\s+purchase\s+agreement", DocumentCategory.PPA, 0.97),
    (r"environmental\s+site\s+assessment", DocumentCategory.ENVIRONMENTAL, 0.94),
    (r"option\s+(?:to|for)\s+(?:lease|purchase)|option\s+agreement", DocumentCategory.OPTION, 0.92),
    (r"easement\s+agreement|grant\s+of\s+easement", DocumentCategory.EASEMENT, 0.93),
    (r"interconnection\s+agreement", DocumentCategory.INTERCONNECTION_AGREEMENT, 0.93),
    (r"system\s+impact\s+study", DocumentCategory.SYSTEM_IMPACT_STUDY, 0.93),
    (r"facilit(?:y|ies)\s+study", DocumentCategory.FACILITY_STUDY, 0.92),
    (r"conditional\s+use\s+permit", DocumentCategory.CUP_APPLICATION, 0.91),
    (r"title\s+(?:commitment|report)|commitment\s+for\s+title\s+insurance", DocumentCategory.TITLE_REPORT, 0.92),
    (r"alta(?:/nsps)?\s+(?:land\s+title\s+)?survey|boundary\s+survey", DocumentCategory.SURVEY, 0.90),
    (r"environmental\s+(?:impact\s+)?report|phase\s+i\s+environmental", DocumentCategory.ENVIRONMENTAL, 0.90),
    # Broad fallbacks, lower confidence
    (r"\blessor\b.*\blessee\b|\bground\s+lease\b|\bsolar\s+lease\b", DocumentCategory.LEASE, 0.75),
    (r"\beasement\b", DocumentCategory.EASEMENT, 0.70),
]


# ============================================================================
# Classification Result
# ============================================================================

@dataclass
class ClassificationResult:
    """Result of document classification."""

    category: DocumentCategory
    confidence: float  # 0.0 to 1.0
    method: str  # "keyword", "llm", "none"

    matched_pattern: Optional[str] = None
    reasoning: Optional[str] = None
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "category": self.category.value,
            "confidence": round(self.confidence, 4),
            "method": self.method,
            "matched_pattern": self.matched_pattern,
            "reasoning": self.reasoning,
            "processing_time_ms": round(self.processing_time_ms, 2),
        }


class Classifier(Protocol):
    """Any classification backend."""

    def classify(self, text: str) -> ClassificationResult:
        ...


def _unknown_result(reasoning: str, method: str = "none", start_time: Optional[float] = None) -> ClassificationResult:
    elapsed = (time.time() - start_time) * 1000 if start_time else 0.0
    return ClassificationResult(
        category=DocumentCategory.UNKNOWN,
        confidence=UNKNOWN_CONFIDENCE,
        method=method,
        reasoning=reasoning,
        processing_time_ms=elapsed,
    )


# ============================================================================
# Keyword-Based Classification
# ============================================================================

@dataclass
class ClassifierConfig:
    """Configuration for document classification."""

    # First N chars sent to the LLM
    max_chars_for_classification: int = 5000

    # LLM settings (only used by LlmClassifier)
    llm_provider: str = "openai"  # "openai", "anthropic"
    llm_model: str = "gpt-4o-mini"
    llm_temperature: float = 0.0  # Deterministic for classification
    llm_max_tokens: int = 500


class KeywordClassifier:
    """
    Pattern table classifier. First matching detector wins.

    The whole text is searched; `max_chars_for_classification` only bounds
    what the LLM backend is sent.
    """

    def __init__(
        self,
        detectors: Optional[List[Tuple[str, DocumentCategory, float]]] = None,
        config: Optional[ClassifierConfig] = None,
    ):
        self.detectors = detectors if detectors is not None else CATEGORY_DETECTORS
        self.config = config or ClassifierConfig()
        self._compiled = [
            (re.compile(pattern, re.IGNORECASE | re.DOTALL), category, confidence)
            for pattern, category, confidence in self.detectors
        ]

    def classify(self, text: str) -> ClassificationResult:
        start_time = time.time()

        if not isinstance(text, str) or not text.strip():
            return _unknown_result("Empty document text", method="keyword", start_time=start_time)

        for compiled, category, confidence in self._compiled:
            if compiled.search(text):
                return ClassificationResult(
                    category=category,
                    confidence=confidence,
                    method="keyword",
                    matched_pattern=compiled.pattern,
                    reasoning=f"Matched keyword pattern for {category.value}",
                    processing_time_ms=(time.time() - start_time) * 1000,
                )

        return _unknown_result("No keyword patterns matched", method="keyword", start_time=start_time)


# ============================================================================
# LLM-Based Classification
# ============================================================================

CLASSIFICATION_SYSTEM_PROMPT = """You are a document classifier for utility-scale solar land acquisition and development.

Classify the document into ONE of these categories:
- lease: Land lease agreements for solar projects
- option: Option to lease or purchase agreements
- easement: Easement agreements (access, transmission, etc.)
- title_report: Title reports and commitments
- survey: Land surveys and ALTA surveys
- interconnection_agreement: Utility interconnection agreements
- system_impact_study: Grid system impact studies
- facility_study: Facility studies from utilities
- cup_application: Conditional use permit applications
- environmental: Environmental site assessments and environmental reports
- ppa: Power purchase agreements
- unknown: Cannot determine document type

Respond in JSON format:
{
    "category": "<category name exactly as listed above>",
    "confidence": <0.0-1.0>,
    "reasoning": "<brief explanation>"
}"""


def build_chat_model(
    provider: str,
    model: str,
    temperature: float = 0.0,
    max_tokens: int = 4096,
):
    """
    Build a LangChain chat model for the configured provider.

    Raises:
        ValueError: If the provider is not supported
    """
    if provider == "openai":
        from langchain_openai import ChatOpenAI
        return ChatOpenAI(
            model=model,
            temperature=temperature,
            max_completion_tokens=max_tokens,
        )
    if provider == "anthropic":
        from langchain_anthropic import ChatAnthropic
        return ChatAnthropic(  # type: ignore[call-arg]
            model_name=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )
    raise ValueError(f"Unknown LLM provider: {provider}")


def parse_json_response(response_text: str) -> Any:
    """
    Parse a model reply as JSON, tolerating markdown code fences.

    Raises:
        json.JSONDecodeError: If the reply is not valid JSON
    """
    if "```json" in response_text:
        response_text = response_text.split("```json")[1].split("```")[0]
    elif "```" in response_text:
        response_text = response_text.split("```")[1].split("```")[0]
    return json.loads(response_text.strip())


class LlmClassifier:
    """
    Chat-model backed classifier.

    Transport errors propagate so the pipeline's retry policy can handle
    them. An unparseable reply is a valid (if useless) answer and yields
    `unknown` at 0.0.
    """

    def __init__(self, llm=None, config: Optional[ClassifierConfig] = None):
        self.config = config or ClassifierConfig()
        self.llm = llm or build_chat_model(
            self.config.llm_provider,
            self.config.llm_model,
            temperature=self.config.llm_temperature,
            max_tokens=self.config.llm_max_tokens,
        )

    def classify(self, text: str) -> ClassificationResult:
        start_time = time.time()

        if not isinstance(text, str) or not text.strip():
            return _unknown_result("Empty document text", method="llm", start_time=start_time)

        messages = [
            SystemMessage(content=CLASSIFICATION_SYSTEM_PROMPT),
            HumanMessage(
                content=f"Document text (first {self.config.max_chars_for_classification} characters):\n"
                f"{text[:self.config.max_chars_for_classification]}"
            ),
        ]

        response = self.llm.invoke(messages)
        response_text = str(response.content)

        try:
            result_json = parse_json_response(response_text)
            category = DocumentCategory.from_string(result_json.get("category"))
            confidence = float(result_json.get("confidence", 0.0))
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
            logger.error(f"Failed to parse LLM classification response: {e}")
            return ClassificationResult(
                category=DocumentCategory.UNKNOWN,
                confidence=0.0,
                method="llm",
                reasoning="Unparseable model response",
                processing_time_ms=(time.time() - start_time) * 1000,
            )

        return ClassificationResult(
            category=category,
            confidence=max(0.0, min(1.0, confidence)),
            method="llm",
            reasoning=result_json.get("reasoning"),
            processing_time_ms=(time.time() - start_time) * 1000,
        )


# ============================================================================
# Main Classification Function
# ============================================================================

def build_classifier(backend: str = "keyword", config: Optional[ClassifierConfig] = None) -> Classifier:
    """Select a classifier backend by name ("keyword" or "llm")."""
    if backend == "keyword":
        return KeywordClassifier(config=config)
    if backend == "llm":
        return LlmClassifier(config=config)
    raise ValueError(f"Unknown classifier backend: {backend}")


_default_classifier = KeywordClassifier()


def classify_document(text: str, classifier: Optional[Classifier] = None) -> ClassificationResult:
    """
    Classify a document with the given backend (keyword table by default).
    """
    result = (classifier or _default_classifier).classify(text)
    logger.info(
        f"Classified as {result.category.value} "
        f"({result.confidence:.0%} confidence, {result.method})"
    )
    return result
