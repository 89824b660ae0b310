"""
Tests for category-specific extraction: field patterns, value parsing,
the extractor registry and the chat-model backend.
"""

import pytest
from unittest.mock import MagicMock

from nodes.classifier import DocumentCategory
from nodes.extractor import (
    ExtractorRegistry,
    FieldSpec,
    GenericExtractor,
    LeaseExtractor,
    LlmExtractor,
    PatternExtractor,
    RegistryExtractor,
    build_extractor,
    extract_fields,
    get_extractor_registry,
    get_nested_value,
    parse_currency_amount,
    parse_number,
    parse_percentage,
    set_nested_value,
)


LEASE_TEXT = """SOLAR LAND LEASE AGREEMENT
Lessor: John Smith, 1200 Ranch Road, Austin, TX 78701
Lessee: Sunfield Solar LLC
The Premises contain approximately 500 acres in County: Travis.
APN: 0123-4567-89
The initial term of this Lease shall be 25 years.
Rent shall be $500 per acre per year with 2.5% annual escalation.
Lessee shall pay a signing bonus: $15,000 upon execution.
"""


# ============================================================================
# Parser Tests
# ============================================================================

class TestParseCurrencyAmount:
    """Tests for currency parsing."""

    def test_standard_format(self):
        assert parse_currency_amount("$1,234.56")[0] == 1234.56

    def test_million_suffix(self):
        assert parse_currency_amount("$1.5 million")[0] == 1_500_000

    def test_dollars_word(self):
        assert parse_currency_amount("15000 dollars")[0] == 15000

    def test_plain_number(self):
        assert parse_currency_amount("15,000")[0] == 15000

    def test_empty(self):
        assert parse_currency_amount("") is None
        assert parse_currency_amount("no money here") is None


class TestParseNumbers:

    def test_whole_numbers_are_int(self):
        assert parse_number("500") == 500
        assert isinstance(parse_number("500"), int)

    def test_commas_and_decimals(self):
        assert parse_number("1,250.5") == 1250.5

    def test_invalid(self):
        assert parse_number("abc") is None

    def test_percentage(self):
        assert parse_percentage("2.5%") == 2.5
        assert parse_percentage("250") is None


class TestNestedValues:

    def test_set_and_get(self):
        data = {}
        set_nested_value(data, "rent.signingBonus", 15000)
        assert data == {"rent": {"signingBonus": 15000}}
        assert get_nested_value(data, "rent.signingBonus") == 15000

    def test_missing_path_is_none(self):
        assert get_nested_value({"rent": None}, "rent.signingBonus") is None
        assert get_nested_value({}, "a.b.c") is None


# ============================================================================
# Field Spec Tests
# ============================================================================

class TestFieldSpec:

    def test_first_matching_pattern_wins(self):
        spec = FieldSpec("name", [r"Primary:\s*(\w+)", r"Secondary:\s*(\w+)"])
        assert spec.extract("Secondary: Bob Primary: Alice") == "Alice"

    def test_falls_through_to_later_pattern(self):
        spec = FieldSpec("name", [r"Primary:\s*(\w+)", r"Secondary:\s*(\w+)"])
        assert spec.extract("Secondary: Bob") == "Bob"

    def test_no_match_is_none(self):
        assert FieldSpec("name", [r"Primary:\s*(\w+)"]).extract("nothing") is None

    def test_unparseable_match_tries_next_pattern(self):
        spec = FieldSpec("n", [r"A:\s*(\S+)", r"B:\s*(\S+)"], parser=parse_number)
        assert spec.extract("A: none B: 42") == 42


# ============================================================================
# Lease Extraction Tests
# ============================================================================

class TestLeaseExtractor:

    def test_extracts_lease_terms(self):
        data = LeaseExtractor().extract(LEASE_TEXT)
        assert data["lessor"]["name"] == "John Smith"
        assert data["lessee"]["name"] == "Sunfield Solar LLC"
        assert data["totalAcres"] == 500
        assert data["county"] == "Travis"
        assert data["state"] == "TX"
        assert data["initialTermYears"] == 25
        assert data["rent"]["baseRentPerAcre"] == 500
        assert data["rent"]["annualEscalationPercent"] == 2.5
        assert data["rent"]["signingBonus"] == 15000
        assert data["parcelNumbers"] == ["0123-4567-89"]

    def test_landowner_and_developer_aliases(self):
        text = 'Landowner: "Jane Doe"\nDeveloper: Bright Acres Energy\n'
        data = LeaseExtractor().extract(text)
        assert data["lessor"]["name"] == "Jane Doe"
        assert data["lessee"]["name"] == "Bright Acres Energy"

    def test_every_field_present_when_unmatched(self):
        data = LeaseExtractor().extract("This document has no lease terms.")
        assert data["lessor"] == {"name": None}
        assert data["rent"] == {
            "baseRentPerAcre": None,
            "annualEscalationPercent": None,
            "signingBonus": None,
        }
        assert data["totalAcres"] is None
        assert data["parcelNumbers"] == []

    def test_empty_text(self):
        data = LeaseExtractor().extract("")
        assert data["totalAcres"] is None


class TestOtherExtractors:

    def test_ppa(self):
        text = (
            "POWER PURCHASE AGREEMENT\nSeller: Sunfield Solar LLC\nBuyer: Austin Energy\n"
            "Contract Capacity: 150 MW\nContract price of $42.50 per MWh for a term of 20 years."
        )
        data = extract_fields(text, DocumentCategory.PPA)
        assert data["seller"] == "Sunfield Solar LLC"
        assert data["buyer"] == "Austin Energy"
        assert data["contractCapacity"] == 150
        assert data["price"] == 42.5
        assert data["term"] == 20

    def test_option(self):
        text = (
            "OPTION AGREEMENT\nOptionor: Jane Doe\nOptionee: Sunfield Solar LLC\n"
            "The option period shall be 3 years. Purchase Price: $1.2 million. Option Payment: $25,000"
        )
        data = extract_fields(text, "option")
        assert data["grantor"] == "Jane Doe"
        assert data["grantee"] == "Sunfield Solar LLC"
        assert data["optionPeriod"] == "3 years"
        assert data["purchasePrice"] == 1_200_000
        assert data["optionPayment"] == 25000

    def test_environmental(self):
        text = (
            "Phase I Environmental Site Assessment\nPrepared by: Terracon Consultants\n"
            "Report Date: March 3, 2024\nFindings: No recognized environmental conditions were identified.\n"
        )
        data = extract_fields(text, DocumentCategory.ENVIRONMENTAL)
        assert data["preparer"] == "Terracon Consultants"
        assert data["date"] == "March 3, 2024"
        assert data["findings"].startswith("No recognized environmental conditions")

    def test_easement(self):
        text = (
            "Grantor: Jane Doe\nGrantee: Sunfield Solar LLC\n"
            "for the purpose of constructing a transmission line. Location: Travis County, Texas."
        )
        data = extract_fields(text, DocumentCategory.EASEMENT)
        assert data["purpose"] == "constructing a transmission line"
        assert data["location"] == "Travis County, Texas"


# ============================================================================
# Registry Tests
# ============================================================================

class TestExtractorRegistry:

    def test_global_registry_covers_categories(self):
        registry = get_extractor_registry()
        for category in (DocumentCategory.LEASE, DocumentCategory.PPA, DocumentCategory.OPTION,
                         DocumentCategory.EASEMENT, DocumentCategory.ENVIRONMENTAL):
            assert category in registry

    def test_unknown_category_uses_generic(self):
        assert isinstance(get_extractor_registry().get(DocumentCategory.UNKNOWN), GenericExtractor)
        assert isinstance(get_extractor_registry().get("not-a-category"), GenericExtractor)

    def test_generic_extraction(self):
        text = "This memo dated January 5, 2024 is between Alpha LLC and Beta Corp. Fee $2,500.00 for 40 acres."
        data = extract_fields(text, DocumentCategory.UNKNOWN)
        assert data["documentDate"] == "January 5, 2024"
        assert data["parties"] == ["Alpha LLC"]
        assert data["amounts"] == [2500.0]
        assert data["totalAcres"] == 40

    def test_new_category_does_not_touch_existing(self):
        class SurveyNotes(PatternExtractor):
            category = DocumentCategory.SURVEY
            fields = [FieldSpec("surveyor", [r"Surveyor:\s*([^\n]+)"])]

        registry = ExtractorRegistry(fallback=GenericExtractor())
        registry.register(LeaseExtractor())
        registry.register(SurveyNotes())
        assert extract_fields("Surveyor: Pat Lee", DocumentCategory.SURVEY, registry) == {"surveyor": "Pat Lee"}
        assert extract_fields(LEASE_TEXT, DocumentCategory.LEASE, registry)["totalAcres"] == 500

    def test_duplicate_registration_rejected(self):
        registry = ExtractorRegistry()
        registry.register(LeaseExtractor())
        with pytest.raises(ValueError):
            registry.register(LeaseExtractor())

    def test_missing_without_fallback_raises(self):
        with pytest.raises(KeyError):
            ExtractorRegistry().get(DocumentCategory.PPA)


# ============================================================================
# LLM Extraction Tests
# ============================================================================

class TestLlmExtractor:

    def _llm(self, content):
        llm = MagicMock()
        llm.invoke.return_value = MagicMock(content=content)
        return llm

    def test_reply_normalised_to_schema(self):
        llm = self._llm('{"lessor": {"name": "Jane Doe"}, "totalAcres": 320, "extra": "ignored"}')
        data = LlmExtractor(llm=llm).extract("lease text", DocumentCategory.LEASE)
        assert data["lessor"]["name"] == "Jane Doe"
        assert data["totalAcres"] == 320
        assert data["rent"]["signingBonus"] is None
        assert data["parcelNumbers"] == []
        assert "extra" not in data

    def test_unparseable_reply_falls_back_to_patterns(self):
        llm = self._llm("sorry, I cannot help with that")
        data = LlmExtractor(llm=llm).extract(LEASE_TEXT, DocumentCategory.LEASE)
        assert data["totalAcres"] == 500

    def test_transport_error_propagates(self):
        llm = MagicMock()
        llm.invoke.side_effect = TimeoutError("slow")
        with pytest.raises(TimeoutError):
            LlmExtractor(llm=llm).extract("text", DocumentCategory.LEASE)


class TestBuildExtractor:

    def test_pattern_backend(self):
        extractor = build_extractor("pattern")
        assert isinstance(extractor, RegistryExtractor)
        assert extractor.extract(LEASE_TEXT, "lease")["county"] == "Travis"

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_extractor("magic")
