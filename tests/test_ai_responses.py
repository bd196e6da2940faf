"""Unit tests for completion-response decoders."""
import pytest
from pydantic import ValidationError
from src.models.ai_responses import (
    ClusteringResponse,
    EnrichmentResponse,
    ImpactResponse,
    InsightResponse,
    PainPointResponse,
    RecommendationResponse,
)


class TestEnrichmentResponse:
    """Test the fail-open enrichment decoder."""

    def test_camel_case_payload(self):
        decoded = EnrichmentResponse.from_payload({
            "id": "fb1",
            "linkedProductAreas": [{"id": "a1", "confidence": 0.7}, {"id": 3, "confidence": 0.5}, {"id": "a2"}],
            "sentiment": {"label": "positive", "score": 2.0, "confidence": 0.9},
            "extractedFeatures": ["export"],
            "urgency": "low",
            "category": ["praise"],
        })

        assert [l.id for l in decoded.linked_product_areas] == ["a1"]
        assert decoded.sentiment.label == "positive"
        assert decoded.sentiment.score == 1.0
        assert decoded.urgency == "low"
        assert decoded.category == ["praise"]

    def test_empty_object_gets_defaults(self):
        decoded = EnrichmentResponse.from_payload({})

        assert decoded.linked_product_areas == []
        assert decoded.sentiment.label == "neutral"
        assert decoded.urgency == "medium"
        assert decoded.category == ["uncategorized"]

    def test_boolean_is_not_a_number(self):
        decoded = EnrichmentResponse.from_payload({"sentiment": {"label": "negative", "score": True}})
        assert decoded.sentiment.score == 0.0

    @pytest.mark.parametrize("payload", [[], "text", [1, 2], {"enrichedEntries": []}])
    def test_payload_without_object_rejected(self, payload):
        with pytest.raises(ValueError):
            EnrichmentResponse.from_payload(payload)


class TestClusteringResponse:
    """Test the fail-closed clustering decoder."""

    def test_wrapped_and_bare(self):
        cluster = {"id": " c1 ", "theme": " Slow exports ", "description": "d", "entryIds": ["fb1"]}

        wrapped = ClusteringResponse.from_payload({"clusters": [cluster]})
        bare = ClusteringResponse.from_payload([cluster])

        assert wrapped == bare
        assert wrapped.clusters[0].id == "c1"
        assert wrapped.clusters[0].theme == "Slow exports"
        assert wrapped.clusters[0].entry_ids == ["fb1"]

    def test_missing_field_rejects_batch(self):
        with pytest.raises(ValidationError):
            ClusteringResponse.from_payload([
                {"id": "c1", "theme": "t", "description": "d", "entryIds": []},
                {"id": "c2", "theme": "t"},
            ])


class TestInsightResponse:
    """Test the fail-open insight decoder."""

    def _minimal(self, **overrides):
        payload = {
            "title": "Exports time out",
            "painPoint": {},
            "impact": {},
            "recommendations": [{"title": "Stream large exports"}],
        }
        payload.update(overrides)
        return payload

    def test_minimal_insight(self):
        decoded = InsightResponse.from_payload([self._minimal()])

        assert decoded.executive_summary == ""
        assert decoded.pain_point.severity == "medium"
        assert decoded.pain_point.user_journey_stage == "usage"
        assert decoded.impact.users_affected == 0
        assert decoded.impact.business_impact.satisfaction == "maintain"
        assert decoded.recommendations[0].category == "enhancement"

    @pytest.mark.parametrize("field", ["title", "painPoint", "impact", "recommendations"])
    def test_required_fields(self, field):
        payload = self._minimal()
        del payload[field]
        with pytest.raises(ValidationError):
            InsightResponse.from_payload(payload)

    def test_blank_title_rejected(self):
        with pytest.raises(ValidationError):
            InsightResponse.from_payload(self._minimal(title=""))

    def test_malformed_recommendations_filtered(self):
        decoded = InsightResponse.from_payload(self._minimal(recommendations=[
            "just a string", {"title": "  "}, {"title": "Keep this", "effort": "huge", "successMetrics": "n/a"},
        ]))

        [rec] = decoded.recommendations
        assert rec.title == "Keep this"
        assert rec.effort == "medium"
        assert rec.success_metrics == []

    def test_malformed_impact_values(self):
        impact = ImpactResponse.model_validate({
            "usersAffected": 12.6,
            "userSegments": ["smb", 4],
            "businessImpact": "bad",
            "quantifiedEstimates": [{"metric": "nps", "estimatedChange": "+5", "confidence": 7}, {"metric": "x"}],
        })

        assert impact.users_affected == 13
        assert impact.user_segments == ["smb"]
        assert impact.business_impact.revenue == "neutral"
        assert len(impact.quantified_estimates) == 1
        assert impact.quantified_estimates[0].confidence == 1.0

    def test_pain_point_normalization(self):
        pain = PainPointResponse.model_validate({"severity": "apocalyptic", "frequencyOfMention": -3})
        assert pain.severity == "medium"
        assert pain.frequency_of_mention == 0

    def test_recommendation_text_defaults(self):
        rec = RecommendationResponse.model_validate({"title": "t", "description": None, "timeline": ""})
        assert rec.description == ""
        assert rec.timeline == "TBD"
