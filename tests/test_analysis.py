import pytest
import numpy as np

from fairscan.bias_mitigation.patterns import (
    PatternRegistry,
    ProtectedCategory,
    SeverityLevel,
    CATEGORY_SEVERITY_THRESHOLDS
)
from fairscan.bias_mitigation.pattern_scanner import BiasInstance, CategoryPatternScanner, CategoryScore
from fairscan.bias_mitigation.statistical_analyzer import (
    DISPARATE_IMPACT_FLOOR,
    StatisticalAnalysis,
    StatisticalBiasAnalyzer,
    SystematicBiasReport
)
from fairscan.bias_mitigation.intersectional import (
    GENERIC_INTERSECTION_RECOMMENDATIONS,
    DEFAULT_INTERSECTION_RECOMMENDATIONS,
    IntersectionalAnalyzer
)
from fairscan.bias_mitigation.mitigation import (
    MitigationCatalog,
    MitigationPlan,
    MitigationStrategy,
    MitigationStrategyEngine
)
from fairscan.exceptions import InsufficientDataError
from mocks.mock_components import MockScoringModel, make_prediction_batch


def category_score(category, score, indices=(0,), text="match"):
    instances = tuple(BiasInstance(text=text, index=i, context=text) for i in indices)
    return CategoryScore(
        category=ProtectedCategory(category),
        score=score,
        instances=instances,
        severity=SeverityLevel.from_score(score, CATEGORY_SEVERITY_THRESHOLDS)
    )


class TestPatternRegistry:
    """Test pattern table loading and validation."""

    def test_default_table_covers_gender_and_disability(self):
        """Test default table covers gender and disability."""
        registry = PatternRegistry()

        assert ProtectedCategory.GENDER in registry.categories
        assert ProtectedCategory.DISABILITY in registry.categories
        assert len(registry.patterns_for("gender")) == 2

    def test_invalid_regex_rejected(self):
        """Test invalid regex rejected."""
        with pytest.raises(ValueError):
            PatternRegistry({"gender": [{"pattern": "(unclosed", "weight": 0.5}]})

    def test_empty_matching_pattern_rejected(self):
        """Test empty matching pattern rejected."""
        with pytest.raises(ValueError):
            PatternRegistry({"gender": [{"pattern": "a*", "weight": 0.5}]})

    def test_unknown_category_rejected(self):
        """Test unknown category rejected."""
        with pytest.raises(ValueError):
            PatternRegistry({"astrology": [{"pattern": "\\bscorpio\\b", "weight": 0.5}]})

    def test_weight_must_be_positive(self):
        """Test weight must be positive."""
        with pytest.raises(ValueError):
            PatternRegistry({"gender": [{"pattern": "\\bguys\\b", "weight": 0}]})

    def test_load_from_yaml_file(self, tmp_path):
        """Test load from yaml file."""
        table_file = tmp_path / "patterns.yaml"
        table_file.write_text(
            "patterns:\n"
            "  age:\n"
            "    - pattern: '\\bboomer\\b'\n"
            "      weight: 0.6\n"
        )

        registry = PatternRegistry.from_file(table_file)

        assert registry.categories == [ProtectedCategory.AGE]
        assert registry.patterns_for(ProtectedCategory.AGE)[0].weight == 0.6
        assert registry.patterns_for(ProtectedCategory.GENDER) == ()


class TestCategoryPatternScanner:
    """Test lexical category scanning."""

    def setup_method(self):
        """Setup test fixtures."""
        self.scanner = CategoryPatternScanner(
            PatternRegistry({"gender": [{"pattern": "\\bhe is assumed\\b", "weight": 0.8}]}),
            context_window=50
        )

    def test_single_gendered_assumption(self):
        """Test single gendered assumption."""
        result = self.scanner.scan("he is assumed to be the manager", ProtectedCategory.GENDER)

        assert len(result.instances) == 1
        assert result.instances[0].text == "he is assumed"
        assert result.instances[0].index == 0
        assert result.score == pytest.approx(0.8)
        # 0.8 falls in the [0.7, 0.9) band
        assert result.severity == SeverityLevel.HIGH

    def test_case_insensitive_matching(self):
        """Test case insensitive matching."""
        result = self.scanner.scan({"text": "Yesterday HE IS ASSUMED to lead."}, "gender")

        assert len(result.instances) == 1
        assert result.instances[0].text == "HE IS ASSUMED"

    def test_no_matches(self):
        """Test no matches."""
        result = self.scanner.scan("The weather is pleasant.", ProtectedCategory.GENDER)

        assert result.score == 0
        assert result.instances == ()
        assert result.severity == SeverityLevel.LOW
        assert not result.detected

    def test_category_without_patterns(self):
        """Test category without patterns."""
        result = self.scanner.scan("he is assumed", ProtectedCategory.RELIGION)

        assert result.score == 0
        assert not result.detected

    def test_instances_within_text_bounds_and_ordered(self):
        """Test instances within text bounds and ordered."""
        text = "At first he is assumed absent. " * 5 + "Later he is assumed present."
        result = self.scanner.scan(text, ProtectedCategory.GENDER)

        assert len(result.instances) == 6
        indices = [instance.index for instance in result.instances]
        assert indices == sorted(indices)
        for instance in result.instances:
            assert 0 <= instance.index < len(text)
            assert instance.end <= len(text)
            assert text[instance.index:instance.end] == instance.text

    def test_context_window(self):
        """Test context window."""
        scanner = CategoryPatternScanner(self.scanner.registry, context_window=5)
        text = "0123456789 he is assumed"
        result = scanner.scan(text, ProtectedCategory.GENDER)

        assert result.instances[0].index == 11
        assert result.instances[0].context == text[6:16]

    def test_score_grows_with_matches(self):
        """Test score grows with matches."""
        one = self.scanner.scan("he is assumed", ProtectedCategory.GENDER)
        two = self.scanner.scan("he is assumed and he is assumed", ProtectedCategory.GENDER)

        assert two.score > one.score
        assert two.score == pytest.approx(1.6)
        assert two.severity == SeverityLevel.CRITICAL

    def test_weights_summed_across_patterns(self):
        """Test weights summed across patterns."""
        scanner = CategoryPatternScanner()
        result = scanner.scan("a normal person, not a victim of anything", ProtectedCategory.DISABILITY)

        assert len(result.instances) == 2
        assert result.score == pytest.approx(0.9 + 0.7)


class TestStatisticalBiasAnalyzer:
    """Test disparate impact and systematic bias detection."""

    def setup_method(self):
        """Setup test fixtures."""
        self.analyzer = StatisticalBiasAnalyzer(
            confidence_threshold=0.8,
            disparate_impact_threshold=0.8,
            skewness_threshold=0.5,
            underrepresentation_threshold=0.1
        )

    def test_disparate_impact_ratio(self):
        """Test disparate impact ratio."""
        batch = make_prediction_batch(2, 4, 4, 4)
        result = self.analyzer.analyze(batch["predictions"], batch["attributes"])

        assert result.disparate_impact["gender"] == pytest.approx(0.5)
        assert result.flagged_attributes == ["gender"]
        assert result.confidence_score == pytest.approx(0.5)

    def test_identical_rates_give_exactly_one(self):
        """Test identical rates give exactly one."""
        batch = make_prediction_batch(2, 4, 2, 4)
        result = self.analyzer.analyze(batch["predictions"], batch["attributes"])

        assert result.disparate_impact["gender"] == 1.0
        assert result.flagged_attributes == []

    def test_ratio_stays_positive_when_group_has_no_favorable_outcomes(self):
        """Test ratio stays positive when group has no favorable outcomes."""
        batch = make_prediction_batch(0, 4, 4, 4)
        result = self.analyzer.analyze(batch["predictions"], batch["attributes"])

        ratio = result.disparate_impact["gender"]
        assert 0 < ratio <= 1
        assert ratio == DISPARATE_IMPACT_FLOOR

    def test_explicit_zero_arguments_kept(self):
        """Test explicit zero arguments kept."""
        analyzer = StatisticalBiasAnalyzer(
            confidence_threshold=0.0,
            underrepresentation_threshold=0.0,
            min_batch_size=0
        )
        engine = MitigationStrategyEngine(analyzer=analyzer, mitigation_threshold=0.0)

        assert analyzer.confidence_threshold == 0.0
        assert analyzer.underrepresentation_threshold == 0.0
        assert analyzer.min_batch_size == 0
        assert engine.mitigation_threshold == 0.0

    def test_empty_batch_raises(self):
        """Test empty batch raises."""
        with pytest.raises(InsufficientDataError):
            self.analyzer.analyze([], {})

    def test_minimum_batch_size(self):
        """Test minimum batch size."""
        analyzer = StatisticalBiasAnalyzer(min_batch_size=10)

        with pytest.raises(InsufficientDataError):
            analyzer.analyze([0.9, 0.1], {"gender": ["a", "b"]})

    def test_misaligned_attributes_rejected(self):
        """Test misaligned attributes rejected."""
        with pytest.raises(ValueError):
            self.analyzer.analyze([0.9, 0.1, 0.5], {"gender": ["a", "b"]})

    def test_no_attributes_gives_zero_confidence(self):
        """Test no attributes gives zero confidence."""
        result = self.analyzer.analyze([0.9, 0.2], {})

        assert result.disparate_impact == {}
        assert result.confidence_score == 0.0

    def test_skewed_predictions_flagged_medium(self):
        """Test skewed predictions flagged medium."""
        predictions = [0.95] * 6 + [0.1] * 2
        result = self.analyzer.analyze(predictions, {"gender": ["a", "b"] * 4})

        assert result.distribution["skewness"] < -0.5
        assert [p["type"] for p in result.systematic_bias.patterns] == ["skewed_predictions"]
        assert result.systematic_bias.severity == SeverityLevel.MEDIUM

    def test_symmetric_balanced_batch_has_no_systematic_bias(self):
        """Test symmetric balanced batch has no systematic bias."""
        result = self.analyzer.analyze([0.9, 0.1, 0.9, 0.1], {"gender": ["a", "a", "b", "b"]})

        assert result.distribution["skewness"] == pytest.approx(0.0)
        assert result.systematic_bias.patterns == []
        assert result.systematic_bias.severity == SeverityLevel.LOW

    def test_underrepresentation_overrides_to_high(self):
        """Test underrepresentation overrides to high."""
        predictions = [0.9, 0.1] * 10
        groups = ["a"] * 19 + ["b"]
        result = self.analyzer.analyze(predictions, {"ethnicity": groups})

        underrepresented = [p for p in result.systematic_bias.patterns if p["type"] == "underrepresentation"]
        assert len(underrepresented) == 1
        assert underrepresented[0]["affected"][0]["attribute"] == "ethnicity"
        assert underrepresented[0]["affected"][0]["groups"] == ["b"]
        assert result.systematic_bias.severity == SeverityLevel.HIGH

    def test_constant_predictions_have_zero_skew(self):
        """Test constant predictions have zero skew."""
        result = self.analyzer.analyze([0.5] * 6, {"gender": ["a", "b"] * 3})

        assert result.distribution["skewness"] == 0.0

    def test_report_layout(self):
        """Test report layout."""
        batch = make_prediction_batch(2, 4, 4, 4)
        report = self.analyzer.analyze(batch["predictions"], batch["attributes"]).to_dict()

        assert set(report) >= {"disparateImpact", "systematicBias", "confidenceScore"}
        restored = StatisticalAnalysis.from_dict(report)
        assert restored.disparate_impact == report["disparateImpact"]


class TestIntersectionalAnalyzer:
    """Test pairwise intersectional analysis."""

    def setup_method(self):
        """Setup test fixtures."""
        self.analyzer = IntersectionalAnalyzer(overlap_distance=100)

    def test_high_severity_pair_with_specific_recommendations(self):
        """Test high severity pair with specific recommendations."""
        results = {
            "gender": category_score("gender", 0.8, indices=(0,)),
            "race": category_score("race", 0.8, indices=(30,)),
        }
        analysis = self.analyzer.analyze(results)

        pattern = analysis.patterns["gender_race"]
        assert pattern.score == pytest.approx(0.96)
        assert pattern.severity == SeverityLevel.HIGH
        assert len(pattern.overlapping_instances) == 1
        assert analysis.summary["highPriorityIntersections"] == ["gender_race"]
        assert analysis.recommendations[0]["suggestions"] == (
            DEFAULT_INTERSECTION_RECOMMENDATIONS[(ProtectedCategory.GENDER, ProtectedCategory.RACE)]
        )

    def test_critical_pair(self):
        """Test critical pair."""
        results = {
            "gender": category_score("gender", 1.6),
            "race": category_score("race", 0.8),
        }
        analysis = self.analyzer.analyze(results)

        assert analysis.patterns["gender_race"].severity == SeverityLevel.CRITICAL
        assert analysis.summary["criticalIntersections"] == ["gender_race"]
        assert analysis.summary["severityDistribution"]["critical"] == 1

    def test_pair_requires_both_categories(self):
        """Test pair requires both categories."""
        analysis = self.analyzer.analyze({"gender": category_score("gender", 0.8)})

        assert analysis.patterns == {}
        assert analysis.summary["totalPatterns"] == 0
        assert analysis.recommendations == []

    def test_undetected_category_skipped(self):
        """Test undetected category skipped."""
        results = {
            "gender": category_score("gender", 0.8),
            "race": CategoryScore(ProtectedCategory.RACE, 0.0),
        }

        assert self.analyzer.analyze(results).patterns == {}

    def test_distant_instances_do_not_overlap(self):
        """Test distant instances do not overlap."""
        results = {
            "gender": category_score("gender", 0.8, indices=(0,)),
            "race": category_score("race", 0.8, indices=(500,)),
        }
        pattern = self.analyzer.analyze(results).patterns["gender_race"]

        assert pattern.overlapping_instances == ()

    def test_generic_recommendations_fallback(self):
        """Test generic recommendations fallback."""
        results = {
            "nationality": category_score("nationality", 0.9),
            "religion": category_score("religion", 0.9),
        }
        analysis = self.analyzer.analyze(results)

        assert analysis.patterns["nationality_religion"].severity == SeverityLevel.HIGH
        assert analysis.recommendations[0]["suggestions"] == GENERIC_INTERSECTION_RECOMMENDATIONS

    def test_medium_pairs_get_no_recommendations(self):
        """Test medium pairs get no recommendations."""
        results = {
            "gender": category_score("gender", 0.5),
            "age": category_score("age", 0.5),
        }
        analysis = self.analyzer.analyze(results)

        assert analysis.patterns["gender_age"].severity == SeverityLevel.MEDIUM
        assert analysis.recommendations == []

    def test_severity_monotonic_in_category_score(self):
        """Test severity monotonic in category score."""
        ranks = []
        for score in np.linspace(0.05, 2.0, 40):
            results = {
                "gender": category_score("gender", float(score)),
                "race": category_score("race", 0.6),
            }
            ranks.append(self.analyzer.analyze(results).patterns["gender_race"].severity.rank)

        assert ranks == sorted(ranks)

    def test_configured_pairs(self):
        """Test configured pairs."""
        analyzer = IntersectionalAnalyzer.from_config({
            "intersections": [
                {"categories": ["age", "religion"], "weight": 2.0, "recommendations": ["Check both"]}
            ]
        })
        results = {
            "age": category_score("age", 0.5),
            "religion": category_score("religion", 0.5),
            "gender": category_score("gender", 0.9),
            "race": category_score("race", 0.9),
        }
        analysis = analyzer.analyze(results)

        assert list(analysis.patterns) == ["age_religion"]
        assert analysis.patterns["age_religion"].severity == SeverityLevel.CRITICAL
        assert analysis.recommendations[0]["suggestions"] == ["Check both"]

    def test_invalid_configuration(self):
        """Test invalid configuration."""
        with pytest.raises(ValueError):
            IntersectionalAnalyzer.from_config({"intersections": [{"categories": ["gender"], "weight": 1.0}]})


class TestMitigationStrategyEngine:
    """Test mitigation strategy selection and parameters."""

    def setup_method(self):
        """Setup test fixtures."""
        self.analyzer = StatisticalBiasAnalyzer(
            confidence_threshold=0.8,
            disparate_impact_threshold=0.8,
            skewness_threshold=0.5,
            underrepresentation_threshold=0.1
        )
        self.engine = MitigationStrategyEngine(analyzer=self.analyzer, mitigation_threshold=0.8)
        self.metadata = {"A": ["x", "x", "x", "y"], "B": ["p", "q", "p", "q"]}

    def test_disparate_impact_alone_selects_reweighting(self):
        """Test disparate impact alone selects reweighting."""
        metrics = StatisticalAnalysis(
            disparate_impact={"A": 0.5, "B": 0.9},
            systematic_bias=SystematicBiasReport(),
            confidence_score=0.7
        )
        plan = self.engine.mitigate(metrics, self.metadata)

        assert plan.strategies == [MitigationStrategy.REWEIGHTING]
        assert plan.thresholds == {}
        assert plan.ensemble is None
        assert plan.weights["A"] == {"x": pytest.approx(2 / 3), "y": pytest.approx(2.0)}
        assert plan.weights["B"] == {"p": pytest.approx(1.0), "q": pytest.approx(1.0)}

    def test_mitigate_is_idempotent(self):
        """Test mitigate is idempotent."""
        metrics = StatisticalAnalysis(
            disparate_impact={"A": 0.5},
            systematic_bias=SystematicBiasReport(
                patterns=[{"type": "skewed_predictions"}],
                severity=SeverityLevel.HIGH
            ),
            confidence_score=0.5
        )

        assert self.engine.mitigate(metrics, self.metadata) == self.engine.mitigate(metrics, self.metadata)

    def test_no_mitigation_needed(self):
        """Test no mitigation needed."""
        metrics = StatisticalAnalysis(
            disparate_impact={"A": 0.95},
            systematic_bias=SystematicBiasReport(),
            confidence_score=0.95
        )
        plan = self.engine.mitigate(metrics, self.metadata)

        assert plan == MitigationPlan()
        assert plan.to_dict() == {"mitigationNeeded": False, "appliedStrategies": [], "adjustments": {}}

    def test_systematic_patterns_select_threshold_adjustment(self):
        """Test systematic patterns select threshold adjustment."""
        metrics = StatisticalAnalysis(
            disparate_impact={"A": 0.9},
            systematic_bias=SystematicBiasReport(
                patterns=[{"type": "skewed_predictions"}],
                severity=SeverityLevel.MEDIUM
            ),
            confidence_score=0.9
        )
        plan = self.engine.mitigate(metrics, self.metadata)

        assert plan.strategies == [MitigationStrategy.THRESHOLD_ADJUSTMENT]
        assert plan.thresholds == {"A": pytest.approx(0.45)}

    def test_threshold_clamped(self):
        """Test threshold clamped."""
        assert self.engine.calculate_optimal_threshold(0.1) == pytest.approx(0.1)
        assert self.engine.calculate_optimal_threshold(DISPARATE_IMPACT_FLOOR) == pytest.approx(0.1)
        assert self.engine.calculate_optimal_threshold(1.0) == pytest.approx(0.5)

    def test_high_severity_adds_ensemble(self):
        """Test high severity adds ensemble."""
        metrics = StatisticalAnalysis(
            disparate_impact={"A": 0.5},
            systematic_bias=SystematicBiasReport(
                patterns=[{"type": "underrepresentation"}],
                severity=SeverityLevel.HIGH
            ),
            confidence_score=0.5
        )
        model = MockScoringModel([0.5])
        plan = self.engine.mitigate(metrics, self.metadata, model=model)

        assert plan.strategies == [
            MitigationStrategy.REWEIGHTING,
            MitigationStrategy.THRESHOLD_ADJUSTMENT,
            MitigationStrategy.ENSEMBLE,
        ]
        assert plan.ensemble.models == (model,)
        assert plan.ensemble.weights == (1.0,)
        assert plan.to_dict()["adjustments"]["ensemble"]["models"] == ["mock-model"]

    def test_missing_attribute_values_form_no_group(self):
        """Test missing attribute values form no group."""
        attributes = {"gender": ["a", "a", "b", "b", None]}
        analysis = self.analyzer.analyze([0.9, 0.9, 0.9, 0.1, 0.9], attributes)

        plan = self.engine.mitigate(analysis, attributes)

        assert analysis.disparate_impact["gender"] == pytest.approx(0.5)
        assert MitigationStrategy.REWEIGHTING in plan.strategies
        assert plan.weights == {"gender": {"a": pytest.approx(1.0), "b": pytest.approx(1.0)}}

    def test_all_missing_values_get_no_weights(self):
        """Test all missing values get no weights."""
        assert self.engine.calculate_balancing_weights([None, float("nan")]) == {}
        assert self.engine.apply_reweighting({"gender": [None, None]}) == {}

    def test_ensemble_without_model_handle(self):
        """Test ensemble without model handle."""
        assert self.engine.create_ensemble(None).models == ("current",)

    def test_text_mitigation_alternatives(self):
        """Test text mitigation alternatives."""
        results = {
            "gender": CategoryScore(
                ProtectedCategory.GENDER,
                1.6,
                (
                    BiasInstance("He is assumed", 0, "He is assumed to lead"),
                    BiasInstance("he was expected", 20, "he was expected"),
                ),
                SeverityLevel.CRITICAL
            )
        }
        suggestions = self.engine.suggest_text_mitigation(results)

        gender = suggestions["gender"].to_dict()
        assert gender["alternatives"]["He is assumed"] == ["they are assumed", "the person is assumed"]
        assert gender["alternatives"]["he was expected"] == []
        assert "Use gender-neutral language" in gender["recommendations"]

    def test_custom_catalog(self):
        """Test custom catalog."""
        engine = MitigationStrategyEngine(
            catalog=MitigationCatalog.from_config({
                "recommendations": {"age": ["Describe experience"]},
                "alternatives": {"age": {"Too Old To": ["ready to"]}}
            })
        )
        results = {"age": category_score("age", 0.7, text="too old to")}
        suggestion = engine.suggest_text_mitigation(results)["age"]

        assert suggestion.recommendations == ["Describe experience"]
        assert suggestion.alternatives == {"too old to": ["ready to"]}

    def test_invalid_catalog(self):
        """Test invalid catalog."""
        with pytest.raises(ValueError):
            MitigationCatalog(recommendations={"astrology": ["nope"]})

    def test_evaluate_reports_improvement(self):
        """Test evaluate reports improvement."""
        original = StatisticalAnalysis(
            disparate_impact={"gender": 0.5},
            systematic_bias=SystematicBiasReport(
                patterns=[{"type": "skewed_predictions"}],
                severity=SeverityLevel.MEDIUM
            ),
            confidence_score=0.5
        )
        model = MockScoringModel([0.9, 0.1, 0.9, 0.1])
        evaluation = self.engine.evaluate(model, original, {"gender": ["a", "a", "b", "b"]}, inputs=[1, 2, 3, 4])

        assert evaluation.disparate_impact_delta == {"gender": pytest.approx(0.5)}
        assert evaluation.systematic_bias_resolved
        assert model.calls == [[1, 2, 3, 4]]
        assert evaluation.to_dict()["improvement"]["systematicBias"] is True
