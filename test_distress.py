"""Tests for keyword-based distress detection"""
from lessonpulse.distress import analyze_text, crisis_resources, detect_language


def test_detect_language():
    assert detect_language("The lesson was fun and I learned a lot") == "en"
    assert detect_language("Šiandien pamoka buvo įdomi ir smagu") == "lt"
    assert detect_language("12345") == "unknown"


def test_emergency_keywords_are_critical():
    analysis = analyze_text("I feel hopeless and I want to die")

    assert analysis.risk_level == "critical"
    assert analysis.detected_language == "en"
    assert analysis.needs_alert
    assert any(indicator.startswith("emergency") for indicator in analysis.indicators)
    assert any("988" in rec for rec in analysis.recommendations)
    assert analysis.emotional_markers.sentiment == "negative"
    assert analysis.emotional_markers.intensity == 0.75


def test_two_distress_words_are_medium():
    analysis = analyze_text("The lesson was terrible and I feel sad")

    assert analysis.risk_level == "medium"
    assert analysis.confidence == 0.5
    assert "distress" in analysis.emotional_markers.emotions
    assert analysis.emotional_markers.intensity == 0.5


def test_positive_text_is_low_risk():
    analysis = analyze_text("The experiments were great and the lesson was fun")

    assert analysis.risk_level == "low"
    assert not analysis.needs_alert
    assert analysis.emotional_markers.sentiment == "positive"
    assert analysis.emotional_markers.intensity == 0.0
    assert analysis.recommendations == []


def test_lithuanian_text_uses_lithuanian_resources():
    analysis = analyze_text("Jaučiuosi beviltiškas ir noriu mirti")

    assert analysis.detected_language == "lt"
    assert analysis.risk_level == "critical"
    assert any("8 800 28 888" in rec for rec in analysis.recommendations)


def test_cultural_context_adds_recommendation():
    analysis = analyze_text("My parents disappointed in me and I am failing, this is awful")

    assert "familyPressure" in analysis.cultural_context
    assert "Discuss family expectations and your personal capabilities" in analysis.recommendations


def test_empty_and_unknown_text():
    assert analyze_text("   ").risk_level == "low"
    unknown = analyze_text("12345 !!!")
    assert unknown.detected_language == "unknown"
    assert unknown.confidence == 0.1


def test_crisis_resources_default_to_english():
    assert crisis_resources("lt")["hotlines"][0]["name"] == "Jaunimo linija"
    assert crisis_resources("fr") == crisis_resources("en")
