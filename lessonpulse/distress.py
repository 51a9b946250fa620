"""
Keyword-based distress detection for student-written text (English and Lithuanian)
"""
from typing import Dict, List
import re

from pydantic import BaseModel

LANGUAGE_KEYWORDS: Dict[str, Dict[str, List[str]]] = {
    "en": {
        "distress": [
            "hopeless", "helpless", "worthless", "useless", "terrible", "awful",
            "miserable", "depressed", "sad", "upset", "frustrated", "angry",
            "hate myself", "can't do this", "give up", "want to quit",
        ],
        "emergency": [
            "want to die", "kill myself", "end it all", "suicide", "hurt myself",
            "self-harm", "cutting", "no point living", "better off dead",
        ],
        "depression": [
            "empty", "numb", "nothing matters", "pointless", "tired all the time",
            "can't sleep", "no energy", "lost interest", "don't care anymore",
        ],
        "anxiety": [
            "panic", "worried", "scared", "afraid", "nervous", "anxious",
            "can't breathe", "heart racing", "overwhelming", "stressed out",
        ],
        "isolation": [
            "alone", "lonely", "no friends", "nobody cares", "isolated",
            "left out", "don't belong", "no one understands",
        ],
        "academic": [
            "failing", "can't understand", "too hard", "stupid", "behind everyone",
            "not smart enough", "going to fail", "disappointed parents",
        ],
        "positive": [
            "good", "great", "happy", "excited", "love", "enjoy", "fun",
            "better", "improving", "confident", "proud", "successful",
        ],
    },
    "lt": {
        "distress": [
            "beviltiškas", "bejėgis", "bevertas", "nenaudingas", "baisus", "siaubingas",
            "nelaimingas", "prislėgtas", "liūdnas", "supykęs", "pykstu", "nekenčiu savęs",
            "negaliu to padaryti", "pasiduodu", "noriu mesti",
        ],
        "emergency": [
            "noriu mirti", "nusižudyti", "baigti viską", "savižudybė", "susižaloti",
            "save žalojimas", "pjaustymas", "nėra prasmės gyventi", "geriau būčiau miręs",
        ],
        "depression": [
            "tuščias", "nejuntu nieko", "nieko nerūpi", "beprasmis", "visada pavargęs",
            "negaliu miegoti", "nėra energijos", "praradau susidomėjimą", "daugiau nerūpi",
        ],
        "anxiety": [
            "panika", "nerimas", "bijau", "baisu", "nervuojuosi", "nervingas",
            "negaliu kvėpuoti", "širdis plaka", "perdaug", "įtemptas",
        ],
        "isolation": [
            "vienas", "vienišas", "nėra draugų", "niekas nesirūpina", "izoliuotas",
            "paliktas nuošalyje", "nepriklausau", "niekas nesupranta",
        ],
        "academic": [
            "nepavyksta", "nesuprantu", "per sunku", "kvailas", "atsilieku nuo visų",
            "nepakankamai protingas", "nepavyks", "nuvyliau tėvus",
        ],
        "positive": [
            "gerai", "puiku", "laimingas", "džiaugiuosi", "mėgstu", "smagu",
            "geriau", "gerėju", "pasitikiu savimi", "didžiuojuosi", "sėkmingas",
        ],
    },
}

CULTURAL_CONTEXTS = {
    "lt": {
        "familyPressure": ["tėvai nusivylė", "šeimos lūkesčiai", "gėda šeimai"],
        "academicCulture": ["reikia būti geriausiam", "visi geriau moka", "nesėkmė"],
        "socialExpectations": ["kas pagalvos", "turėčiau", "privalau"],
    },
    "en": {
        "familyPressure": ["parents disappointed", "family expectations", "shame family"],
        "academicCulture": ["need to be perfect", "everyone else better", "failure"],
        "socialExpectations": ["what will people think", "should be", "have to"],
    },
}

CATEGORY_WEIGHTS = {
    "emergency": 10,
    "distress": 5,
    "depression": 3,
    "anxiety": 3,
    "positive": -2,
}
DEFAULT_CATEGORY_WEIGHT = 2

LITHUANIAN_MARKERS = ["ą", "č", "ę", "ė", "į", "š", "ų", "ū", "ž", "kad", "ir", "bet", "tai", "yra"]
ENGLISH_MARKERS = ["the", "and", "but", "that", "this", "with", "for", "are", "was"]
LITHUANIAN_LETTERS = re.compile(r"[ąčęėįšųūž]", re.IGNORECASE)

RECOMMENDATIONS = {
    "en": {
        "critical": [
            "Seek immediate help from a trusted adult or mental health professional",
            "Call crisis helpline: 988 (US) or local emergency services",
            "Contact your nearest mental health crisis center",
        ],
        "high": [
            "Consider speaking with a school counselor or psychologist",
            "Talk to a trusted adult about how you're feeling",
            "Consider discussing with parents or guardians",
        ],
        "medium": [
            "Try talking to a friend or family member about your difficulties",
            "Seek academic support if struggling with studies",
            "Engage in activities you enjoy to boost mood",
        ],
        "familyPressure": "Discuss family expectations and your personal capabilities",
        "academicCulture": "Remember that setbacks are part of the learning process",
    },
    "lt": {
        "critical": [
            "Nedelsiant kreipkitės į artimą asmenį arba psichikos sveikatos specialistą",
            "Skambinkite pagalbos telefonu: 8 800 28 888 (nemokamas)",
            "Kreipkitės į artimiausią psichikos sveikatos centrą",
        ],
        "high": [
            "Rekomenduojama pasitarti su mokyklos psichologu",
            "Aptarkite savo jausmus su patikimu suaugusiuoju",
            "Apsvarstykite pokalbį su tėvais ar globėjais",
        ],
        "medium": [
            "Pabandykite aptarti sunkumus su draugu ar šeimos nariu",
            "Ieškokite pagalbos mokymosi klausimais",
            "Skirkite laiko veiklai, kuri jums patinka",
        ],
        "familyPressure": "Aptarkite šeimos lūkesčius ir savo galimybes",
        "academicCulture": "Prisiminkite, kad nesėkmės yra mokymosi proceso dalis",
    },
}

CRISIS_RESOURCES = {
    "en": {
        "hotlines": [
            {"name": "Crisis Text Line", "number": "741741", "description": "Text HOME to 741741"},
            {"name": "National Suicide Prevention Lifeline", "number": "988", "description": "24/7 crisis support"},
        ],
        "websites": [
            {"name": "Crisis Text Line", "url": "https://crisistextline.org"},
            {"name": "National Alliance on Mental Illness", "url": "https://nami.org"},
        ],
    },
    "lt": {
        "hotlines": [
            {"name": "Jaunimo linija", "number": "8 800 28 888", "description": "Nemokama pagalba jaunimui"},
            {"name": "Vaikų linija", "number": "116 111", "description": "Pagalba vaikams ir paaugliams"},
        ],
        "websites": [
            {"name": "Jaunimo linija", "url": "https://jaunimolinija.lt"},
            {"name": "Vilniaus psichikos sveikatos centras", "url": "https://vpsc.lt"},
        ],
    },
}

# Alert severity stored on mental_health_alerts
ALERT_SEVERITY = {"critical": 5, "high": 4, "medium": 3}


class EmotionalMarkers(BaseModel):
    sentiment: str = "neutral"
    emotions: List[str] = []
    intensity: float = 0.0


class DistressAnalysis(BaseModel):
    risk_level: str = "low"
    confidence: float = 0.0
    detected_language: str = "unknown"
    indicators: List[str] = []
    cultural_context: List[str] = []
    recommendations: List[str] = []
    emotional_markers: EmotionalMarkers = EmotionalMarkers()

    @property
    def needs_alert(self) -> bool:
        return self.risk_level in ALERT_SEVERITY


def detect_language(text: str) -> str:
    lower = text.lower()
    lt_score = sum(1 for marker in LITHUANIAN_MARKERS if marker in lower)
    en_score = sum(1 for marker in ENGLISH_MARKERS if marker in lower)

    if lt_score > en_score and lt_score > 0:
        return "lt"
    if en_score > lt_score and en_score > 0:
        return "en"
    if LITHUANIAN_LETTERS.search(text):
        return "lt"
    return "en" if en_score > 0 else "unknown"


def _keyword_matches(text: str, language: str):
    lower = text.lower()
    matches: Dict[str, List[str]] = {}
    total = 0
    for category, words in LANGUAGE_KEYWORDS[language].items():
        found = [word for word in words if word in lower]
        if found:
            matches[category] = found
            total += len(found) * CATEGORY_WEIGHTS.get(category, DEFAULT_CATEGORY_WEIGHT)
    return matches, total


def _cultural_context(text: str, language: str) -> List[str]:
    lower = text.lower()
    found = []
    for context, patterns in CULTURAL_CONTEXTS[language].items():
        if any(pattern in lower for pattern in patterns) and context not in found:
            found.append(context)
    return found


def _risk_level(score: int, has_emergency: bool) -> str:
    if has_emergency:
        return "critical"
    if score >= 15:
        return "high"
    if score >= 8:
        return "medium"
    return "low"


def _recommendations(risk: str, language: str, contexts: List[str]) -> List[str]:
    table = RECOMMENDATIONS[language]
    result = list(table.get(risk, []))
    for context in ("familyPressure", "academicCulture"):
        if context in contexts:
            result.append(table[context])
    return result


def analyze_text(text: str) -> DistressAnalysis:
    """Score a piece of student text for signs of distress"""
    if not text or not text.strip():
        return DistressAnalysis()

    language = detect_language(text)
    if language == "unknown":
        return DistressAnalysis(
            confidence=0.1,
            indicators=["Text language could not be determined"],
            recommendations=["Please provide feedback in English or Lithuanian for better analysis"],
        )

    matches, score = _keyword_matches(text, language)
    contexts = _cultural_context(text, language)
    risk = _risk_level(score, bool(matches.get("emergency")))

    indicator_count = sum(len(words) for words in matches.values())
    confidence = min(0.9, 0.3 + indicator_count * 0.1)

    indicators = [
        f"{category}: {', '.join(words)}"
        for category, words in matches.items()
        if category != "positive"
    ]

    has_positive = bool(matches.get("positive"))
    if score > 0:
        sentiment = "negative"
    elif has_positive:
        sentiment = "positive"
    else:
        sentiment = "neutral"

    emotions = [
        emotion for category, emotion in (
            ("anxiety", "anxiety"),
            ("depression", "depression"),
            ("distress", "distress"),
            ("isolation", "isolation"),
            ("positive", "positivity"),
        )
        if matches.get(category)
    ]

    return DistressAnalysis(
        risk_level=risk,
        confidence=round(confidence, 2),
        detected_language=language,
        indicators=indicators,
        cultural_context=contexts,
        recommendations=_recommendations(risk, language, contexts),
        emotional_markers=EmotionalMarkers(
            sentiment=sentiment,
            emotions=emotions,
            intensity=max(0.0, min(1.0, score / 20)),
        ),
    )


def crisis_resources(language: str) -> dict:
    return CRISIS_RESOURCES["lt" if language == "lt" else "en"]
