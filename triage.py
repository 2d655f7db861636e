"""Symptom triage for chatbot messages.

Messages are mostly Vietnamese and arrive with or without diacritics, so every
keyword and message is compared in a normalized, accent-free form
("Đau ngực" -> "dau nguc").
"""

import re
import unicodedata
from typing import Dict, Iterable, List, Tuple


def normalize_text(text: str) -> str:
    text = text.lower().replace("đ", "d")
    decomposed = unicodedata.normalize("NFD", text)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    stripped = re.sub(r"[^\w\s]", " ", stripped)
    return re.sub(r"\s+", " ", stripped).strip()


def _normalize_all(terms: Iterable[str]) -> List[str]:
    return [normalize_text(term) for term in terms]


# standard term -> colloquial variants
MEDICAL_SYNONYMS: Dict[str, List[str]] = {
    "dau dau": _normalize_all(["nhức đầu", "đau nửa đầu", "migraine", "headache"]),
    "sot": _normalize_all(["nóng sốt", "bị sốt", "ớn lạnh", "fever"]),
    "ho": _normalize_all(["ho khan", "ho có đờm", "ho kéo dài", "ho nhiều", "cough"]),
    "buon non": _normalize_all(["muốn nôn", "cảm giác nôn", "nausea"]),
    "chong mat": _normalize_all(["hoa mắt", "choáng váng", "mất thăng bằng", "đầu quay", "dizzy"]),
    "dau bung": _normalize_all(["đau dạ dày", "đau ruột", "đau bụng dưới", "đau bụng trên", "stomach ache"]),
    "kho tho": _normalize_all(["thở khó", "thở gấp", "ngạt thở", "hụt hơi", "short of breath"]),
    "met moi": _normalize_all(["uể oải", "kiệt sức", "không có sức", "fatigue"]),
    "sot xuat huyet": _normalize_all(["dengue", "sốt rét xuất huyết"]),
}

_SYNONYM_PATTERNS: List[Tuple[re.Pattern, str]] = sorted(
    (
        (re.compile(rf"\b{re.escape(variant)}\b"), standard)
        for standard, variants in MEDICAL_SYNONYMS.items()
        for variant in variants
    ),
    key=lambda item: -len(item[0].pattern),
)


def normalize_medical(text: str) -> str:
    """Normalize and fold symptom synonyms onto their standard term."""
    normalized = normalize_text(text)
    for pattern, standard in _SYNONYM_PATTERNS:
        normalized = pattern.sub(standard, normalized)
    return normalized


def contains_term(normalized: str, term: str) -> bool:
    return re.search(rf"\b{re.escape(term)}\b", normalized) is not None


# --------------------------
# Emergency tiers
# --------------------------

EMERGENCY_LEVELS: List[Tuple[str, int, List[str]]] = [
    ("critical", 1, _normalize_all([
        "sốt xuất huyết", "ngừng tim", "khó thở nặng", "co giật", "bất tỉnh", "chảy máu nhiều",
        "cardiac arrest", "unconscious", "seizure", "heavy bleeding",
    ])),
    ("high", 2, _normalize_all([
        "đau ngực", "khó thở", "đau đầu nặng", "sốt cao", "nổi mụn", "đau bụng nặng",
        "chest pain", "high fever",
    ])),
    ("medium", 3, _normalize_all([
        "sốt", "đau đầu", "buồn nôn", "chóng mặt", "mệt mỏi",
    ])),
]


def detect_emergency(message: str) -> Dict[str, object]:
    """First matching tier wins; ``level`` is none when nothing matches."""
    normalized = normalize_medical(message)
    for level, priority, keywords in EMERGENCY_LEVELS:
        if any(contains_term(normalized, keyword) for keyword in keywords):
            return {"is_emergency": True, "level": level, "priority": priority}
    return {"is_emergency": False, "level": "none", "priority": 0}


# --------------------------
# Symptom scoring
# --------------------------

EMERGENCY_THRESHOLD = 60

COMMON_SYMPTOMS: Dict[str, int] = {
    "dau dau": 20,
    "dau bung": 25,
    "sot": 30,
    "ho": 15,
}

EMERGENCY_SYMPTOMS: Dict[str, Tuple[int, str]] = {
    "sot xuat huyet": (100, "critical"),
    "mat y thuc": (100, "critical"),
    "dau nguc du doi": (90, "high"),
    "kho tho cap tinh": (85, "high"),
    "co giat": (85, "high"),
    "dau bung du doi": (80, "high"),
    "dau dau du doi": (75, "high"),
}

SEVERE_MODIFIERS = _normalize_all([
    "dữ dội", "cấp tính", "không chịu được", "kinh khủng", "như búa bổ", "như dao cắt", "severe",
])


def score_symptoms(message: str) -> Dict[str, object]:
    """Score a message; common symptoms only escalate with a severe modifier."""
    normalized = normalize_medical(message)
    score = 0
    severity = "normal"

    for symptom, (points, level) in EMERGENCY_SYMPTOMS.items():
        if contains_term(normalized, symptom) and points > score:
            score, severity = points, level

    if score < EMERGENCY_THRESHOLD:
        severe = any(contains_term(normalized, modifier) for modifier in SEVERE_MODIFIERS)
        for symptom, points in COMMON_SYMPTOMS.items():
            if not contains_term(normalized, symptom):
                continue
            if severe:
                score, severity = max(score, 75), "high"
            elif points > score:
                score = points

    return {"is_emergency": score >= EMERGENCY_THRESHOLD, "severity": severity, "score": score}


# --------------------------
# Scope
# --------------------------

HEALTH_KEYWORDS = _normalize_all([
    "đau", "bệnh", "khám", "thuốc", "triệu chứng", "sức khỏe", "bác sĩ",
    "bệnh viện", "điều trị", "chữa", "khó thở", "sốt", "ho", "buồn nôn",
    "chóng mặt", "mệt mỏi", "cảm cúm", "viêm", "nhiễm trùng", "dị ứng",
    "tiêm chủng", "xét nghiệm", "chẩn đoán", "tái khám", "đơn thuốc",
    "nhập viện", "xuất viện", "phẫu thuật", "mổ", "nội soi", "siêu âm", "x quang",
    "pain", "sick", "doctor", "medicine", "symptom", "hospital", "appointment", "health",
])


def is_health_related(message: str) -> bool:
    normalized = normalize_medical(message)
    return any(contains_term(normalized, keyword) for keyword in HEALTH_KEYWORDS)
