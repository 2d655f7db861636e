import pytest

from triage import detect_emergency, is_health_related, normalize_medical, normalize_text, score_symptoms


def test_normalize_text_strips_accents_and_punctuation():
    assert normalize_text("Đau Ngực!!") == "dau nguc"
    assert normalize_text("  Tôi   bị  sốt,  ho khan ") == "toi bi sot ho khan"
    assert normalize_text("X-quang") == "x quang"


def test_normalize_medical_folds_synonyms():
    assert normalize_medical("Tôi bị nhức đầu") == "toi bi dau dau"
    assert normalize_medical("headache and cough") == "dau dau and ho"
    assert normalize_medical("dengue") == "sot xuat huyet"


@pytest.mark.parametrize("message, level", [
    ("Bệnh nhân bị co giật", "critical"),
    ("nghi sot xuat huyet", "critical"),
    ("Tôi bị đau ngực", "high"),
    ("Tôi bị sốt", "medium"),
    ("headache", "medium"),
    ("Xin chào", "none"),
])
def test_detect_emergency_levels(message, level):
    assert detect_emergency(message)["level"] == level


def test_detect_emergency_priority():
    assert detect_emergency("đau ngực")["priority"] == 2
    assert detect_emergency("hello") == {"is_emergency": False, "level": "none", "priority": 0}


def test_score_emergency_symptoms():
    assert score_symptoms("Sốt xuất huyết") == {"is_emergency": True, "severity": "critical", "score": 100}
    assert score_symptoms("đau đầu dữ dội") == {"is_emergency": True, "severity": "high", "score": 75}


def test_score_common_symptoms():
    assert score_symptoms("tôi bị ho") == {"is_emergency": False, "severity": "normal", "score": 15}
    assert score_symptoms("đau bụng và sốt")["score"] == 30
    assert score_symptoms("hôm nay trời đẹp")["score"] == 0


def test_severe_modifier_escalates_common_symptom():
    result = score_symptoms("đau bụng kinh khủng")
    assert result["is_emergency"] is True
    assert result["severity"] == "high"
    assert result["score"] == 75


def test_is_health_related():
    assert is_health_related("Tôi muốn đặt lịch khám bác sĩ")
    assert is_health_related("I need a doctor")
    assert not is_health_related("Thời tiết hôm nay thế nào?")
    assert not is_health_related("what is the football score")
