# reliefdispatch/services/urgency.py
"""
Urgency classification for incoming aid requests.

detect_keywords()  - scan one piece of free text for distress signals
classify_priority() - map a request snapshot to a priority
check_sos_status() - rebuild SOS indicators on a request and re-prioritize it

Nothing here touches the store; callers persist the request themselves.
"""
from dataclasses import dataclass, field
from typing import List

from reliefdispatch.schemas import AidRequest, SosIndicators

SOS_KEYWORDS = {
    "en": ["help", "emergency", "urgent", "trapped", "stuck", "drowning", "fire",
           "injured", "dying", "bleeding", "save", "danger", "critical", "rescue"],
    "hi": ["बचाओ", "मदद", "आपातकाल", "खतरा", "फंसा", "घायल", "मर रहा", "बचा लो", "आग"],
    "ta": ["உதவி", "அவசரம", "காப்பாற்று", "ஆபத்து", "சிக்கி", "காயம்"],
    "te": ["సహాయం", "అత్యవసరం", "రక్షించు", "ప్రమాదం", "చిక్కుకున్న"],
    "bn": ["সাহায্য", "জরুরি", "বিপদ", "আটকে", "আহত"],
    "mr": ["मदत", "आणीबाणी", "धोका", "अडकलो", "जखमी"],
}

# language-independent; checked for every request
TRAPPED_KEYWORDS = ["trapped", "stuck", "can't move", "immobile", "फंसा", "अटक", "சிக்கி", "చిక్కుకున్న"]
MEDICAL_KEYWORDS = ["injured", "bleeding", "unconscious", "heart attack", "stroke",
                    "घायल", "खून", "காயம்", "గాయపడ్డ"]

RECENT_MESSAGES = 5
LOW_BATTERY_PCT = 10


@dataclass
class KeywordDetection:
    detected: bool = False
    keywords: List[str] = field(default_factory=list)
    trapped: bool = False
    medical_emergency: bool = False
    desperation: bool = False


def _add_unique(bucket: List[str], word: str) -> None:
    if word not in bucket:
        bucket.append(word)


def detect_keywords(text: str | None, language: str = "en") -> KeywordDetection:
    out = KeywordDetection()
    if not text:
        return out

    lowered = text.lower()

    for kw in SOS_KEYWORDS.get(language) or SOS_KEYWORDS["en"]:
        if kw.lower() in lowered:
            _add_unique(out.keywords, kw)

    for kw in TRAPPED_KEYWORDS:
        if kw.lower() in lowered:
            out.trapped = True
            _add_unique(out.keywords, kw)

    for kw in MEDICAL_KEYWORDS:
        if kw.lower() in lowered:
            out.medical_emergency = True
            _add_unique(out.keywords, kw)

    # desperation: shouting or lots of "!"; reported, but does not trigger SOS by itself
    exclamations = text.count("!")
    upper_ratio = sum(1 for ch in text if "A" <= ch <= "Z") / len(text)
    out.desperation = exclamations >= 3 or upper_ratio > 0.5

    out.detected = bool(out.keywords) or out.trapped or out.medical_emergency
    return out


def _has_sos_signal(request: AidRequest) -> bool:
    ind = request.sos_indicators
    return (
        request.sos_detected
        or bool(ind.keywords)
        or ind.trapped
        or ind.medical_emergency
        or ind.low_battery
    )


def urgency_score(request: AidRequest) -> int:
    """
    Additive urgency score used once an SOS signal is present.
    """
    score = 0
    needs = request.needs
    ind = request.sos_indicators

    rescue = needs.get("rescue")
    if rescue and rescue.required:
        score += 5 if rescue.urgency == "critical" else 3
    medical = needs.get("medical")
    if medical and medical.required:
        score += 4 if medical.urgency == "critical" else 2
    if request.need("water").required:
        score += 2
    if request.need("food").required:
        score += 1

    total = request.beneficiaries.total or 1
    if total > 20:
        score += 3
    elif total > 10:
        score += 2
    elif total > 5:
        score += 1

    if request.special_needs.medical_conditions:
        score += 2
    if request.special_needs.pregnant:
        score += 2
    if request.beneficiaries.infants > 0:
        score += 2

    device = request.device_info
    if device is not None:
        if device.battery_level is not None and device.battery_level < LOW_BATTERY_PCT:
            score += 2
        if device.signal_strength == "poor":
            score += 1

    if ind.keywords:
        score += 7
    if ind.trapped:
        score += 4
    if ind.medical_emergency:
        score += 3
    if ind.repeated_calls > 2:
        score += 2

    return score


def priority_from_score(score: int) -> str:
    if score >= 15:
        return "sos"
    if score >= 10:
        return "critical"
    if score >= 6:
        return "high"
    if score >= 3:
        return "medium"
    return "low"


def classify_priority(request: AidRequest) -> str:
    if not _has_sos_signal(request):
        return request.self_declared_urgency or "medium"
    return priority_from_score(urgency_score(request))


def _merge_detection(ind: SosIndicators, det: KeywordDetection) -> None:
    for kw in det.keywords:
        _add_unique(ind.keywords, kw)
    ind.trapped = ind.trapped or det.trapped
    ind.medical_emergency = ind.medical_emergency or det.medical_emergency


def check_sos_status(request: AidRequest) -> AidRequest:
    """
    Recompute sos_detected / sos_indicators / priority on the given request.
    Mutates and returns the same object.
    """
    detected = False
    ind = SosIndicators()

    if request.description:
        det = detect_keywords(request.description, request.language)
        if det.detected:
            detected = True
            _merge_detection(ind, det)

    recent = request.messages[-RECENT_MESSAGES:]
    if recent:
        ind.repeated_calls = len(recent)
        for msg in recent:
            det = detect_keywords(msg.message, request.language)
            if det.detected:
                detected = True
                _merge_detection(ind, det)

    device = request.device_info
    if device is not None:
        if device.battery_level is not None and device.battery_level < LOW_BATTERY_PCT:
            ind.low_battery = True
            detected = True
        if device.signal_strength == "poor":
            ind.poor_signal = True

    rescue = request.needs.get("rescue")
    if rescue and rescue.required and rescue.urgency == "critical":
        detected = True
    medical = request.needs.get("medical")
    if medical and medical.required and medical.urgency == "critical":
        detected = True
        ind.medical_emergency = True

    request.sos_detected = detected
    request.sos_indicators = ind
    request.priority = classify_priority(request)
    return request
