# examwatch/backend/scoring.py
"""
Política de puntuación: observación -> (evento, prioridad, score) -> cambios
del alumno. Todo son funciones puras; la persistencia y el orden de las
escrituras los resuelve backend.monitor.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from backend.schemas import FaceObservation, GestureObservation, StudentResponse

HIGH = "high"
WARNING = "warning"
NORMAL = "normal"


@dataclass(frozen=True)
class Classification:
    event: str
    description: str
    priority: str
    score: int


@dataclass(frozen=True)
class ScoreRules:
    high_penalty: int
    high_floor: int
    warning_penalty: int
    warning_floor: int
    normal_bonus: int
    # Cada cuántos avisos 'warning' se suma una alerta
    warning_alert_every: int = 1


FACE_RULES = ScoreRules(high_penalty=15, high_floor=20, warning_penalty=8, warning_floor=30, normal_bonus=2, warning_alert_every=2)
GESTURE_RULES = ScoreRules(high_penalty=20, high_floor=15, warning_penalty=10, warning_floor=25, normal_bonus=3, warning_alert_every=2)
MANUAL_RULES = ScoreRules(high_penalty=10, high_floor=0, warning_penalty=5, warning_floor=0, normal_bonus=0, warning_alert_every=1)
INJECTOR_RULES = ScoreRules(high_penalty=10, high_floor=30, warning_penalty=4, warning_floor=40, normal_bonus=1, warning_alert_every=2)

RULES = {
    "face": FACE_RULES,
    "gesture": GESTURE_RULES,
    "manual": MANUAL_RULES,
    "injector": INJECTOR_RULES,
}


@dataclass
class Sensitivity:
    gaze_threshold: int = 70
    head_turn_threshold: int = 75

    @property
    def side_gaze_threshold(self) -> int:
        return min(100, self.gaze_threshold + 10)


# =========================
# Clasificación
# =========================
def classify_face(obs: FaceObservation, sensitivity: Optional[Sensitivity] = None) -> Classification:
    sens = sensitivity or Sensitivity()
    score = obs.attention

    if not obs.face_visible:
        return Classification("face_not_visible", "Rostro no visible durante un periodo prolongado", HIGH, 20)

    if obs.gaze_direction == "away":
        priority = HIGH if obs.confidence > sens.gaze_threshold else WARNING
        return Classification("gaze_away", "Mirada fuera de la pantalla de forma prolongada", priority, max(30, score))

    if obs.gaze_direction in ("left", "right"):
        priority = WARNING if obs.confidence > sens.side_gaze_threshold else NORMAL
        side = "izquierda" if obs.gaze_direction == "left" else "derecha"
        return Classification(f"gaze_{obs.gaze_direction}", f"Mirada dirigida a la {side}", priority, score)

    if obs.emotion in ("frustrated", "confused"):
        return Classification("emotional_distress", f"El alumno muestra señales de {obs.emotion}", WARNING, max(40, score))

    if obs.gaze_direction == "center" and obs.emotion in ("neutral", "happy"):
        return Classification("focused_behavior", "El alumno parece concentrado", NORMAL, min(100, score + 10))

    return Classification("normal_behavior", "Comportamiento normal", NORMAL, score)


def classify_gesture(obs: GestureObservation, sensitivity: Optional[Sensitivity] = None) -> Classification:
    sens = sensitivity or Sensitivity()
    score = obs.stability

    # La posición de las manos manda, venga o no marcada como sospechosa
    if obs.hand_position == "phone_area":
        return Classification("phone_interaction", "Posible uso del teléfono", HIGH, 15)
    if obs.hand_position == "hidden":
        return Classification("hidden_hands", "Manos no visibles - posible copia", HIGH, 25)
    if obs.hand_position == "suspicious_area":
        return Classification("suspicious_movement", "Movimiento de manos en zona sospechosa", WARNING, 40)
    if obs.suspicious_activity:
        return Classification("excessive_movement", "Movimiento corporal excesivo", WARNING, 45)

    if obs.movement_level == "excessive":
        return Classification("high_movement", "Nivel de movimiento alto", WARNING, max(50, score))

    if obs.body_pose in ("turned_left", "turned_right"):
        side = obs.body_pose.split("_")[1]
        priority = WARNING if obs.confidence > sens.head_turn_threshold else NORMAL
        label = "izquierda" if side == "left" else "derecha"
        return Classification(f"head_turn_{side}", f"El alumno se giró a la {label}", priority, max(60, score))

    if obs.hand_position in ("writing", "typing"):
        return Classification("normal_activity", f"El alumno está {obs.hand_position} - conducta normal de examen", NORMAL, min(100, score + 10))

    if obs.body_pose == "upright" and obs.movement_level == "minimal":
        return Classification("focused_posture", "Postura concentrada", NORMAL, min(100, score + 5))

    return Classification("normal_behavior", "Postura y manos normales", NORMAL, score)


def classify(obs, sensitivity: Optional[Sensitivity] = None) -> Classification:
    if isinstance(obs, FaceObservation):
        return classify_face(obs, sensitivity)
    if isinstance(obs, GestureObservation):
        return classify_gesture(obs, sensitivity)
    raise TypeError(f"Observación no soportada: {type(obs).__name__}")


# =========================
# Transición de estado del alumno
# =========================
def _lower(current: int, penalty: int, floor: int) -> int:
    # Baja hasta el suelo, pero nunca sube un score que ya estaba por debajo
    return max(0, min(current, max(floor, current - penalty)))


def blend_confidence(old: int, new: int) -> int:
    # round((a + b) / 2) con redondeo hacia arriba en .5
    return max(0, min(100, (int(old) + int(new) + 1) // 2))


def plan_update(
    student: StudentResponse,
    priority: str,
    rules: ScoreRules,
    confidence: Optional[int] = None,
) -> Dict[str, Any]:
    """Campos a escribir en el alumno tras una clasificación."""
    updates: Dict[str, Any] = {}
    if confidence is not None:
        updates["ai_confidence"] = blend_confidence(student.ai_confidence, confidence)

    if priority == HIGH:
        updates["status"] = "flagged"
        updates["behavior_score"] = _lower(student.behavior_score, rules.high_penalty, rules.high_floor)
        updates["alert_count"] = student.alert_count + 1
    elif priority == WARNING:
        updates["status"] = "warning" if student.status == "normal" else student.status
        updates["behavior_score"] = _lower(student.behavior_score, rules.warning_penalty, rules.warning_floor)
        warnings = student.warning_count + 1
        updates["warning_count"] = warnings
        if warnings % max(1, rules.warning_alert_every) == 0:
            updates["alert_count"] = student.alert_count + 1
    else:
        updates["behavior_score"] = min(100, student.behavior_score + rules.normal_bonus)

    return updates


# =========================
# Riesgo combinado
# =========================
RECOMMENDATIONS = [
    (80, "Intervención inmediata - Alta sospecha de copia"),
    (60, "Vigilancia cercana recomendada - Comportamiento sospechoso detectado"),
    (40, "Se aconseja más atención - Algunos indicadores preocupantes"),
    (20, "Monitoreo normal - Irregularidades menores"),
]
DEFAULT_RECOMMENDATION = "Continuar monitoreo normal - Sin incidencias relevantes"


def overall_risk(face: FaceObservation, gesture: GestureObservation) -> int:
    risk = 0
    if not face.face_visible:
        risk += 40
    if face.gaze_direction == "away":
        risk += 30
    if face.emotion in ("frustrated", "confused"):
        risk += 15
    if face.attention < 50:
        risk += 20

    if gesture.suspicious_activity:
        risk += 35
    if gesture.hand_position == "hidden":
        risk += 30
    if gesture.movement_level == "excessive":
        risk += 20
    if gesture.stability < 40:
        risk += 15

    risk = float(max(0, min(100, risk)))
    if (face.confidence + gesture.confidence) / 2 < 60:
        risk *= 0.7  # baja confianza -> menos riesgo
    return int(risk + 0.5)


def recommendation_for(risk: int) -> str:
    for threshold, text in RECOMMENDATIONS:
        if risk > threshold:
            return text
    return DEFAULT_RECOMMENDATION
