from datetime import datetime

from backend import schemas
from backend.detectors import Detector, FACE


class FakeConnection:
    """Websocket de mentira: guarda lo que recibe."""

    def __init__(self):
        self.messages = []

    async def send_text(self, data: str) -> None:
        self.messages.append(data)


class BrokenConnection:
    async def send_text(self, data: str) -> None:
        raise ConnectionResetError("socket cerrado")


class FixedDetector(Detector):
    """Devuelve siempre la misma observación."""

    def __init__(self, kind, observation):
        self.kind = kind
        self.source = "ai_face_agent" if kind == FACE else "ai_gesture_agent"
        self.observation = observation
        self.calls = []

    def analyze(self, student_id):
        self.calls.append(student_id)
        return self.observation


def face_obs(**overrides):
    data = dict(emotion="neutral", gaze_direction="center", face_visible=True, confidence=90, attention=85)
    data.update(overrides)
    return schemas.FaceObservation(**data)


def gesture_obs(**overrides):
    data = dict(
        hand_position="visible_desk", body_pose="leaning_forward", movement_level="normal",
        suspicious_activity=False, confidence=90, stability=80,
    )
    data.update(overrides)
    return schemas.GestureObservation(**data)


def make_student(**overrides):
    data = dict(
        id=1, student_id="STU900", name="Prueba", behavior_score=80, status="normal",
        alert_count=0, warning_count=0, ai_confidence=80, is_active=True,
        last_activity=datetime.now(),
    )
    data.update(overrides)
    return schemas.StudentResponse(**data)
