# examwatch/backend/schemas.py
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Literal

Priority = Literal["normal", "warning", "high"]
StudentStatus = Literal["normal", "warning", "flagged"]


class CamelModel(BaseModel):
    # El dashboard habla camelCase (studentId, behaviorScore...)
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =========================
# Alumnos
# =========================
class StudentCreate(CamelModel):
    student_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    behavior_score: int = Field(100, ge=0, le=100)
    status: StudentStatus = "normal"
    alert_count: int = Field(0, ge=0)
    ai_confidence: int = Field(100, ge=0, le=100)
    is_active: bool = True


class StudentResponse(StudentCreate):
    id: int
    warning_count: int = 0
    last_activity: datetime
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


# =========================
# Eventos
# =========================
# Lo que recibimos de un envío manual (o lo que produce un detector)
class EventCreate(CamelModel):
    student_id: str = Field(min_length=1)
    event: str = Field(min_length=1)
    description: str = ""
    score: int = Field(ge=0, le=100)
    source: str = Field("manual", min_length=1)
    priority: Priority = "normal"


# Lo que devolvemos al usuario
class EventResponse(EventCreate):
    id: int
    timestamp: datetime
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)


class DashboardStats(CamelModel):
    active_students: int
    total_alerts: int
    flagged_students: int
    session_duration: str


# =========================
# Observaciones (efímeras, nunca se guardan)
# =========================
class FaceObservation(CamelModel):
    emotion: str
    gaze_direction: str
    face_visible: bool
    confidence: int = Field(ge=0, le=100)
    attention: int = Field(ge=0, le=100)


class GestureObservation(CamelModel):
    hand_position: str
    body_pose: str
    movement_level: str
    suspicious_activity: bool
    confidence: int = Field(ge=0, le=100)
    stability: int = Field(ge=0, le=100)


class StudentAnalysis(CamelModel):
    student_id: str
    face: FaceObservation
    gesture: GestureObservation
    overall_risk: int
    recommendation: str


class SystemStatus(CamelModel):
    is_monitoring: bool
    total_students: int
    active_students: int
    flagged_students: int
    warning_students: int
    recent_high_alerts: int
    recent_warning_alerts: int
    average_behavior_score: int
    average_confidence: int


class SensitivityUpdate(CamelModel):
    face_threshold: int = Field(ge=0, le=100)
    gesture_threshold: int = Field(ge=0, le=100)
