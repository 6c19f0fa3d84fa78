# examwatch/backend/models.py
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from backend.db import Base


class Student(Base):
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    behavior_score = Column(Integer, nullable=False, default=100)
    status = Column(String, nullable=False, default="normal")  # normal, warning, flagged
    alert_count = Column(Integer, nullable=False, default=0)
    warning_count = Column(Integer, nullable=False, default=0)
    last_activity = Column(DateTime, nullable=False, default=datetime.now)
    ai_confidence = Column(Integer, nullable=False, default=100)
    is_active = Column(Boolean, nullable=False, default=True)


class BehaviorEvent(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(String, index=True, nullable=False)  # sin FK: el alumno puede desaparecer
    event = Column(String, nullable=False)
    description = Column(String, nullable=False)
    score = Column(Integer, nullable=False)
    source = Column(String, nullable=False)  # ai_face_agent, ai_gesture_agent, ...
    priority = Column(String, nullable=False, default="normal")  # normal, warning, high
    timestamp = Column(DateTime, index=True, nullable=False, default=datetime.now)
