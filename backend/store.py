# examwatch/backend/store.py
"""
Entity Store: alumnos y eventos sobre SQLAlchemy.

Todas las operaciones son síncronas y abren su propia sesión; la capa async
(backend.monitor) las ejecuta en hilos con asyncio.to_thread. Se devuelven
esquemas pydantic, nunca objetos ORM, para no arrastrar sesiones cerradas.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session, sessionmaker

from backend import models, schemas

logger = logging.getLogger(__name__)

# Columnas que se pueden tocar con update_student
UPDATABLE_FIELDS = {
    "name",
    "behavior_score",
    "status",
    "alert_count",
    "warning_count",
    "ai_confidence",
    "is_active",
}

SEED_STUDENTS: List[Dict[str, Any]] = [
    {"student_id": "STU101", "name": "Alex Johnson", "behavior_score": 95, "status": "normal", "alert_count": 0, "ai_confidence": 98},
    {"student_id": "STU102", "name": "Sarah Chen", "behavior_score": 73, "status": "warning", "alert_count": 2, "ai_confidence": 76},
    {"student_id": "STU103", "name": "Mike Rodriguez", "behavior_score": 42, "status": "flagged", "alert_count": 5, "ai_confidence": 45},
    {"student_id": "STU104", "name": "Emma Wilson", "behavior_score": 89, "status": "normal", "alert_count": 0, "ai_confidence": 92},
    {"student_id": "STU105", "name": "David Park", "behavior_score": 91, "status": "normal", "alert_count": 0, "ai_confidence": 88},
    {"student_id": "STU106", "name": "Lisa Zhang", "behavior_score": 71, "status": "warning", "alert_count": 1, "ai_confidence": 68},
    {"student_id": "STU107", "name": "John Smith", "behavior_score": 86, "status": "normal", "alert_count": 0, "ai_confidence": 94},
    {"student_id": "STU108", "name": "Ana Garcia", "behavior_score": 39, "status": "flagged", "alert_count": 3, "ai_confidence": 38},
]


def _clamp(value: int, low: int = 0, high: int = 100) -> int:
    return max(low, min(high, int(value)))


def format_duration(seconds: float) -> str:
    """'1h 5m' como lo muestra el dashboard."""
    total_minutes = int(max(seconds, 0) // 60)
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes}m"


class StudentStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.SessionLocal = session_factory
        self.session_started_at = datetime.now()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.SessionLocal()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================
    # Alumnos
    # =========================
    def seed_students(self, seed: Sequence[Dict[str, Any]] = SEED_STUDENTS) -> int:
        """Carga la lista fija de alumnos si la tabla está vacía."""
        with self._session() as session:
            if session.query(func.count(models.Student.id)).scalar():
                return 0
            for row in seed:
                session.add(models.Student(**schemas.StudentCreate(**row).model_dump()))
            session.commit()
        logger.info("🌱 Alumnos iniciales cargados: %d", len(seed))
        return len(seed)

    def create_student(self, fields: Dict[str, Any]) -> schemas.StudentResponse:
        data = schemas.StudentCreate(**fields).model_dump()
        with self._session() as session:
            student = models.Student(**data, last_activity=datetime.now())
            session.add(student)
            session.commit()
            session.refresh(student)
            return schemas.StudentResponse.model_validate(student)

    def list_active_students(self) -> List[schemas.StudentResponse]:
        with self._session() as session:
            rows = (
                session.query(models.Student)
                .filter(models.Student.is_active.is_(True))
                .order_by(models.Student.id)
                .all()
            )
            return [schemas.StudentResponse.model_validate(s) for s in rows]

    def count_students(self) -> int:
        with self._session() as session:
            return session.query(func.count(models.Student.id)).scalar() or 0

    def get_student(self, pk: int) -> Optional[schemas.StudentResponse]:
        with self._session() as session:
            student = session.get(models.Student, pk)
            return schemas.StudentResponse.model_validate(student) if student else None

    def get_student_by_student_id(self, student_id: str) -> Optional[schemas.StudentResponse]:
        with self._session() as session:
            student = (
                session.query(models.Student)
                .filter(models.Student.student_id == student_id)
                .first()
            )
            return schemas.StudentResponse.model_validate(student) if student else None

    def update_student(self, pk: int, fields: Dict[str, Any]) -> Optional[schemas.StudentResponse]:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Campos no actualizables: {sorted(unknown)}")

        with self._session() as session:
            student = session.get(models.Student, pk)
            if student is None:
                return None
            for key, value in fields.items():
                if key in ("behavior_score", "ai_confidence"):
                    value = _clamp(value)
                setattr(student, key, value)
            student.last_activity = datetime.now()
            session.commit()
            session.refresh(student)
            return schemas.StudentResponse.model_validate(student)

    def soft_delete_student(self, pk: int) -> bool:
        return self.update_student(pk, {"is_active": False}) is not None

    def reset_student(self, pk: int) -> Optional[schemas.StudentResponse]:
        """Intervención explícita: única forma de sacar a un alumno de 'flagged'."""
        return self.update_student(pk, {"status": "normal", "warning_count": 0})

    # =========================
    # Eventos
    # =========================
    def create_event(self, fields: Dict[str, Any]) -> schemas.EventResponse:
        data = schemas.EventCreate(**fields).model_dump()
        with self._session() as session:
            event = models.BehaviorEvent(**data, timestamp=datetime.now())
            session.add(event)
            session.commit()
            session.refresh(event)
            return schemas.EventResponse.model_validate(event)

    def _events_query(self, session: Session):
        return session.query(models.BehaviorEvent).order_by(
            models.BehaviorEvent.timestamp.desc(), models.BehaviorEvent.id.desc()
        )

    def list_recent_events(self, limit: int = 50) -> List[schemas.EventResponse]:
        if limit < 1:
            return []
        with self._session() as session:
            rows = self._events_query(session).limit(limit).all()
            return [schemas.EventResponse.model_validate(e) for e in rows]

    def list_events_for_student(self, student_id: str) -> List[schemas.EventResponse]:
        with self._session() as session:
            rows = (
                self._events_query(session)
                .filter(models.BehaviorEvent.student_id == student_id)
                .all()
            )
            return [schemas.EventResponse.model_validate(e) for e in rows]

    def count_events(self) -> int:
        with self._session() as session:
            return session.query(func.count(models.BehaviorEvent.id)).scalar() or 0

    def delete_event(self, pk: int) -> bool:
        with self._session() as session:
            deleted = session.query(models.BehaviorEvent).filter(models.BehaviorEvent.id == pk).delete()
            session.commit()
            return deleted > 0

    def delete_all_events(self) -> int:
        with self._session() as session:
            deleted = session.query(models.BehaviorEvent).delete()
            session.commit()
        logger.info("🗑️ Eventos eliminados: %d", deleted)
        return deleted

    def prune_events(self, keep: int) -> int:
        """Deja solo los `keep` eventos más recientes."""
        with self._session() as session:
            stale_ids = session.scalars(
                select(models.BehaviorEvent.id)
                .order_by(models.BehaviorEvent.timestamp.desc(), models.BehaviorEvent.id.desc())
                .offset(max(keep, 0))
            ).all()
            if not stale_ids:
                return 0
            deleted = (
                session.query(models.BehaviorEvent)
                .filter(models.BehaviorEvent.id.in_(stale_ids))
                .delete(synchronize_session=False)
            )
            session.commit()
        logger.info("✂️ Retención: %d eventos antiguos eliminados", deleted)
        return deleted

    # =========================
    # Estadísticas
    # =========================
    def compute_dashboard_stats(self) -> schemas.DashboardStats:
        with self._session() as session:
            active, total_alerts, flagged = (
                session.query(
                    func.count(models.Student.id),
                    func.coalesce(func.sum(models.Student.alert_count), 0),
                    func.coalesce(func.sum(case((models.Student.status == "flagged", 1), else_=0)), 0),
                )
                .filter(models.Student.is_active.is_(True))
                .one()
            )

        elapsed = (datetime.now() - self.session_started_at).total_seconds()
        return schemas.DashboardStats(
            active_students=int(active or 0),
            total_alerts=int(total_alerts or 0),
            flagged_students=int(flagged or 0),
            session_duration=format_duration(elapsed),
        )
