# examwatch/backend/monitor.py
"""
Pipeline en tiempo real.

- EventProcessor: observación -> evento + actualización del alumno -> broadcast,
  con un lock por alumno para que dos timers no pisen sus cambios.
- DetectorUnit: un detector con su propio timer; en cada tick analiza a
  todos los alumnos activos, uno detrás de otro.
- StatsBroadcaster / RandomEventInjector: los otros timers.
- MonitoringService: arranca/para todo junto y responde análisis y estado.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Tuple

import numpy as np

from backend import schemas
from backend.broadcast import BroadcastChannel
from backend.config import Settings
from backend.detectors import Detector, SyntheticFaceDetector, SyntheticGestureDetector
from backend.scoring import (
    HIGH,
    INJECTOR_RULES,
    MANUAL_RULES,
    NORMAL,
    RULES,
    WARNING,
    Classification,
    ScoreRules,
    Sensitivity,
    classify,
    overall_risk,
    plan_update,
    recommendation_for,
)
from backend.store import StudentStore

logger = logging.getLogger(__name__)


class MonitoringNotStartedError(RuntimeError):
    """Se pidió un análisis con los detectores parados."""


class StudentNotFoundError(LookupError):
    pass


@dataclass
class ProcessedEvent:
    event: schemas.EventResponse
    student: Optional[schemas.StudentResponse]


# =========================
# Procesador de eventos
# =========================
class EventProcessor:
    def __init__(
        self,
        store: StudentStore,
        channel: BroadcastChannel,
        sensitivity: Optional[Sensitivity] = None,
    ) -> None:
        self.store = store
        self.channel = channel
        self.sensitivity = sensitivity or Sensitivity()
        # studentId -> (lock, tareas que lo usan o esperan); se borra al quedar en 0
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def locked(self, student_id: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(student_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[student_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[student_id]
            if users == 1:
                del self._locks[student_id]
            else:
                self._locks[student_id] = (lock, users - 1)

    async def reset_student(self, pk: int) -> Optional[schemas.StudentResponse]:
        """Reset de administración, en serie con los ticks del mismo alumno."""
        student = await asyncio.to_thread(self.store.get_student, pk)
        if student is None:
            return None
        async with self.locked(student.student_id):
            return await asyncio.to_thread(self.store.reset_student, pk)

    async def deactivate_student(self, pk: int) -> bool:
        student = await asyncio.to_thread(self.store.get_student, pk)
        if student is None:
            return False
        async with self.locked(student.student_id):
            return await asyncio.to_thread(self.store.soft_delete_student, pk)

    async def process_observation(self, detector: Detector, student_id: str, observation) -> ProcessedEvent:
        classification = classify(observation, self.sensitivity)
        return await self.record(
            student_id,
            classification,
            source=detector.source,
            rules=RULES[detector.kind],
            confidence=observation.confidence,
        )

    async def submit_event(self, payload: schemas.EventCreate) -> ProcessedEvent:
        """Evento enviado a mano: mismo efecto sobre el alumno que uno de un detector."""
        classification = Classification(payload.event, payload.description, payload.priority, payload.score)
        return await self.record(payload.student_id, classification, source=payload.source, rules=MANUAL_RULES)

    async def record(
        self,
        student_id: str,
        classification: Classification,
        source: str,
        rules: ScoreRules,
        confidence: Optional[int] = None,
    ) -> ProcessedEvent:
        # Lectura, escritura y broadcast del mismo alumno en serie
        async with self.locked(student_id):
            event = await asyncio.to_thread(
                self.store.create_event,
                {
                    "student_id": student_id,
                    "event": classification.event,
                    "description": classification.description,
                    "score": classification.score,
                    "source": source,
                    "priority": classification.priority,
                },
            )
            student = await asyncio.to_thread(self.store.get_student_by_student_id, student_id)
            updated = None
            if student is not None:
                updates = plan_update(student, classification.priority, rules, confidence)
                updated = await asyncio.to_thread(self.store.update_student, student.id, updates)

            # Primero el evento, luego el alumno
            await self.channel.send_event(event)
            if updated is not None:
                await self.channel.send_student_update(updated)

        return ProcessedEvent(event=event, student=updated)


# =========================
# Timers
# =========================
class PeriodicTask:
    """Tarea que duerme `period` segundos entre iteraciones."""

    def __init__(self, name: str, period: float) -> None:
        self.name = name
        self.period = period
        self._task: Optional[asyncio.Task] = None
        self._current_tick: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def ticking(self) -> bool:
        return self._current_tick is not None and not self._current_tick.done()

    async def wait_idle(self) -> None:
        """Espera a que termine el tick en curso, si lo hay."""
        if self._current_tick is not None:
            await asyncio.gather(self._current_tick, return_exceptions=True)

    async def tick(self) -> None:
        raise NotImplementedError

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    def stop(self) -> Optional[asyncio.Task]:
        # No esperamos al tick en curso: se cancela solo el sueño entre ticks
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        return task

    async def _run(self) -> None:
        logger.info("▶️ %s: iniciado (cada %.1fs)", self.name, self.period)
        try:
            while True:
                await asyncio.sleep(self.period)
                self._current_tick = asyncio.ensure_future(self._safe_tick())
                await asyncio.shield(self._current_tick)
        except asyncio.CancelledError:
            logger.info("⏹️ %s: detenido", self.name)
            raise

    async def _safe_tick(self) -> None:
        try:
            await self.tick()
        except Exception:
            logger.exception("❌ %s: error en el tick", self.name)


class DetectorUnit(PeriodicTask):
    def __init__(self, detector: Detector, processor: EventProcessor, period: float) -> None:
        super().__init__(f"{detector.kind}-detector", period)
        self.detector = detector
        self.processor = processor

    async def tick(self) -> int:
        """Analiza a cada alumno activo; un fallo no corta el resto del tick."""
        try:
            students = await asyncio.to_thread(self.processor.store.list_active_students)
        except Exception:
            logger.exception("❌ %s: no se pudo leer la lista de alumnos", self.name)
            return 0

        processed = 0
        for student in students:
            try:
                observation = self.detector.analyze(student.student_id)
                await self.processor.process_observation(self.detector, student.student_id, observation)
                processed += 1
            except Exception:
                logger.exception("❌ %s: fallo procesando %s", self.name, student.student_id)
        return processed


class StatsBroadcaster(PeriodicTask):
    def __init__(self, store: StudentStore, channel: BroadcastChannel, period: float, max_events: int) -> None:
        super().__init__("stats-broadcaster", period)
        self.store = store
        self.channel = channel
        self.max_events = max_events

    async def tick(self) -> schemas.DashboardStats:
        if self.max_events > 0:
            await asyncio.to_thread(self.store.prune_events, self.max_events)
        stats = await asyncio.to_thread(self.store.compute_dashboard_stats)
        await self.channel.send_stats(stats)
        return stats


INJECTED_EVENTS = [
    "gaze_left", "gaze_right", "gaze_away", "face_not_visible",
    "suspicious_movement", "normal_behavior", "focused_behavior",
    "hand_movement", "head_turn", "eye_tracking_lost",
]
INJECTED_DESCRIPTIONS = {
    "face_not_visible": "Rostro no visible durante un periodo prolongado",
    "gaze_away": "Mirada fuera de la pantalla de forma prolongada",
    "suspicious_movement": "Movimiento de manos sospechoso",
}


class RandomEventInjector(PeriodicTask):
    """Simulador heredado: un evento aleatorio para un alumno aleatorio."""

    def __init__(self, processor: EventProcessor, stats: StatsBroadcaster, period: float, rng: np.random.Generator) -> None:
        super().__init__("event-injector", period)
        self.processor = processor
        self.stats = stats
        self.rng = rng

    def make_classification(self, event: str) -> Classification:
        if "away" in event or "not_visible" in event or "suspicious" in event:
            priority = HIGH if self.rng.random() > 0.5 else WARNING
            score = int(self.rng.integers(30, 70))
            description = INJECTED_DESCRIPTIONS.get(event, "Múltiples movimientos de mirada")
            return Classification(event, description, priority, score)
        if "focused" in event or "normal" in event:
            description = "Conducta concentrada confirmada" if "focused" in event else "Comportamiento normal"
            return Classification(event, description, NORMAL, int(self.rng.integers(80, 100)))
        return Classification(event, f"{event.replace('_', ' ')} detectado", WARNING, int(self.rng.integers(50, 80)))

    async def tick(self) -> Optional[ProcessedEvent]:
        students = await asyncio.to_thread(self.processor.store.list_active_students)
        if not students:
            return None

        student = students[int(self.rng.integers(len(students)))]
        classification = self.make_classification(str(self.rng.choice(INJECTED_EVENTS)))
        source = str(self.rng.choice(["ai_face_agent", "ai_gesture_agent"]))
        result = await self.processor.record(
            student.student_id,
            classification,
            source=source,
            rules=INJECTOR_RULES,
            confidence=classification.score,
        )
        await self.stats.tick()
        return result


# =========================
# Aggregation manager
# =========================
class MonitoringService:
    def __init__(
        self,
        store: StudentStore,
        channel: BroadcastChannel,
        settings: Optional[Settings] = None,
        face_detector: Optional[Detector] = None,
        gesture_detector: Optional[Detector] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.channel = channel
        self.rng = rng if rng is not None else np.random.default_rng(self.settings.rng_seed)

        self.processor = EventProcessor(store, channel)
        self.face_detector = face_detector or SyntheticFaceDetector(self.rng)
        self.gesture_detector = gesture_detector or SyntheticGestureDetector(self.rng)

        self.face_unit = DetectorUnit(self.face_detector, self.processor, self.settings.face_period)
        self.gesture_unit = DetectorUnit(self.gesture_detector, self.processor, self.settings.gesture_period)
        self.stats_broadcaster = StatsBroadcaster(store, channel, self.settings.stats_period, self.settings.max_events)
        self.injector: Optional[RandomEventInjector] = None
        if self.settings.injector_enabled:
            self.injector = RandomEventInjector(self.processor, self.stats_broadcaster, self.settings.injector_period, self.rng)

        self.is_monitoring = False

    def _tasks(self) -> List[PeriodicTask]:
        tasks: List[PeriodicTask] = [self.face_unit, self.gesture_unit, self.stats_broadcaster]
        if self.injector is not None:
            tasks.append(self.injector)
        return tasks

    def start(self) -> None:
        if self.is_monitoring:
            return
        logger.info("🚀 Iniciando monitoreo completo...")
        for task in self._tasks():
            task.start()
        self.is_monitoring = True

    def stop(self) -> List[asyncio.Task]:
        if not self.is_monitoring:
            return []
        logger.info("🛑 Deteniendo monitoreo...")
        self.is_monitoring = False
        return [t for t in (task.stop() for task in self._tasks()) if t is not None]

    async def shutdown(self) -> None:
        """Para los timers y espera a que terminen, tick en curso incluido (cierre del proceso)."""
        pending = self.stop()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await asyncio.gather(*(task.wait_idle() for task in self._tasks()))

    # -------------------------
    # Consultas
    # -------------------------
    async def get_student_analysis(self, student_id: str) -> schemas.StudentAnalysis:
        if not self.is_monitoring:
            raise MonitoringNotStartedError("Detectores no inicializados - el monitoreo no está activo")

        student = await asyncio.to_thread(self.store.get_student_by_student_id, student_id)
        if student is None or not student.is_active:
            raise StudentNotFoundError(student_id)

        # Muestra independiente, fuera del calendario de ticks
        face = self.face_detector.analyze(student_id)
        gesture = self.gesture_detector.analyze(student_id)
        risk = overall_risk(face, gesture)
        return schemas.StudentAnalysis(
            student_id=student_id,
            face=face,
            gesture=gesture,
            overall_risk=risk,
            recommendation=recommendation_for(risk),
        )

    async def analyze_student(self, student_id: str) -> schemas.StudentAnalysis:
        logger.info("🔍 Análisis manual solicitado para %s", student_id)
        return await self.get_student_analysis(student_id)

    def get_system_status(self) -> schemas.SystemStatus:
        students = self.store.list_active_students()
        recent = self.store.list_recent_events(self.settings.recent_events_window)

        count = len(students)
        avg_score = round(sum(s.behavior_score for s in students) / count) if count else 0
        avg_conf = round(sum(s.ai_confidence for s in students) / count) if count else 0

        return schemas.SystemStatus(
            is_monitoring=self.is_monitoring,
            total_students=self.store.count_students(),
            active_students=count,
            flagged_students=sum(1 for s in students if s.status == "flagged"),
            warning_students=sum(1 for s in students if s.status == "warning"),
            recent_high_alerts=sum(1 for e in recent if e.priority == HIGH),
            recent_warning_alerts=sum(1 for e in recent if e.priority == WARNING),
            average_behavior_score=avg_score,
            average_confidence=avg_conf,
        )

    def update_sensitivity(self, face_threshold: int, gesture_threshold: int) -> Sensitivity:
        sens = self.processor.sensitivity
        sens.gaze_threshold = face_threshold
        sens.head_turn_threshold = gesture_threshold
        logger.info("🎚️ Sensibilidad actualizada - rostro: %d%%, gestos: %d%%", face_threshold, gesture_threshold)
        return sens
