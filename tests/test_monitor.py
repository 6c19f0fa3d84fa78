import asyncio
import json
import time

import numpy as np
import pytest

from backend.broadcast import BroadcastChannel
from backend.config import Settings
from backend.detectors import FACE, GESTURE
from backend.monitor import (
    DetectorUnit, EventProcessor, MonitoringNotStartedError, MonitoringService,
    RandomEventInjector, StatsBroadcaster, StudentNotFoundError,
)
from backend.schemas import EventCreate
from backend.scoring import FACE_RULES, MANUAL_RULES, Classification
from backend.store import StudentStore
from helpers import FakeConnection, FixedDetector, face_obs, gesture_obs

SLOW = Settings(face_period=3600, gesture_period=3600, stats_period=3600, injector_period=3600)


class SlowReadStore(StudentStore):
    """Abre la ventana de carrera: la lectura tarda y cede el control."""

    def __init__(self, inner):
        super().__init__(inner.SessionLocal)

    def get_student_by_student_id(self, student_id):
        time.sleep(0.05)
        return super().get_student_by_student_id(student_id)


class FlakyStore(StudentStore):
    def __init__(self, inner, broken_id):
        super().__init__(inner.SessionLocal)
        self.broken_id = broken_id

    def create_event(self, fields):
        if fields["student_id"] == self.broken_id:
            raise RuntimeError("disco lleno")
        return super().create_event(fields)


def _types(conn):
    return [json.loads(m)["type"] for m in conn.messages]


# 1. PROCESADOR
def test_event_is_broadcast_before_student_update(store):
    channel = BroadcastChannel()
    a, b = FakeConnection(), FakeConnection()
    channel.connect(a)
    channel.connect(b)
    processor = EventProcessor(store, channel)
    detector = FixedDetector(FACE, face_obs(face_visible=False))

    result = asyncio.run(processor.process_observation(detector, "STU101", detector.observation))

    assert result.event.event == "face_not_visible"
    assert result.student.status == "flagged"
    for conn in (a, b):
        assert _types(conn) == ["event", "student_update"]
        event_msg, student_msg = [json.loads(m)["data"] for m in conn.messages]
        assert event_msg["studentId"] == "STU101"
        assert student_msg["alertCount"] == 1


def test_concurrent_updates_are_not_lost(store):
    """Un 'high' y un 'warning' a la vez sobre el mismo alumno: ambas alertas cuentan"""
    slow = SlowReadStore(store)
    processor = EventProcessor(slow, BroadcastChannel())
    before = store.get_student_by_student_id("STU101")

    async def both():
        await asyncio.gather(
            processor.record("STU101", Classification("gaze_away", "x", "high", 30), "ai_face_agent", FACE_RULES, 90),
            processor.record("STU101", Classification("hand_movement", "y", "warning", 60), "manual", MANUAL_RULES),
        )

    asyncio.run(both())

    after = store.get_student_by_student_id("STU101")
    assert after.alert_count == before.alert_count + 2
    assert after.status == "flagged"
    assert len(store.list_events_for_student("STU101")) == 2
    assert processor._locks == {}


def test_submit_event_for_unknown_student_only_stores_event(store):
    channel = BroadcastChannel()
    conn = FakeConnection()
    channel.connect(conn)
    processor = EventProcessor(store, channel)

    payload = EventCreate(student_id="GHOST", event="phone", score=10, priority="high")
    result = asyncio.run(processor.submit_event(payload))

    assert result.student is None
    assert result.event.source == "manual"
    assert _types(conn) == ["event"]
    assert processor._locks == {}


def test_admin_reset_is_not_undone_by_tick_in_progress(store):
    """El reset espera al tick que ya leyó al alumno, en vez de ser pisado por él"""
    processor = EventProcessor(SlowReadStore(store), BroadcastChannel())
    flagged = store.get_student_by_student_id("STU103")

    async def scenario():
        tick = asyncio.create_task(
            processor.record("STU103", Classification("gaze_left", "x", "warning", 50), "ai_face_agent", FACE_RULES, 80)
        )
        await asyncio.sleep(0.01)
        reset = await processor.reset_student(flagged.id)
        await tick
        return reset

    reset = asyncio.run(scenario())

    after = store.get_student_by_student_id("STU103")
    assert reset.status == "normal"
    assert (after.status, after.warning_count) == ("normal", 0)
    assert processor._locks == {}


def test_deactivate_student(store):
    processor = EventProcessor(store, BroadcastChannel())
    student = store.get_student_by_student_id("STU104")
    assert asyncio.run(processor.deactivate_student(student.id)) is True
    assert asyncio.run(processor.deactivate_student(9999)) is False
    assert asyncio.run(processor.reset_student(9999)) is None
    assert "STU104" not in [s.student_id for s in store.list_active_students()]


def test_locks_are_shared_while_in_use_and_dropped_after(store):
    processor = EventProcessor(store, BroadcastChannel())
    order = []

    async def hold(name):
        async with processor.locked("STU101"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    async def scenario():
        await asyncio.gather(hold("a"), hold("b"), hold("c"))

    asyncio.run(scenario())

    assert order == ["a-in", "a-out", "b-in", "b-out", "c-in", "c-out"]
    assert processor._locks == {}


# 2. UNIDADES DE DETECCIÓN
def test_tick_processes_every_active_student_once(store):
    store.soft_delete_student(store.get_student_by_student_id("STU108").id)
    detector = FixedDetector(GESTURE, gesture_obs(hand_position="phone_area", suspicious_activity=True))
    unit = DetectorUnit(detector, EventProcessor(store, BroadcastChannel()), period=4)

    processed = asyncio.run(unit.tick())

    assert processed == 7
    assert "STU108" not in detector.calls
    assert store.count_events() == 7
    for student in store.list_active_students():
        assert student.status == "flagged"


def test_tick_survives_a_failing_student(store):
    flaky = FlakyStore(store, broken_id="STU102")
    unit = DetectorUnit(FixedDetector(FACE, face_obs()), EventProcessor(flaky, BroadcastChannel()), period=3)

    assert asyncio.run(unit.tick()) == 7
    assert store.list_events_for_student("STU102") == []
    assert len(store.list_events_for_student("STU103")) == 1


def test_stats_broadcaster_prunes_and_sends(store):
    for _ in range(5):
        store.create_event({"student_id": "STU101", "event": "x", "score": 1, "source": "s"})
    channel = BroadcastChannel()
    conn = FakeConnection()
    channel.connect(conn)

    stats = asyncio.run(StatsBroadcaster(store, channel, period=5, max_events=3).tick())

    assert store.count_events() == 3
    assert stats.active_students == 8
    assert _types(conn) == ["stats_update"]


def test_injector_tick_emits_event_update_and_stats(store):
    channel = BroadcastChannel()
    conn = FakeConnection()
    channel.connect(conn)
    processor = EventProcessor(store, channel)
    stats = StatsBroadcaster(store, channel, period=5, max_events=0)
    injector = RandomEventInjector(processor, stats, period=2, rng=np.random.default_rng(3))

    result = asyncio.run(injector.tick())

    assert result.event.source in ("ai_face_agent", "ai_gesture_agent")
    assert _types(conn) == ["event", "student_update", "stats_update"]


@pytest.mark.parametrize("event,priority", [
    ("focused_behavior", "normal"),
    ("normal_behavior", "normal"),
    ("eye_tracking_lost", "warning"),
    ("hand_movement", "warning"),
])
def test_injector_classification(event, priority):
    injector = RandomEventInjector(None, None, period=2, rng=np.random.default_rng(0))
    c = injector.make_classification(event)
    assert c.priority == priority
    assert 0 <= c.score <= 100


def test_injector_risky_events_are_high_or_warning():
    injector = RandomEventInjector(None, None, period=2, rng=np.random.default_rng(0))
    for _ in range(20):
        c = injector.make_classification("face_not_visible")
        assert c.priority in ("high", "warning")
        assert 30 <= c.score < 70


# 3. SERVICIO
def _service(store, **kwargs):
    face = FixedDetector(FACE, kwargs.pop("face", face_obs()))
    gesture = FixedDetector(GESTURE, kwargs.pop("gesture", gesture_obs()))
    return MonitoringService(store, BroadcastChannel(), SLOW, face_detector=face, gesture_detector=gesture, **kwargs)


def test_analysis_requires_monitoring(store):
    service = _service(store)
    with pytest.raises(MonitoringNotStartedError):
        asyncio.run(service.get_student_analysis("STU101"))


def test_start_stop_and_analysis(store):
    risky_face = face_obs(face_visible=False, gaze_direction="away", emotion="confused", attention=30, confidence=20)
    risky_gesture = gesture_obs(hand_position="hidden", suspicious_activity=True, movement_level="excessive", stability=20, confidence=40)
    service = _service(store, face=risky_face, gesture=risky_gesture)

    async def scenario():
        service.start()
        service.start()  # idempotente
        assert all(t.running for t in service._tasks())
        analysis = await service.analyze_student("STU101")
        with pytest.raises(StudentNotFoundError):
            await service.get_student_analysis("NOPE")
        await service.shutdown()
        return analysis

    analysis = asyncio.run(scenario())

    assert analysis.overall_risk == 70
    assert analysis.recommendation.startswith("Vigilancia cercana")
    assert not service.is_monitoring
    assert not any(t.running for t in service._tasks())
    # el análisis bajo demanda no genera eventos
    assert store.count_events() == 0


def test_shutdown_waits_for_tick_in_progress(store):
    settings = Settings(face_period=0.01, gesture_period=3600, stats_period=3600)
    service = MonitoringService(
        SlowReadStore(store), BroadcastChannel(), settings,
        face_detector=FixedDetector(FACE, face_obs()),
        gesture_detector=FixedDetector(GESTURE, gesture_obs()),
    )

    async def scenario():
        service.start()
        while not service.face_unit.ticking:
            await asyncio.sleep(0.005)
        await service.shutdown()

    asyncio.run(scenario())

    assert not service.face_unit.ticking
    # el tick terminó con todos los alumnos antes de devolver el control
    assert store.count_events() == 8


def test_injector_only_when_enabled(store):
    assert _service(store).injector is None
    enabled = MonitoringService(store, BroadcastChannel(), Settings(injector_enabled=True, rng_seed=1))
    assert enabled.injector is not None
    assert enabled.injector in enabled._tasks()


def test_system_status(store):
    service = _service(store)
    store.create_event({"student_id": "STU101", "event": "a", "score": 10, "source": "s", "priority": "high"})
    store.create_event({"student_id": "STU101", "event": "b", "score": 10, "source": "s", "priority": "warning"})
    store.create_event({"student_id": "STU101", "event": "c", "score": 10, "source": "s", "priority": "warning"})
    store.soft_delete_student(store.get_student_by_student_id("STU108").id)

    status = service.get_system_status()

    active = store.list_active_students()
    assert status.is_monitoring is False
    assert status.total_students == 8
    assert status.active_students == 7
    assert status.flagged_students == 1
    assert status.warning_students == 2
    assert status.recent_high_alerts == 1
    assert status.recent_warning_alerts == 2
    assert status.average_behavior_score == round(sum(s.behavior_score for s in active) / 7)
    assert status.average_confidence == round(sum(s.ai_confidence for s in active) / 7)


def test_system_status_without_students(store):
    for student in store.list_active_students():
        store.soft_delete_student(student.id)
    status = _service(store).get_system_status()
    assert status.active_students == 0
    assert status.average_behavior_score == 0


def test_update_sensitivity_reaches_classification(store):
    service = _service(store)
    sens = service.update_sensitivity(95, 50)
    assert service.processor.sensitivity is sens
    assert sens.side_gaze_threshold == 100
    assert sens.head_turn_threshold == 50
