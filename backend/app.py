# examwatch/backend/app.py
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional
import logging

from fastapi import (
    APIRouter, FastAPI, Depends, HTTPException,
    Query, Request, WebSocket, WebSocketDisconnect
)
from fastapi.middleware.cors import CORSMiddleware

from backend import db, schemas
from backend.broadcast import BroadcastChannel
from backend.config import Settings, configure_logging, load_settings
from backend.monitor import MonitoringNotStartedError, MonitoringService, StudentNotFoundError
from backend.store import StudentStore

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
MAX_EVENTS_PER_PAGE = 5000

router = APIRouter()


# =========================
# Dependencias
# =========================
def get_store(request: Request) -> StudentStore:
    return request.app.state.store


def get_service(request: Request) -> MonitoringService:
    return request.app.state.service


# =========================
# Health
# =========================
@router.get("/api/health")
def health_check(service: MonitoringService = Depends(get_service)):
    return {
        "status": "online",
        "version": VERSION,
        "monitoring": service.is_monitoring,
        "connections": len(service.channel),
        "timestamp": datetime.now().isoformat(),
    }


# =========================
# Consultas
# =========================
@router.get("/api/students", response_model=List[schemas.StudentResponse])
def list_students(store: StudentStore = Depends(get_store)):
    return store.list_active_students()


@router.get("/api/events", response_model=List[schemas.EventResponse])
def list_events(
    student_id: Optional[str] = Query(None, alias="studentId"),
    limit: int = Query(50, ge=1, description="Máximo de eventos recientes"),
    store: StudentStore = Depends(get_store),
):
    if student_id:
        return store.list_events_for_student(student_id)
    return store.list_recent_events(min(limit, MAX_EVENTS_PER_PAGE))


@router.get("/api/stats", response_model=schemas.DashboardStats)
def get_stats(store: StudentStore = Depends(get_store)):
    return store.compute_dashboard_stats()


# =========================
# Eventos manuales
# =========================
@router.post("/api/events", response_model=schemas.EventResponse)
async def create_event(event: schemas.EventCreate, service: MonitoringService = Depends(get_service)):
    result = await service.processor.submit_event(event)
    logger.info("📝 Evento manual '%s' (%s) para %s", event.event, event.priority, event.student_id)
    return result.event


# =========================
# IA
# =========================
async def _run_analysis(coro):
    try:
        return await coro
    except MonitoringNotStartedError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except StudentNotFoundError as e:
        raise HTTPException(status_code=404, detail=f"Alumno no encontrado: {e}")


@router.get("/api/ai/student/{student_id}/analysis", response_model=schemas.StudentAnalysis)
async def get_student_analysis(student_id: str, service: MonitoringService = Depends(get_service)):
    return await _run_analysis(service.get_student_analysis(student_id))


@router.post("/api/ai/analyze/{student_id}", response_model=schemas.StudentAnalysis)
async def analyze_student(student_id: str, service: MonitoringService = Depends(get_service)):
    return await _run_analysis(service.analyze_student(student_id))


@router.get("/api/ai/status", response_model=schemas.SystemStatus)
def get_ai_status(service: MonitoringService = Depends(get_service)):
    return service.get_system_status()


@router.post("/api/ai/start")
async def start_monitoring(service: MonitoringService = Depends(get_service)):
    service.start()
    return {"success": True, "isMonitoring": service.is_monitoring}


@router.post("/api/ai/stop")
async def stop_monitoring(service: MonitoringService = Depends(get_service)):
    service.stop()
    return {"success": True, "isMonitoring": service.is_monitoring}


@router.put("/api/ai/sensitivity")
def update_sensitivity(body: schemas.SensitivityUpdate, service: MonitoringService = Depends(get_service)):
    sens = service.update_sensitivity(body.face_threshold, body.gesture_threshold)
    return {
        "success": True,
        "gazeThreshold": sens.gaze_threshold,
        "sideGazeThreshold": sens.side_gaze_threshold,
        "headTurnThreshold": sens.head_turn_threshold,
    }


# =========================
# Administración (no se emite por websocket; lo recoge el siguiente ciclo de stats)
# =========================
@router.delete("/api/admin/students/{pk}")
async def delete_student(pk: int, service: MonitoringService = Depends(get_service)):
    if not await service.processor.deactivate_student(pk):
        raise HTTPException(status_code=404, detail="Alumno no encontrado")
    logger.info("🗑️ Alumno %d desactivado", pk)
    return {"success": True, "id": pk}


@router.post("/api/admin/students/{pk}/reset", response_model=schemas.StudentResponse)
async def reset_student(pk: int, service: MonitoringService = Depends(get_service)):
    # Con el lock del alumno: un tick a medias no puede deshacer el reset
    student = await service.processor.reset_student(pk)
    if student is None:
        raise HTTPException(status_code=404, detail="Alumno no encontrado")
    logger.info("♻️ Estado del alumno %s restablecido", student.student_id)
    return student


@router.delete("/api/admin/events/{pk}")
def delete_event(pk: int, store: StudentStore = Depends(get_store)):
    if not store.delete_event(pk):
        raise HTTPException(status_code=404, detail="Evento no encontrado")
    return {"success": True, "id": pk}


@router.delete("/api/admin/events")
def clear_events(store: StudentStore = Depends(get_store)):
    deleted = store.delete_all_events()
    return {"success": True, "message": f"Se eliminaron {deleted} eventos", "deleted": deleted}


# =========================
# WebSocket realtime
# =========================
@router.websocket("/ws")
async def websocket_live(websocket: WebSocket):
    channel: BroadcastChannel = websocket.app.state.channel
    await websocket.accept()
    channel.connect(websocket)

    try:
        # El cliente no tiene que enviar nada; leer sirve para detectar el cierre
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        channel.disconnect(websocket)


# =========================
# App
# =========================
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or load_settings()

    engine = db.make_engine(settings.database_url)
    store = StudentStore(db.make_session_factory(engine))
    channel = BroadcastChannel()
    service = MonitoringService(store, channel, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        db.init_db(engine)
        store.seed_students()
        if settings.auto_start:
            service.start()
        yield
        await service.shutdown()
        engine.dispose()

    app = FastAPI(
        title="ExamWatch Live API",
        description="Backend de monitoreo de comportamiento de alumnos en tiempo real",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.channel = channel
    app.state.service = service
    app.include_router(router)
    return app


app = create_app()
