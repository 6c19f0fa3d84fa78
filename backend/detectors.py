# examwatch/backend/detectors.py
"""
Detectores sintéticos de rostro y de gestos.

Cualquier clase que implemente Detector.analyze(student_id) puede
sustituirlos (p. ej. un modelo real más adelante); el resto del sistema no
sabe qué variante está activa.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Union

import numpy as np

from backend.schemas import FaceObservation, GestureObservation

Observation = Union[FaceObservation, GestureObservation]

FACE = "face"
GESTURE = "gesture"

EMOTIONS = ["neutral", "happy", "sad", "angry", "fearful", "disgusted", "surprised", "confused", "frustrated"]
GAZE_DIRECTIONS = ["center", "left", "right", "up", "down", "away"]

HAND_POSITIONS = ["visible_desk", "hidden", "near_face", "writing", "typing", "suspicious_area", "phone_area"]
BODY_POSES = ["upright", "leaning_forward", "leaning_back", "slouching", "turned_left", "turned_right", "looking_down"]
MOVEMENT_LEVELS = ["minimal", "normal", "high", "excessive"]


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


class Detector(ABC):
    """Produce una observación para un alumno."""

    kind: str = ""
    source: str = ""

    @abstractmethod
    def analyze(self, student_id: str) -> Observation:
        raise NotImplementedError


class SyntheticFaceDetector(Detector):
    """Simula reconocimiento de emociones (FER+) y seguimiento de mirada."""

    kind = FACE
    source = "ai_face_agent"

    def __init__(self, rng: Optional[np.random.Generator] = None) -> None:
        self.rng = rng if rng is not None else np.random.default_rng()

    def analyze(self, student_id: str) -> FaceObservation:
        emotion = str(self.rng.choice(EMOTIONS))
        gaze = str(self.rng.choice(GAZE_DIRECTIONS))
        face_visible = bool(self.rng.random() > 0.1)  # 90% visible

        confidence = self.rng.uniform(60, 100)
        if not face_visible:
            confidence *= 0.3
        if emotion in ("confused", "frustrated"):
            confidence *= 0.8

        attention = 80.0
        if gaze == "center":
            attention += 15
        elif gaze == "away":
            attention -= 30
        elif gaze in ("left", "right"):
            attention -= 10
        if emotion in ("frustrated", "confused"):
            attention -= 20
        elif emotion in ("happy", "neutral"):
            attention += 5
        attention = _clamp(attention + self.rng.uniform(-10, 10))

        return FaceObservation(
            emotion=emotion,
            gaze_direction=gaze,
            face_visible=face_visible,
            confidence=round(confidence),
            attention=round(attention),
        )


class SyntheticGestureDetector(Detector):
    """Simula pose corporal y manos (estilo Mediapipe Pose/Hands)."""

    kind = GESTURE
    source = "ai_gesture_agent"

    def __init__(self, rng: Optional[np.random.Generator] = None) -> None:
        self.rng = rng if rng is not None else np.random.default_rng()

    @staticmethod
    def is_suspicious(hand_position: str, body_pose: str, movement_level: str) -> bool:
        if hand_position in ("hidden", "suspicious_area", "phone_area"):
            return True
        return movement_level == "excessive" and body_pose in ("turned_left", "turned_right")

    def analyze(self, student_id: str) -> GestureObservation:
        hand = str(self.rng.choice(HAND_POSITIONS))
        pose = str(self.rng.choice(BODY_POSES))
        movement = str(self.rng.choice(MOVEMENT_LEVELS))

        confidence = self.rng.uniform(70, 100)
        if hand == "hidden":
            confidence *= 0.6
        if movement == "excessive":
            confidence *= 0.8
        if pose == "upright" and hand == "visible_desk":
            confidence *= 1.1

        stability = 85.0
        if movement == "excessive":
            stability -= 40
        elif movement == "high":
            stability -= 20
        if pose == "slouching":
            stability -= 10
        if hand in ("writing", "typing"):
            stability += 10

        stability = _clamp(stability + self.rng.uniform(-7.5, 7.5))
        confidence = _clamp(confidence, 30, 100)

        return GestureObservation(
            hand_position=hand,
            body_pose=pose,
            movement_level=movement,
            suspicious_activity=self.is_suspicious(hand, pose, movement),
            confidence=round(confidence),
            stability=round(stability),
        )
