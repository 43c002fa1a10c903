# gate_server/face_recognition.py
"""
Face Recognition using ArcFace
Descriptor extraction for live frames and enrollment photos
"""
import logging
import threading
from typing import List, Optional, Tuple

import cv2
import numpy as np
import onnxruntime as ort

from . import config

logger = logging.getLogger(__name__)

ARCFACE_INPUT_SIZE = 112
ULTRAFACE_INPUT_SIZE = 640

BBox = Tuple[int, int, int, int]  # (x, y, w, h)


def _iou(box1: BBox, box2: BBox) -> float:
    """Calculate Intersection over Union for two boxes"""
    x1_1, y1_1, w1, h1 = box1
    x2_1, y2_1 = x1_1 + w1, y1_1 + h1

    x1_2, y1_2, w2, h2 = box2
    x2_2, y2_2 = x1_2 + w2, y1_2 + h2

    x1_i = max(x1_1, x1_2)
    y1_i = max(y1_1, y1_2)
    x2_i = min(x2_1, x2_2)
    y2_i = min(y2_1, y2_2)

    if x2_i <= x1_i or y2_i <= y1_i:
        return 0.0

    intersection = (x2_i - x1_i) * (y2_i - y1_i)
    union = w1 * h1 + w2 * h2 - intersection
    return intersection / union if union > 0 else 0.0


def non_max_suppression(detections: List[Tuple[BBox, float]], iou_threshold: float = 0.4) -> List[Tuple[BBox, float]]:
    """Merge overlapping detections, keeping the most confident of each cluster
    Args:
        detections: List of (bbox, confidence) where bbox is (x, y, w, h)
        iou_threshold: IoU above which two boxes are the same face
    """
    remaining = sorted(detections, key=lambda d: d[1], reverse=True)
    kept = []
    while remaining:
        current = remaining.pop(0)
        kept.append(current)
        remaining = [det for det in remaining if _iou(current[0], det[0]) < iou_threshold]
    return kept


def scan_order(detections: List[Tuple[BBox, float]]) -> List[Tuple[BBox, float]]:
    """Sort detections top-to-bottom, then left-to-right"""
    return sorted(detections, key=lambda d: (d[0][1], d[0][0]))


class FaceRecognizer:
    """ArcFace-based descriptor extractor with UltraFace or Haar Cascade detection"""

    def __init__(self):
        logger.info("Loading models...")

        if not config.ARCFACE_MODEL.exists():
            raise FileNotFoundError(
                f"ArcFace model not found at {config.ARCFACE_MODEL}. "
                "Download it into the models directory or set GATE_MODELS_DIR."
            )

        self.arcface_session = ort.InferenceSession(
            str(config.ARCFACE_MODEL),
            providers=['CPUExecutionProvider']
        )

        self.use_ultraface = False
        if config.ULTRAFACE_MODEL.exists():
            try:
                self.ultraface_session = ort.InferenceSession(
                    str(config.ULTRAFACE_MODEL),
                    providers=['CPUExecutionProvider']
                )
                self.use_ultraface = True
                logger.info("UltraFace detector loaded")
            except Exception as e:
                logger.warning("Failed to load UltraFace model (%s), using Haar Cascade", e)

        self.face_cascade = None
        if not self.use_ultraface:
            cascade_path = config.HAAR_CASCADE
            if not cascade_path.exists():
                cascade_path = cv2.data.haarcascades + "haarcascade_frontalface_default.xml"
            cascade = cv2.CascadeClassifier(str(cascade_path))
            if cascade.empty():
                raise RuntimeError(f"Haar Cascade file is invalid: {cascade_path}")
            self.face_cascade = cascade
            logger.info("Haar Cascade loaded from %s", cascade_path)

        logger.info("All models loaded successfully")

    def _detect_ultraface(self, image: np.ndarray, confidence_threshold: float = 0.6) -> List[Tuple[BBox, float]]:
        original_height, original_width = image.shape[:2]

        # Resize and pad to the square UltraFace input
        scale = min(ULTRAFACE_INPUT_SIZE / original_width, ULTRAFACE_INPUT_SIZE / original_height)
        new_width = int(original_width * scale)
        new_height = int(original_height * scale)
        resized = cv2.resize(image, (new_width, new_height), interpolation=cv2.INTER_LINEAR)
        padded = np.zeros((ULTRAFACE_INPUT_SIZE, ULTRAFACE_INPUT_SIZE, 3), dtype=np.uint8)
        padded[:new_height, :new_width] = resized

        input_img = cv2.cvtColor(padded, cv2.COLOR_BGR2RGB).astype(np.float32) / 255.0
        input_tensor = np.expand_dims(np.transpose(input_img, (2, 0, 1)), axis=0)

        input_name = self.ultraface_session.get_inputs()[0].name
        outputs = self.ultraface_session.run(None, {input_name: input_tensor})

        # boxes: [1, N, 4] normalized x1, y1, x2, y2; scores: [1, N]
        boxes = outputs[0][0]
        scores = outputs[1][0]

        detections = []
        for box, score in zip(boxes, scores):
            if score <= confidence_threshold:
                continue
            x1, y1, x2, y2 = (int(v * ULTRAFACE_INPUT_SIZE) for v in box)
            x1, x2 = max(0, min(x1, new_width)), max(0, min(x2, new_width))
            y1, y2 = max(0, min(y1, new_height)), max(0, min(y2, new_height))
            if x2 <= x1 or y2 <= y1:
                continue
            w_orig = int((x2 - x1) / scale)
            h_orig = int((y2 - y1) / scale)
            if w_orig >= config.MIN_FACE_SIZE[0] and h_orig >= config.MIN_FACE_SIZE[1]:
                detections.append(((int(x1 / scale), int(y1 / scale), w_orig, h_orig), float(score)))
        return detections

    def _detect_haar(self, image: np.ndarray) -> List[Tuple[BBox, float]]:
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        faces = self.face_cascade.detectMultiScale(
            gray,
            scaleFactor=1.1,
            minNeighbors=4,
            minSize=config.MIN_FACE_SIZE,
            flags=cv2.CASCADE_SCALE_IMAGE
        )
        detections = []
        for (fx, fy, fw, fh) in faces:
            # Faces are roughly square; very wide or tall boxes are false positives
            aspect_ratio = fw / fh if fh > 0 else 0
            if 0.6 <= aspect_ratio <= 1.5:
                detections.append(((int(fx), int(fy), int(fw), int(fh)), 0.8))  # Haar has no score
        return detections

    def detect_faces(self, image: np.ndarray) -> List[Tuple[BBox, float]]:
        """Detect every face in the image
        Returns: List of (bbox, confidence) in scan order
        """
        if self.use_ultraface:
            detections = self._detect_ultraface(image)
        else:
            detections = self._detect_haar(image)
        return scan_order(non_max_suppression(detections, iou_threshold=0.4))

    def _crop_face(self, image: np.ndarray, bbox: BBox) -> Optional[np.ndarray]:
        height, width = image.shape[:2]
        x, y, w, h = bbox
        padding = int(0.1 * max(w, h))
        face_crop = image[max(0, y - padding):min(height, y + h + padding),
                          max(0, x - padding):min(width, x + w + padding)]
        if face_crop.size == 0 or face_crop.shape[0] < 10 or face_crop.shape[1] < 10:
            return None
        face_resized = cv2.resize(face_crop, (ARCFACE_INPUT_SIZE, ARCFACE_INPUT_SIZE), interpolation=cv2.INTER_LINEAR)
        return cv2.cvtColor(face_resized, cv2.COLOR_BGR2RGB)

    def preprocess_face(self, face_rgb: np.ndarray) -> np.ndarray:
        """Preprocess for ArcFace"""
        face_normalized = (face_rgb.astype(np.float32) - 127.5) / 127.5
        face_tensor = np.transpose(face_normalized, (2, 0, 1))
        return np.expand_dims(face_tensor, axis=0)

    def embed(self, face_rgb: np.ndarray) -> Optional[np.ndarray]:
        """Unit-length ArcFace descriptor for a 112x112 RGB face crop"""
        input_name = self.arcface_session.get_inputs()[0].name
        output = self.arcface_session.run(None, {input_name: self.preprocess_face(face_rgb)})[0]
        embedding = output[0]

        embedding_norm = np.linalg.norm(embedding)
        if embedding_norm < 1e-6:
            logger.warning("Embedding norm too small (%.6f), possible corruption", embedding_norm)
            return None
        return embedding / embedding_norm

    def describe_faces(self, frame: np.ndarray) -> List[np.ndarray]:
        """Descriptors of every face in a live frame, in scan order"""
        descriptors = []
        for bbox, _ in self.detect_faces(frame):
            face_rgb = self._crop_face(frame, bbox)
            if face_rgb is None:
                continue
            descriptor = self.embed(face_rgb)
            if descriptor is not None:
                descriptors.append(descriptor)
        return descriptors

    def describe_image(self, image: np.ndarray) -> Optional[np.ndarray]:
        """Descriptor of the largest face in a reference photo"""
        detections = self.detect_faces(image)
        if not detections:
            return None
        bbox, _ = max(detections, key=lambda d: d[0][2] * d[0][3])
        face_rgb = self._crop_face(image, bbox)
        if face_rgb is None:
            return None
        return self.embed(face_rgb)


_face_recognizer: Optional[FaceRecognizer] = None
_face_recognizer_lock = threading.Lock()


def get_face_recognizer() -> FaceRecognizer:
    """Shared recognizer, loaded on first use"""
    global _face_recognizer
    with _face_recognizer_lock:
        if _face_recognizer is None:
            _face_recognizer = FaceRecognizer()
        return _face_recognizer
