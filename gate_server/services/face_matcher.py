"""
Face Matcher
Nearest-neighbour classification of face descriptors against enrolled labels
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from ..models import UNKNOWN_LABEL, LabeledDescriptorSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MatchResult:
    """Nearest label for one descriptor"""
    label: str  # UNKNOWN_LABEL when the nearest distance exceeds the threshold
    distance: float
    nearest_label: Optional[str] = None  # Owner of the global minimum, even when unknown

    @property
    def confidence(self) -> float:
        return max(0.0, min(1.0, 1.0 - self.distance))

    @property
    def is_unknown(self) -> bool:
        return self.label == UNKNOWN_LABEL


@dataclass(frozen=True)
class FaceMatch:
    """Accepted candidate of one frame"""
    label: str
    confidence: float
    distance: float
    index: int  # Position of the face in scan order


def dynamic_threshold(labeled_sets: Sequence[LabeledDescriptorSet], base: float = 0.6,
                      floor: float = 0.3, step: float = 0.05) -> float:
    """Distance threshold that tightens as labels gain reference samples"""
    populated = [s for s in labeled_sets if s.descriptors]
    if not populated:
        return base
    avg_samples = sum(len(s.descriptors) for s in populated) / len(populated)
    return max(floor, base - (avg_samples - 1) * step)


class FaceMatcher:
    """Matches descriptors against labelled descriptor sets by Euclidean distance"""

    def __init__(self, labeled_sets: Sequence[LabeledDescriptorSet], distance_threshold: float = 0.6):
        self.distance_threshold = distance_threshold
        self.labels: List[str] = []
        self._matrices: List[np.ndarray] = []
        for labeled in labeled_sets:
            if not labeled.descriptors:
                # A label without descriptors can never be the nearest one
                continue
            self.labels.append(labeled.label)
            self._matrices.append(np.asarray(labeled.descriptors, dtype=np.float64))

        lengths = {m.shape[1] for m in self._matrices}
        if len(lengths) > 1:
            raise ValueError(f"Labeled sets mix descriptor lengths: {sorted(lengths)}")
        self.descriptor_length = lengths.pop() if lengths else None

    def __len__(self):
        return len(self.labels)

    def find_best_match(self, descriptor) -> MatchResult:
        """Label owning the globally minimum distance to descriptor"""
        query = np.asarray(descriptor, dtype=np.float64).ravel()
        if self.descriptor_length is not None and query.shape[0] != self.descriptor_length:
            raise ValueError(f"Descriptor length {query.shape[0]} != {self.descriptor_length}")

        best_label = None
        best_distance = float("inf")
        for label, matrix in zip(self.labels, self._matrices):
            distance = float(np.min(np.linalg.norm(matrix - query, axis=1)))
            # Strict comparison keeps the first label on equal distances
            if distance < best_distance:
                best_distance = distance
                best_label = label

        if best_label is None or best_distance > self.distance_threshold:
            return MatchResult(label=UNKNOWN_LABEL, distance=best_distance, nearest_label=best_label)
        return MatchResult(label=best_label, distance=best_distance, nearest_label=best_label)

    def match_frame(self, descriptors: Sequence, min_confidence: float) -> Optional[FaceMatch]:
        """Best accepted candidate among all faces of one frame

        A face is a candidate when its match is known and its confidence
        exceeds min_confidence; the most confident candidate wins and ties
        go to the earlier face.
        """
        best: Optional[FaceMatch] = None
        for index, descriptor in enumerate(descriptors):
            result = self.find_best_match(descriptor)
            logger.debug("Face %d: %s (confidence %.3f)", index, result.nearest_label, result.confidence)
            if result.is_unknown or result.confidence <= min_confidence:
                continue
            if best is None or result.confidence > best.confidence:
                best = FaceMatch(
                    label=result.label,
                    confidence=result.confidence,
                    distance=result.distance,
                    index=index
                )
        return best
