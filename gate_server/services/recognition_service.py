"""
Recognition State Machine
Turns detection ticks into access decisions, gate actuation and access events
"""
import asyncio
import logging
import time
from concurrent.futures import Executor
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from ..config import RecognitionSettings
from ..errors import DetectionError
from ..models import AccessEvent, LabeledDescriptorSet, RecognitionEvent
from .face_matcher import FaceMatch, FaceMatcher, dynamic_threshold

logger = logging.getLogger(__name__)

# Frame -> descriptors of every face in scan order
Detector = Callable[[object], List]


class RecognitionState(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    RECOGNIZED = "recognized"
    PAUSED = "paused"


class RecognitionStateMachine:
    """IDLE -> DETECTING -> RECOGNIZED -> PAUSED -> IDLE

    An accepted match stamps the person's cooldown, records the access
    event, actuates the gate and starts the global pause, all within the
    tick that produced it. The per-person suppression window is tracked
    separately from the pause and may outlast it.
    """

    def __init__(self, detector: Detector, gateway, event_sink, settings: RecognitionSettings,
                 labeled_sets: Sequence[LabeledDescriptorSet] = (),
                 executor: Optional[Executor] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.detector = detector
        self.gateway = gateway
        self.event_sink = event_sink
        self.settings = settings
        self._executor = executor
        self._clock = clock

        self.state = RecognitionState.IDLE
        self.pause_remaining = 0
        self.cooldowns: Dict[str, float] = {}  # label -> last trigger time (clock units)
        self.last_event: Optional[RecognitionEvent] = None
        self.last_actuation = None
        self.tick_count = 0
        self._detection_failing = False  # Repeats of a failure are logged at DEBUG
        self.matcher = self._build_matcher(labeled_sets)

    def _build_matcher(self, labeled_sets: Sequence[LabeledDescriptorSet]) -> FaceMatcher:
        threshold = self.settings.distance_threshold
        if self.settings.dynamic_threshold:
            threshold = dynamic_threshold(
                labeled_sets,
                base=self.settings.dynamic_threshold_base,
                floor=self.settings.dynamic_threshold_floor,
                step=self.settings.dynamic_threshold_step
            )
            logger.info("Using dynamic threshold %.2f", threshold)
        return FaceMatcher(labeled_sets, distance_threshold=threshold)

    def update_labels(self, labeled_sets: Sequence[LabeledDescriptorSet]):
        """Swap in a new matcher; takes effect on the next tick"""
        self.matcher = self._build_matcher(labeled_sets)
        logger.info("%d labels loaded for recognition", len(self.matcher))

    @property
    def is_paused(self) -> bool:
        return self.state == RecognitionState.PAUSED

    def is_suppressed(self, label: str, now: Optional[float] = None) -> bool:
        last = self.cooldowns.get(label)
        if last is None:
            return False
        now = self._clock() if now is None else now
        elapsed = (now - last) / self._unit_seconds
        return elapsed < self.settings.suppression_duration

    @property
    def _unit_seconds(self) -> float:
        return self.settings.time_unit_seconds or 1.0

    async def _in_executor(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def tick(self, frame) -> RecognitionState:
        """Process one sampled frame; never raises"""
        if self.is_paused:
            return self.state
        self.tick_count += 1

        try:
            match = await self._detect_and_match(frame)
        except Exception as e:
            if self._detection_failing:
                logger.debug("Detection error: %s", e)
            else:
                logger.error("Detection error: %s (repeats logged at debug level)", e)
                self._detection_failing = True
            self.state = RecognitionState.IDLE
            return self.state

        if self._detection_failing:
            logger.info("Detection recovered")
            self._detection_failing = False

        if match is None:
            return self.state

        if self.is_suppressed(match.label):
            logger.debug("Cooldown active for %s, ignoring detection", match.label)
            self.state = RecognitionState.IDLE
            return self.state

        await self._recognized(match)
        return self.state

    async def _detect_and_match(self, frame) -> Optional[FaceMatch]:
        if frame is None:
            raise DetectionError("No frame captured")
        descriptors = await self._in_executor(self.detector, frame)

        if not descriptors:
            self.state = RecognitionState.IDLE
            return None

        self.state = RecognitionState.DETECTING
        return self.matcher.match_frame(descriptors, self.settings.min_confidence)

    async def _recognized(self, match: FaceMatch):
        now = self._clock()
        self.cooldowns[match.label] = now
        self.state = RecognitionState.RECOGNIZED

        event = RecognitionEvent(label=match.label, confidence=match.confidence)
        self.last_event = event
        logger.info("Recognized: %s (%.1f%%)", event.name, match.confidence * 100)

        try:
            await self._in_executor(self.event_sink.record, AccessEvent.from_recognition(event))
        except Exception as e:
            # The gate still opens when the access log is unreachable
            logger.error("Error saving access log for %s: %s", event.name, e)

        self.last_actuation = await self.gateway.send_command(self.settings.trigger_command)
        if not self.last_actuation.success:
            logger.error("Gate command %s failed: %s", self.settings.trigger_command, self.last_actuation.error)

        self.start_pause()

    def start_pause(self):
        self.pause_remaining = self.settings.pause_duration
        self.state = RecognitionState.PAUSED
        if self.pause_remaining <= 0:
            self._resume()

    def advance_pause(self) -> int:
        """Count the global pause down by one time unit"""
        if not self.is_paused:
            return 0
        self.pause_remaining -= 1
        if self.pause_remaining <= 0:
            self._resume()
        return self.pause_remaining

    def _resume(self):
        self.pause_remaining = 0
        self.state = RecognitionState.IDLE
        logger.info("Detection resumed after pause")

    def reset(self):
        self.state = RecognitionState.IDLE
        self.pause_remaining = 0
        self.cooldowns.clear()
        self._detection_failing = False

    def status(self) -> dict:
        last = self.last_event
        return {
            "state": self.state.value,
            "paused": self.is_paused,
            "pause_remaining": self.pause_remaining,
            "labels": len(self.matcher),
            "ticks": self.tick_count,
            "last_event": last.model_dump(mode='json') if last else None,
            "last_actuation": self.last_actuation.model_dump(mode='json') if self.last_actuation else None
        }
