import asyncio
import logging

from gate_server.models import LabeledDescriptorSet
from gate_server.services.recognition_service import RecognitionState, RecognitionStateMachine

from .conftest import FakeGateway, RecordingSink

ANA = [0.0, 0.0]
BEN = [5.0, 0.0]


class CountingDetector:
    """Treats each frame as the list of face descriptors it contains"""

    def __init__(self):
        self.calls = 0

    def __call__(self, frame):
        self.calls += 1
        return frame


def make_machine(settings, labeled_sets, clock, gateway=None, sink=None, detector=None):
    return RecognitionStateMachine(
        detector or CountingDetector(),
        gateway or FakeGateway(),
        sink or RecordingSink(),
        settings,
        labeled_sets=labeled_sets,
        clock=clock
    )


def drain_pause(machine):
    while machine.is_paused:
        machine.advance_pause()


def test_recognition_actuates_logs_and_pauses(recognition_settings, labeled_sets, clock):
    gateway, sink = FakeGateway(), RecordingSink()
    machine = make_machine(recognition_settings, labeled_sets, clock, gateway=gateway, sink=sink)

    state = asyncio.run(machine.tick([ANA]))

    assert state == RecognitionState.PAUSED
    assert gateway.commands == ["L1_ON"]
    assert len(sink.events) == 1
    event = sink.events[0]
    assert event.person_label == "Ana"
    assert event.access_category == "RESIDENT"
    assert event.unit_reference == "101"
    assert event.method == "FACIAL_RECOGNITION"
    assert machine.last_event.label == "Ana|RESIDENT|101"


def test_two_faces_most_confident_wins(recognition_settings, labeled_sets, clock):
    gateway = FakeGateway()
    machine = make_machine(recognition_settings, labeled_sets, clock, gateway=gateway)

    asyncio.run(machine.tick([[0.58, 0.0], [5.19, 0.0]]))

    assert machine.last_event.label == "Ben|EMPLOYEE|"
    assert gateway.commands == ["L1_ON"]


def test_pause_counts_down_to_idle(recognition_settings, labeled_sets, clock):
    machine = make_machine(recognition_settings, labeled_sets, clock)
    asyncio.run(machine.tick([ANA]))
    assert machine.pause_remaining == 20

    for _ in range(19):
        machine.advance_pause()
    assert machine.pause_remaining == 1
    assert machine.state == RecognitionState.PAUSED

    machine.advance_pause()
    assert machine.pause_remaining == 0
    assert machine.state == RecognitionState.IDLE


def test_paused_ticks_skip_detection(recognition_settings, labeled_sets, clock):
    detector = CountingDetector()
    machine = make_machine(recognition_settings, labeled_sets, clock, detector=detector)
    asyncio.run(machine.tick([ANA]))

    for _ in range(5):
        assert asyncio.run(machine.tick([BEN])) == RecognitionState.PAUSED
    assert detector.calls == 1


def test_suppression_outlasts_pause(recognition_settings, labeled_sets, clock):
    gateway, sink = FakeGateway(), RecordingSink()
    machine = make_machine(recognition_settings, labeled_sets, clock, gateway=gateway, sink=sink)

    asyncio.run(machine.tick([ANA]))
    clock.advance(20)
    drain_pause(machine)

    # A different person is accepted once the pause is over
    assert asyncio.run(machine.tick([BEN])) == RecognitionState.PAUSED
    drain_pause(machine)

    clock.advance(2)
    assert asyncio.run(machine.tick([ANA])) == RecognitionState.IDLE
    assert [e.person_label for e in sink.events] == ["Ana", "Ben"]

    clock.advance(3)
    assert asyncio.run(machine.tick([ANA])) == RecognitionState.PAUSED
    assert [e.person_label for e in sink.events] == ["Ana", "Ben", "Ana"]
    assert gateway.commands == ["L1_ON"] * 3


def test_unknown_face_stays_detecting(recognition_settings, labeled_sets, clock):
    gateway = FakeGateway()
    machine = make_machine(recognition_settings, labeled_sets, clock, gateway=gateway)

    assert asyncio.run(machine.tick([[2.5, 0.0]])) == RecognitionState.DETECTING
    assert gateway.commands == []


def test_no_faces_is_idle(recognition_settings, labeled_sets, clock):
    machine = make_machine(recognition_settings, labeled_sets, clock)

    assert asyncio.run(machine.tick([])) == RecognitionState.IDLE
    assert machine.tick_count == 1


def test_missing_frame_forces_idle(recognition_settings, labeled_sets, clock):
    machine = make_machine(recognition_settings, labeled_sets, clock)
    machine.state = RecognitionState.DETECTING

    assert asyncio.run(machine.tick(None)) == RecognitionState.IDLE


def test_detector_error_forces_idle(recognition_settings, labeled_sets, clock):
    def broken(frame):
        raise RuntimeError("model crashed")

    gateway = FakeGateway()
    machine = make_machine(recognition_settings, labeled_sets, clock, gateway=gateway, detector=broken)

    assert asyncio.run(machine.tick([ANA])) == RecognitionState.IDLE
    assert gateway.commands == []


def test_sink_failure_still_opens_gate(recognition_settings, labeled_sets, clock):
    class FailingSink:
        def record(self, event):
            raise ConnectionError("access log offline")

    gateway = FakeGateway()
    machine = make_machine(recognition_settings, labeled_sets, clock, gateway=gateway, sink=FailingSink())

    assert asyncio.run(machine.tick([ANA])) == RecognitionState.PAUSED
    assert gateway.commands == ["L1_ON"]
    assert machine.is_suppressed("Ana|RESIDENT|101")


def test_gateway_failure_still_pauses(recognition_settings, labeled_sets, clock):
    machine = make_machine(recognition_settings, labeled_sets, clock, gateway=FakeGateway(success=False))

    assert asyncio.run(machine.tick([ANA])) == RecognitionState.PAUSED
    assert not machine.last_actuation.success


def test_zero_pause_resumes_immediately(recognition_settings, labeled_sets, clock):
    settings = recognition_settings.model_copy(update={"pause_duration": 0})
    machine = make_machine(settings, labeled_sets, clock)

    assert asyncio.run(machine.tick([ANA])) == RecognitionState.IDLE
    assert machine.last_event is not None


def test_update_labels_takes_effect_on_next_tick(recognition_settings, clock):
    gateway = FakeGateway()
    machine = make_machine(recognition_settings, [], clock, gateway=gateway)
    assert asyncio.run(machine.tick([ANA])) == RecognitionState.DETECTING

    machine.update_labels([LabeledDescriptorSet(label="Ana|RESIDENT|101", descriptors=[ANA])])

    assert asyncio.run(machine.tick([ANA])) == RecognitionState.PAUSED
    assert gateway.commands == ["L1_ON"]


def test_repeated_missing_frames_logged_once(recognition_settings, labeled_sets, clock, caplog):
    machine = make_machine(recognition_settings, labeled_sets, clock)
    logger_name = "gate_server.services.recognition_service"

    async def ticks():
        for _ in range(5):
            await machine.tick(None)
        await machine.tick([])
        await machine.tick(None)

    with caplog.at_level(logging.DEBUG, logger=logger_name):
        asyncio.run(ticks())

    errors = [r for r in caplog.records if r.name == logger_name and r.levelno == logging.ERROR]
    repeats = [r for r in caplog.records
               if r.name == logger_name and r.levelno == logging.DEBUG and "No frame captured" in r.getMessage()]
    assert len(errors) == 2
    assert all("No frame captured" in r.getMessage() for r in errors)
    assert len(repeats) == 4
    assert machine.state == RecognitionState.IDLE
