import pytest

from gate_server.config import ActuatorSettings, RecognitionSettings, Settings
from gate_server.models import CommandResult, LabeledDescriptorSet


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeGateway:
    def __init__(self, success: bool = True):
        self.success = success
        self.commands = []

    async def send_command(self, text):
        self.commands.append(text)
        if self.success:
            return CommandResult.ok("Channel 1 ON", mode="simulated", channels={1: True})
        return CommandResult.failed("Controller unreachable", mode="simulated")


class RecordingSink:
    def __init__(self):
        self.events = []

    def record(self, event):
        self.events.append(event)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recognition_settings():
    return RecognitionSettings(
        min_confidence=0.5,
        distance_threshold=0.6,
        dynamic_threshold=False,
        pause_duration=20,
        suppression_duration=25,
        tick_delay=0,
        time_unit_seconds=1.0,
        trigger_command="L1_ON"
    )


@pytest.fixture
def actuator_settings():
    return ActuatorSettings(
        mode="simulated",
        default_port="COM4",
        close_settle_seconds=1.0,
        open_settle_seconds=2.0
    )


@pytest.fixture
def settings(tmp_path, recognition_settings, actuator_settings):
    return Settings.for_data_dir(
        tmp_path / "data",
        recognition=recognition_settings,
        actuator=actuator_settings,
        access_log_url=""
    )


@pytest.fixture
def labeled_sets():
    return [
        LabeledDescriptorSet(label="Ana|RESIDENT|101", descriptors=[[0.0, 0.0], [0.1, 0.0]]),
        LabeledDescriptorSet(label="Ben|EMPLOYEE|", descriptors=[[5.0, 0.0]]),
    ]
