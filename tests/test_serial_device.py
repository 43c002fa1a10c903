import asyncio
import json

import pytest
import serial

from gate_server.errors import DeviceError
from gate_server.services import actuator_devices
from gate_server.services.actuator_devices import (
    SerialDevice, SimulatedDevice, apply_status_reply, create_device, parse_command
)
from gate_server.services.actuator_gateway import ActuatorGateway

PIN_STATUS = json.dumps({"status": {"pino13": True, "pino12": True, "pino11": False, "pino10": True}})


@pytest.fixture
def loopback(monkeypatch):
    """Route serial.Serial to pyserial's loop:// port; written bytes come back as replies"""
    ports = []
    preload = []
    serial_for_url = serial.serial_for_url

    def open_loopback(port, baudrate, timeout, write_timeout):
        if port.startswith("missing"):
            raise serial.SerialException(f"could not open port '{port}'")
        loop_port = serial_for_url("loop://", baudrate=baudrate, timeout=timeout, write_timeout=write_timeout)
        for line in preload:
            loop_port.write(f"{line}\n".encode("ascii"))
        ports.append(loop_port)
        return loop_port

    monkeypatch.setattr(actuator_devices.serial, "Serial", open_loopback)
    return ports, preload


def make_gateway(device, settings):
    async def fake_sleep(seconds):
        pass

    return ActuatorGateway(device, settings, sleep=fake_sleep)


def serial_device(settings):
    return SerialDevice(reply_timeout=0.5, status_pins=settings.status_pins)


def test_toggle_matches_simulated_controller(loopback, actuator_settings):
    ports, _ = loopback
    serial_gateway = make_gateway(serial_device(actuator_settings), actuator_settings)
    simulated_gateway = make_gateway(SimulatedDevice(), actuator_settings)

    real = asyncio.run(serial_gateway.send_command("L1_ON"))
    simulated = asyncio.run(simulated_gateway.send_command("L1_ON"))

    assert real.success
    assert real.message == simulated.message == "Channel 1 ON"
    assert real.channels == simulated.channels
    assert (real.mode, simulated.mode) == ("real", "simulated")
    assert "L1_ON" in serial_gateway.monitor
    assert len(ports) == 1


def test_pin_status_reply_on_connect_maps_channels(loopback, actuator_settings):
    _, preload = loopback
    preload.append(PIN_STATUS)
    gateway = make_gateway(serial_device(actuator_settings), actuator_settings)

    result = asyncio.run(gateway.connect("COM7"))

    assert result.success
    assert result.channels == {1: True, 2: True, 3: False, 4: True}
    assert gateway.session.channels == {1: True, 2: True, 3: False, 4: True}
    assert gateway.monitor[0] == PIN_STATUS


def test_unknown_command_is_sent_raw(loopback, actuator_settings):
    gateway = make_gateway(serial_device(actuator_settings), actuator_settings)

    result = asyncio.run(gateway.send_command("BLINK"))

    assert result.success
    assert result.message == "Command BLINK sent"
    assert not any(result.channels.values())


def test_write_failure_disconnects(loopback, monkeypatch, actuator_settings):
    ports, _ = loopback
    gateway = make_gateway(serial_device(actuator_settings), actuator_settings)

    def broken_write(data):
        raise serial.SerialException("write failed")

    async def scenario():
        await gateway.connect("COM7")
        monkeypatch.setattr(ports[-1], "write", broken_write)
        return await gateway.send_command("L2_ON")

    result = asyncio.run(scenario())

    assert not result.success
    assert result.error == "write failed"
    assert not gateway.connected
    assert gateway.status()["error"] == "write failed"
    assert gateway.session.channels[2] is False
    assert not ports[-1].is_open


def test_open_failure_is_reported(loopback, actuator_settings):
    device = serial_device(actuator_settings)

    with pytest.raises(DeviceError):
        device.open("missing0", 9600)
    assert not device.is_open

    result = asyncio.run(make_gateway(device, actuator_settings).connect("missing1"))
    assert not result.success
    assert "missing1" in result.error


def test_execute_requires_open_port(actuator_settings):
    device = serial_device(actuator_settings)

    with pytest.raises(DeviceError):
        device.execute(parse_command("PING"), {1: False})


def test_status_reply_pin_map():
    pins = {13: 1, 12: 2, 11: 3, 10: 4}
    channels = {1: False, 2: False, 3: True, 4: False}

    assert apply_status_reply(channels, PIN_STATUS, pins)
    assert channels == {1: True, 2: True, 3: False, 4: True}

    # Unlisted numbers are taken as channel numbers
    assert apply_status_reply(channels, '{"status": {"L3": true, "pino9": true}}', pins)
    assert channels[3] is True


def test_create_device_passes_status_pins(actuator_settings):
    serial_settings = actuator_settings.model_copy(update={"mode": "serial"})

    device = create_device(serial_settings)

    assert device.status_pins == {13: 1, 12: 2, 11: 3, 10: 4}
