"""
Actuator Devices
Command grammar plus the serial and simulated gate controller drivers
"""
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import serial
import serial.tools.list_ports

from ..config import ActuatorSettings
from ..errors import CommandGrammarError, DeviceError
from ..models import ActuatorCommand, CommandKind, PortInfo

logger = logging.getLogger(__name__)

KEYWORDS = ("STATUS", "PING", "ALL_ON", "ALL_OFF")

SIMULATED_PORTS = (
    PortInfo(path="COM3", manufacturer="Simulated", description="Simulated gate controller"),
    PortInfo(path="COM4", manufacturer="Simulated", description="Simulated gate controller"),
    PortInfo(path="COM5", manufacturer="Simulated", description="Simulated gate controller"),
)


def parse_command(text: str, prefix: str = "L", channel_count: int = 4, max_length: int = 64) -> ActuatorCommand:
    """Classify a command, rejecting anything unsafe to put on the wire

    Toggles are "[prefix]<channel>_ON|OFF"; keywords are STATUS, PING,
    ALL_ON and ALL_OFF. Any other printable ASCII text is a raw command.
    """
    if not isinstance(text, str) or not text.strip():
        raise CommandGrammarError("Empty command")
    text = text.strip()
    if len(text) > max_length:
        raise CommandGrammarError(f"Command longer than {max_length} characters")
    if not all(32 <= ord(ch) <= 126 for ch in text):
        raise CommandGrammarError("Command must be printable ASCII on a single line")

    match = re.fullmatch(rf"(?:{re.escape(prefix)})?(\d+)_(ON|OFF)", text, flags=re.IGNORECASE)
    if match:
        channel = int(match.group(1))
        if 1 <= channel <= channel_count:
            return ActuatorCommand(
                text=text,
                kind=CommandKind.TOGGLE,
                channel=channel,
                state=match.group(2).upper() == "ON"
            )

    if text.upper() in KEYWORDS:
        return ActuatorCommand(text=text, kind=CommandKind.KEYWORD)
    return ActuatorCommand(text=text, kind=CommandKind.RAW)


def acknowledgement(command: ActuatorCommand) -> str:
    """Message reported for an accepted command, whatever the driver"""
    if command.kind == CommandKind.TOGGLE:
        return f"Channel {command.channel} {'ON' if command.state else 'OFF'}"
    return f"Command {command.text.upper()} acknowledged"


def apply_command(channels: Dict[int, bool], command: ActuatorCommand):
    """Update a channel table for a toggle or bulk keyword"""
    if command.kind == CommandKind.TOGGLE:
        channels[command.channel] = bool(command.state)
    elif command.kind == CommandKind.KEYWORD and command.text.upper() in ("ALL_ON", "ALL_OFF"):
        state = command.text.upper() == "ALL_ON"
        for channel in channels:
            channels[channel] = state


def apply_status_reply(channels: Dict[int, bool], line: str, pin_map: Optional[Dict[int, int]] = None) -> bool:
    """Refresh channels from a JSON status reply; other lines are ignored

    Keys end in a number: a controller pin ("pino13") when pin_map lists it,
    otherwise the channel itself ("L1", "1").
    """
    try:
        data = json.loads(line)
    except ValueError:
        return False
    status = data.get("status") if isinstance(data, dict) else None
    if not isinstance(status, dict):
        return False

    updated = False
    for key, value in status.items():
        digits = re.search(r"(\d+)$", str(key))
        if not digits or not isinstance(value, bool):
            continue
        number = int(digits.group(1))
        channel = (pin_map or {}).get(number, number)
        if channel in channels:
            channels[channel] = value
            updated = True
    return updated


class ActuatorDevice(ABC):
    """Driver for a gate controller"""

    mode = "real"
    settles = True  # Whether the hardware needs settle delays around open/close

    @abstractmethod
    def list_ports(self) -> List[PortInfo]:
        ...

    @abstractmethod
    def open(self, path: str, baud_rate: int):
        ...

    @abstractmethod
    def close(self):
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    def execute(self, command: ActuatorCommand, channels: Dict[int, bool]) -> Tuple[str, List[str]]:
        """Run a command, update channels in place
        Returns: (message, reply lines)
        """


class SerialDevice(ActuatorDevice):
    """Gate controller on a serial port (newline-terminated ASCII)"""

    mode = "real"
    settles = True

    def __init__(self, reply_timeout: float = 0.5, max_reply_lines: int = 20,
                 status_pins: Optional[Dict[int, int]] = None):
        self.reply_timeout = reply_timeout
        self.status_pins = dict(status_pins or {})
        self.max_reply_lines = max_reply_lines
        self._port: Optional[serial.Serial] = None

    def list_ports(self) -> List[PortInfo]:
        ports = []
        for p in serial.tools.list_ports.comports():
            logger.debug("Found port %s (%s)", p.device, p.manufacturer or "unknown")
            ports.append(PortInfo(path=p.device, manufacturer=p.manufacturer, description=p.description))
        return ports

    def open(self, path: str, baud_rate: int):
        if self.is_open:
            raise DeviceError(f"Port {self._port.port} is still open")
        try:
            self._port = serial.Serial(
                port=path,
                baudrate=baud_rate,
                timeout=self.reply_timeout,
                write_timeout=self.reply_timeout
            )
        except (serial.SerialException, ValueError) as e:
            self._port = None
            raise DeviceError(str(e)) from e
        logger.info("Serial port %s opened at %d baud", path, baud_rate)

    def close(self):
        port, self._port = self._port, None
        if port is None or not port.is_open:
            return
        try:
            port.close()
        except serial.SerialException as e:
            raise DeviceError(str(e)) from e
        logger.info("Serial port %s closed", port.port)

    @property
    def is_open(self) -> bool:
        return self._port is not None and self._port.is_open

    def _read_replies(self) -> List[str]:
        lines = []
        raw = self._port.readline()
        while raw and len(lines) < self.max_reply_lines:
            line = raw.decode("ascii", errors="replace").strip()
            if line:
                lines.append(line)
            if not self._port.in_waiting:
                break
            raw = self._port.readline()
        return lines

    def execute(self, command: ActuatorCommand, channels: Dict[int, bool]) -> Tuple[str, List[str]]:
        if not self.is_open:
            raise DeviceError("Serial port is not open")
        try:
            self._port.write(f"{command.text}\n".encode("ascii"))
            self._port.flush()
            replies = self._read_replies()
        except serial.SerialException as e:
            raise DeviceError(str(e)) from e

        for line in replies:
            logger.debug("Controller: %s", line)
            apply_status_reply(channels, line, self.status_pins)

        if command.kind == CommandKind.RAW:
            return f"Command {command.text} sent", replies
        apply_command(channels, command)
        return acknowledgement(command), replies


class SimulatedDevice(ActuatorDevice):
    """In-memory stand-in used when no controller is attached"""

    mode = "simulated"
    settles = False

    def __init__(self):
        self.path: Optional[str] = None

    def list_ports(self) -> List[PortInfo]:
        return list(SIMULATED_PORTS)

    def open(self, path: str, baud_rate: int):
        self.path = path
        logger.info("Simulation connected to %s", path)

    def close(self):
        self.path = None

    @property
    def is_open(self) -> bool:
        return self.path is not None

    def execute(self, command: ActuatorCommand, channels: Dict[int, bool]) -> Tuple[str, List[str]]:
        if not self.is_open:
            raise DeviceError("Simulated controller is not connected")
        logger.info("Simulating command: %s", command.text)

        if command.kind == CommandKind.RAW:
            return f"Command {command.text} simulated", []

        apply_command(channels, command)
        keyword = command.text.upper()
        if keyword == "PING":
            replies = ["PONG"]
        elif keyword == "STATUS":
            replies = [json.dumps({"status": {str(ch): state for ch, state in sorted(channels.items())}})]
        else:
            replies = [f"OK: {acknowledgement(command)}"]
        return acknowledgement(command), replies


def create_device(settings: ActuatorSettings) -> ActuatorDevice:
    """Pick the driver once: serial, simulated, or auto (serial when a port exists)"""
    mode = settings.mode.lower()
    if mode == "serial":
        return SerialDevice(reply_timeout=settings.reply_timeout, status_pins=settings.status_pins)
    if mode == "simulated":
        return SimulatedDevice()

    device = SerialDevice(reply_timeout=settings.reply_timeout, status_pins=settings.status_pins)
    if device.list_ports():
        logger.info("Serial ports found, using serial controller")
        return device
    logger.warning("No serial ports found, running in simulation mode")
    return SimulatedDevice()
