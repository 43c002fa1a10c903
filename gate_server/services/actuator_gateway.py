"""
Actuator Gateway
Connection lifecycle and command delivery for the gate controller
"""
import asyncio
import logging
from collections import deque
from concurrent.futures import Executor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from ..config import ActuatorSettings
from ..errors import CommandGrammarError, DeviceError
from ..models import CommandResult, ConnectionStatus, DeviceConnectionState, PortInfo
from .actuator_devices import ActuatorDevice, parse_command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceSession:
    """Connection state and channel table of one controller connection"""
    state: DeviceConnectionState
    channels: Dict[int, bool] = field(default_factory=dict)

    @classmethod
    def fresh(cls, path: str, baud_rate: int, channel_count: int,
              status: ConnectionStatus = ConnectionStatus.DISCONNECTED, last_error: str = "") -> "DeviceSession":
        state = DeviceConnectionState(path=path, baud_rate=baud_rate, status=status, last_error=last_error)
        return cls(state=state, channels={ch: False for ch in range(1, channel_count + 1)})


class ActuatorGateway:
    """Uniform connect/command interface over one ActuatorDevice

    Every operation returns a CommandResult; device failures never escape.
    connect, send_command and disconnect are serialized, so a caller never
    sees a half-open connection.
    """

    def __init__(self, device: ActuatorDevice, settings: ActuatorSettings,
                 prefs_file: Optional[Path] = None, executor: Optional[Executor] = None,
                 sleep=asyncio.sleep):
        self.device = device
        self.settings = settings
        self.prefs_file = Path(prefs_file) if prefs_file else None
        self._executor = executor
        self._sleep = sleep
        self._lock = asyncio.Lock()

        prefs = self.load_preferences()
        self.last_port: str = prefs.get('port') or settings.default_port
        baud_rate = int(prefs.get('baud_rate') or settings.baud_rate)
        self.session = DeviceSession.fresh(self.last_port, baud_rate, settings.channel_count)
        self.monitor = deque(maxlen=settings.monitor_size)
        self.connect_attempts = 0

    @property
    def mode(self) -> str:
        return self.device.mode

    @property
    def connected(self) -> bool:
        return self.session.state.connected and self.device.is_open

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    def load_preferences(self) -> dict:
        """Last successful port and baud rate"""
        if self.prefs_file is None or not self.prefs_file.exists():
            return {}
        try:
            with open(self.prefs_file, 'r') as f:
                prefs = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Ignoring unreadable actuator preferences %s: %s", self.prefs_file, e)
            return {}
        return prefs if isinstance(prefs, dict) else {}

    def save_preferences(self):
        if self.prefs_file is None:
            return
        try:
            self.prefs_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.prefs_file, 'w') as f:
                yaml.safe_dump({'port': self.last_port, 'baud_rate': self.session.state.baud_rate}, f)
        except OSError as e:
            logger.warning("Could not save actuator preferences: %s", e)

    async def list_devices(self) -> List[PortInfo]:
        try:
            return await self._run(self.device.list_ports)
        except Exception as e:
            logger.error("Error listing ports: %s", e)
            return []

    async def connect(self, path: Optional[str] = None, baud_rate: Optional[int] = None) -> CommandResult:
        async with self._lock:
            return await self._connect(path, baud_rate)

    async def _close_device(self) -> Optional[str]:
        try:
            await self._run(self.device.close)
        except (DeviceError, OSError) as e:
            logger.warning("Error closing port: %s", e)
            return str(e)
        return None

    async def _connect(self, path: Optional[str], baud_rate: Optional[int]) -> CommandResult:
        path = path or self.last_port
        baud_rate = baud_rate or self.session.state.baud_rate
        channel_count = self.settings.channel_count
        self.connect_attempts += 1

        # Tear down the current connection completely before opening another
        if self.device.is_open:
            await self._close_device()
            if self.device.settles and self.settings.close_settle_seconds:
                await self._sleep(self.settings.close_settle_seconds)

        logger.info("Connecting to controller on %s (%d baud, %s)", path, baud_rate, self.mode)
        self.session = DeviceSession.fresh(path, baud_rate, channel_count, ConnectionStatus.CONNECTING)
        try:
            await self._run(self.device.open, path, baud_rate)
        except (DeviceError, OSError) as e:
            logger.error("Error opening port %s: %s", path, e)
            self.session = DeviceSession.fresh(path, baud_rate, channel_count, last_error=str(e))
            return CommandResult.failed(f"Failed to connect to {path}: {e}", mode=self.mode)

        self.session = DeviceSession.fresh(path, baud_rate, channel_count, ConnectionStatus.CONNECTED)
        self.last_port = path
        self.save_preferences()

        if self.device.settles and self.settings.open_settle_seconds:
            await self._sleep(self.settings.open_settle_seconds)

        if self.settings.status_on_connect:
            status = await self._execute(parse_command("STATUS"))
            if not status.success:
                return CommandResult.failed(f"Connected to {path} but controller did not answer: {status.error}",
                                            mode=self.mode)

        return CommandResult.ok(f"Connected to {path}", mode=self.mode, channels=dict(self.session.channels))

    async def _execute(self, command) -> CommandResult:
        command = command.model_copy(update={"mode": self.mode})
        # Work on a copy; the session table is replaced only after success
        channels = dict(self.session.channels)
        try:
            message, replies = await self._run(self.device.execute, command, channels)
        except (DeviceError, OSError) as e:
            logger.error("Error sending command %s: %s", command.text, e)
            await self._close_device()
            self.session = replace(
                self.session,
                state=self.session.state.model_copy(
                    update={"status": ConnectionStatus.DISCONNECTED, "last_error": str(e)}
                )
            )
            return CommandResult.failed(str(e), mode=self.mode)

        self.monitor.extend(replies)
        self.session = replace(self.session, channels=channels)
        logger.info("Command %s: %s (%s)", command.text, message, self.mode)
        return CommandResult.ok(message, mode=self.mode, channels=dict(channels))

    async def send_command(self, text: str) -> CommandResult:
        """Send one command, connecting once first if needed"""
        try:
            command = parse_command(
                text,
                prefix=self.settings.channel_prefix,
                channel_count=self.settings.channel_count,
                max_length=self.settings.max_command_length
            )
        except CommandGrammarError as e:
            logger.warning("Rejected command %r: %s", text, e)
            return CommandResult.failed(str(e), mode=self.mode)

        async with self._lock:
            if not self.connected:
                logger.info("Controller not connected, connecting to %s", self.last_port)
                result = await self._connect(self.last_port, None)
                if not result.success:
                    return CommandResult.failed(result.error, mode=self.mode)
            return await self._execute(command)

    async def disconnect(self) -> CommandResult:
        async with self._lock:
            error = await self._close_device() if self.device.is_open else None
            state = self.session.state
            self.session = replace(
                self.session,
                state=state.model_copy(update={
                    "status": ConnectionStatus.DISCONNECTED,
                    "last_error": error or state.last_error
                })
            )
            if error:
                return CommandResult.failed(error, mode=self.mode)
            logger.info("Disconnected from controller")
            return CommandResult.ok("Disconnected", mode=self.mode)

    def status(self) -> dict:
        state = self.session.state
        connected = self.connected
        return {
            "connected": connected,
            "status": state.status.value,
            "port": state.path,
            "baud_rate": state.baud_rate,
            "mode": self.mode,
            "channels": dict(self.session.channels),
            "error": state.last_error or None,
            "message": f"Controller connected on {state.path}" if connected else "Controller disconnected"
        }
