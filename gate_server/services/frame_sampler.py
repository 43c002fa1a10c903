"""
Frame Sampler
Capture session that owns the camera and paces recognition ticks
"""
import asyncio
import logging
import threading
from concurrent.futures import Executor
from typing import Callable, Optional

import cv2

from ..config import CameraSettings, RecognitionSettings
from .recognition_service import RecognitionStateMachine

logger = logging.getLogger(__name__)


class CameraSource:
    """OpenCV camera opened for the lifetime of one capture session"""

    def __init__(self, settings: CameraSettings):
        self.settings = settings
        self.capture: Optional[cv2.VideoCapture] = None

    def open(self):
        capture = cv2.VideoCapture(self.settings.index)
        if not capture.isOpened():
            capture.release()
            raise RuntimeError(f"Could not open camera {self.settings.index}")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.settings.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.settings.height)
        self.capture = capture
        logger.info("Camera %d opened", self.settings.index)

    def read(self):
        if self.capture is None:
            return None
        ok, frame = self.capture.read()
        return frame if ok else None

    def release(self):
        if self.capture is not None:
            self.capture.release()
            self.capture = None
            logger.info("Camera %d released", self.settings.index)


class FrameSampler:
    """Single cooperative loop: sample, await the tick, wait, repeat

    While the state machine is paused the loop only counts the pause down,
    one time unit per step, and never reads the camera. Stopping cancels the
    loop and releases the camera.
    """

    def __init__(self, machine: RecognitionStateMachine, camera_factory: Callable[[], CameraSource],
                 settings: RecognitionSettings, executor: Optional[Executor] = None,
                 sleep=asyncio.sleep):
        self.machine = machine
        self.camera_factory = camera_factory
        self.settings = settings
        self._executor = executor
        self._sleep = sleep
        self.camera: Optional[CameraSource] = None
        self._task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()
        # Held by worker threads for every read and for the final release
        self._camera_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Acquire the camera and start the sampling loop"""
        if self.running:
            return
        camera = self.camera_factory()
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, camera.open)
        self.camera = camera
        self._stopped = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info("Capture session started")

    async def stop(self):
        """Cancel pending ticks and release the camera"""
        self._stopped.set()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._release_camera()
        logger.info("Capture session stopped")

    def _release_locked(self, camera: CameraSource):
        # Waits for a read still running in a worker thread
        with self._camera_lock:
            camera.release()

    async def _release_camera(self):
        camera, self.camera = self.camera, None
        if camera is None:
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._release_locked, camera)

    def _read_locked(self, camera: CameraSource):
        with self._camera_lock:
            return camera.read()

    async def _read_frame(self):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._read_locked, self.camera)

    async def _run(self):
        unit = self.settings.time_unit_seconds
        read_failing = False
        try:
            while not self._stopped.is_set():
                if self.machine.is_paused:
                    await self._sleep(unit)
                    if self._stopped.is_set():
                        break
                    self.machine.advance_pause()
                    continue

                try:
                    frame = await self._read_frame()
                    read_failing = False
                except Exception as e:
                    log = logger.debug if read_failing else logger.error
                    log("Camera read error: %s", e)
                    read_failing = True
                    frame = None
                if self._stopped.is_set():
                    break
                try:
                    await self.machine.tick(frame)
                except Exception as e:
                    logger.error("Recognition tick failed: %s", e)

                if self.machine.is_paused:
                    continue
                await self._sleep(self.settings.tick_delay * unit)
        finally:
            # Covers cancellation and unexpected loop errors
            await self._release_camera()
