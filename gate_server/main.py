"""
Gate Access Server - Main Application
FastAPI application wiring the recognition loop, descriptor cache and gate controller
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .database import DescriptorCache, PersonDirectory
from .face_recognition import get_face_recognizer
from .routers import actuator, enrollment, recognition
from .services.access_log import HttpAccessLog, InMemoryAccessLog
from .services.actuator_devices import ActuatorDevice, create_device
from .services.actuator_gateway import ActuatorGateway
from .services.enrollment_service import EnrollmentService
from .services.frame_sampler import CameraSource, FrameSampler
from .services.image_service import ReferenceImageSource
from .services.recognition_service import RecognitionStateMachine

logger = logging.getLogger(__name__)


def _describe_faces(frame):
    return get_face_recognizer().describe_faces(frame)


def _describe_image(image):
    return get_face_recognizer().describe_image(image)


def create_app(settings: Optional[config.Settings] = None,
               device: Optional[ActuatorDevice] = None,
               detector: Optional[Callable] = None,
               describe: Optional[Callable] = None,
               camera_factory: Optional[Callable[[], CameraSource]] = None,
               load_recognizer: Callable = get_face_recognizer) -> FastAPI:
    """Build the application; collaborators can be swapped for tests"""
    settings = settings or config.load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        config.setup_logging()
        settings.ensure_directories()

        # Detection, serial I/O and access-log delivery run here, off the event loop
        executor = ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="face_recognition")
        app.state.executor = executor
        app.state.settings = settings
        app.state.load_recognizer = load_recognizer

        cache = DescriptorCache(settings.cache.directory, default_ttl=settings.cache.ttl)
        directory = PersonDirectory(settings.people_file, settings.labels_dir)
        enrollment_service = EnrollmentService(
            directory,
            cache,
            ReferenceImageSource(settings.labels_dir),
            describe or _describe_image,
            descriptor_length=settings.recognition.descriptor_length,
            cache_ttl=settings.cache.ttl
        )

        gateway = ActuatorGateway(
            device or create_device(settings.actuator),
            settings.actuator,
            prefs_file=settings.actuator_prefs_file,
            executor=executor
        )
        access_log = HttpAccessLog(settings.access_log_url) if settings.access_log_url else InMemoryAccessLog()

        machine = RecognitionStateMachine(
            detector or _describe_faces,
            gateway,
            access_log,
            settings.recognition,
            executor=executor
        )
        sampler = FrameSampler(
            machine,
            camera_factory or (lambda: CameraSource(settings.camera)),
            settings.recognition,
            executor=executor
        )

        app.state.descriptor_cache = cache
        app.state.person_directory = directory
        app.state.enrollment_service = enrollment_service
        app.state.actuator_gateway = gateway
        app.state.access_log = access_log
        app.state.recognition_machine = machine
        app.state.frame_sampler = sampler

        logger.info("=" * 60)
        logger.info("Gate Access Server - Starting")
        logger.info("People enrolled: %d", len(directory.people))
        logger.info("Cached descriptor sets: %d", len(cache.keys()))
        logger.info("Controller mode: %s (default port %s)", gateway.mode, gateway.last_port)
        logger.info("Access log: %s", settings.access_log_url or "in memory")
        logger.info("=" * 60)
        yield
        # Shutdown
        logger.info("Shutting down capture session and controller...")
        await sampler.stop()
        await gateway.disconnect()
        executor.shutdown(wait=True)
        logger.info("Server shutting down")

    app = FastAPI(title="Gate Access Server", lifespan=lifespan)

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "service": "gate-access-server"}

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(actuator.router, prefix="/api/actuator", tags=["Actuator"])
    app.include_router(recognition.router, prefix="/api/recognition", tags=["Recognition"])
    app.include_router(enrollment.router, prefix="/api", tags=["Enrollment"])
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    config.setup_logging()
    uvicorn.run(app, host=config.HOST, port=config.PORT)
