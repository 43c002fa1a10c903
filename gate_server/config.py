# gate_server/config.py
"""
Server Configuration
"""
import logging
import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field

# Paths
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("GATE_DATA_DIR", str(BASE_DIR / "data")))
LABELS_DIR = DATA_DIR / "labels"
CACHE_DIR = DATA_DIR / "cache"
MODELS_DIR = Path(os.getenv("GATE_MODELS_DIR", str(BASE_DIR / "models")))

# Model paths
ARCFACE_MODEL = MODELS_DIR / "arcfaceresnet100-8.onnx"
ULTRAFACE_MODEL = MODELS_DIR / "ultraface-RFB-640.onnx"
HAAR_CASCADE = MODELS_DIR / "haarcascade_frontalface_default.xml"

# Data files
PEOPLE_FILE = DATA_DIR / "people.json"
ACTUATOR_PREFS_FILE = DATA_DIR / "actuator.yaml"

# Face recognition settings
MIN_CONFIDENCE = float(os.getenv("MIN_CONFIDENCE", "0.5"))
DISTANCE_THRESHOLD = float(os.getenv("DISTANCE_THRESHOLD", "0.6"))
# Labels backed by more reference photos are matched more strictly:
# threshold = max(floor, base - (avg_samples_per_label - 1) * step)
DYNAMIC_THRESHOLD = os.getenv("DYNAMIC_THRESHOLD", "false").lower() == "true"
DYNAMIC_THRESHOLD_BASE = 0.6
DYNAMIC_THRESHOLD_FLOOR = 0.3
DYNAMIC_THRESHOLD_STEP = 0.05
DESCRIPTOR_LENGTH = int(os.getenv("DESCRIPTOR_LENGTH", "512"))
MIN_FACE_SIZE = (30, 30)

# Recognition loop timing (in time units, see TIME_UNIT_SECONDS)
PAUSE_DURATION = int(os.getenv("PAUSE_DURATION", "20"))
SUPPRESSION_DURATION = float(os.getenv("SUPPRESSION_DURATION", "25"))
TICK_DELAY = float(os.getenv("TICK_DELAY", "1.5"))
TIME_UNIT_SECONDS = float(os.getenv("TIME_UNIT_SECONDS", "1.0"))
TRIGGER_COMMAND = os.getenv("TRIGGER_COMMAND", "L1_ON")

# Descriptor cache
CACHE_TTL = float(os.getenv("CACHE_TTL", str(24 * 60 * 60)))

# Actuator (serial gate controller)
ACTUATOR_MODE = os.getenv("ACTUATOR_MODE", "auto")  # auto, serial or simulated
DEFAULT_PORT = os.getenv("ACTUATOR_PORT", "COM4")
BAUD_RATE = int(os.getenv("ACTUATOR_BAUD_RATE", "9600"))

# Camera
CAMERA_INDEX = int(os.getenv("CAMERA_INDEX", "0"))
CAMERA_WIDTH = int(os.getenv("CAMERA_WIDTH", "640"))
CAMERA_HEIGHT = int(os.getenv("CAMERA_HEIGHT", "480"))

# Access log delivery (external collaborator); empty keeps events in memory
ACCESS_LOG_URL = os.getenv("ACCESS_LOG_URL", "")

# Server settings
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
MAX_WORKERS = int(os.getenv("MAX_WORKERS", "2"))

# Enrollment
MAX_IMAGES_PER_PERSON = 20
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp")


class RecognitionSettings(BaseModel):
    min_confidence: float = MIN_CONFIDENCE
    distance_threshold: float = DISTANCE_THRESHOLD
    dynamic_threshold: bool = DYNAMIC_THRESHOLD
    dynamic_threshold_base: float = DYNAMIC_THRESHOLD_BASE
    dynamic_threshold_floor: float = DYNAMIC_THRESHOLD_FLOOR
    dynamic_threshold_step: float = DYNAMIC_THRESHOLD_STEP
    descriptor_length: int = DESCRIPTOR_LENGTH
    pause_duration: int = Field(PAUSE_DURATION, ge=0)
    suppression_duration: float = Field(SUPPRESSION_DURATION, ge=0)
    tick_delay: float = Field(TICK_DELAY, ge=0)
    time_unit_seconds: float = Field(TIME_UNIT_SECONDS, ge=0)
    trigger_command: str = TRIGGER_COMMAND


class ActuatorSettings(BaseModel):
    mode: str = ACTUATOR_MODE
    default_port: str = DEFAULT_PORT
    baud_rate: int = BAUD_RATE
    channel_prefix: str = "L"
    channel_count: int = 4
    close_settle_seconds: float = 1.0
    open_settle_seconds: float = 2.0
    reply_timeout: float = 0.5
    # Controller pin reported in status replies -> channel number
    status_pins: Dict[int, int] = Field(default_factory=lambda: {13: 1, 12: 2, 11: 3, 10: 4})
    status_on_connect: bool = True
    monitor_size: int = 200
    max_command_length: int = 64


class CacheSettings(BaseModel):
    directory: Path = CACHE_DIR
    ttl: float = CACHE_TTL


class CameraSettings(BaseModel):
    index: int = CAMERA_INDEX
    width: int = CAMERA_WIDTH
    height: int = CAMERA_HEIGHT


class Settings(BaseModel):
    data_dir: Path = DATA_DIR
    labels_dir: Path = LABELS_DIR
    people_file: Path = PEOPLE_FILE
    actuator_prefs_file: Optional[Path] = ACTUATOR_PREFS_FILE
    access_log_url: str = ACCESS_LOG_URL
    max_workers: int = MAX_WORKERS
    recognition: RecognitionSettings = Field(default_factory=RecognitionSettings)
    actuator: ActuatorSettings = Field(default_factory=ActuatorSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    camera: CameraSettings = Field(default_factory=CameraSettings)

    @classmethod
    def for_data_dir(cls, data_dir: Path, **overrides) -> "Settings":
        """Settings with every file store rooted at data_dir"""
        data_dir = Path(data_dir)
        values = {
            "data_dir": data_dir,
            "labels_dir": data_dir / "labels",
            "people_file": data_dir / "people.json",
            "actuator_prefs_file": data_dir / "actuator.yaml",
            "cache": CacheSettings(directory=data_dir / "cache"),
        }
        values.update(overrides)
        return cls(**values)

    def ensure_directories(self):
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.labels_dir.mkdir(parents=True, exist_ok=True)
        self.cache.directory.mkdir(parents=True, exist_ok=True)


def load_settings(config_file: Optional[Path] = None) -> Settings:
    """Load settings, overlaying a YAML file on the environment defaults"""
    if config_file is None:
        env_file = os.getenv("GATE_CONFIG")
        config_file = Path(env_file) if env_file else None

    if config_file is None or not config_file.exists():
        return Settings()

    with open(config_file, 'r') as f:
        data = yaml.safe_load(f) or {}
    return Settings(**data)


def setup_logging(level: str = LOG_LEVEL):
    """Configure root logging once for the server process"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='[%(asctime)s] %(name)-36s %(levelname)-7s %(message)s',
        datefmt='%H:%M:%S'
    )
