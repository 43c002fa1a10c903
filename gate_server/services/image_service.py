"""
Image Processing Service
Reference image storage and decoding utilities
"""
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np

from .. import config

logger = logging.getLogger(__name__)


def bytes_to_image(image_bytes: bytes) -> np.ndarray:
    """Convert uploaded bytes to OpenCV image"""
    nparr = np.frombuffer(image_bytes, np.uint8)
    img = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    if img is None:
        raise ValueError("Failed to decode image")
    return img


def load_image(path: Path) -> Optional[np.ndarray]:
    img = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if img is None:
        logger.warning("Failed to read image %s", path)
    return img


class ReferenceImageSource:
    """Folder-per-person store of enrollment photos"""

    def __init__(self, labels_dir: Path, max_images: int = config.MAX_IMAGES_PER_PERSON):
        self.labels_dir = Path(labels_dir)
        self.max_images = max_images

    def list_images(self, folder: str) -> List[Path]:
        """Image files of one enrollment folder, oldest name first"""
        folder_path = self.labels_dir / folder
        if not folder_path.is_dir():
            logger.info("Folder does not exist: %s", folder_path)
            return []
        return sorted(
            p for p in folder_path.iterdir()
            if p.is_file() and p.suffix.lower() in config.IMAGE_EXTENSIONS
        )

    def load(self, path: Path) -> Optional[np.ndarray]:
        return load_image(path)

    def save_image(self, folder: str, image: np.ndarray) -> Path:
        """Save image into the person's folder and return its path"""
        folder_path = self.labels_dir / folder
        folder_path.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        filepath = folder_path / f"{folder}_{timestamp}.jpg"
        cv2.imwrite(str(filepath), image, [cv2.IMWRITE_JPEG_QUALITY, 95])

        # Keep only last N images
        existing = self.list_images(folder)
        for old_path in existing[:-self.max_images]:
            old_path.unlink()
        return filepath
