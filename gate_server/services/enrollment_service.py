"""
Enrollment Service
Builds labelled descriptor sets from reference photos, backed by the descriptor cache
"""
import logging
from typing import Callable, List, Optional, Sequence

import numpy as np
from pydantic import ValidationError

from ..database import DescriptorCache, PersonDirectory
from ..models import AccessCategory, LabeledDescriptorSet, PersonRecord
from .image_service import ReferenceImageSource

logger = logging.getLogger(__name__)

DESCRIPTOR_KEY_PREFIX = "descriptors_"

# Reference image -> descriptor of its face, or None when no face is found
Describer = Callable[[np.ndarray], Optional[np.ndarray]]


class EnrollmentService:
    """Enrolls and revokes people and loads their descriptor sets"""

    def __init__(self, directory: PersonDirectory, cache: DescriptorCache, image_source: ReferenceImageSource,
                 describe: Describer, descriptor_length: Optional[int] = None, cache_ttl: Optional[float] = None):
        self.directory = directory
        self.cache = cache
        self.image_source = image_source
        self.describe = describe
        self.descriptor_length = descriptor_length
        self.cache_ttl = cache_ttl

    @staticmethod
    def cache_key(person: PersonRecord) -> str:
        return f"{DESCRIPTOR_KEY_PREFIX}{person.folder}"

    def _cached_set(self, person: PersonRecord) -> Optional[LabeledDescriptorSet]:
        key = self.cache_key(person)
        cached = self.cache.get(key, self.cache_ttl)
        if not cached:
            return None
        try:
            return LabeledDescriptorSet.validated(person.label, cached, self.descriptor_length)
        except (ValidationError, ValueError, TypeError) as e:
            logger.warning("Discarding malformed cached descriptors for %s: %s", person.name, e)
            self.cache.invalidate(key)
            return None

    def _compute_descriptors(self, person: PersonRecord) -> List[List[float]]:
        descriptors = []
        for path in self.image_source.list_images(person.folder):
            image = self.image_source.load(path)
            if image is None:
                continue
            try:
                descriptor = self.describe(image)
            except Exception as e:
                logger.warning("Error processing image %s of %s: %s", path.name, person.name, e)
                continue
            if descriptor is not None:
                descriptors.append([float(x) for x in np.asarray(descriptor).ravel()])
        return descriptors

    def descriptor_set(self, person: PersonRecord) -> Optional[LabeledDescriptorSet]:
        """Descriptor set for one person, from cache or freshly computed"""
        labeled = self._cached_set(person)
        if labeled is not None:
            return labeled

        descriptors = self._compute_descriptors(person)
        if not descriptors:
            logger.warning("No valid descriptors found for %s", person.name)
            return None
        try:
            labeled = LabeledDescriptorSet.validated(person.label, descriptors, self.descriptor_length)
        except (ValidationError, ValueError) as e:
            logger.error("Rejecting descriptors for %s: %s", person.name, e)
            return None

        self.cache.put(self.cache_key(person), labeled.descriptors, ttl=self.cache_ttl)
        logger.info("Descriptors cached for %s (%d)", person.name, len(labeled.descriptors))
        return labeled

    def load_labeled_sets(self) -> List[LabeledDescriptorSet]:
        labeled_sets = []
        for person in self.directory.get_all():
            try:
                labeled = self.descriptor_set(person)
            except Exception as e:
                logger.error("Error processing %s: %s", person.name, e)
                continue
            if labeled is not None:
                labeled_sets.append(labeled)
        logger.info("%d labels loaded for recognition", len(labeled_sets))
        return labeled_sets

    def enroll(self, name: str, images: Sequence[np.ndarray],
               category: AccessCategory = AccessCategory.RESIDENT, unit: str = "") -> PersonRecord:
        """Create a person and store their reference photos"""
        if not images:
            raise ValueError("No images provided")
        person = self.directory.create_person(name=name, category=category, unit=unit)
        for image in images:
            self.image_source.save_image(person.folder, image)
        self.cache.invalidate(self.cache_key(person))
        logger.info("Enrolled %s (%s, unit %s) with %d images", person.name, category.value, unit, len(images))
        return person

    def revoke(self, person_id: str) -> bool:
        person = self.directory.get(person_id)
        if person is None:
            return False
        self.cache.invalidate(self.cache_key(person))
        self.directory.delete(person_id)
        logger.info("Revoked enrollment of %s", person.name)
        return True

    def reprocess_all(self) -> int:
        """Drop every cached descriptor so reference photos are analysed again"""
        return self.cache.invalidate(DESCRIPTOR_KEY_PREFIX, prefix=True)
