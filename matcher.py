"""Descriptor decoding and nearest-identity matching.

Stored descriptors are decoded once, when rows are read from the database,
into fixed-length float32 vectors. Rows that do not decode never reach
``find_best_match``.
"""
import json
import logging
import math
from dataclasses import dataclass
from numbers import Real
from typing import Iterable, List, Optional, Sequence

import numpy as np

from config import EMBEDDING_DIM, MATCH_THRESHOLD

logger = logging.getLogger(__name__)


class DescriptorError(ValueError):
    """Raised when a stored descriptor is not a valid embedding."""


@dataclass(frozen=True)
class Identity:
    face_id: int
    name: str
    details: str
    descriptor: np.ndarray


@dataclass(frozen=True)
class Match:
    identity: Identity
    distance: float


def decode_descriptor(raw) -> np.ndarray:
    """Decode a stored descriptor (JSON text or sequence) into a 128-float vector."""
    if raw is None:
        raise DescriptorError("descriptor is missing")

    values = raw
    if isinstance(raw, (str, bytes)):
        try:
            values = json.loads(raw)
        except ValueError as e:
            raise DescriptorError(f"descriptor is not valid JSON: {e}") from e

    if isinstance(values, np.ndarray):
        values = values.tolist()
    if not isinstance(values, (list, tuple)):
        raise DescriptorError(f"descriptor is a {type(values).__name__}, expected a list")
    if len(values) != EMBEDDING_DIM:
        raise DescriptorError(f"descriptor has {len(values)} elements, expected {EMBEDDING_DIM}")

    for value in values:
        if isinstance(value, bool) or not isinstance(value, Real):
            raise DescriptorError(f"descriptor element {value!r} is not a number")

    # Checked after the cast: values beyond float32 range become inf
    try:
        with np.errstate(over="ignore"):
            vector = np.asarray(values, dtype=np.float32)
    except (OverflowError, ValueError) as e:
        raise DescriptorError(f"descriptor element out of range: {e}") from e
    if not np.isfinite(vector).all():
        raise DescriptorError("descriptor has non-finite elements")

    return vector


def encode_descriptor(vector: Sequence[float]) -> str:
    """Serialize an embedding to JSON text for storage."""
    return json.dumps([float(v) for v in np.asarray(vector, dtype=np.float32).ravel()])


def load_identities(rows: Iterable) -> List[Identity]:
    """Build Identities from face rows, skipping rows whose descriptor does not decode."""
    identities = []
    for row in rows:
        try:
            descriptor = decode_descriptor(row.descriptor)
        except DescriptorError as e:
            logger.warning("Invalid descriptor for face ID %s: %s", row.face_id, e)
            continue
        identities.append(Identity(
            face_id=row.face_id,
            name=row.name,
            details=row.details,
            descriptor=descriptor,
        ))
    return identities


def euclidean_distance(a, b) -> float:
    return float(np.linalg.norm(np.asarray(a, dtype=np.float32) - np.asarray(b, dtype=np.float32)))


def find_best_match(query, candidates: Iterable[Identity], threshold: float = MATCH_THRESHOLD) -> Optional[Match]:
    """Return the candidate closest to ``query`` if it is strictly under ``threshold``.

    Candidates without a 128-element descriptor are ignored. On equal
    distances the first candidate seen wins.
    """
    query = np.asarray(query, dtype=np.float32)
    if query.shape != (EMBEDDING_DIM,):
        raise ValueError(f"query embedding must have shape ({EMBEDDING_DIM},), got {query.shape}")

    best = None
    best_distance = math.inf

    for candidate in candidates:
        descriptor = candidate.descriptor
        if descriptor is None or np.shape(descriptor) != (EMBEDDING_DIM,):
            logger.warning("Skipping face ID %s: descriptor has the wrong shape", candidate.face_id)
            continue

        distance = euclidean_distance(query, descriptor)
        if distance < best_distance:
            best = candidate
            best_distance = distance

    if best is None or not best_distance < threshold:
        return None
    return Match(identity=best, distance=best_distance)
