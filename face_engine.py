import logging
from pathlib import Path

import cv2
import numpy as np
import onnxruntime as ort

from config import EMBEDDING_DIM, FACE_MODEL_PATH, INPUT_SIZE, FACE_MARGIN, MIN_FACE_SIZE

logger = logging.getLogger(__name__)


class EncoderError(RuntimeError):
    """The recognition model is unavailable or produced an unusable embedding."""


class FaceEngine:
    def __init__(self, model_path=FACE_MODEL_PATH):
        self.model_path = Path(model_path)
        self.model_dir = self.model_path.parent

        # Create model directory if it doesn't exist
        self.model_dir.mkdir(parents=True, exist_ok=True)

        self.model_available = False
        self.session = None

        try:
            if self.model_path.exists():
                self.session = ort.InferenceSession(str(self.model_path))
                self.model_available = True
                logger.info("Face recognition model loaded from %s", self.model_path)
            else:
                self._report_missing_model()
        except Exception:
            logger.exception("Face recognition model loading failed")

        # Load Haar cascade for face detection
        self.face_cascade = cv2.CascadeClassifier(
            cv2.data.haarcascades + 'haarcascade_frontalface_default.xml'
        )

        # Preprocessing constants
        self.input_size = INPUT_SIZE
        self.mean = np.array([127.5, 127.5, 127.5], dtype=np.float32)
        self.std = np.array([127.5, 127.5, 127.5], dtype=np.float32)

    def _report_missing_model(self):
        logger.warning(
            "Face recognition model not found at %s. Export a %d-d face embedding "
            "network to ONNX and save it there (or set FACE_MODEL_PATH). "
            "Registration and attendance will fail until it is present.",
            self.model_path, EMBEDDING_DIM,
        )

    @staticmethod
    def decode_image(data):
        """Decode encoded image bytes into a BGR array, or None if they are not an image"""
        if not data:
            return None
        nparr = np.frombuffer(data, np.uint8)
        return cv2.imdecode(nparr, cv2.IMREAD_COLOR)

    def preprocess_image(self, image):
        """Preprocess an RGB face crop for the recognition model"""
        if len(image.shape) == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
        elif image.shape[2] == 4:  # RGBA
            image = cv2.cvtColor(image, cv2.COLOR_RGBA2RGB)

        image = cv2.resize(image, self.input_size, interpolation=cv2.INTER_LINEAR)
        image = (image.astype(np.float32) - self.mean) / self.std

        # NCHW
        image = np.transpose(image, (2, 0, 1))
        return np.expand_dims(image, axis=0).astype(np.float32)

    def detect_face_bgr(self, bgr):
        """Detect faces in a BGR image and return the largest bbox as (x1, y1, x2, y2)"""
        gray = cv2.cvtColor(bgr, cv2.COLOR_BGR2GRAY)
        faces = self.face_cascade.detectMultiScale(
            gray,
            scaleFactor=1.1,
            minNeighbors=5,
            minSize=MIN_FACE_SIZE,
        )

        if len(faces) == 0:
            return None

        x, y, w, h = max(faces, key=lambda f: f[2] * f[3])
        return (int(x), int(y), int(x + w), int(y + h))

    def crop_align(self, bgr, bbox):
        """Crop the face with a margin and convert it to RGB"""
        if bbox is None:
            return None

        x1, y1, x2, y2 = bbox
        margin = int(FACE_MARGIN * max(x2 - x1, y2 - y1))
        x1 = max(0, x1 - margin)
        y1 = max(0, y1 - margin)
        x2 = min(bgr.shape[1], x2 + margin)
        y2 = min(bgr.shape[0], y2 + margin)

        face_img = bgr[y1:y2, x1:x2]
        if face_img.size == 0:
            return None

        return cv2.cvtColor(face_img, cv2.COLOR_BGR2RGB)

    def embed(self, face):
        """Extract an L2-normalized 128-d embedding from an RGB face crop"""
        if not self.model_available or self.session is None:
            raise EncoderError("Face recognition model is not loaded")

        processed_image = self.preprocess_image(face)

        input_name = self.session.get_inputs()[0].name
        output_name = self.session.get_outputs()[0].name

        result = self.session.run([output_name], {input_name: processed_image})
        embedding = np.asarray(result[0], dtype=np.float32).reshape(-1)

        if embedding.shape != (EMBEDDING_DIM,):
            raise EncoderError(
                f"Model produced a {embedding.size}-d embedding, expected {EMBEDDING_DIM}"
            )

        norm = np.linalg.norm(embedding)
        if norm > 0:
            embedding = embedding / norm

        return embedding

    def encode(self, data):
        """Return the embedding of the largest face in ``data``, or None when no face is found"""
        img = self.decode_image(data)
        if img is None:
            logger.info("Uploaded file could not be decoded as an image")
            return None

        bbox = self.detect_face_bgr(img)
        if bbox is None:
            return None

        face = self.crop_align(img, bbox)
        if face is None:
            return None

        return self.embed(face)
