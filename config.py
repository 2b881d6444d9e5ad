# Face Attendance System Configuration
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent

# Face Recognition
MATCH_THRESHOLD = 0.6       # Max euclidean distance for the same person
EMBEDDING_DIM = 128         # Descriptor length produced by the model
FACE_MODEL_PATH = os.getenv("FACE_MODEL_PATH", str(BASE_DIR / "models" / "face_recognition_128.onnx"))

# Face Processing
INPUT_SIZE = (150, 150)     # Recognition model input size
FACE_MARGIN = 0.1           # Face detection margin
MIN_FACE_SIZE = (30, 30)    # Minimum face size for detection

# Storage
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
FACES_DIR = DATA_DIR / "faces"
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", str(BASE_DIR / "uploads")))
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR / 'attendance.db'}")

# Image store: "local" or "cloudinary"
IMAGE_STORE = os.getenv("IMAGE_STORE", "local")
CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME", "")
CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY", "")
CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET", "")
CLOUDINARY_FOLDER = os.getenv("CLOUDINARY_FOLDER", "face-images")

# Server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
