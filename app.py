import datetime as dt
import logging
import shutil
from contextlib import asynccontextmanager
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Optional
from uuid import uuid4

from fastapi import FastAPI, UploadFile, File, Form, HTTPException, Query, Depends, Body
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from config import BASE_DIR, FACES_DIR, UPLOAD_DIR, CORS_ORIGINS, HOST, PORT, LOG_LEVEL
from database import Face, Attendance, get_session, init_db, today
from face_engine import FaceEngine
from image_store import ImageStore, create_image_store
from matcher import encode_descriptor, find_best_match, load_identities

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


# Pydantic models for API
class StudentResponse(BaseModel):
    face_id: int
    name: str
    details: str


class AttendanceResponse(BaseModel):
    id: int
    face_id: int
    name: Optional[str] = None
    date: str


@lru_cache
def get_face_engine() -> FaceEngine:
    return FaceEngine()


@lru_cache
def get_image_store() -> ImageStore:
    return create_image_store()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and load the recognition model before serving"""
    init_db()
    get_face_engine()
    logger.info("Face attendance service ready")
    yield


configure_logging()

app = FastAPI(title="Face Attendance System", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATIC_DIR = BASE_DIR / "static"

FACES_DIR.mkdir(parents=True, exist_ok=True)
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)


@app.exception_handler(StarletteHTTPException)
async def plain_text_http_exception(request, exc):
    """Every endpoint answers in plain text, errors included"""
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code)


def save_upload(upload: UploadFile) -> Path:
    """Write an uploaded file to the upload directory and return its path"""
    suffix = Path(upload.filename or "").suffix or ".jpg"
    path = UPLOAD_DIR / f"{uuid4().hex}{suffix}"
    with path.open("wb") as out:
        shutil.copyfileobj(upload.file, out)
    return path


# Handlers that touch the image store, the model or the database are plain
# functions so FastAPI runs them in its threadpool.
@app.post("/register", response_class=PlainTextResponse)
def register_face(
    name: str = Form(...),
    details: str = Form(""),
    face_image: UploadFile = File(..., alias="faceImage"),
    session: Session = Depends(get_session),
    face_engine: FaceEngine = Depends(get_face_engine),
    image_store: ImageStore = Depends(get_image_store),
):
    """Register a person from a single photo"""
    upload_path = save_upload(face_image)
    try:
        # Encode from the stored copy so registration sees what the store kept
        image_url = image_store.upload(upload_path)
        descriptor = face_engine.encode(image_store.fetch(image_url))
    except Exception as e:
        logger.exception("Registration failed for %s", name)
        raise HTTPException(status_code=500, detail=f"Internal server error: {e}")
    finally:
        upload_path.unlink(missing_ok=True)

    if descriptor is None:
        return "No face detected"

    face = Face(name=name, details=details, descriptor=encode_descriptor(descriptor))
    try:
        session.add(face)
        session.commit()
        session.refresh(face)
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Could not store face for %s", name)
        raise HTTPException(status_code=500, detail=f"Database error: {e}")

    logger.info("Registered face ID %s for %s", face.face_id, name)
    return "✅ Face registered successfully"


@app.post("/mark-attendance", response_class=PlainTextResponse)
def mark_attendance(
    face_image: UploadFile = File(..., alias="faceImage"),
    session: Session = Depends(get_session),
    face_engine: FaceEngine = Depends(get_face_engine),
):
    """Recognize the face in a photo and record attendance for today"""
    upload_path = save_upload(face_image)
    try:
        descriptor = face_engine.encode(upload_path.read_bytes())
    except Exception as e:
        logger.exception("Face encoding failed")
        raise HTTPException(status_code=500, detail=f"❌ Internal server error: {e}")
    finally:
        upload_path.unlink(missing_ok=True)

    if descriptor is None:
        return "❌ No face detected"

    try:
        rows = session.exec(select(Face).order_by(Face.face_id)).all()
    except SQLAlchemyError as e:
        logger.exception("Could not load faces")
        raise HTTPException(status_code=500, detail=f"Database error: {e}")

    match = find_best_match(descriptor, load_identities(rows))
    if match is None:
        return "❌ Face not recognized"

    try:
        session.add(Attendance(face_id=match.identity.face_id, date=today()))
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Could not mark attendance for face ID %s", match.identity.face_id)
        raise HTTPException(status_code=500, detail=f"Error marking attendance: {e}")

    logger.info("Attendance marked for face ID %s (distance %.4f)", match.identity.face_id, match.distance)
    return f"✅ Attendance marked for {match.identity.name} (distance: {match.distance:.4f})"


@app.get("/students", response_model=List[StudentResponse])
def list_students(session: Session = Depends(get_session)):
    """List all registered people"""
    try:
        faces = session.exec(select(Face).order_by(Face.face_id)).all()
    except SQLAlchemyError as e:
        logger.exception("Could not list students")
        raise HTTPException(status_code=500, detail=f"Database error: {e}")

    return [
        {
            "face_id": f.face_id,
            "name": f.name,
            "details": f.details,
        }
        for f in faces
    ]


@app.post("/manual-attendance", response_class=PlainTextResponse)
def manual_attendance(payload: Any = Body(None), session: Session = Depends(get_session)):
    """Record attendance for people picked by an operator.

    Expects ``{"studentIds": [face_id, ...]}``. Anything without a non-empty
    list of ids is rejected with a 400.
    """
    student_ids = payload.get("studentIds") if isinstance(payload, dict) else None
    if not isinstance(student_ids, list) or not student_ids:
        raise HTTPException(status_code=400, detail="No students selected")
    if any(isinstance(i, bool) or not isinstance(i, int) for i in student_ids):
        raise HTTPException(status_code=400, detail="Invalid student id")

    logger.info("Manual attendance for face IDs %s", student_ids)
    day = today()
    try:
        session.add_all([Attendance(face_id=face_id, date=day) for face_id in student_ids])
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Could not save manual attendance")
        raise HTTPException(status_code=500, detail=f"Error saving attendance: {e}")

    return "✅ Manual attendance submitted"


@app.get("/attendance", response_model=List[AttendanceResponse])
def list_attendance(
    date: Optional[str] = Query(None, description="Day YYYY-MM-DD"),
    session: Session = Depends(get_session),
):
    """List attendance records, newest first, optionally for one day.

    Records whose face ID has no registered face are listed with a null name.
    """
    query = select(Attendance, Face).join(Face, Attendance.face_id == Face.face_id, isouter=True)

    if date:
        try:
            day = dt.date.fromisoformat(date)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid date format")
        query = query.where(Attendance.date == day)

    query = query.order_by(Attendance.date.desc(), Attendance.id.desc())
    rows = session.exec(query).all()

    return [
        {
            "id": a.id,
            "face_id": a.face_id,
            "name": f.name if f is not None else None,
            "date": a.date.isoformat(),
        }
        for (a, f) in rows
    ]


@app.get("/health")
async def health(face_engine: FaceEngine = Depends(get_face_engine)):
    return {"status": "ok", "model_loaded": face_engine.model_available}


# Registration photos kept by the local image store
app.mount("/data/faces", StaticFiles(directory=str(FACES_DIR)), name="faces")

# Browser client
app.mount("/", StaticFiles(directory=str(STATIC_DIR), html=True), name="static")

if __name__ == "__main__":
    uvicorn.run(app, host=HOST, port=PORT)
