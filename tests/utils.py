# tests/utils.py
import unittest

from fastapi.testclient import TestClient
from passlib.hash import bcrypt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from myopia_api import database, models
from myopia_api.auth import create_access_token
from myopia_api.errors import InferenceFailed
from myopia_api.inference import ClassificationResult, DetectionResult, get_inference_client
from myopia_api.models import SeverityLevel
from myopia_api.recommendation import get_text_generator

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

# cheap hashes keep the suite fast; verify() reads the cost from the hash
_fast_bcrypt = bcrypt.using(rounds=4)

SAMPLE_DETECTIONS = [
    {"label": "myopic_crescent", "confidence": 0.91,
     "boundingBox": {"x": 10.0, "y": 20.0, "width": 30.0, "height": 40.0}},
    {"label": "tessellation", "confidence": 0.55,
     "boundingBox": {"x": 1.0, "y": 2.0, "width": 3.0, "height": 4.0}},
]


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


class FakeInference:
    """Stands in for InferenceClient; records calls and can be told to fail."""

    def __init__(self, detections=None, severity="medium", output_image="/static/out.png",
                 detect_error=None, classify_error=None):
        self.detections = SAMPLE_DETECTIONS if detections is None else detections
        self.severity = severity
        self.output_image = output_image
        self.detect_error = detect_error
        self.classify_error = classify_error
        self.calls = []

    async def detect(self, image_path):
        self.calls.append(("detect", image_path))
        if self.detect_error:
            raise self.detect_error
        return DetectionResult(detections=list(self.detections), output_image=self.output_image)

    async def classify(self, image_path):
        self.calls.append(("classify", image_path))
        if self.classify_error:
            raise self.classify_error
        return ClassificationResult(severity_level=SeverityLevel(self.severity))


class FakeTextGenerator:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return self.response


def inference_failure(model="ResNet"):
    return InferenceFailed(model, "server error HTTP 503")


class ApiTestCase(unittest.TestCase):
    """Fresh in-memory database, overridden dependencies and a TestClient per test."""

    def setUp(self):
        database.Base.metadata.drop_all(bind=engine)
        database.Base.metadata.create_all(bind=engine)
        self.db = TestingSessionLocal()

        self.inference = FakeInference()
        self.text_generator = FakeTextGenerator(response={"text": "Follow up in 6 months."})
        app.dependency_overrides[database.get_db] = override_get_db
        app.dependency_overrides[get_inference_client] = lambda: self.inference
        app.dependency_overrides[get_text_generator] = lambda: self.text_generator
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides = {}
        self.db.close()

    # ---- factories
    def make_user(self, name="Dr. Ada", email="ada@example.com", role=models.Role.doctor, password="secret123"):
        user = models.User(name=name, email=email, password_hash=_fast_bcrypt.hash(password), role=role)
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def make_patient(self, doctor, name="Jane Roe", gender=models.Gender.female, email=None):
        patient = models.Patient(doctor_id=doctor.id, name=name, gender=gender, contact_email=email)
        self.db.add(patient)
        self.db.commit()
        self.db.refresh(patient)
        return patient

    def make_image(self, patient, path="uploads/input/1-eye.jpg", output=None):
        image = models.RetinalImage(
            patient_id=patient.id,
            uploaded_by=patient.doctor_id,
            original_image_path=path,
            yolo_output_path=output,
        )
        self.db.add(image)
        self.db.commit()
        self.db.refresh(image)
        return image

    def make_diagnosis(self, image, severity=SeverityLevel.medium, notes=None, detections=None):
        diagnosis = models.Diagnosis(
            retinal_image_id=image.id,
            yolo_detections=SAMPLE_DETECTIONS if detections is None else detections,
            severity_level=severity,
            notes=notes,
        )
        self.db.add(diagnosis)
        self.db.commit()
        self.db.refresh(diagnosis)
        return diagnosis

    def headers(self, user):
        return {"Authorization": f"Bearer {create_access_token(user)}"}

    def fresh(self, model, pk):
        with TestingSessionLocal() as s:
            row = s.get(model, pk)
            if row is not None:
                s.expunge(row)
            return row
