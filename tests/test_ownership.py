# tests/test_ownership.py
from myopia_api import models, ownership
from myopia_api.errors import Forbidden, NotFound
from myopia_api.ownership import Access, DiagnosisRef, ImageRef, PatientRef

from tests.utils import ApiTestCase


class OwnershipResolverTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.owner = self.make_user()
        self.other = self.make_user(name="Dr. Bob", email="bob@example.com")
        self.patient = self.make_patient(self.owner)
        self.image = self.make_image(self.patient)
        self.diagnosis = self.make_diagnosis(self.image)

    def test_owner_is_allowed_along_the_whole_chain(self):
        res = ownership.authorize(self.db, self.owner.id, DiagnosisRef(self.diagnosis.id))
        self.assertIs(res.access, Access.ALLOWED)
        self.assertTrue(res.allowed)
        self.assertEqual(res.diagnosis.id, self.diagnosis.id)
        self.assertEqual(res.image.id, self.image.id)
        self.assertEqual(res.patient.id, self.patient.id)

    def test_other_doctor_is_denied_not_hidden(self):
        for ref in (PatientRef(self.patient.id), ImageRef(self.image.id), DiagnosisRef(self.diagnosis.id)):
            res = ownership.authorize(self.db, self.other.id, ref)
            self.assertIs(res.access, Access.DENIED, ref)

    def test_missing_resources_are_not_found(self):
        for ref in (PatientRef(999), ImageRef(999), DiagnosisRef(999)):
            res = ownership.authorize(self.db, self.owner.id, ref)
            self.assertIs(res.access, Access.NOT_FOUND, ref)

    def test_broken_link_is_not_found(self):
        orphan = models.RetinalImage(patient_id=4242, uploaded_by=self.owner.id, original_image_path="x.jpg")
        self.db.add(orphan)
        self.db.commit()

        res = ownership.authorize(self.db, self.owner.id, ImageRef(orphan.id))
        self.assertIs(res.access, Access.NOT_FOUND)
        self.assertEqual(res.missing, "Patient")

        with self.assertRaises(NotFound) as ctx:
            ownership.require(self.db, self.owner.id, ImageRef(orphan.id))
        self.assertEqual(ctx.exception.message, "Patient linked to this retinal image not found.")

    def test_require_raises_forbidden_and_not_found(self):
        with self.assertRaises(Forbidden):
            ownership.require(self.db, self.other.id, PatientRef(self.patient.id))
        with self.assertRaises(NotFound) as ctx:
            ownership.require(self.db, self.owner.id, DiagnosisRef(12345))
        self.assertEqual(ctx.exception.message, "Diagnosis not found.")

    def test_unsupported_resource(self):
        with self.assertRaises(TypeError):
            ownership.authorize(self.db, self.owner.id, object())


class OwnershipApiTests(ApiTestCase):
    def setUp(self):
        super().setUp()
        self.owner = self.make_user()
        self.other = self.make_user(name="Dr. Bob", email="bob@example.com")
        self.patient = self.make_patient(self.owner)
        self.image = self.make_image(self.patient)
        self.diagnosis = self.make_diagnosis(self.image)

    def test_unowned_resources_give_403(self):
        headers = self.headers(self.other)
        for url in (
            f"/api/patients/{self.patient.id}",
            f"/api/retinal-images/{self.image.id}",
            f"/api/diagnoses/{self.diagnosis.id}",
            f"/api/diagnoses/patient/{self.patient.id}",
            f"/api/retinal-images/patient/{self.patient.id}",
            f"/api/recommendations/diagnosis/{self.diagnosis.id}",
        ):
            r = self.client.get(url, headers=headers)
            self.assertEqual(r.status_code, 403, url)
            self.assertEqual(r.json(), {"error": "Unauthorized access."})

    def test_missing_resources_give_404(self):
        headers = self.headers(self.owner)
        for url in ("/api/patients/999", "/api/retinal-images/999", "/api/diagnoses/999"):
            r = self.client.get(url, headers=headers)
            self.assertEqual(r.status_code, 404, url)
            self.assertIn("not found", r.json()["error"])

    def test_unowned_update_and_delete_leave_rows_alone(self):
        headers = self.headers(self.other)
        r = self.client.put(f"/api/diagnoses/{self.diagnosis.id}", json={"notes": "hijack"}, headers=headers)
        self.assertEqual(r.status_code, 403)
        r = self.client.delete(f"/api/diagnoses/{self.diagnosis.id}", headers=headers)
        self.assertEqual(r.status_code, 403)

        row = self.fresh(models.Diagnosis, self.diagnosis.id)
        self.assertIsNotNone(row)
        self.assertIsNone(row.notes)
