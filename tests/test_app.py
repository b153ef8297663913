"""
Tests for the Flask endpoints.
"""

import io
import unittest
import zipfile

from _package_builder import minimal_parts, zip_parts
from _vba_project_builder import SAMPLE_MODULES, build_protected_project, build_vba_project
from app import app


def _upload(data, filename):
    return {"file": (io.BytesIO(data), filename)}


class TestEndpoints(unittest.TestCase):
    def setUp(self):
        app.config["TESTING"] = True
        self.client = app.test_client()
        self.workbook = zip_parts(minimal_parts(sheet_names=("Data",), vba_project=build_vba_project(SAMPLE_MODULES)))

    def test_index(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertIn("/api/unlock", response.get_json()["endpoints"])

    def test_unlock_returns_workbook(self):
        source = zip_parts(minimal_parts(vba_project=build_protected_project()))
        response = self.client.post("/api/unlock", data=_upload(source, "Book1.xlsm"),
                                    content_type="multipart/form-data")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.mimetype, "application/vnd.ms-excel.sheet.macroEnabled.12")
        self.assertIn("Book1_unlocked.xlsm", response.headers["Content-Disposition"])
        with zipfile.ZipFile(io.BytesIO(response.data)) as zf:
            self.assertIn("xl/vbaProject.bin", zf.namelist())

    def test_unlock_failure_is_422_with_log(self):
        source = zip_parts(minimal_parts(vba_project=None))
        response = self.client.post("/api/unlock", data=_upload(source, "Book1.xlsm"),
                                    content_type="multipart/form-data")

        self.assertEqual(response.status_code, 422)
        messages = [entry["message"] for entry in response.get_json()["log"]]
        self.assertIn("No VBA project found in this file", messages)

    def test_missing_file(self):
        response = self.client.post("/api/unlock", data={}, content_type="multipart/form-data")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "No file provided")

    def test_disallowed_extension(self):
        response = self.client.post("/api/unlock", data=_upload(b"hello", "notes.txt"),
                                    content_type="multipart/form-data")
        self.assertEqual(response.status_code, 400)
        self.assertIn("Invalid file type", response.get_json()["error"])

    def test_extract_json(self):
        response = self.client.post("/api/extract", data=_upload(self.workbook, "Book1.xlsm"),
                                    content_type="multipart/form-data")

        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["strategy"], "structured")
        self.assertEqual([m["name"] for m in payload["modules"]], ["ThisWorkbook", "Module1", "clsPolicy"])
        self.assertEqual(payload["modules"][1]["type_label"], "Standard Module")

    def test_extract_export_text(self):
        response = self.client.post("/api/extract/export", data=_upload(self.workbook, "Book1.xlsm"),
                                    content_type="multipart/form-data")

        self.assertEqual(response.status_code, 200)
        self.assertIn("Book1_vba_code.txt", response.headers["Content-Disposition"])
        self.assertTrue(response.data.startswith(b"VBA Code extracted from: Book1.xlsm"))

    def test_extract_archive(self):
        response = self.client.post("/api/extract/archive", data=_upload(self.workbook, "Book1.xlsm"),
                                    content_type="multipart/form-data")

        self.assertEqual(response.status_code, 200)
        with zipfile.ZipFile(io.BytesIO(response.data)) as zf:
            self.assertEqual(sorted(zf.namelist()), ["Module1.bas", "ThisWorkbook.cls", "clsPolicy.cls"])


if __name__ == "__main__":
    unittest.main()
