import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from fastapi.testclient import TestClient
from starlette.datastructures import UploadFile

from recordbase.config import Settings
from recordbase.errors import InsertFailure
from recordbase.main import create_app


def _settings(tmp: str, **overrides) -> Settings:
    values = {
        "database_url": f"sqlite:///{os.path.join(tmp, 'test.db')}",
        "upload_dir": os.path.join(tmp, "uploads"),
        "schema_dir": os.path.join(tmp, "schemas"),
        "auth_rate_limit_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


class ApiTestCase(unittest.TestCase):
    settings_overrides: dict = {}

    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.settings = _settings(self.tmp.name, **self.settings_overrides)
        self.app = create_app(self.settings)
        self.services = self.app.state.services
        self.client = TestClient(self.app)
        self.client.__enter__()
        res = self.client.post("/register", json={"username": "ada", "password": "lovelace"})
        self.assertEqual(res.status_code, 201, res.text)
        self.headers = {"Authorization": f"Bearer {res.json()['token']}"}

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        self.tmp.cleanup()

    def declare(self, collection: str) -> None:
        markers = Path(self.settings.schema_dir)
        markers.mkdir(parents=True, exist_ok=True)
        (markers / f"{collection}.schema.json").write_text("{}", encoding="utf-8")

    def uploaded_files(self) -> list:
        root = Path(self.settings.upload_dir)
        return sorted(p.name for p in root.iterdir()) if root.exists() else []


class TestResourceWrite(ApiTestCase):
    def test_first_write_creates_collection(self) -> None:
        res = self.client.post("/widgets", json={"name": "bolt", "price": "0.10"}, headers=self.headers)
        self.assertEqual(res.status_code, 201, res.text)
        self.assertEqual(res.json(), {"id": 1, "name": "bolt", "price": "0.10"})
        columns = self.services.reconciler.snapshot("widgets").columns
        self.assertEqual(columns, ("id", "name", "price", "created_at"))

    def test_created_at_is_utc_iso_with_millis(self) -> None:
        self.declare("widgets")
        self.client.post("/widgets", json={"name": "bolt"}, headers=self.headers)
        row = self.client.get("/widgets/1", headers=self.headers).json()
        self.assertRegex(row["created_at"], r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")

    def test_client_created_at_is_echoed_but_not_stored(self) -> None:
        self.declare("widgets")
        body = {"name": "bolt", "created_at": "1999-01-01"}
        res = self.client.post("/widgets", json=body, headers=self.headers)
        self.assertEqual(res.json()["created_at"], "1999-01-01")
        row = self.client.get("/widgets/1", headers=self.headers).json()
        self.assertNotEqual(row["created_at"], "1999-01-01")
        self.assertRegex(row["created_at"], r"Z$")

    def test_schema_grows_and_old_rows_read_null(self) -> None:
        self.declare("widgets")
        self.client.post("/widgets", json={"name": "bolt"}, headers=self.headers)
        res = self.client.post("/widgets", json={"name": "nut", "color": "red"}, headers=self.headers)
        self.assertEqual(res.json(), {"id": 2, "name": "nut", "color": "red"})
        rows = self.client.get("/widgets", headers=self.headers).json()
        self.assertEqual([r["id"] for r in rows], [2, 1])
        self.assertIsNone(rows[1]["color"])
        self.assertEqual(rows[0]["color"], "red")

    def test_client_id_is_ignored(self) -> None:
        res = self.client.post("/widgets", json={"id": 99, "name": "bolt"}, headers=self.headers)
        self.assertEqual(res.json()["id"], 1)

    def test_empty_body_creates_row(self) -> None:
        res = self.client.post("/widgets", json={}, headers=self.headers)
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.json(), {"id": 1})

    def test_form_body(self) -> None:
        res = self.client.post("/widgets", data={"name": "bolt"}, headers=self.headers)
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.json(), {"id": 1, "name": "bolt"})

    def test_collection_name_is_normalized(self) -> None:
        res = self.client.post("/Widgets", json={"name": "bolt"}, headers=self.headers)
        self.assertEqual(res.status_code, 201)
        self.assertIn("widgets", self.services.records.list_tables())

    def test_requires_auth(self) -> None:
        res = self.client.post("/widgets", json={"name": "bolt"})
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.json(), {"message": "Authentication required"})

    def test_validation_errors(self) -> None:
        cases = [
            {"tags": ["a", "b"]},
            {"meta": {"k": "v"}},
            {"Bad Name": "x"},
            {"1st": "x"},
        ]
        for body in cases:
            res = self.client.post("/widgets", json=body, headers=self.headers)
            self.assertEqual(res.status_code, 400, body)
        res = self.client.post("/widgets", json=[1, 2], headers=self.headers)
        self.assertEqual(res.status_code, 400)
        res = self.client.post(
            "/widgets",
            content=b"{not json",
            headers={**self.headers, "Content-Type": "application/json"},
        )
        self.assertEqual(res.status_code, 400)
        self.assertNotIn("widgets", self.services.records.list_tables())

    def test_camel_case_fields_are_stored(self) -> None:
        self.declare("people")
        res = self.client.post("/people", json={"firstName": "Ada", "lastName": "Lovelace"}, headers=self.headers)
        self.assertEqual(res.status_code, 201, res.text)
        self.assertEqual(res.json(), {"id": 1, "firstName": "Ada", "lastName": "Lovelace"})
        res = self.client.post("/people", json={"firstname": "Grace"}, headers=self.headers)
        self.assertEqual(res.status_code, 201, res.text)
        rows = self.client.get("/people", headers=self.headers).json()
        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[1]["firstName"], "Ada")
        self.assertEqual(rows[0]["firstName"], "Grace")

    def test_case_only_duplicate_fields_rejected(self) -> None:
        res = self.client.post("/people", json={"name": "a", "Name": "b"}, headers=self.headers)
        self.assertEqual(res.status_code, 400)

    def test_unrepresentable_numbers_rejected_before_write(self) -> None:
        self.declare("metrics")
        res = self.client.post(
            "/metrics",
            content=b'{"name": "n", "v": NaN}',
            headers={**self.headers, "Content-Type": "application/json"},
        )
        self.assertEqual(res.status_code, 400, res.text)
        res = self.client.post("/metrics", json={"name": "big", "v": 2**70}, headers=self.headers)
        self.assertEqual(res.status_code, 400, res.text)
        self.assertEqual(self.client.get("/metrics", headers=self.headers).json(), [])
        res = self.client.post("/metrics", json={"v": 2**63 - 1, "f": 1.5}, headers=self.headers)
        self.assertEqual(res.status_code, 201, res.text)

    def test_reserved_collections(self) -> None:
        for name in ("users", "sqlite_master", "pg_class"):
            res = self.client.post(f"/{name}", json={"name": "x"}, headers=self.headers)
            self.assertEqual(res.status_code, 404, name)
            self.assertEqual(res.json(), {"message": "Not found"})

    def test_storage_failure_is_generic_500(self) -> None:
        with mock.patch.object(self.services.records, "insert", side_effect=InsertFailure("widgets")):
            res = self.client.post("/widgets", json={"name": "bolt"}, headers=self.headers)
        self.assertEqual(res.status_code, 500)
        self.assertEqual(res.json(), {"message": "Error creating resource"})


class TestAttachments(ApiTestCase):
    settings_overrides = {"max_upload_bytes": 64}

    def test_upload_is_stored_and_served(self) -> None:
        res = self.client.post(
            "/gallery",
            data={"title": "sunset"},
            files={"image": ("sunset.png", b"\x89PNG fake", "image/png")},
            headers=self.headers,
        )
        self.assertEqual(res.status_code, 201, res.text)
        body = res.json()
        self.assertEqual(body["title"], "sunset")
        self.assertRegex(body["image_url"], r"^/uploads/\d+-\d+\.png$")

        served = self.client.get(body["image_url"])
        self.assertEqual(served.status_code, 200)
        self.assertEqual(served.content, b"\x89PNG fake")
        self.assertEqual(served.headers["access-control-allow-origin"], "*")
        self.assertEqual(served.headers["cross-origin-resource-policy"], "cross-origin")

    def test_stored_path_wins_over_submitted_value(self) -> None:
        self.declare("gallery")
        res = self.client.post(
            "/gallery",
            data={"image_url": "http://elsewhere/x.png"},
            files={"image": ("a.jpg", b"jpeg", "image/jpeg")},
            headers=self.headers,
        )
        url = res.json()["image_url"]
        self.assertTrue(url.startswith("/uploads/"))
        row = self.client.get("/gallery/1", headers=self.headers).json()
        self.assertEqual(row["image_url"], url)

    def test_oversized_upload_is_rejected_before_write(self) -> None:
        res = self.client.post(
            "/gallery",
            files={"image": ("big.png", b"x" * 65, "image/png")},
            headers=self.headers,
        )
        self.assertEqual(res.status_code, 413)
        self.assertEqual(self.uploaded_files(), [])
        self.assertNotIn("gallery", self.services.records.list_tables())

    def test_unexpected_file_field(self) -> None:
        res = self.client.post(
            "/gallery",
            files={"document": ("a.txt", b"hi", "text/plain")},
            headers=self.headers,
        )
        self.assertEqual(res.status_code, 400)

    def test_spooled_upload_is_closed_after_request(self) -> None:
        closed = []
        real_close = UploadFile.close

        async def tracking_close(upload):
            closed.append(upload.filename)
            await real_close(upload)

        with mock.patch.object(UploadFile, "close", tracking_close):
            res = self.client.post(
                "/gallery",
                files={"image": ("a.png", b"png", "image/png")},
                headers=self.headers,
            )
        self.assertEqual(res.status_code, 201)
        self.assertIn("a.png", closed)

    def test_failed_write_removes_attachment(self) -> None:
        with mock.patch.object(self.services.records, "insert", side_effect=InsertFailure("gallery")):
            res = self.client.post(
                "/gallery",
                files={"image": ("a.png", b"png", "image/png")},
                headers=self.headers,
            )
        self.assertEqual(res.status_code, 500)
        self.assertEqual(self.uploaded_files(), [])

    def test_missing_upload_is_404(self) -> None:
        res = self.client.get("/uploads/nothing.png")
        self.assertEqual(res.status_code, 404)


class TestResourceRead(ApiTestCase):
    def test_undeclared_collection_reads_empty_without_storage_access(self) -> None:
        self.client.post("/secret", json={"value": "x"}, headers=self.headers)
        before = self.services.db.stats()
        for path in ("/secret", "/secret/1"):
            res = self.client.get(path, headers=self.headers)
            self.assertEqual(res.status_code, 200)
            self.assertEqual(res.json(), [])
        after = self.services.db.stats()
        self.assertEqual(after["queries"], before["queries"])
        self.assertEqual(after["connections"], before["connections"])

    def test_single_record_and_not_found(self) -> None:
        self.declare("widgets")
        self.client.post("/widgets", json={"name": "bolt"}, headers=self.headers)
        res = self.client.get("/widgets/1", headers=self.headers)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["name"], "bolt")
        for record_id in ("99", "abc"):
            res = self.client.get(f"/widgets/{record_id}", headers=self.headers)
            self.assertEqual(res.status_code, 404)
            self.assertEqual(res.json(), {"message": "Resource not found"})

    def test_storage_error_softens_to_empty(self) -> None:
        self.declare("ghosts")
        with self.assertLogs("recordbase.resources", level="WARNING") as logs:
            res = self.client.get("/ghosts", headers=self.headers)
            single = self.client.get("/ghosts/1", headers=self.headers)
        self.assertEqual((res.status_code, res.json()), (200, []))
        self.assertEqual((single.status_code, single.json()), (200, []))
        self.assertTrue(any("read_soft_fail" in line for line in logs.output))

    def test_read_requires_auth(self) -> None:
        self.declare("widgets")
        res = self.client.get("/widgets")
        self.assertEqual(res.status_code, 401)

    def test_reserved_collection_read_is_404(self) -> None:
        res = self.client.get("/users/1", headers=self.headers)
        self.assertEqual(res.status_code, 404)

    def test_unmatched_paths(self) -> None:
        res = self.client.get("/a/b/c", headers=self.headers)
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json(), {"message": "Not found"})
        res = self.client.delete("/widgets", headers=self.headers)
        self.assertEqual(res.json(), {"message": "Not found"})


if __name__ == "__main__":
    unittest.main()
