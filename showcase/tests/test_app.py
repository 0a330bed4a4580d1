import json
import unittest

from fastapi.testclient import TestClient

from showcase.app import create_app
from showcase.config import Settings

ADMIN_TOKEN = "s3cret"


class ShowcaseApiTests(unittest.TestCase):
    def setUp(self):
        settings = Settings(use_in_memory_backends=True, admin_api_token=ADMIN_TOKEN)
        self.app = create_app(settings)
        self.services = self.app.state.services
        self.client = TestClient(self.app)

    def _upload(self, data=b"\x89PNG-data", filename="poster.png", content_type="image/png"):
        response = self.client.post(
            "/api/media/upload",
            content=data,
            headers={"content-type": content_type, "x-filename": filename},
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["blobId"]

    def _project_payload(self, **overrides):
        payload = {
            "title": "Smart Irrigation",
            "short_description": "Soil sensors",
            "description": "Waters plants when the soil is dry.",
            "tech_stack": ["Python", "ESP32"],
            "contributors": [{"id": "u1", "name": "Asha"}],
            "media": {"kind": "youtube", "url": "https://youtu.be/abc"},
        }
        payload.update(overrides)
        return payload

    def _create_project(self, **overrides):
        poster = self._upload()
        photo = self._upload(filename="photo.jpg", content_type="image/jpeg")
        payload = self._project_payload(
            poster=f"/media/{poster}", showcase_photos=[f"/media/{photo}"]
        )
        payload.update(overrides)
        response = self.client.post("/api/projects", json=payload)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json(), poster, photo

    def test_upload_raw_body_and_download(self):
        response = self.client.post(
            "/api/media/upload",
            content=b"hello",
            headers={"content-type": "image/png", "x-filename": "hello.png"},
        )
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(len(payload["blobId"]), 24)
        self.assertEqual(payload["contentType"], "image/png")
        self.assertEqual(payload["filename"], "hello.png")
        self.assertEqual(payload["length"], 5)

        download = self.client.get(f"/media/{payload['blobId']}")
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.content, b"hello")
        self.assertEqual(download.headers["content-type"], "image/png")
        self.assertIn("immutable", download.headers["cache-control"])
        self.assertIn("hello.png", download.headers["content-disposition"])
        self.assertTrue(download.headers["etag"].startswith('"'))

    def test_upload_multipart(self):
        response = self.client.post(
            "/api/media/upload",
            files={"file": ("photo.jpg", b"jpeg-bytes", "image/jpeg")},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["contentType"], "image/jpeg")
        self.assertEqual(response.json()["filename"], "photo.jpg")

    def test_upload_without_body(self):
        response = self.client.post(
            "/api/media/upload", content=b"", headers={"content-type": "image/png"}
        )
        self.assertEqual(response.status_code, 400)

    def test_download_errors(self):
        self.assertEqual(self.client.get("/media/65a1f0c2b3d4e5f6a7b8c9d0").status_code, 404)
        self.assertEqual(self.client.get("/media/not-a-blob").status_code, 400)

    def test_changing_poster_reclaims_old_file(self):
        project, poster, _ = self._create_project()
        references = self.client.get(f"/api/media/{poster}/references").json()
        self.assertEqual(references["references"][0]["owner_id"], project["id"])
        self.assertEqual(references["references"][0]["kind"], "project_poster")

        new_poster = self._upload(filename="new.png")
        response = self.client.put(
            f"/api/projects/{project['id']}", json={"poster": f"/media/{new_poster}"}
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["poster"], f"/media/{new_poster}")
        self.assertEqual(self.client.get(f"/media/{poster}").status_code, 404)
        self.assertEqual(self.client.get(f"/media/{new_poster}").status_code, 200)

    def test_project_validation(self):
        response = self.client.post("/api/projects", json=self._project_payload())
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["detail"], "Poster Image is required")

        photo = self._upload()
        response = self.client.post(
            "/api/projects",
            json=self._project_payload(poster="/media/zzz", showcase_photos=[f"/media/{photo}"]),
        )
        self.assertEqual(response.status_code, 400)

    def test_project_listing_and_adjacent(self):
        first, _, _ = self._create_project()
        second, _, _ = self._create_project(title="Second")
        self._create_project(title="Draft", is_published=False)

        listing = self.client.get("/api/projects").json()["projects"]
        self.assertEqual([p["id"] for p in listing], [first["id"], second["id"]])
        adjacent = self.client.get(f"/api/projects/{first['id']}/adjacent").json()
        self.assertEqual(adjacent, {"prev": None, "next": second["id"]})

    def test_delete_project_reclaims_files(self):
        project, poster, photo = self._create_project()
        response = self.client.delete(f"/api/projects/{project['id']}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.services.store.list_ids(), set())
        self.assertEqual(self.client.get(f"/api/projects/{project['id']}").status_code, 404)
        self.assertEqual(self.client.delete(f"/api/projects/{project['id']}").status_code, 404)

    def test_create_project_with_files(self):
        payload = self._project_payload()
        response = self.client.post(
            "/api/projects/with-files",
            data={"project": json.dumps(payload)},
            files=[
                ("poster", ("poster.png", b"poster", "image/png")),
                ("showcase_photos", ("one.jpg", b"one", "image/jpeg")),
                ("showcase_photos", ("two.jpg", b"two", "image/jpeg")),
            ],
        )
        self.assertEqual(response.status_code, 201, response.text)
        project = response.json()
        self.assertTrue(project["poster"].startswith("/media/"))
        self.assertEqual(len(project["showcase_photos"]), 2)
        self.assertEqual(len(self.services.store.list_ids()), 3)
        self.assertEqual(len(self.services.ledger.list_entries()), 3)

    def test_explicit_delete(self):
        _, poster, _ = self._create_project()
        response = self.client.request("DELETE", "/api/media/delete", json={"blobId": "bad"})
        self.assertEqual(response.status_code, 400)
        response = self.client.request(
            "DELETE", "/api/media/delete", json={"blobId": "65a1f0c2b3d4e5f6a7b8c9d0"}
        )
        self.assertEqual(response.status_code, 404)

        response = self.client.request("DELETE", "/api/media/delete", json={"blobId": poster})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["referencesDeleted"], 1)
        self.assertFalse(self.services.store.exists(poster))
        self.assertFalse(self.services.ledger.has_any_reference(poster))

    def test_reclaim_abandoned_upload(self):
        blob_id = self._upload()
        response = self.client.post("/api/media/reclaim", json={"blobId": blob_id})
        self.assertEqual(response.json(), {"blobId": blob_id, "deleted": True})
        response = self.client.post("/api/media/reclaim", json={"blobId": blob_id})
        self.assertFalse(response.json()["deleted"])

    def test_cleanup_requires_admin_token(self):
        orphan = self._upload()
        self.assertEqual(self.client.post("/api/media/cleanup").status_code, 401)

        headers = {"X-Admin-Token": ADMIN_TOKEN}
        dry = self.client.post(
            "/api/media/cleanup",
            params={"older_than_minutes": 0, "dry_run": True},
            headers=headers,
        )
        self.assertEqual(dry.status_code, 200)
        self.assertEqual(dry.json()["orphanIds"], [orphan])
        self.assertTrue(self.services.store.exists(orphan))

        response = self.client.post(
            "/api/media/cleanup", params={"older_than_minutes": 0}, headers=headers
        )
        self.assertEqual(response.json()["blobsDeleted"], 1)
        self.assertFalse(self.services.store.exists(orphan))

    def test_user_image_cleared_and_snapshots_refreshed(self):
        avatar = self._upload(filename="me.png")
        response = self.client.post(
            "/api/users",
            json={
                "email": "Asha@Example.com",
                "name": "Asha",
                "contributor_type": "staff",
                "staff_title": "Lecturer",
                "avatar_url": f"/media/{avatar}",
            },
        )
        self.assertEqual(response.status_code, 201, response.text)
        user = response.json()
        self.assertEqual(user["email"], "asha@example.com")

        duplicate = self.client.post(
            "/api/users",
            json={
                "email": "asha@example.com",
                "name": "Other",
                "contributor_type": "staff",
                "staff_title": "Lecturer",
            },
        )
        self.assertEqual(duplicate.status_code, 400)

        project, _, _ = self._create_project(contributors=[{"id": user["id"], "name": "Asha"}])
        response = self.client.put(
            f"/api/users/{user['id']}", json={"name": "Asha K", "avatar_url": ""}
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertFalse(self.services.store.exists(avatar))

        refreshed = self.client.get(f"/api/projects/{project['id']}").json()
        self.assertEqual(refreshed["contributors"][0]["name"], "Asha K")

    def test_user_validation(self):
        response = self.client.post(
            "/api/users", json={"email": "not-an-email", "name": "X", "role": "admin"}
        )
        self.assertEqual(response.status_code, 400)
        response = self.client.post(
            "/api/users", json={"email": "x@example.com", "name": "X", "contributor_type": "student"}
        )
        self.assertEqual(response.json()["detail"], "Branch is required for students")

    def test_project_media_accepts_external_links_only(self):
        project, _, _ = self._create_project()
        stray = self._upload(filename="clip.mp4", content_type="video/mp4")

        response = self.client.put(
            f"/api/projects/{project['id']}",
            json={"media": {"kind": "upload", "file_id": stray}},
        )
        self.assertEqual(response.status_code, 422)
        response = self.client.put(
            f"/api/projects/{project['id']}",
            json={"media": {"kind": "youtube", "url": "https://youtu.be/x", "file_id": stray}},
        )
        self.assertEqual(response.status_code, 422)

        stored = self.client.get(f"/api/projects/{project['id']}").json()
        self.assertEqual(stored["media"], {"kind": "youtube", "url": "https://youtu.be/abc"})
        self.assertFalse(self.services.ledger.has_any_reference(stray))

    def test_deleting_user_drops_images_from_contributor_snapshots(self):
        avatar = self._upload(filename="me.png")
        user = self.client.post(
            "/api/users",
            json={
                "email": "ravi@example.com",
                "name": "Ravi",
                "contributor_type": "staff",
                "staff_title": "Lecturer",
                "avatar_url": f"/media/{avatar}",
            },
        ).json()
        project, _, _ = self._create_project(
            contributors=[
                {"id": user["id"], "name": "Ravi", "avatar_url": f"/media/{avatar}"},
                {"id": "u2", "name": "Meera", "avatar_url": "https://cdn.example.com/m.png"},
            ]
        )

        response = self.client.delete(f"/api/users/{user['id']}")
        self.assertEqual(response.status_code, 200)
        self.assertFalse(self.services.store.exists(avatar))

        contributors = self.client.get(f"/api/projects/{project['id']}").json()["contributors"]
        self.assertEqual(contributors[0]["name"], "Ravi")
        self.assertNotIn("avatar_url", contributors[0])
        self.assertEqual(contributors[1]["avatar_url"], "https://cdn.example.com/m.png")
        self.assertEqual(self.client.delete(f"/api/users/{user['id']}").status_code, 404)

    def test_update_project_with_files(self):
        project, old_poster, photo = self._create_project()
        response = self.client.put(
            f"/api/projects/{project['id']}/with-files",
            data={"project": json.dumps({"title": "Renamed"})},
            files=[
                ("poster", ("new.png", b"new-poster", "image/png")),
                ("showcase_photos", ("three.jpg", b"three", "image/jpeg")),
            ],
        )
        self.assertEqual(response.status_code, 200, response.text)
        updated = response.json()
        self.assertEqual(updated["title"], "Renamed")
        self.assertNotEqual(updated["poster"], f"/media/{old_poster}")
        self.assertEqual(updated["showcase_photos"][0], f"/media/{photo}")
        self.assertEqual(len(updated["showcase_photos"]), 2)

        self.assertEqual(self.client.get(f"/media/{old_poster}").status_code, 404)
        self.assertEqual(self.client.get(updated["poster"]).content, b"new-poster")
        self.assertEqual(len(self.services.store.list_ids()), 3)
        self.assertEqual(len(self.services.ledger.list_entries()), 3)

    def test_update_project_with_files_errors(self):
        response = self.client.put(
            "/api/projects/missing/with-files",
            files=[("poster", ("p.png", b"p", "image/png"))],
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.services.store.list_ids(), set())

        project, _, _ = self._create_project()
        response = self.client.put(
            f"/api/projects/{project['id']}/with-files",
            data={"project": "{not json"},
        )
        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
