from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from studio.models.assets import Asset, Provenance
from studio.models.projects import Project
from studio.models.shared import AssetType, SourceType
from studio.server.main import StudioServices, create_app
from tests.conftest import IMAGE_REFERENCE

USER = {"X-User-Id": "user-1"}
OTHER_USER = {"X-User-Id": "user-2"}

SUBMIT_BODY = {
    "model_id": "test/video/image-to-video",
    "generation_type": "image-to-video",
    "prompt": "the cat starts dancing",
    "inputs": [{"kind": "reference-image", "reference": IMAGE_REFERENCE}],
}


@pytest.fixture
def services(catalog, provider, persistence, storage, settings):
    return StudioServices(
        catalog=catalog,
        provider=provider,
        persistence=persistence,
        storage=storage,
        settings=settings,
    )


@pytest.fixture
def client(services):
    app = create_app(services_factory=lambda: services)
    with TestClient(app) as client:
        yield client


def submit(client, body=None, headers=USER):
    return client.post("/generation/submit", json=body or SUBMIT_BODY, headers=headers)


def make_asset(asset_id, owner_id="user-1", project_id=None, day=1):
    return Asset(
        id=asset_id,
        owner_id=owner_id,
        project_id=project_id,
        type=AssetType.IMAGE,
        storage_ref=f"gs://test-bucket/{owner_id}/generations/{asset_id}.png",
        provenance=Provenance(source_type=SourceType.UPLOAD),
        created_at=datetime(2025, 1, day, tzinfo=timezone.utc),
    )



def test_root(client):
    assert client.get("/").json() == {"message": "success"}


class TestGenerationRoutes:
    def test_submit_requires_user(self, client):
        response = submit(client, headers={})

        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "unauthorized:job"

    def test_submit(self, client, provider):
        response = submit(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processing"
        assert body["job_id"]
        assert provider.created[0]["model_id"] == "test/video/image-to-video"

    def test_submit_unsupported_generation_type(self, client, persistence):
        response = submit(client, {**SUBMIT_BODY, "generation_type": "text-to-image"})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "bad_request:model_resolution"
        assert persistence.jobs == {}

    def test_submit_missing_required_input(self, client):
        response = submit(client, {**SUBMIT_BODY, "inputs": []})

        assert response.status_code == 400

    def test_submit_unknown_project(self, client):
        response = submit(client, {**SUBMIT_BODY, "project_id": "nope"})

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "not_found:project"

    def test_submit_to_someone_elses_project(self, client, persistence):
        persistence.add_project(
            Project(
                id="p-1",
                user_id="user-2",
                title="Theirs",
                created_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
            )
        )

        response = submit(client, {**SUBMIT_BODY, "project_id": "p-1"})

        assert response.status_code == 403

    def test_get_job(self, client):
        job_id = submit(client).json()["job_id"]

        response = client.get(f"/generation/{job_id}", headers=USER)

        assert response.status_code == 200
        assert response.json()["id"] == job_id
        assert response.json()["request"]["model_id"] == "test/video/image-to-video"

    def test_get_job_of_another_user(self, client):
        job_id = submit(client).json()["job_id"]

        response = client.get(f"/generation/{job_id}", headers=OTHER_USER)

        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "forbidden:job"

    def test_get_unknown_job(self, client):
        assert client.get("/generation/missing", headers=USER).status_code == 404

    def test_cancel(self, client, provider):
        job_id = submit(client).json()["job_id"]

        response = client.post(f"/generation/{job_id}/cancel", headers=USER)

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert len(provider.cancelled) == 1

        # Cancelling again leaves the job as it is
        again = client.post(f"/generation/{job_id}/cancel", headers=USER)
        assert again.json()["status"] == "cancelled"
        assert len(provider.cancelled) == 1

    def test_list_only_returns_own_jobs(self, client):
        first = submit(client).json()["job_id"]
        second = submit(client).json()["job_id"]
        submit(client, headers=OTHER_USER)

        response = client.get("/generation/list", headers=USER)

        assert response.status_code == 200
        assert {j["id"] for j in response.json()} == {first, second}

    def test_progress_of_finished_job(self, client):
        job_id = submit(client).json()["job_id"]
        client.post(f"/generation/{job_id}/cancel", headers=USER)

        with client.stream("GET", f"/generation/{job_id}/progress", headers=USER) as response:
            text = "".join(response.iter_text())

        assert response.status_code == 200
        assert text.startswith(": connected")
        assert "event: progress" in text
        assert '"status":"cancelled"' in text

    def test_unexpected_provider_error_fails_the_job(self, client, provider):
        provider.create_error = RuntimeError("socket exploded")

        response = submit(client)

        assert response.status_code == 200
        assert response.json()["status"] == "failed"


class TestModelRoutes:
    def test_models_for_type(self, client):
        response = client.get("/models/image-to-video")

        assert response.status_code == 200
        assert [m["id"] for m in response.json()] == ["test/video/image-to-video"]

    def test_unknown_type(self, client):
        assert client.get("/models/text-to-audio").status_code == 422

    def test_recommended_limit(self, client):
        response = client.get("/models/text-to-image/recommended", params={"limit": 1})

        assert [m["id"] for m in response.json()] == ["test/image"]

    def test_generation_types(self, client):
        response = client.get("/models/types/test/video/image-to-video")

        assert response.json() == ["image-to-video"]

    def test_generation_types_of_unknown_model(self, client):
        assert client.get("/models/types/nobody/nothing").json() == []

    def test_requirements(self, client):
        response = client.get("/models/requirements/test/video/image-to-video")

        assert response.json() == {
            "required": ["reference-image"],
            "optional": ["last-frame"],
        }

    def test_requirements_of_unknown_model(self, client):
        response = client.get("/models/requirements/nobody/nothing")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "not_found:model_resolution"

    def test_supports(self, client):
        response = client.get("/models/supports/text-to-image/test/image")
        assert response.json()["supported"] is True

        response = client.get("/models/supports/text-to-video/test/image")
        assert response.json()["supported"] is False


class TestAssetRoutes:
    @pytest.fixture
    def asset(self, persistence):
        asset = make_asset("asset-1")
        persistence.assets[asset.id] = asset
        return asset

    def test_delivery_url(self, client):
        response = client.post(
            "/assets/delivery_url",
            json={"reference": IMAGE_REFERENCE, "options": {"expires_in": 120}},
            headers=USER,
        )

        assert response.status_code == 200
        assert response.json()["url"].startswith(
            "https://signed.example/test-bucket/user-1/uploads/cat.png?expires=120"
        )

    def test_delivery_url_of_external_url(self, client):
        response = client.post(
            "/assets/delivery_url",
            json={"reference": "https://cdn.example/a.png"},
            headers=USER,
        )

        assert response.json() == {"url": "https://cdn.example/a.png"}

    def test_delivery_url_outside_own_storage(self, client):
        response = client.post(
            "/assets/delivery_url",
            json={"reference": "gs://test-bucket/user-2/secret.png"},
            headers=USER,
        )

        assert response.status_code == 403

    def test_delivery_url_in_foreign_bucket(self, client):
        response = client.post(
            "/assets/delivery_url",
            json={"reference": "gs://someone-elses-bucket/user-1/secret.png"},
            headers=USER,
        )

        assert response.status_code == 403

    def test_batch_delivery_urls(self, client):
        response = client.post(
            "/assets/delivery_url",
            json={
                "references": [
                    IMAGE_REFERENCE,
                    None,
                    "gs://test-bucket/user-2/secret.png",
                    "gs://other-bucket/user-1/secret.png",
                ]
            },
            headers=USER,
        )

        urls = response.json()["urls"]
        assert len(urls) == 4
        assert urls[0].startswith("https://signed.example/")
        assert urls[1:] == [None, None, None]

    def test_delivery_url_without_reference(self, client):
        response = client.post("/assets/delivery_url", json={}, headers=USER)

        assert response.status_code == 400

    def test_get_asset(self, client, asset):
        response = client.get(f"/assets/{asset.id}", headers=USER)

        assert response.status_code == 200
        assert response.json()["signed_url"].startswith("https://signed.example/")

    def test_get_asset_of_another_user(self, client, asset):
        assert client.get(f"/assets/{asset.id}", headers=OTHER_USER).status_code == 403

    def test_get_unknown_asset(self, client):
        assert client.get("/assets/missing", headers=USER).status_code == 404

    def test_preview(self, client, asset):
        response = client.get(
            f"/assets/{asset.id}/preview", params={"size": "small"}, headers=USER
        )

        assert response.status_code == 200
        assert "width=200" in response.json()["url"]

    def test_download(self, client, asset):
        response = client.get(
            f"/assets/{asset.id}/download", params={"filename": "cat.png"}, headers=USER
        )

        assert "download=cat.png" in response.json()["url"]


class TestAssetManagementRoutes:
    @pytest.fixture
    def assets(self, persistence):
        persistence.add_project(
            Project(
                id="p-1",
                user_id="user-1",
                title="Mine",
                created_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
            )
        )
        assets = [
            make_asset("old", day=1),
            make_asset("new", day=3, project_id="p-1"),
            make_asset("theirs", owner_id="user-2", day=2),
        ]
        for asset in assets:
            persistence.assets[asset.id] = asset
        return assets

    def test_list_assets_newest_first(self, client, assets):
        response = client.get("/assets", headers=USER)

        assert response.status_code == 200
        body = response.json()
        assert [a["id"] for a in body] == ["new", "old"]
        assert all(a["signed_url"].startswith("https://signed.example/") for a in body)

    def test_list_project_assets(self, client, assets):
        response = client.get("/assets", params={"project_id": "p-1"}, headers=USER)

        assert [a["id"] for a in response.json()] == ["new"]

    def test_list_assets_of_unknown_project(self, client, assets):
        response = client.get("/assets", params={"project_id": "nope"}, headers=USER)

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "not_found:project"

    def test_list_assets_of_someone_elses_project(self, client, assets):
        response = client.get("/assets", params={"project_id": "p-1"}, headers=OTHER_USER)

        assert response.status_code == 403

    def test_bulk_delete(self, client, assets, persistence):
        response = client.post(
            "/assets/bulk-delete", json={"asset_ids": ["old", "new"]}, headers=USER
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "deleted": 2, "failed": 0}
        assert set(persistence.assets) == {"theirs"}

    def test_bulk_delete_with_missing_asset_deletes_nothing(self, client, assets, persistence):
        response = client.post(
            "/assets/bulk-delete", json={"asset_ids": ["old", "missing"]}, headers=USER
        )

        assert response.status_code == 404
        assert "old" in persistence.assets

    def test_bulk_delete_of_someone_elses_asset_deletes_nothing(self, client, assets, persistence):
        response = client.post(
            "/assets/bulk-delete", json={"asset_ids": ["old", "theirs"]}, headers=USER
        )

        assert response.status_code == 403
        assert set(persistence.assets) == {"old", "new", "theirs"}

    def test_bulk_delete_requires_ids(self, client):
        response = client.post("/assets/bulk-delete", json={"asset_ids": []}, headers=USER)

        assert response.status_code == 422

    def test_bulk_delete_partial_failure(self, client, assets, persistence, monkeypatch):
        original_delete = persistence.delete_asset

        async def flaky_delete(asset_id):
            if asset_id == "new":
                raise RuntimeError("backend unavailable")
            await original_delete(asset_id)

        monkeypatch.setattr(persistence, "delete_asset", flaky_delete)

        response = client.post(
            "/assets/bulk-delete", json={"asset_ids": ["old", "new"]}, headers=USER
        )

        assert response.status_code == 207
        assert response.json() == {"success": False, "deleted": 1, "failed": 1}
        assert "new" in persistence.assets
