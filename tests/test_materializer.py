"""Tests for turning storage references into delivery URLs."""

from datetime import datetime, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from studio.errors import ErrorKind, StudioError, Surface
from studio.models.assets import Asset, DeliveryOptions, ImageTransform, Provenance
from studio.models.shared import AssetType, SourceType
from studio.services.materializer import PRESETS, transform_parameters

REFERENCE = "gs://test-bucket/user-1/generations/job-1.png"


def query(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def make_asset(asset_type=AssetType.IMAGE, thumbnail_ref=None):
    return Asset(
        id="asset-1",
        owner_id="user-1",
        type=asset_type,
        storage_ref=REFERENCE if asset_type == AssetType.IMAGE else "gs://test-bucket/user-1/v.mp4",
        thumbnail_ref=thumbnail_ref,
        provenance=Provenance(source_type=SourceType.UPLOAD),
        created_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
    )


class TestMaterialize:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("reference", [None, ""])
    async def test_missing_reference_is_none(self, materializer, reference):
        assert await materializer.materialize(reference) is None

    @pytest.mark.asyncio
    async def test_external_url_passes_through(self, materializer):
        url = "https://cdn.example/image.png?x=1"
        assert await materializer.materialize(url, PRESETS["small"]) == url

    @pytest.mark.asyncio
    async def test_quality_is_clamped(self, materializer):
        options = DeliveryOptions(transform=ImageTransform(quality=150))
        url = await materializer.materialize(REFERENCE, options)
        assert query(url)["quality"] == "100"

        options = DeliveryOptions(transform=ImageTransform(quality=1))
        url = await materializer.materialize(REFERENCE, options)
        assert query(url)["quality"] == "20"

    @pytest.mark.asyncio
    async def test_expiry_is_bounded(self, materializer):
        url = await materializer.materialize(REFERENCE, DeliveryOptions(expires_in=1))
        assert query(url)["expires"] == "60"

        url = await materializer.materialize(
            REFERENCE, DeliveryOptions(expires_in=10**9)
        )
        assert query(url)["expires"] == "604800"

    @pytest.mark.asyncio
    async def test_invalid_reference_degrades_to_none(self, materializer):
        assert await materializer.materialize("supabase://elsewhere/x.png") is None

    @pytest.mark.asyncio
    async def test_signing_failure_degrades_to_none(self, materializer, storage):
        storage.sign_error = StudioError(ErrorKind.UPSTREAM_UNAVAILABLE, Surface.STORAGE)
        assert await materializer.materialize(REFERENCE) is None

    @pytest.mark.asyncio
    async def test_download_with_filename(self, materializer):
        options = DeliveryOptions(download="cat.png")
        assert query(await materializer.materialize(REFERENCE, options))["download"] == "cat.png"


class TestMaterializeAll:
    @pytest.mark.asyncio
    async def test_order_and_degradation(self, materializer):
        urls = await materializer.materialize_all(
            [REFERENCE, None, "https://cdn.example/a.png", "not-a-reference"]
        )

        assert len(urls) == 4
        assert urls[0].startswith("https://signed.example/test-bucket/user-1/")
        assert urls[1] is None
        assert urls[2] == "https://cdn.example/a.png"
        assert urls[3] is None


class TestPresets:
    def test_transform_parameters_are_deterministic(self):
        transform = ImageTransform(
            resize="cover", format="webp", quality=75, height=200, width=200
        )
        assert list(transform_parameters(transform).items()) == [
            ("width", "200"),
            ("height", "200"),
            ("quality", "75"),
            ("format", "webp"),
            ("resize", "cover"),
        ]
        assert transform_parameters(transform) == transform_parameters(
            ImageTransform(**transform.model_dump())
        )

    @pytest.mark.asyncio
    async def test_large_preset_lives_two_hours(self, materializer):
        url = await materializer.preset(REFERENCE, "large")
        assert query(url)["expires"] == "7200"
        assert query(url)["resize"] == "contain"

    @pytest.mark.asyncio
    async def test_unknown_preset(self, materializer):
        with pytest.raises(ValueError):
            await materializer.preset(REFERENCE, "huge")


class TestAssetUrls:
    @pytest.mark.asyncio
    async def test_video_preview_uses_thumbnail(self, materializer):
        asset = make_asset(
            AssetType.VIDEO, thumbnail_ref="gs://test-bucket/user-1/v-thumb.jpg"
        )

        url = await materializer.preview_url(asset, "small")

        assert "/v-thumb.jpg?" in url
        assert query(url)["width"] == "200"

    @pytest.mark.asyncio
    async def test_video_without_thumbnail_uses_raw_video(self, materializer):
        url = await materializer.preview_url(make_asset(AssetType.VIDEO), "small")

        assert "/v.mp4?" in url
        assert "width" not in query(url)
        assert query(url)["expires"] == "7200"

    @pytest.mark.asyncio
    async def test_image_preview_is_transformed(self, materializer):
        url = await materializer.preview_url(make_asset(), "medium")
        assert query(url)["width"] == "400"
        assert query(url)["height"] == "300"

    @pytest.mark.asyncio
    async def test_playback_download(self, materializer):
        url = await materializer.playback_url(make_asset(AssetType.VIDEO), download="clip.mp4")
        assert query(url)["download"] == "clip.mp4"
        assert query(url)["expires"] == "300"

    @pytest.mark.asyncio
    async def test_enrich_assets(self, materializer):
        assets = [make_asset(), make_asset(AssetType.VIDEO)]

        enriched = await materializer.enrich_assets(assets)

        assert [a.id for a in enriched] == ["asset-1", "asset-1"]
        assert enriched[0].signed_url.startswith("https://signed.example/")
        assert enriched[1].signed_thumbnail_url is None
