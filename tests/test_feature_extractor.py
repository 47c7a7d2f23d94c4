"""Unit tests for FeatureExtractor (OCR and embedding replaced by fakes)."""
import pytest
from PIL import Image

from foundmatch.services.feature_extractor import FeatureExtractor

EMBEDDING = [0.6, 0.8]


def _failing_reader(image):
    raise RuntimeError("tesseract is not installed")


@pytest.fixture
def extractor():
    return FeatureExtractor(
        ocr_reader=lambda image: "Serial No: XK4299817Q red bag",
        embedder=lambda image: list(EMBEDDING),
    )


class TestExtract:

    def test_all_descriptors_present(self, extractor, image_factory, png_bytes):
        features = extractor.extract(png_bytes(image_factory()))

        assert features.present == [
            "perceptual_hash",
            "average_color",
            "color_histogram",
            "ocr_tokens",
            "shape",
            "embedding",
        ]
        assert features.ocr_tokens == ["bag", "red", "serial", "xk4299817q"]
        assert features.identifiers == {
            "license_plates": [],
            "serial_numbers": ["XK4299817Q"],
        }
        assert features.embedding == EMBEDDING

    def test_same_pixels_same_features(self, extractor, image_factory, png_bytes):
        data = png_bytes(image_factory())
        assert extractor.extract(data) == extractor.extract(data)

    def test_failing_ocr_leaves_other_signals(self, image_factory, png_bytes):
        extractor = FeatureExtractor(ocr_reader=_failing_reader, embedder=lambda image: EMBEDDING)
        features = extractor.extract(png_bytes(image_factory()))

        assert features.ocr_tokens is None
        assert features.identifiers is None
        assert features.perceptual_hash is not None
        assert features.embedding == EMBEDDING

    def test_blank_text_means_no_ocr_signal(self, image_factory, png_bytes):
        extractor = FeatureExtractor(ocr_reader=lambda image: "  \n", embedder=lambda image: EMBEDDING)
        features = extractor.extract(png_bytes(image_factory()))
        assert features.ocr_tokens is None
        assert features.identifiers is None

    def test_missing_embedding_weights(self, monkeypatch, tmp_path, image_factory, png_bytes):
        monkeypatch.setenv("EMBEDDING_WEIGHTS_PATH", str(tmp_path / "missing.pth"))
        extractor = FeatureExtractor(ocr_reader=lambda image: "")

        features = extractor.extract(png_bytes(image_factory()))

        assert features.embedding is None
        assert features.perceptual_hash is not None
        assert extractor._embedder_unavailable is True

    def test_undecodable_bytes(self, extractor):
        with pytest.raises(ValueError):
            extractor.extract(b"definitely not an image")

    def test_large_images_are_downsampled(self, png_bytes):
        image = FeatureExtractor.decode(png_bytes(Image.new("RGB", (3200, 800), (5, 5, 5))))
        assert max(image.size) == 1600


class TestExtractForPhoto:

    async def test_features_are_persisted(
        self, db_session, add_case, add_photo, image_factory, png_bytes
    ):
        blobs = {"mem://lost.png": png_bytes(image_factory())}
        extractor = FeatureExtractor(
            ocr_reader=lambda image: "",
            embedder=lambda image: EMBEDDING,
            loader=blobs.__getitem__,
        )
        case = await add_case()
        photo = await add_photo(case, storage_uri="mem://lost.png")

        features = await extractor.extract_for_photo(photo, db_session)

        assert features is not None
        assert photo.processing_status == "ready"
        assert photo.features_extracted_at is not None
        assert photo.perceptual_hash == features.perceptual_hash
        assert photo.embedding == EMBEDDING
        assert photo.ocr_tokens is None

    async def test_unreachable_image_marks_photo_failed(self, db_session, add_case, add_photo):
        def _loader(uri):
            raise OSError("connection reset")

        extractor = FeatureExtractor(
            ocr_reader=lambda image: "", embedder=lambda image: EMBEDDING, loader=_loader
        )
        case = await add_case()
        photo = await add_photo(case, storage_uri="gs://bucket/lost.png")

        assert await extractor.extract_for_photo(photo, db_session) is None
        assert photo.processing_status == "failed"
        assert photo.features_extracted_at is None

    async def test_photo_without_uri_fails(self, db_session, add_case, add_photo):
        extractor = FeatureExtractor(ocr_reader=lambda image: "", embedder=lambda image: EMBEDDING)
        case = await add_case()
        photo = await add_photo(case)

        assert await extractor.extract_for_photo(photo, db_session) is None
        assert photo.processing_status == "failed"

    async def test_reextraction_overwrites_columns(
        self, db_session, add_case, add_photo, image_factory, png_bytes, features_factory
    ):
        blobs = {"mem://found.png": png_bytes(image_factory())}
        extractor = FeatureExtractor(
            ocr_reader=lambda image: "", embedder=lambda image: EMBEDDING, loader=blobs.__getitem__
        )
        case = await add_case(case_type="found")
        stale = features_factory(tokens=["stale", "tokens"])
        photo = await add_photo(case, features=stale, storage_uri="mem://found.png")

        await extractor.extract_for_photo(photo, db_session)

        assert photo.ocr_tokens is None
        assert photo.average_color != list(stale.average_color)
        assert photo.features_extracted_at is not None
