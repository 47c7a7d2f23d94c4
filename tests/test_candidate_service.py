"""Tests for CandidateGenerator against an in-memory store."""
from datetime import datetime, timedelta, timezone

import pytest

from foundmatch.schemas.features import FeatureSet
from foundmatch.services.candidate_service import CandidateGenerator, is_opposite_type

BROOKLYN = (40.6782, -73.9442)
PHILADELPHIA = (39.9526, -75.1652)


@pytest.fixture
def generator():
    return CandidateGenerator(radius_miles=50, max_age_days=180, top_k=50)


@pytest.fixture
async def lost_electronics(add_case, add_photo, features_factory):
    case = await add_case(case_type="lost", category="electronics")
    photo = await add_photo(case, features=features_factory())
    return case, photo


class TestOppositeTypes:

    @pytest.mark.parametrize(
        "a, b",
        [("lost", "found"), ("found", "lost"), ("pet", "found"), ("missing_person", "found")],
    )
    def test_opposites(self, a, b):
        assert is_opposite_type(a, b)

    @pytest.mark.parametrize(
        "a, b",
        [("lost", "lost"), ("found", "found"), ("lost", "pet"), ("unknown", "found")],
    )
    def test_not_opposites(self, a, b):
        assert not is_opposite_type(a, b)


class TestFiltering:

    async def test_only_eligible_photos_returned(
        self, db_session, generator, lost_electronics, add_case, add_photo, features_factory
    ):
        case, photo = lost_electronics
        fs = features_factory()

        near = await add_photo(
            await add_case(case_type="found", category="electronics", location=BROOKLYN),
            features=fs,
        )
        unlocated = await add_photo(
            await add_case(case_type="found", category="electronics", location=None),
            features=fs,
        )
        uncategorised = await add_photo(
            await add_case(case_type="found", category=None, location=BROOKLYN),
            features=fs,
        )
        # Everything below must be filtered out.
        await add_photo(
            await add_case(case_type="found", category="electronics", location=PHILADELPHIA),
            features=fs,
        )
        await add_photo(
            await add_case(case_type="found", category="pets", location=BROOKLYN),
            features=fs,
        )
        await add_photo(
            await add_case(case_type="lost", category="electronics", location=BROOKLYN),
            features=fs,
        )
        await add_photo(
            await add_case(
                case_type="found", category="electronics", location=BROOKLYN, status="closed"
            ),
            features=fs,
        )
        await add_photo(
            await add_case(case_type="found", category="electronics", location=BROOKLYN),
            storage_uri="gs://bucket/pending.png",
        )
        await add_photo(
            await add_case(
                case_type="found",
                category="electronics",
                location=BROOKLYN,
                created_at=datetime.now(timezone.utc) - timedelta(days=400),
            ),
            features=fs,
        )
        await add_photo(case, features=fs)

        candidates = await generator.find_candidates(photo, case, fs, db_session)

        assert [c.photo.id for c in candidates] == [near.id, unlocated.id, uncategorised.id]
        assert candidates[0].distance_miles == pytest.approx(4.0, abs=1.0)
        assert candidates[1].distance_miles is None
        assert candidates[1].location is None

    async def test_pet_case_skips_electronics(
        self, db_session, generator, add_case, add_photo, features_factory
    ):
        fs = features_factory()
        pet_case = await add_case(case_type="pet", category="pets")
        pet_photo = await add_photo(pet_case, features=fs)
        found_pet = await add_photo(
            await add_case(case_type="found", category="pets", location=BROOKLYN), features=fs
        )
        await add_photo(
            await add_case(case_type="found", category="electronics", location=BROOKLYN),
            features=fs,
        )

        candidates = await generator.find_candidates(pet_photo, pet_case, fs, db_session)

        assert [c.photo.id for c in candidates] == [found_pet.id]

    async def test_photos_without_features_are_skipped(
        self, db_session, generator, lost_electronics, add_case, add_photo
    ):
        case, photo = lost_electronics
        await add_photo(
            await add_case(case_type="found", category="electronics", location=BROOKLYN),
            processing_status="ready",
        )

        assert await generator.find_candidates(photo, case, FeatureSet(), db_session) == []

    async def test_unknown_case_type(self, db_session, generator, add_case, add_photo):
        case = await add_case(case_type="stolen")
        photo = await add_photo(case)
        with pytest.raises(ValueError):
            await generator.find_candidates(photo, case, FeatureSet(), db_session)


class TestRanking:

    async def test_top_k_and_distance_order(
        self, db_session, lost_electronics, add_case, add_photo, features_factory
    ):
        case, photo = lost_electronics
        fs = features_factory()
        far = await add_photo(
            await add_case(case_type="found", category="electronics", location=(41.0, -74.0)),
            features=fs,
        )
        nearest = await add_photo(
            await add_case(case_type="found", category="electronics", location=(40.72, -74.0)),
            features=fs,
        )
        await add_photo(
            await add_case(case_type="found", category="electronics", location=(41.3, -74.0)),
            features=fs,
        )

        generator = CandidateGenerator(radius_miles=50, max_age_days=180, top_k=2)
        candidates = await generator.find_candidates(photo, case, fs, db_session)

        assert [c.photo.id for c in candidates] == [nearest.id, far.id]

    async def test_colour_bucket_breaks_distance_ties(
        self, db_session, lost_electronics, add_case, add_photo, features_factory
    ):
        case, photo = lost_electronics
        source_fs = features_factory(color=(200, 30, 30))
        same_colour = await add_photo(
            await add_case(case_type="found", category="electronics", location=BROOKLYN),
            features=features_factory(color=(210, 20, 25)),
        )
        other_colour = await add_photo(
            await add_case(case_type="found", category="electronics", location=BROOKLYN),
            features=features_factory(color=(20, 200, 30)),
        )

        generator = CandidateGenerator(radius_miles=50, max_age_days=180, top_k=10)
        candidates = await generator.find_candidates(photo, case, source_fs, db_session)

        assert [c.photo.id for c in candidates] == [same_colour.id, other_colour.id]

    async def test_same_store_state_same_order(
        self, db_session, generator, lost_electronics, add_case, add_photo, features_factory
    ):
        case, photo = lost_electronics
        fs = features_factory()
        for _ in range(5):
            await add_photo(
                await add_case(case_type="found", category="electronics", location=BROOKLYN),
                features=fs,
            )

        first = await generator.find_candidates(photo, case, fs, db_session)
        second = await generator.find_candidates(photo, case, fs, db_session)

        assert len(first) == 5
        assert [c.photo.id for c in first] == [c.photo.id for c in second]
