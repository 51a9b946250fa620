"""Per-school analytics cache"""
import pytest

from lessonpulse.cache import cached_per_school, invalidate_school, school_key
from lessonpulse.realtime import doctors_channel

pytestmark = pytest.mark.anyio


class CountingService:
    def __init__(self):
        self.calls = 0

    @cached_per_school("analytics", ttl=60)
    async def overview(self, school, teacher_id=None):
        self.calls += 1
        return {"school": school, "teacher_id": teacher_id, "call": self.calls}


def test_school_key_keeps_the_exact_school_name():
    assert school_key("analytics", "Vilnius Gymnasium", "overview") == "analytics:Vilnius Gymnasium:overview"
    assert school_key("analytics", "Vilnius Gymnasium") == "analytics:Vilnius Gymnasium"
    assert school_key("analytics", "Oak School") != school_key("analytics", "oak school")
    assert doctors_channel("Oak School") != doctors_channel("oak school")


async def test_results_are_cached_per_school_and_teacher(cache):
    service = CountingService()

    assert (await service.overview("Vilnius Gymnasium"))["call"] == 1
    assert (await service.overview("Vilnius Gymnasium"))["call"] == 1
    assert (await service.overview("Vilnius Gymnasium", "t-1"))["call"] == 2
    assert (await service.overview("Kaunas School"))["call"] == 3
    assert await cache.ttl("analytics:Vilnius Gymnasium:overview") > 0


async def test_invalidation_only_touches_one_school(cache):
    service = CountingService()
    await service.overview("Vilnius Gymnasium")
    await service.overview("Vilnius Gymnasium", "t-1")
    await service.overview("Kaunas School")

    assert await invalidate_school("analytics", "Vilnius Gymnasium") == 2

    assert (await service.overview("Vilnius Gymnasium"))["call"] == 4
    assert (await service.overview("Kaunas School"))["call"] == 3


async def test_schools_differing_only_in_case_do_not_share_entries(cache):
    service = CountingService()

    oak = await service.overview("Oak School")
    lower_oak = await service.overview("oak school")
    assert oak["school"] == "Oak School"
    assert lower_oak["school"] == "oak school"
    assert lower_oak["call"] == 2

    assert await invalidate_school("analytics", "oak school") == 1
    assert (await service.overview("Oak School"))["call"] == 1
