from datetime import timedelta

import pytest

from reliefdispatch.core.errors import InvalidRequestError, NotFoundError
from reliefdispatch.schemas import Beneficiaries, utcnow
from reliefdispatch.services.duplicates import (
    find_duplicates, needs_similarity, resolve_duplicate, score_duplicate, text_similarity,
)
from helpers import make_request, needs, point

pytestmark = pytest.mark.anyio

ROOF = "Family trapped on roof near temple, need water"


def test_text_similarity():
    a = "Family trapped on roof near temple"
    b = "trapped on the roof, family near temple!"
    assert text_similarity(a, b) == pytest.approx(5 / 6)
    assert text_similarity("", b) == 0.0


def test_needs_similarity():
    a = make_request(needs=needs("food", "water"))
    b = make_request(needs=needs("food"))
    assert needs_similarity(a, b) == 0.5
    assert needs_similarity(make_request(), make_request()) == 0.0


def test_score_is_symmetric():
    now = utcnow()
    a = make_request(
        location=point(), created_at=now, description=ROOF,
        needs=needs("water", "rescue"), beneficiaries=Beneficiaries(adults=3, children=2),
    )
    b = make_request(
        location=point(0.001, 0.0005), created_at=now - timedelta(hours=5),
        description="water needed, trapped near the temple",
        needs=needs("water"), beneficiaries=Beneficiaries(adults=2),
    )
    s_ab, c_ab, d_ab = score_duplicate(a, b, 500)
    s_ba, c_ba, d_ba = score_duplicate(b, a, 500)
    assert s_ab == pytest.approx(s_ba)
    assert d_ab == pytest.approx(d_ba)
    for key in c_ab:
        assert c_ab[key] == pytest.approx(c_ba[key])


def test_zero_beneficiaries_scores_half():
    a = make_request(beneficiaries=Beneficiaries(adults=0))
    b = make_request(beneficiaries=Beneficiaries(adults=4))
    _, comps, _ = score_duplicate(a, b)
    assert comps["beneficiaries"] == 0.5


async def _seed_pair(repo):
    now = utcnow()
    a = make_request(location=point(), created_at=now, description=ROOF, needs=needs("water"), status="triaged")
    # ~50 m north
    b = make_request(location=point(0.00045), created_at=now, description=ROOF, needs=needs("water"))
    far = make_request(location=point(0.05), created_at=now, description=ROOF, needs=needs("water"))
    for r in (a, b, far):
        await repo.insert_request(r)
    return a, b, far


async def test_find_duplicates_reports_pair_once(repo):
    a, b, far = await _seed_pair(repo)
    pairs = await find_duplicates(repo)

    assert len(pairs) == 1
    pair = pairs[0]
    assert {pair.request_1.id, pair.request_2.id} == {a.id, b.id}
    assert pair.score > 0.9
    assert 40 < pair.distance_m < 60


async def test_find_duplicates_threshold(repo):
    await _seed_pair(repo)
    assert await find_duplicates(repo, threshold=0.99) == []


async def test_merge(repo):
    a, b, _ = await _seed_pair(repo)
    result = await resolve_duplicate(repo, a.id, b.id, "merge", keep_id=a.id, performed_by="op-1")
    assert result["kept_id"] == a.id

    kept = await repo.get_request(a.id)
    gone = await repo.get_request(b.id)
    assert gone.status == "closed"
    assert gone.is_duplicate
    assert gone.merged_into == a.id
    assert gone.duplicate_score > 0.9
    assert kept.status == "triaged"
    assert len(kept.timeline) == 1
    assert len(gone.timeline) == 1
    assert gone.timeline[0].action == "Marked as duplicate"
    assert gone.timeline[0].performed_by == "op-1"

    # merged requests drop out of later scans
    assert await find_duplicates(repo) == []


async def test_merge_emits_event(repo):
    from reliefdispatch.core.events import EventEmitter

    a, b, _ = await _seed_pair(repo)
    await resolve_duplicate(repo, a.id, b.id, "merge", events=EventEmitter(repo))
    assert [e["type"] for e in repo.events] == ["duplicate:resolved"]


async def test_not_duplicate_only_adds_notes(repo):
    a, b, _ = await _seed_pair(repo)
    await resolve_duplicate(repo, a.id, b.id, "not-duplicate", notes="different families")

    for rid, status in ((a.id, "triaged"), (b.id, "new")):
        r = await repo.get_request(rid)
        assert r.status == status
        assert not r.is_duplicate
        assert r.timeline[-1].action == "Duplicate review"
        assert "different families" in r.timeline[-1].details


async def test_resolve_errors(repo):
    a, b, _ = await _seed_pair(repo)
    with pytest.raises(NotFoundError):
        await resolve_duplicate(repo, a.id, "missing", "merge")
    with pytest.raises(InvalidRequestError):
        await resolve_duplicate(repo, a.id, b.id, "merge", keep_id="someone-else")
    with pytest.raises(InvalidRequestError):
        await resolve_duplicate(repo, a.id, b.id, "ignore")
