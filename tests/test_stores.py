"""Profile and dream store contract, run against both backends."""
from datetime import datetime, timedelta, timezone

import pytest

import stores
from plans import Plan
from stores import (
    ChatMessage,
    Dream,
    MemoryDreamStore,
    MemoryProfileStore,
    NotFoundError,
    SqlDreamStore,
    SqlProfileStore,
    UserProfile,
)

T0 = datetime(2024, 5, 1, 7, 30, tzinfo=timezone.utc)


def _dream(dream_id, minutes=0, content="", chat=None):
    return Dream(id=dream_id, timestamp=T0 + timedelta(minutes=minutes), content=content or f"dream {dream_id}", chat_history=chat)


@pytest.fixture(params=["memory", "sql"])
def backend(request):
    if request.param == "memory":
        return MemoryProfileStore(), MemoryDreamStore()
    app = request.getfixturevalue("flask_app")
    return SqlProfileStore(app), SqlDreamStore(app)


@pytest.fixture
def profiles(backend):
    return backend[0]


@pytest.fixture
def dreams(backend):
    return backend[1]


# =============================================================================
# Profiles
# =============================================================================

class TestProfileStore:
    @pytest.mark.asyncio
    async def test_missing_profile_is_none(self, profiles):
        assert await profiles.get_by_id("nobody") is None

    @pytest.mark.asyncio
    async def test_upsert_then_get(self, profiles):
        trial_end = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        profile = UserProfile(id="u1", email="a@x.com", plan=Plan.PRO, trial_end_date=trial_end, billing_customer_id="cus_1")
        await profiles.upsert("u1", profile)

        assert await profiles.get_by_id("u1") == profile

    @pytest.mark.asyncio
    async def test_upsert_overwrites(self, profiles):
        await profiles.upsert("u1", UserProfile(id="u1", email="a@x.com"))
        await profiles.upsert("u1", UserProfile(id="u1", email="a@x.com", plan=Plan.PRO))

        loaded = await profiles.get_by_id("u1")
        assert loaded.plan is Plan.PRO

    @pytest.mark.asyncio
    async def test_upsert_rejects_mismatched_id(self, profiles):
        with pytest.raises(ValueError):
            await profiles.upsert("u1", UserProfile(id="u2", email="a@x.com"))
        assert await profiles.get_by_id("u1") is None


# =============================================================================
# Dreams
# =============================================================================

class TestDreamStore:
    @pytest.mark.asyncio
    async def test_list_is_newest_first(self, profiles, dreams):
        await profiles.upsert("u1", UserProfile(id="u1", email="a@x.com"))
        await dreams.upsert("u1", _dream("old", 0))
        await dreams.upsert("u1", _dream("new", 60))
        await dreams.upsert("u1", _dream("mid", 30))

        assert [d.id for d in await dreams.list_for_user("u1")] == ["new", "mid", "old"]

    @pytest.mark.asyncio
    async def test_dreams_are_scoped_to_user(self, dreams):
        await dreams.upsert("u1", _dream("d1"))

        assert await dreams.list_for_user("u2") == []
        assert await dreams.get_by_id("u2", "d1") is None

    @pytest.mark.asyncio
    async def test_upsert_and_get_keep_chat_history(self, dreams):
        chat = (ChatMessage("user", "What does the sea mean?"), ChatMessage("model", "Calm."))
        dream = _dream("d1", chat=chat)
        await dreams.upsert("u1", dream)

        loaded = await dreams.get_by_id("u1", "d1")
        assert loaded == dream
        assert loaded.timestamp.tzinfo is not None

    @pytest.mark.asyncio
    async def test_update_partial_merges(self, dreams):
        await dreams.upsert("u1", _dream("d1", content="Flying"))
        chat = (ChatMessage("user", "hi"),)

        await dreams.update_partial("u1", "d1", {"chat_history": chat})

        loaded = await dreams.get_by_id("u1", "d1")
        assert loaded.chat_history == chat
        assert loaded.content == "Flying"
        assert loaded.timestamp == T0

    @pytest.mark.asyncio
    async def test_update_partial_missing_dream_raises(self, dreams):
        with pytest.raises(NotFoundError):
            await dreams.update_partial("u1", "nope", {"content": "x"})
        assert await dreams.get_by_id("u1", "nope") is None

    @pytest.mark.asyncio
    async def test_update_partial_rejects_unknown_fields(self, dreams):
        await dreams.upsert("u1", _dream("d1"))
        with pytest.raises(ValueError):
            await dreams.update_partial("u1", "d1", {"mood": "happy"})
        with pytest.raises(ValueError):
            await dreams.update_partial("u1", "d1", {"id": "d2"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [None, "", "yesterday", 1717200000])
    async def test_update_partial_rejects_bad_timestamp(self, dreams, value):
        await dreams.upsert("u1", _dream("d1"))

        with pytest.raises(ValueError):
            await dreams.update_partial("u1", "d1", {"timestamp": value})

        listed = await dreams.list_for_user("u1")
        assert [(d.id, d.timestamp) for d in listed] == [("d1", T0)]

    @pytest.mark.asyncio
    async def test_update_partial_parses_iso_timestamp(self, dreams):
        await dreams.upsert("u1", _dream("d1"))

        await dreams.update_partial("u1", "d1", {"timestamp": "2024-06-01T00:00:00Z"})

        loaded = await dreams.get_by_id("u1", "d1")
        assert loaded.timestamp == datetime(2024, 6, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_replace_all_replaces_everything(self, dreams):
        await dreams.upsert("u1", _dream("a"))
        await dreams.upsert("u1", _dream("b"))

        await dreams.replace_all("u1", [_dream("c", 5), _dream("d", 10)])

        assert [d.id for d in await dreams.list_for_user("u1")] == ["d", "c"]

    @pytest.mark.asyncio
    async def test_replace_all_with_empty_batch_clears(self, dreams):
        await dreams.upsert("u1", _dream("a"))
        await dreams.replace_all("u1", [])
        assert await dreams.list_for_user("u1") == []

    @pytest.mark.asyncio
    async def test_replace_all_duplicate_ids_keeps_prior(self, dreams):
        await dreams.upsert("u1", _dream("a"))

        with pytest.raises(ValueError):
            await dreams.replace_all("u1", [_dream("x"), _dream("x", 1)])

        assert [d.id for d in await dreams.list_for_user("u1")] == ["a"]


@pytest.mark.asyncio
async def test_sql_replace_all_rolls_back_on_mid_batch_failure(flask_app, monkeypatch):
    dreams = SqlDreamStore(flask_app)
    await dreams.upsert("u1", _dream("a"))
    await dreams.upsert("u1", _dream("b", 1))

    real_fill = stores.fill_dream_row
    calls = []

    def failing_fill(row, dream):
        calls.append(dream.id)
        if len(calls) == 2:
            raise RuntimeError("disk full")
        real_fill(row, dream)

    monkeypatch.setattr(stores, "fill_dream_row", failing_fill)

    with pytest.raises(RuntimeError):
        await dreams.replace_all("u1", [_dream("x"), _dream("y", 1), _dream("z", 2)])

    monkeypatch.undo()
    assert [d.id for d in await dreams.list_for_user("u1")] == ["b", "a"]


# =============================================================================
# Documents
# =============================================================================

class TestDocuments:
    def test_profile_wire_form(self):
        profile = UserProfile(
            id="u1",
            email="a@x.com",
            plan="pro",
            trial_end_date=datetime(2024, 6, 1, 12, 0),
            billing_customer_id="cus_1",
        )
        data = profile.to_dict()

        assert data == {
            "id": "u1",
            "email": "a@x.com",
            "plan": "pro",
            "trialEndDate": "2024-06-01T12:00:00Z",
            "billingCustomerId": "cus_1",
        }
        assert UserProfile.from_dict(data) == profile

    def test_unknown_plan_reads_as_free(self):
        assert UserProfile.from_dict({"id": "u1", "email": "a@x.com", "plan": "gold"}).plan is Plan.FREE

    def test_dream_requires_timestamp(self):
        with pytest.raises(ValueError):
            Dream(id="d1", timestamp=None, content="x")
        with pytest.raises(ValueError):
            Dream(id="d1", timestamp="not a date", content="x")

    def test_dream_accepts_naive_and_iso_timestamps(self):
        naive = Dream(id="d1", timestamp=datetime(2024, 5, 1, 7, 30), content="x")
        iso = Dream(id="d1", timestamp="2024-05-01T09:30:00+02:00", content="x")
        assert naive.timestamp == iso.timestamp == T0

    def test_dream_from_dict_requires_timestamp(self):
        with pytest.raises(ValueError):
            Dream.from_dict({"id": "d1", "content": "x"})

    def test_dream_from_dict_parses_chat_history(self):
        dream = Dream.from_dict({
            "id": "d1",
            "timestamp": "2024-05-01T07:30:00+02:00",
            "content": "Falling",
            "chatHistory": [{"role": "user", "content": "why?"}],
        })

        assert dream.timestamp == datetime(2024, 5, 1, 5, 30, tzinfo=timezone.utc)
        assert dream.chat_history == (ChatMessage("user", "why?"),)
        assert dream.to_dict()["timestamp"] == "2024-05-01T05:30:00Z"
