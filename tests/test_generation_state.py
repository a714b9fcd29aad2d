import uuid

import pytest

from streamlog.generation_state import (
    START_TOKEN,
    GenerationError,
    GenerationRanges,
    GenerationState,
    GenerationStatus,
    GenId,
    Generation,
)

T3 = -6148914691236517888


class FakeDb:
    def __init__(self, latest=(), infos=None, by_token=None, by_parent=None):
        self.latest = list(latest)
        self.infos = infos or {}
        self.by_token = by_token or {}
        self.by_parent = by_parent or []
        self.commits = []

    def latest_generations(self):
        return list(self.latest)

    def generation_info(self, start, version):
        return self.infos.get(start)

    def generations_by_parent(self, gen):
        return list(self.by_parent)

    def get_generations_by_token(self, token, cluster_size):
        return list(self.by_token.get(token, []))

    def commit_generation(self, gen1, gen2):
        self.commits.append((gen1, gen2))


def loaded_state(*gens, **kwargs):
    s = GenerationState(FakeDb(latest=gens, **kwargs), 4)
    s.load_generations()
    return s


def test_generation_loads_existing():
    gen = Generation(start=123, end=345)
    s = loaded_state(gen)
    assert s.generation(123) == gen


def test_generation_returns_none_when_not_found():
    s = GenerationState(FakeDb(), 4)
    assert s.generation(123) is None


def test_load_generations_fails_when_not_empty():
    s = loaded_state(Generation(start=1, end=2))
    with pytest.raises(GenerationError, match="Generation map is not empty"):
        s.load_generations()


def test_set_proposed_error_when_previous_tx_does_not_match():
    s = GenerationState(FakeDb(), 4)
    gen = Generation(start=123, end=345, tx=uuid.uuid4(), status=GenerationStatus.PROPOSED)
    s.set_generation_proposed(gen, None, None)
    tx = uuid.uuid4()
    with pytest.raises(GenerationError, match=f"Existing proposed does not match.*expected {tx}"):
        s.set_generation_proposed(gen, None, tx)


def test_set_proposed_error_when_existing_tx_is_nil():
    s = GenerationState(FakeDb(), 4)
    gen = Generation(start=123, end=345, tx=uuid.uuid4(), status=GenerationStatus.PROPOSED)
    with pytest.raises(GenerationError) as info:
        s.set_generation_proposed(gen, None, uuid.uuid4())
    assert str(info.value) == "Existing transaction is nil and expected not to be"


def test_set_proposed_error_when_existing_and_expected_missing():
    s = GenerationState(FakeDb(), 4)
    gen = Generation(start=123, end=345, tx=uuid.uuid4())
    s.set_generation_proposed(gen, None, None)
    with pytest.raises(GenerationError, match="Existing transaction is not nil"):
        s.set_generation_proposed(gen, None, None)


def test_set_proposed_error_when_version_not_higher():
    tx = uuid.uuid4()
    db = FakeDb(latest=[Generation(start=123, end=345, version=1)])
    s = GenerationState(db, 4)
    s.set_generation_proposed(
        Generation(start=123, end=345, tx=tx, version=1, status=GenerationStatus.PROPOSED)
    )
    s.load_generations()
    new_gen = Generation(start=123, end=345, tx=tx, version=1, status=GenerationStatus.ACCEPTED)
    with pytest.raises(GenerationError) as info:
        s.set_generation_proposed(new_gen, None, tx)
    assert str(info.value) == (
        "Proposed version is not the next version of committed: committed = 1, proposed = 1"
    )


def test_set_proposed_replaces_when_tx_matches_and_version_higher():
    tx = uuid.uuid4()
    s = loaded_state(Generation(start=123, end=345, version=1))
    s.set_generation_proposed(
        Generation(start=123, end=345, tx=tx, version=2, status=GenerationStatus.PROPOSED)
    )
    new_gen = Generation(start=123, end=345, tx=tx, version=2, status=GenerationStatus.ACCEPTED)
    s.set_generation_proposed(new_gen, None, tx)
    committed, proposed = s.generation_proposed(123)
    assert proposed == new_gen
    assert committed.version == 1


def test_accept_multiple_requires_accepted_status():
    s = GenerationState(FakeDb(), 4)
    gen1 = Generation(start=1, end=2, status=GenerationStatus.PROPOSED)
    gen2 = Generation(start=2, end=3, status=GenerationStatus.ACCEPTED)
    with pytest.raises(GenerationError, match="only accepted"):
        s.set_generation_proposed(gen1, gen2)


def test_accept_multiple_replaces_both():
    tx = uuid.uuid4()
    s = GenerationState(FakeDb(), 4)
    s.set_generation_proposed(Generation(start=1, end=2, tx=tx, version=1))
    s.set_generation_proposed(Generation(start=2, end=3, tx=tx, version=1))
    gen1 = Generation(start=1, end=2, tx=tx, version=1, status=GenerationStatus.ACCEPTED)
    gen2 = Generation(start=2, end=3, tx=tx, version=1, status=GenerationStatus.ACCEPTED)
    s.set_generation_proposed(gen1, gen2)
    assert s.generation_proposed(1)[1] == gen1
    assert s.generation_proposed(2)[1] == gen2


def test_parent_ranges_single_parent_keeps_ranges():
    gen = Generation(
        start=START_TOKEN, end=0, version=2, cluster_size=3,
        parents=[GenId(START_TOKEN, 1)],
    )
    parent = Generation(start=START_TOKEN, end=0, version=1, cluster_size=3)
    s = GenerationState(FakeDb(infos={START_TOKEN: parent}), 4)
    assert s.parent_ranges(gen, [1]) == [GenerationRanges(parent, (1,))]
    assert s.parent_ranges(gen, [3]) == [GenerationRanges(parent, (3,))]


def test_parent_ranges_projects_multiple_parents():
    gen = Generation(
        start=START_TOKEN, end=0, version=2, cluster_size=3,
        parents=[GenId(START_TOKEN, 1), GenId(T3, 1)],
    )
    parent1 = Generation(start=START_TOKEN, end=T3, cluster_size=6)
    parent2 = Generation(start=T3, end=0, cluster_size=6)
    s = GenerationState(FakeDb(infos={START_TOKEN: parent1, T3: parent2}), 4)
    assert s.parent_ranges(gen, [0]) == [GenerationRanges(parent1, (0, 1))]
    assert s.parent_ranges(gen, [1]) == [GenerationRanges(parent1, (2, 3))]
    assert s.parent_ranges(gen, [2]) == [GenerationRanges(parent2, (0, 1))]
    assert s.parent_ranges(gen, [3]) == [GenerationRanges(parent2, (2, 3))]


def test_parent_ranges_without_parents_is_empty():
    s = GenerationState(FakeDb(), 4)
    assert s.parent_ranges(Generation(start=1, end=2), [0]) == []


def test_set_as_committed_stores_and_deletes_proposed():
    db = FakeDb()
    s = GenerationState(db, 4)
    gen = Generation(start=123, end=345, tx=uuid.uuid4(), status=GenerationStatus.ACCEPTED)
    s.set_generation_proposed(gen)
    s.set_as_committed(gen.start, None, gen.tx, 3)

    expected = Generation(start=123, end=345, tx=gen.tx, status=GenerationStatus.COMMITTED)
    assert s.generation_proposed(123) == (expected, None)
    assert db.commits == [(expected, None)]


def test_set_as_committed_removes_deleted_generation():
    tx = uuid.uuid4()
    db = FakeDb(latest=[Generation(start=10, end=20, version=1)])
    s = GenerationState(db, 4)
    s.load_generations()
    gen1 = Generation(start=0, end=20, tx=tx, version=2, status=GenerationStatus.ACCEPTED)
    gen2 = Generation(
        start=10, end=20, tx=tx, version=2, status=GenerationStatus.ACCEPTED,
        to_delete=True, parents=[GenId(10, 1)],
    )
    s.set_generation_proposed(gen1)
    s.set_generation_proposed(gen2)
    s.set_as_committed(0, 10, tx, 1)
    assert s.generation(10) is None
    assert s.generation(0).status is GenerationStatus.COMMITTED
    assert db.commits[0][1] is None


def test_set_as_committed_error_when_no_proposed():
    s = GenerationState(FakeDb(), 4)
    with pytest.raises(GenerationError) as info:
        s.set_as_committed(123, None, uuid.uuid4(), 2)
    assert str(info.value) == "No proposed value found for token 123"


def test_set_as_committed_error_when_tx_does_not_match():
    s = GenerationState(FakeDb(), 4)
    gen = Generation(start=123, end=345, tx=uuid.uuid4(), status=GenerationStatus.ACCEPTED)
    s.set_generation_proposed(gen)
    with pytest.raises(GenerationError) as info:
        s.set_as_committed(gen.start, None, uuid.uuid4(), 4)
    assert str(info.value) == "Transaction does not match"


def test_repair_committed_stores_generation():
    db = FakeDb()
    s = GenerationState(db, 4)
    result = s.repair_committed(Generation(start=5, end=9, version=3))
    assert result.status is GenerationStatus.COMMITTED
    assert s.generation(5) == result
    assert db.commits == [(result, None)]


def test_repair_committed_rejects_to_delete():
    s = GenerationState(FakeDb(), 4)
    with pytest.raises(GenerationError):
        s.repair_committed(Generation(start=5, end=9, to_delete=True))


def test_is_token_in_range():
    s = loaded_state(Generation(start=100, end=200), Generation(start=500, end=START_TOKEN))
    assert s.is_token_in_range(150) is True
    assert s.is_token_in_range(100) is False
    assert s.is_token_in_range(200) is False
    assert s.is_token_in_range(10**9) is True


def test_token_history():
    hist = Generation(start=7, end=8, version=4)
    s = GenerationState(FakeDb(by_token={7: [hist]}), 4)
    assert s.has_token_history(7, 3) is True
    assert s.has_token_history(8, 3) is False
    assert s.get_token_history(7, 3) == hist
    assert s.get_token_history(8, 3) is None


def test_next_generation():
    old = Generation(start=1, end=2, version=1)
    nxt = Generation(start=1, end=2, version=2)
    s = loaded_state(nxt, infos={1: old}, by_parent=[nxt])
    assert s.next_generation(GenId(1, 1)) == [nxt]
    assert s.next_generation(GenId(9, 1)) is None