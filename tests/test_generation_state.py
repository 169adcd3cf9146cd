import re
import uuid

import pytest

from streamlog.generation_state import (
    START_TOKEN,
    Generation,
    GenerationError,
    GenerationRanges,
    GenerationState,
    GenerationStatus,
    GenerationStore,
)
from streamlog.models import GenId

T3 = -6148914691236517888


class FakeStore(GenerationStore):
    def __init__(self, latest=(), infos=None, history=None, children=None):
        self.latest = list(latest)
        self.infos = infos or {}
        self.history = history or {}
        self.children = children or []
        self.committed = []

    def latest_generations(self):
        return list(self.latest)

    def generation_info(self, start, version):
        return self.infos.get((start, version), self.infos.get(start))

    def generations_by_parent(self, gen):
        return list(self.children)

    def get_generations_by_token(self, token, cluster_size):
        return list(self.history.get(token, []))

    def commit_generation(self, gen1, gen2):
        self.committed.append((gen1, gen2))


def state(latest=(), **kwargs):
    store = FakeStore(latest=latest, **kwargs)
    s = GenerationState(store, consumer_ranges=4)
    s.load_generations()
    return s, store


def test_generation_loads_existing():
    gen = Generation(start=123, end=345)
    s, _ = state([gen])
    assert s.generation(123) == gen


def test_generation_returns_none_when_not_found():
    s, _ = state()
    assert s.generation(123) is None


def test_load_generations_twice_fails():
    s, _ = state([Generation(start=1)])
    with pytest.raises(GenerationError, match="Generation map is not empty"):
        s.load_generations()


def test_set_proposed_error_when_previous_tx_does_not_match():
    s, _ = state()
    gen = Generation(start=123, end=345, tx=uuid.uuid4(), status=GenerationStatus.PROPOSED)
    s.set_generation_proposed(gen)
    tx = uuid.uuid4()
    with pytest.raises(GenerationError, match=f"Existing proposed does not match.*expected {re.escape(str(tx))}"):
        s.set_generation_proposed(gen, None, tx)


def test_set_proposed_error_when_existing_tx_is_none():
    s, _ = state()
    gen = Generation(start=123, end=345, tx=uuid.uuid4(), status=GenerationStatus.PROPOSED)
    with pytest.raises(GenerationError, match="^Existing transaction is nil and expected not to be$"):
        s.set_generation_proposed(gen, None, uuid.uuid4())


def test_set_proposed_error_when_existing_but_not_expected():
    s, _ = state()
    gen = Generation(start=123, end=345, tx=uuid.uuid4(), status=GenerationStatus.PROPOSED)
    s.set_generation_proposed(gen)
    with pytest.raises(GenerationError, match="Existing transaction is not nil"):
        s.set_generation_proposed(gen)


def test_set_proposed_error_when_version_not_higher():
    s, _ = state([Generation(start=123, end=345, version=1)])
    tx = uuid.uuid4()
    s.set_generation_proposed(Generation(start=123, end=345, tx=tx, version=2, status=GenerationStatus.PROPOSED))
    new_gen = Generation(start=123, end=345, tx=tx, version=1, status=GenerationStatus.ACCEPTED)
    with pytest.raises(GenerationError) as info:
        s.set_generation_proposed(new_gen, None, tx)
    assert str(info.value) == (
        "Proposed version is not the next version of committed: committed = 1, proposed = 1"
    )


def test_set_proposed_replaces_when_tx_matches_and_version_higher():
    committed = Generation(start=123, end=345, version=1)
    s, _ = state([committed])
    tx = uuid.uuid4()
    s.set_generation_proposed(Generation(start=123, end=345, tx=tx, version=2, status=GenerationStatus.PROPOSED))
    new_gen = Generation(start=123, end=345, tx=tx, version=2, status=GenerationStatus.ACCEPTED)
    s.set_generation_proposed(new_gen, None, tx)
    assert s.generation_proposed(123) == (committed, new_gen)


def test_accept_multiple_replaces_both():
    s, _ = state()
    tx = uuid.uuid4()
    g1 = Generation(start=0, end=100, tx=tx, version=1, status=GenerationStatus.PROPOSED)
    g2 = Generation(start=100, end=200, tx=tx, version=1, status=GenerationStatus.PROPOSED)
    s.set_generation_proposed(g1)
    s.set_generation_proposed(g2)
    a1 = Generation(start=0, end=100, tx=tx, version=1, status=GenerationStatus.ACCEPTED)
    a2 = Generation(start=100, end=200, tx=tx, version=1, status=GenerationStatus.ACCEPTED)
    s.set_generation_proposed(a1, a2, tx)
    assert s.generation_proposed(0)[1] == a1
    assert s.generation_proposed(100)[1] == a2


def test_accept_multiple_requires_accepted_status():
    s, _ = state()
    g1 = Generation(start=0, status=GenerationStatus.PROPOSED)
    g2 = Generation(start=100, status=GenerationStatus.ACCEPTED)
    with pytest.raises(GenerationError, match="only accepted"):
        s.set_generation_proposed(g1, g2)


def test_parent_ranges_single_parent_keeps_ranges():
    gen = Generation(start=START_TOKEN, version=2, cluster_size=3, parents=(GenId(START_TOKEN, 1),))
    parent = Generation(start=START_TOKEN, version=1, cluster_size=3)
    s, _ = state(infos={START_TOKEN: parent})
    assert s.parent_ranges(gen, [1]) == [GenerationRanges(generation=parent, indices=(1,))]
    assert s.parent_ranges(gen, [3]) == [GenerationRanges(generation=parent, indices=(3,))]


def test_parent_ranges_projects_multiple_parents():
    gen = Generation(
        start=START_TOKEN, version=2, cluster_size=3, parents=(GenId(START_TOKEN, 1), GenId(T3, 1))
    )
    parent1 = Generation(start=START_TOKEN, cluster_size=6)
    parent2 = Generation(start=T3, cluster_size=6)
    s, _ = state(infos={START_TOKEN: parent1, T3: parent2})
    assert s.parent_ranges(gen, [0]) == [GenerationRanges(parent1, (0, 1))]
    assert s.parent_ranges(gen, [1]) == [GenerationRanges(parent1, (2, 3))]
    assert s.parent_ranges(gen, [2]) == [GenerationRanges(parent2, (0, 1))]
    assert s.parent_ranges(gen, [3]) == [GenerationRanges(parent2, (2, 3))]


def test_parent_ranges_without_parents_is_none():
    s, _ = state()
    assert s.parent_ranges(Generation(start=0), [0]) is None


def test_set_as_committed_stores_and_removes_proposed():
    s, store = state()
    gen = Generation(start=123, end=345, tx=uuid.uuid4(), status=GenerationStatus.ACCEPTED)
    s.set_generation_proposed(gen)
    s.set_as_committed(gen.start, None, gen.tx, 3)
    expected = Generation(start=123, end=345, tx=gen.tx, status=GenerationStatus.COMMITTED)
    assert s.generation_proposed(123) == (expected, None)
    assert store.committed == [(expected, None)]


def test_set_as_committed_error_when_no_proposed():
    s, _ = state()
    with pytest.raises(GenerationError, match="^No proposed value found for token 123$"):
        s.set_as_committed(123, None, uuid.uuid4(), 2)


def test_set_as_committed_error_when_tx_does_not_match():
    s, _ = state()
    gen = Generation(start=123, end=345, tx=uuid.uuid4(), status=GenerationStatus.ACCEPTED)
    s.set_generation_proposed(gen)
    with pytest.raises(GenerationError, match="^Transaction does not match$"):
        s.set_as_committed(gen.start, None, uuid.uuid4(), 4)


def test_set_as_committed_removes_generation_to_delete():
    tx = uuid.uuid4()
    s, store = state([Generation(start=0, end=100, version=1), Generation(start=100, end=200, version=1)])
    g1 = Generation(start=0, end=200, tx=tx, version=2, status=GenerationStatus.ACCEPTED)
    g2 = Generation(start=100, end=200, tx=tx, version=2, status=GenerationStatus.ACCEPTED, to_delete=True,
                    parents=(GenId(100, 1),))
    s.set_generation_proposed(g1)
    s.set_generation_proposed(g2)
    s.set_as_committed(0, 100, tx, 1)
    assert s.generation(100) is None
    assert s.generation(0).end == 200
    assert store.committed[0][1] is None


def test_repair_committed():
    s, store = state()
    committed = s.repair_committed(Generation(start=5, end=10, version=3, status=GenerationStatus.ACCEPTED))
    assert committed.status is GenerationStatus.COMMITTED
    assert s.generation(5) == committed
    assert store.committed == [(committed, None)]


def test_repair_committed_rejects_to_delete():
    s, _ = state()
    with pytest.raises(ValueError):
        s.repair_committed(Generation(start=5, to_delete=True))


def test_is_token_in_range():
    s, _ = state([Generation(start=0, end=100), Generation(start=500, end=START_TOKEN)])
    assert s.is_token_in_range(50) is True
    assert s.is_token_in_range(0) is False
    assert s.is_token_in_range(100) is False
    assert s.is_token_in_range(10_000) is True


def test_token_history():
    latest = Generation(start=7, version=4)
    s, _ = state(history={7: [latest, Generation(start=7, version=3)]})
    assert s.has_token_history(7, 3) is True
    assert s.has_token_history(8, 3) is False
    assert s.get_token_history(7, 3) == latest
    assert s.get_token_history(8, 3) is None


def test_next_generation():
    child = Generation(start=0, version=2)
    past = Generation(start=0, version=1)
    s, _ = state([child], infos={(0, 1): past, (0, 2): child}, children=[child])
    assert s.next_generation(GenId(0, 1)) == [child]
    assert s.next_generation(GenId(0, 2)) is None
    assert s.next_generation(GenId(9, 1)) is None


def test_generation_id():
    assert Generation(start=3, version=5).id() == GenId(3, 5)