"""Tests for joining results with judgements."""

import pytest

from relevancy_types import InvalidInput, Judgement, ResultItem
from scoring.judgements import join_judgements, parse_judgements, parse_result_items


def make_items(*product_ids):
    return [ResultItem(product_id=pid, rank=rank) for rank, pid in enumerate(product_ids)]


def test_join_uses_judged_scores_in_result_order():
    items = make_items("a", "b", "c")
    judgements = {"c": Judgement("c", 1), "a": Judgement("a", 3), "b": Judgement("b", 2)}

    assert join_judgements(items, judgements) == [3, 2, 1]


def test_join_fills_unjudged_results_with_missing_score():
    """Test results without a judgement get the missing score."""
    items = make_items("a", "b", "c")
    graded = join_judgements(items, {"b": Judgement("b", 3)}, missing_score=1)

    assert graded == [1, 3, 1]


def test_join_ignores_judgements_for_absent_products():
    items = make_items("a")
    graded = join_judgements(items, {"a": Judgement("a", 2), "zzz": Judgement("zzz", 3)})

    assert graded == [2]


def test_join_accepts_raw_nodes_and_scores():
    items = make_items("a", "b")
    graded = join_judgements(items, {"a": {"score": "3"}, "b": 2})

    assert graded == ["3", 2]


def test_join_preserves_length_and_leaves_inputs_untouched():
    items = make_items("a", "b", "c", "d")
    judgements = {"a": Judgement("a", 3)}

    graded = join_judgements(items, judgements)

    assert len(graded) == len(items)
    assert [item.product_id for item in items] == ["a", "b", "c", "d"]
    assert judgements == {"a": Judgement("a", 3)}


def test_join_empty_results():
    assert join_judgements([], {"a": Judgement("a", 3)}) == []


def test_parse_result_items_orders_by_rank():
    """Test stored results keyed by product id come back in rank order."""
    node = {
        "p2": {"id": "p2", "rank": 1, "title": "Second"},
        "p1": {"id": "p1", "rank": 0, "title": "First"},
        "p3": {"rank": 2},
    }

    items = parse_result_items(node)

    assert [item.product_id for item in items] == ["p1", "p2", "p3"]
    assert items[0].fields == {"title": "First"}


def test_parse_result_items_from_list():
    items = parse_result_items([{"id": "x"}, None, {"id": "y"}])

    assert [(i.product_id, i.rank) for i in items] == [("x", 0), ("y", 2)]


def test_parse_result_items_absent_node():
    assert parse_result_items(None) is None


def test_parse_result_items_missing_rank_raises():
    with pytest.raises(InvalidInput):
        parse_result_items({"p1": {"id": "p1"}})


def test_parse_result_items_missing_id_in_list_raises():
    with pytest.raises(InvalidInput):
        parse_result_items([{"title": "no id"}])


def test_parse_result_items_round_trips_result_item_nodes():
    item = ResultItem(product_id="p9", rank=4, fields={"brand": "Acme"})
    assert parse_result_items({"p9": item.to_node()}) == [item]


def test_parse_judgements():
    judgements = parse_judgements({"p1": {"score": "3"}, "p2": 1, "p3": None})

    assert judgements == {"p1": Judgement("p1", "3"), "p2": Judgement("p2", 1)}


def test_parse_judgements_absent_node():
    assert parse_judgements(None) == {}
