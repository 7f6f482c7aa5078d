import unittest

from terminalmarket.client import ValidationError
from terminalmarket.pipeline import (
    contains_query,
    filter_items,
    head_items,
    parse_price,
    run_pipeline,
    sort_items,
)

ITEMS = [
    {"name": "Espresso", "price": "9"},
    {"name": "americano", "price": "5"},
    {"name": "Latte", "price": "$5.00"},
    {"name": "Mocha", "price": "12"},
    {"name": "Water"},
]


class TestContainsQuery(unittest.TestCase):
    def test_matches_any_text_field_case_insensitively(self) -> None:
        self.assertTrue(contains_query({"name": "Cold Brew"}, "cold"))
        self.assertTrue(contains_query({"shortDescription": "Fresh BEANS"}, "beans"))
        self.assertTrue(contains_query({"serviceCity": "Berlin"}, "berlin"))
        self.assertTrue(contains_query({"tags": ["decaf", None]}, "DECAF"))
        self.assertFalse(contains_query({"name": "Tea", "price": "5"}, "coffee"))

    def test_filter_items(self) -> None:
        self.assertEqual([i["name"] for i in filter_items(ITEMS, "a")], ["americano", "Latte", "Mocha", "Water"])


class TestSort(unittest.TestCase):
    def test_price_ascending_is_numeric_and_stable(self) -> None:
        names = [i["name"] for i in sort_items(ITEMS, "price")]
        self.assertEqual(names, ["americano", "Latte", "Espresso", "Mocha", "Water"])

    def test_price_descending_keeps_tie_order_and_missing_last(self) -> None:
        names = [i["name"] for i in sort_items(ITEMS, "-price")]
        self.assertEqual(names, ["Mocha", "Espresso", "americano", "Latte", "Water"])

    def test_ascending_and_descending_hold_same_items(self) -> None:
        asc = sort_items(ITEMS, "price")
        desc = sort_items(ITEMS, "-price")
        self.assertCountEqual([id(i) for i in asc], [id(i) for i in desc])

    def test_strings_compare_case_insensitively(self) -> None:
        names = [i["name"] for i in sort_items(ITEMS, "name")]
        self.assertEqual(names, ["americano", "Espresso", "Latte", "Mocha", "Water"])

    def test_empty_field_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            sort_items(ITEMS, "-")

    def test_parse_price(self) -> None:
        self.assertEqual(parse_price("$1,200.50"), 1200.5)
        self.assertEqual(parse_price(3), 3.0)
        self.assertIsNone(parse_price("free"))
        self.assertIsNone(parse_price(True))


class TestHeadAndPipeline(unittest.TestCase):
    def test_head_is_prefix_of_sorted(self) -> None:
        sorted_items = sort_items(ITEMS, "-price")
        for n in (1, 3, 5, 50):
            result = run_pipeline(ITEMS, sort="-price", head=n)
            self.assertEqual(result, sorted_items[: min(n, len(ITEMS))])

    def test_head_rejects_non_positive(self) -> None:
        for bad in (0, -1, "x", None):
            with self.assertRaises(ValidationError):
                head_items(ITEMS, bad)  # type: ignore[arg-type]

    def test_search_coffee_scenario(self) -> None:
        fixture = [{"name": "A", "price": "5"}, {"name": "B", "price": "9"}]
        self.assertEqual(run_pipeline(fixture, sort="-price", head=1), [{"name": "B", "price": "9"}])

    def test_no_stages_returns_copy(self) -> None:
        result = run_pipeline(ITEMS)
        self.assertEqual(result, ITEMS)
        self.assertIsNot(result, ITEMS)


if __name__ == "__main__":
    unittest.main()
