from dataclasses import dataclass

import pytest

import deckfill.binder as binder
from deckfill.capacity import make_batch
from deckfill.evaluator import DefaultEvaluator
from deckfill.model import ContentUnit, Element


@dataclass
class _Product:
    Name: str
    Price: float


def _items(count):
    return [{"Name": chr(ord("A") + i), "Price": 10.0 * (i + 1)} for i in range(count)]


def test_context_holds_local_and_remapped_keys():
    items = _items(5)
    batch = make_batch(1, 3, 5)

    context = binder.build_context({"Items": batch}, {"Items": items})

    assert context["Items[0]"] is items[3]
    assert context["Items[3]"] is items[3]
    assert context["Items[1].Name"] == "E"
    assert context["Items[4].Name"] == "E"
    assert context["Items[2]"] is None
    assert context["Items[5]"] is None
    assert context["_batch_index"] == 1
    assert context["_batch_start"] == 3
    assert context["_batch_end"] == 4
    assert context["_batch_size"] == 2
    assert context["_total_items"] == 5
    assert context["_batches"]["Items"]["start"] == 3


def test_context_keeps_variables_but_not_bound_collections():
    context = binder.build_context(
        {"Items": make_batch(0, 2, 2)},
        {"Items": _items(2)},
        {"Items": _items(2), "customer": "ACME"},
    )

    assert "Items" not in context
    assert context["customer"] == "ACME"


def test_each_page_gets_a_fresh_context():
    items = _items(4)
    first = binder.build_context({"Items": make_batch(0, 2, 4)}, {"Items": items})
    second = binder.build_context({"Items": make_batch(1, 2, 4)}, {"Items": items})

    first["Items[0]"] = "mutated"

    assert first is not second
    assert second["Items[0]"] is items[2]


def test_item_properties_for_dataclasses_and_objects():
    class Plain:
        def __init__(self):
            self.Name = "plain"
            self._secret = 1

    assert binder.item_properties(_Product("X", 1.5)) == {"Name": "X", "Price": 1.5}
    assert binder.item_properties(Plain()) == {"Name": "plain"}
    assert binder.item_properties("text") == {}
    assert binder.item_properties(None) == {}


def test_bind_element_renders_each_run():
    context = binder.build_context({"Items": make_batch(1, 3, 5)}, {"Items": _items(5)})
    element = Element(1, runs=["Name: ", "{{Items[3].Name}}", " (${Items[3].Price:.1f})"])

    assert binder.bind_element(element, context, DefaultEvaluator()) is True
    assert element.runs == ["Name: ", "D", " (40.0)"]


def test_bind_element_joins_runs_when_a_block_is_split():
    context = binder.build_context({"Items": make_batch(1, 3, 5)}, {"Items": _items(5)})
    element = Element(1, runs=["{{Items[3].", "Name}}"])

    binder.bind_element(element, context, DefaultEvaluator())

    assert element.runs == ["D"]


def test_bind_unit_counts_changed_elements():
    context = binder.build_context({"Items": make_batch(0, 1, 1)}, {"Items": _items(1)}, {"title": "Catalog"})
    unit = ContentUnit(256, elements=[Element(1, runs=["{{title}}"]), Element(2, runs=["static"]), Element(3)])

    assert binder.bind_unit(unit, context, DefaultEvaluator()) == 1
    assert unit.elements[0].runs == ["Catalog"]


@pytest.mark.parametrize(
    "text,expected",
    [
        ("${Items[0].Price:,.2f}", "1,234.50"),
        ("{{Items[0].Name}}", "Lamp"),
        ("{{Items[0].Name:N2}}", "Lamp"),
        ("{{Items[0].Address.City}}", "Turin"),
        ("{{Items[1].Name}}", ""),
        ("{{Missing[0].Name}}", "{{Missing[0].Name}}"),
        ("{{image(Items[0].Photo)}}", "lamp.png"),
        ("{{ppt.Image(Items[0].Photo, width: 100, height=50)}}", "lamp.png"),
        ('{{default(Items[1].Name, "n/a")}}', "n/a"),
        ("{{upper(Items[0].Name)}}", "LAMP"),
        ('{{join(tags, " | ")}}', "new | sale"),
        ("{{unknown(Items[0].Name)}}", "{{unknown(Items[0].Name)}}"),
        ("{{Year}} / {{Month:02d}}", "2024 / 01"),
    ],
)
def test_default_evaluator(text, expected):
    item = {"Name": "Lamp", "Price": 1234.5, "Photo": "lamp.png", "Address": {"City": "Turin"}}
    context = binder.build_context(
        {"Items": make_batch(0, 2, 1)},
        {"Items": [item]},
        {"tags": ["new", "sale"], "Year": 2024, "Month": 1},
    )

    assert DefaultEvaluator().evaluate(text, context) == expected


def test_evaluator_accepts_custom_functions():
    evaluator = DefaultEvaluator(functions={"Shout": lambda value: f"{value}!"})

    assert evaluator.evaluate("{{shout(name)}}", {"name": "hi"}) == "hi!"
